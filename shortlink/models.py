"""Stored documents, request payloads and response shapes."""

from __future__ import annotations

import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

DAY_MILLIS = 24 * 60 * 60 * 1000
_U32_MAX = 2**32 - 1
_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*$")
_HOST_SCHEMES = {"http", "https", "ws", "wss", "ftp"}


class ApiError(Exception):
    """An error that maps onto an HTTP status and a response body."""

    def __init__(self, status: int, message: str, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.body = body


class ValidationError(ApiError):
    """A request payload failed field validation."""

    def __init__(self, errors: dict[str, list[dict[str, Any]]]) -> None:
        super().__init__(400, "Validation failed", errors)
        self.errors = errors


def now_millis() -> int:
    """Current UTC time as milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def is_valid_url(value: Any) -> bool:
    """Return True if value parses as an absolute URL."""
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not text or any(ch.isspace() for ch in text):
        return False
    scheme, sep, _rest = text.partition(":")
    if not sep or not _SCHEME.match(scheme):
        return False
    if scheme.lower() in _HOST_SCHEMES:
        try:
            parts = urlsplit(text)
            if not parts.hostname:
                return False
            parts.port
        except ValueError:
            return False
    return True


class TargetType(Enum):
    ORIGINAL = "original"
    SHORTENED = "shortened"

    @classmethod
    def parse(cls, value: str | None) -> TargetType:
        """Read a url_type parameter; anything but "original" means shortened."""
        return cls.ORIGINAL if value == "original" else cls.SHORTENED


def _without_none(doc: dict[str, Any], *keys: str) -> dict[str, Any]:
    for key in keys:
        if doc.get(key) is None:
            doc.pop(key, None)
    return doc


@dataclass
class ShortenedUrl:
    original_url: str
    short_code: str
    created_at: int | None = None
    expires_at: int | None = None
    clicks: int = 0
    user_id: str | None = None
    id: Any = None

    @classmethod
    def create(cls, original_url, short_code, expires_in_days=None, user_id=None):
        now = now_millis()
        expires_at = None if expires_in_days is None else now + expires_in_days * DAY_MILLIS
        return cls(
            original_url=original_url,
            short_code=short_code,
            created_at=now,
            expires_at=expires_at,
            clicks=0,
            user_id=user_id,
        )

    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return now_millis() > self.expires_at

    def to_document(self) -> dict[str, Any]:
        doc = {
            "_id": self.id,
            "original_url": self.original_url,
            "short_code": self.short_code,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "clicks": self.clicks,
            "user_id": self.user_id,
        }
        return _without_none(doc, "_id", "created_at", "expires_at")

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> ShortenedUrl:
        return cls(
            id=doc.get("_id"),
            original_url=doc["original_url"],
            short_code=doc["short_code"],
            created_at=doc.get("created_at"),
            expires_at=doc.get("expires_at"),
            clicks=doc.get("clicks", 0),
            user_id=doc.get("user_id"),
        )


@dataclass
class QrCode:
    short_code: str
    original_url: str
    svg_content: str
    generated_at: int
    target_type: TargetType
    user_id: str | None = None
    id: Any = None

    @classmethod
    def create(cls, short_code, original_url, svg_content, target_type, user_id=None):
        return cls(
            short_code=short_code,
            original_url=original_url,
            svg_content=svg_content,
            generated_at=now_millis(),
            target_type=target_type,
            user_id=user_id,
        )

    def to_document(self) -> dict[str, Any]:
        doc = {
            "_id": self.id,
            "short_code": self.short_code,
            "original_url": self.original_url,
            "svg_content": self.svg_content,
            "generated_at": self.generated_at,
            "target_type": self.target_type.value,
            "user_id": self.user_id,
        }
        return _without_none(doc, "_id")

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> QrCode:
        return cls(
            id=doc.get("_id"),
            short_code=doc["short_code"],
            original_url=doc["original_url"],
            svg_content=doc["svg_content"],
            generated_at=doc["generated_at"],
            target_type=TargetType(doc["target_type"]),
            user_id=doc.get("user_id"),
        )


@dataclass
class UrlVisitor:
    short_code: str
    visitor_hash: str
    timestamp: int
    user_agent: str | None = None
    referrer: str | None = None
    id: Any = None

    @classmethod
    def create(cls, short_code, visitor_hash, user_agent=None, referrer=None):
        return cls(
            short_code=short_code,
            visitor_hash=visitor_hash,
            timestamp=now_millis(),
            user_agent=user_agent,
            referrer=referrer,
        )

    def to_document(self) -> dict[str, Any]:
        doc = {
            "_id": self.id,
            "short_code": self.short_code,
            "visitor_hash": self.visitor_hash,
            "timestamp": self.timestamp,
            "user_agent": self.user_agent,
            "referrer": self.referrer,
        }
        return _without_none(doc, "_id")

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> UrlVisitor:
        return cls(
            id=doc.get("_id"),
            short_code=doc["short_code"],
            visitor_hash=doc["visitor_hash"],
            timestamp=doc["timestamp"],
            user_agent=doc.get("user_agent"),
            referrer=doc.get("referrer"),
        )


@dataclass
class User:
    username: str
    password_hash: str
    created_at: int
    updated_at: int
    email: str | None = None
    full_name: str | None = None
    last_login: int | None = None
    is_active: bool = True
    id: Any = None

    @classmethod
    def create(cls, username, email, full_name, password_hash):
        now = now_millis()
        return cls(
            username=username,
            email=email,
            full_name=full_name,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
            last_login=None,
            is_active=True,
        )

    def update_last_login(self) -> None:
        self.last_login = now_millis()

    def to_document(self) -> dict[str, Any]:
        doc = {
            "_id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "password_hash": self.password_hash,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_login": self.last_login,
            "is_active": self.is_active,
        }
        return _without_none(doc, "_id", "email", "full_name")

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> User:
        return cls(
            id=doc.get("_id"),
            username=doc["username"],
            email=doc.get("email"),
            full_name=doc.get("full_name"),
            password_hash=doc["password_hash"],
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
            last_login=doc.get("last_login"),
            is_active=doc["is_active"],
        )


def user_response(user: User) -> dict[str, Any]:
    """Public view of a stored user, without the password hash."""
    if user.id is None:
        raise ValueError("user has no id")
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "full_name": user.full_name,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
        "last_login": user.last_login,
        "is_active": user.is_active,
    }


# --- payload parsing -------------------------------------------------------


def _require_object(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ApiError(400, "Json deserialize error: expected an object")
    return data


def _required_str(data: Mapping[str, Any], key: str) -> str:
    if key not in data or data[key] is None:
        raise ApiError(400, f"Json deserialize error: missing field `{key}`")
    value = data[key]
    if not isinstance(value, str):
        raise ApiError(400, f"Json deserialize error: `{key}` must be a string")
    return value


def _optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ApiError(400, f"Json deserialize error: `{key}` must be a string")
    return value


def _optional_u32(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U32_MAX:
        raise ApiError(400, f"Json deserialize error: `{key}` must be an unsigned 32-bit integer")
    return value


def _optional_bool(data: Mapping[str, Any], key: str) -> bool | None:
    value = data.get(key)
    if value is not None and not isinstance(value, bool):
        raise ApiError(400, f"Json deserialize error: `{key}` must be a boolean")
    return value


def _check_url(url: str) -> None:
    if not is_valid_url(url):
        raise ValidationError(
            {"url": [{"code": "url", "message": "Invalid URL format", "params": {"value": url}}]}
        )


def _query_bool(args: Mapping[str, Any], key: str) -> bool | None:
    value = args.get(key)
    if value is None:
        return None
    if value == "true":
        return True
    if value == "false":
        return False
    raise ApiError(400, f"Query deserialize error: `{key}` must be true or false")


@dataclass
class UrlRequest:
    url: str
    custom_code: str | None = None
    expires_in_days: int | None = None

    @classmethod
    def from_json(cls, data: Any) -> UrlRequest:
        data = _require_object(data)
        request = cls(
            url=_required_str(data, "url"),
            custom_code=_optional_str(data, "custom_code"),
            expires_in_days=_optional_u32(data, "expires_in_days"),
        )
        _check_url(request.url)
        return request


@dataclass
class CreateQrRequest:
    url: str
    size: int | None = None
    force_regenerate: bool | None = None

    @classmethod
    def from_json(cls, data: Any) -> CreateQrRequest:
        data = _require_object(data)
        request = cls(
            url=_required_str(data, "url"),
            size=_optional_u32(data, "size"),
            force_regenerate=_optional_bool(data, "force_regenerate"),
        )
        _check_url(request.url)
        return request


@dataclass
class CreateUserRequest:
    username: str
    password: str
    email: str | None = None
    full_name: str | None = None

    @classmethod
    def from_json(cls, data: Any) -> CreateUserRequest:
        data = _require_object(data)
        return cls(
            username=_required_str(data, "username"),
            password=_required_str(data, "password"),
            email=_optional_str(data, "email"),
            full_name=_optional_str(data, "full_name"),
        )


@dataclass
class EditUserRequest:
    username: str | None = None
    full_name: str | None = None
    password: str | None = None
    is_active: bool | None = None

    @classmethod
    def from_json(cls, data: Any) -> EditUserRequest:
        data = _require_object(data)
        return cls(
            username=_optional_str(data, "username"),
            full_name=_optional_str(data, "full_name"),
            password=_optional_str(data, "password"),
            is_active=_optional_bool(data, "is_active"),
        )


@dataclass
class UrlSearchParams:
    search: str | None = None
    owned_only: bool | None = None

    @classmethod
    def from_query(cls, args: Mapping[str, Any]) -> UrlSearchParams:
        return cls(search=args.get("search"), owned_only=_query_bool(args, "owned_only"))


@dataclass
class QrSearchParams:
    search: str | None = None
    target_type: str | None = None
    direct_only: bool | None = None
    owned_only: bool | None = None

    @classmethod
    def from_query(cls, args: Mapping[str, Any]) -> QrSearchParams:
        return cls(
            search=args.get("search"),
            target_type=args.get("target_type"),
            direct_only=_query_bool(args, "direct_only"),
            owned_only=_query_bool(args, "owned_only"),
        )


@dataclass
class RegenerateQrParams:
    force: bool | None = None
    url_type: str | None = None

    @classmethod
    def from_query(cls, args: Mapping[str, Any]) -> RegenerateQrParams:
        return cls(force=_query_bool(args, "force"), url_type=args.get("url_type"))


# --- responses -------------------------------------------------------------


@dataclass
class UrlResponse:
    original_url: str
    short_url: str
    short_code: str
    expires_at: int | None
    user_id: str | None


@dataclass
class UrlListResponse:
    id: str | None
    original_url: str
    short_code: str
    created_at: int | None
    expires_at: int | None
    has_shortened_qr: bool
    has_original_qr: bool
    clicks: int
    unique_clicks: int
    user_id: str | None
    owned_by_current_user: bool


@dataclass
class UrlAnalyticsResponse:
    short_code: str
    original_url: str
    created_at: int | None
    expires_at: int | None
    clicks: int
    unique_clicks: int
    has_shortened_qr: bool
    has_original_qr: bool
    shortened_qr_generated_at: int | None
    original_qr_generated_at: int | None
    user_id: str | None


@dataclass
class QrCodeResponse:
    id: str
    short_code: str
    original_url: str
    generated_at: int
    target_type: str
    is_direct: bool
    owned_by_current_user: bool
    user_id: str | None
    svg_content: str = field(repr=False)