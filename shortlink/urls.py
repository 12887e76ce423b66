"""Short-link operations: creation, redirects, visit tracking, listings and analytics."""

from __future__ import annotations

import os
import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from pymongo.errors import PyMongoError

from shortlink.hashing import hash_ip
from shortlink.models import (
    ApiError,
    ShortenedUrl,
    TargetType,
    UrlAnalyticsResponse,
    UrlListResponse,
    UrlRequest,
    UrlResponse,
    UrlSearchParams,
    UrlVisitor,
)

DEFAULT_HOST = "http://localhost:8080"
CODE_ALPHABET = "_-0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
CODE_LENGTH = 6


@contextmanager
def _database(prefix: str = "Database error") -> Iterator[None]:
    """Turn database failures into 500 API errors."""
    try:
        yield
    except PyMongoError as exc:
        raise ApiError(500, f"{prefix}: {exc}") from exc


def _or_default(call: Any, default: Any) -> Any:
    try:
        return call()
    except PyMongoError:
        return default


def short_url_for(code: str) -> str:
    """Public redirect URL for a short code, based on the HOST setting."""
    host = os.environ.get("HOST", DEFAULT_HOST)
    return f"{host}/r/{code}"


def generate_code(size: int = CODE_LENGTH) -> str:
    """Random URL-safe code of the given length."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(size))


def create_short_url(
    store: Any, request: UrlRequest, user_id: str | None = None
) -> UrlResponse:
    """Store a new short link, using the custom code if one is given."""
    if request.custom_code:
        short_code = request.custom_code
        with _database():
            existing = store.find_url(short_code)
        if existing is not None:
            raise ApiError(
                409, "Custom code already in use", {"error": "Custom code already in use"}
            )
    else:
        short_code = generate_code(CODE_LENGTH)

    url = ShortenedUrl.create(request.url, short_code, request.expires_in_days, user_id)
    with _database():
        store.insert_url(url)

    return UrlResponse(
        original_url=request.url,
        short_url=short_url_for(short_code),
        short_code=short_code,
        expires_at=url.expires_at,
        user_id=url.user_id,
    )


def resolve_redirect(store: Any, code: str) -> str:
    """Return the original URL behind a live short code."""
    with _database():
        url = store.find_url(code)
    if url is None:
        raise ApiError(404, "Short URL not found")
    if url.is_expired():
        raise ApiError(410, "This URL has expired", {"error": "This URL has expired"})
    return url.original_url


def record_visit(
    store: Any,
    code: str,
    ip: str | None,
    user_agent: str | None = None,
    referrer: str | None = None,
) -> bool:
    """Count a click and remember the visitor; True if the visitor was new.

    Database failures are swallowed: tracking must never break a redirect.
    """
    visitor_hash = hash_ip(ip or "unknown")
    _or_default(lambda: store.increment_clicks(code), None)
    try:
        seen = store.has_visitor(code, visitor_hash)
    except PyMongoError:
        return False
    if seen:
        return False
    visitor = UrlVisitor.create(code, visitor_hash, user_agent, referrer)
    try:
        store.insert_visitor(visitor)
    except PyMongoError:
        return False
    return True


def _list_entry(store: Any, url: ShortenedUrl, current_user_id: str | None) -> UrlListResponse:
    code = url.short_code
    unique = _or_default(lambda: store.count_visitors(code), 0)
    has_shortened = _or_default(lambda: store.count_qr(code, TargetType.SHORTENED), 0) > 0
    has_original = _or_default(lambda: store.count_qr(code, TargetType.ORIGINAL), 0) > 0
    owned = (
        current_user_id is not None
        and url.user_id is not None
        and current_user_id == url.user_id
    )
    return UrlListResponse(
        id=None if url.id is None else str(url.id),
        original_url=url.original_url,
        short_code=code,
        created_at=url.created_at,
        expires_at=url.expires_at,
        has_shortened_qr=has_shortened,
        has_original_qr=has_original,
        clicks=url.clicks,
        unique_clicks=unique,
        user_id=url.user_id,
        owned_by_current_user=owned,
    )


def list_urls(
    store: Any, params: UrlSearchParams, current_user_id: str | None = None
) -> list[UrlListResponse]:
    """All short links matching the search, optionally only the caller's own."""
    owner = current_user_id if params.owned_only else None
    with _database():
        urls = store.list_urls(params.search or None, owner)
    return [_list_entry(store, url, current_user_id) for url in urls]


def list_user_urls(
    store: Any, user_id: str, params: UrlSearchParams, current_user_id: str | None = None
) -> list[UrlListResponse]:
    """Short links owned by one user, matching the search."""
    with _database():
        urls = store.list_urls(params.search or None, user_id)
    return [_list_entry(store, url, current_user_id) for url in urls]


def get_qr_svg(store: Any, code: str, url_type: str | None = None) -> str:
    """Stored SVG of the QR code for a short code and target type."""
    target = TargetType.parse(url_type)
    with _database():
        qr = store.find_qr(code, target)
    if qr is None:
        raise ApiError(404, "QR code not found for this URL")
    return qr.svg_content


def url_analytics(store: Any, code: str) -> UrlAnalyticsResponse:
    """Click and QR statistics for one short link."""
    with _database():
        url = store.find_url(code)
    if url is None:
        raise ApiError(404, "URL not found", {"error": "URL not found"})

    unique = _or_default(lambda: store.count_visitors(code), 0)
    shortened_qr = _or_default(lambda: store.find_qr(code, TargetType.SHORTENED), None)
    original_qr = _or_default(lambda: store.find_qr(code, TargetType.ORIGINAL), None)

    return UrlAnalyticsResponse(
        short_code=url.short_code,
        original_url=url.original_url,
        created_at=url.created_at,
        expires_at=url.expires_at,
        clicks=url.clicks,
        unique_clicks=unique,
        has_shortened_qr=shortened_qr is not None,
        has_original_qr=original_qr is not None,
        shortened_qr_generated_at=None if shortened_qr is None else shortened_qr.generated_at,
        original_qr_generated_at=None if original_qr is None else original_qr.generated_at,
        user_id=url.user_id,
    )


def delete_short_url(store: Any, code: str, current_user_id: str | None) -> None:
    """Delete a short link owned by the caller, with its QR codes and visitors."""
    if current_user_id is None:
        raise ApiError(500, "User claims not found in request")
    with _database():
        url = store.find_url(code)
    if url is None:
        raise ApiError(404, "URL not found")
    if url.user_id != current_user_id:
        raise ApiError(403, "You do not have permission to delete this URL")

    with _database("Failed to delete URL"):
        store.delete_url(url.id)
    _or_default(lambda: store.delete_qrs(code), 0)
    _or_default(lambda: store.delete_visitors(code), 0)