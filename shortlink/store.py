"""Persistence for short links, visitors, QR codes and users.

Two stores share one interface: ``MongoStore`` talks to a MongoDB database,
``MemoryStore`` keeps documents in process and evaluates the same filters.
Both raise ``pymongo.errors.PyMongoError`` subclasses on database failures.
"""

from __future__ import annotations

import copy
import re
import threading
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from bson import ObjectId
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import ConfigurationError, OperationFailure, PyMongoError

from shortlink.models import QrCode, ShortenedUrl, TargetType, UrlVisitor, User

DATABASE_NAME = "url_db"
URLS = "urls"
VISITORS = "visitors"
QR_CODES = "qr_codes"
USERS = "users"
DIRECT_PREFIX_PATTERN = "^direct-"

_MISSING = object()


# --- shared filter construction ---------------------------------------------


def _object_id(value: Any) -> Any:
    """Accept an ObjectId or its hex string form."""
    if isinstance(value, str):
        return ObjectId(value)
    return value


def _target_value(target_type: TargetType | str) -> str:
    return TargetType(target_type).value


def _search_clause(search: str) -> dict[str, Any]:
    return {
        "$or": [
            {"short_code": {"$regex": search, "$options": "i"}},
            {"original_url": {"$regex": search, "$options": "i"}},
        ]
    }


def _combine(clauses: list[dict[str, Any]]) -> dict[str, Any]:
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _url_filter(search: str | None, user_id: str | None) -> dict[str, Any]:
    clauses: list[dict[str, Any]] = []
    if user_id is not None:
        clauses.append({"user_id": user_id})
    if search:
        clauses.append(_search_clause(search))
    return _combine(clauses)


def _qr_filter(
    search: str | None,
    target_type: TargetType | str | None,
    direct_only: bool,
    user_id: str | None,
) -> dict[str, Any]:
    clauses: list[dict[str, Any]] = []
    if user_id is not None:
        clauses.append({"user_id": user_id})
    if search:
        clauses.append(_search_clause(search))
    if target_type is not None:
        clauses.append({"target_type": _target_value(target_type)})
    if direct_only:
        clauses.append({"short_code": {"$regex": DIRECT_PREFIX_PATTERN}})
    return _combine(clauses)


def _qr_key(short_code: str, target_type: TargetType | str) -> dict[str, Any]:
    return {"short_code": short_code, "target_type": _target_value(target_type)}


def _direct_qr_key(original_url: str) -> dict[str, Any]:
    return {
        "original_url": original_url,
        "short_code": {"$regex": DIRECT_PREFIX_PATTERN},
        "target_type": TargetType.ORIGINAL.value,
    }


def _decode_urls(docs: Iterable[Mapping[str, Any]]) -> Iterator[ShortenedUrl]:
    """Decode URL documents, skipping any that do not have the expected shape."""
    for doc in docs:
        try:
            yield ShortenedUrl.from_document(doc)
        except (KeyError, TypeError, ValueError):
            continue


# --- in-process filter evaluation -------------------------------------------


def _regex_matches(value: Any, pattern: str, options: str) -> bool:
    if not isinstance(value, str):
        return False
    flags = re.IGNORECASE if "i" in options else 0
    try:
        compiled = re.compile(pattern, flags)
    except re.error as exc:
        raise OperationFailure(f"Regular expression is invalid: {exc}") from exc
    return compiled.search(value) is not None


def _condition_matches(value: Any, condition: Mapping[str, Any]) -> bool:
    for op, arg in condition.items():
        if op == "$regex":
            if not _regex_matches(value, arg, condition.get("$options", "")):
                return False
        elif op == "$ne":
            if value == arg:
                return False
        elif op == "$options":
            continue
        else:
            raise OperationFailure(f"unknown operator: {op}")
    return True


def _matches(doc: Mapping[str, Any], flt: Mapping[str, Any]) -> bool:
    for key, condition in flt.items():
        if key == "$and":
            if not all(_matches(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(_matches(doc, sub) for sub in condition):
                return False
        else:
            value = doc.get(key, _MISSING)
            if isinstance(condition, Mapping):
                if value is _MISSING and "$regex" in condition:
                    return False
                if not _condition_matches(None if value is _MISSING else value, condition):
                    return False
            elif value is _MISSING or value != condition:
                return False
    return True


def _apply_update(doc: dict[str, Any], update: Mapping[str, Any]) -> None:
    for op, fields in update.items():
        if op == "$set":
            doc.update(fields)
        elif op == "$inc":
            for key, amount in fields.items():
                doc[key] = doc.get(key, 0) + amount
        else:
            raise OperationFailure(f"unknown update operator: {op}")


class MemoryStore:
    """A thread-safe store that keeps every collection in memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._collections: dict[str, list[dict[str, Any]]] = {
            URLS: [],
            VISITORS: [],
            QR_CODES: [],
            USERS: [],
        }

    # -- generic collection operations --

    def _find(self, name: str, flt: Mapping[str, Any]) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._collections[name] if _matches(doc, flt)]

    def _find_one(self, name: str, flt: Mapping[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            for doc in self._collections[name]:
                if _matches(doc, flt):
                    return copy.deepcopy(doc)
        return None

    def _count(self, name: str, flt: Mapping[str, Any]) -> int:
        with self._lock:
            return sum(1 for doc in self._collections[name] if _matches(doc, flt))

    def _insert(self, name: str, doc: dict[str, Any]) -> Any:
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", ObjectId())
        with self._lock:
            self._collections[name].append(stored)
        return stored["_id"]

    def _update_one(
        self, name: str, flt: Mapping[str, Any], update: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        with self._lock:
            for doc in self._collections[name]:
                if _matches(doc, flt):
                    _apply_update(doc, update)
                    return copy.deepcopy(doc)
        return None

    def _delete(self, name: str, flt: Mapping[str, Any], many: bool) -> int:
        with self._lock:
            docs = self._collections[name]
            doomed = [doc for doc in docs if _matches(doc, flt)]
            if not many:
                doomed = doomed[:1]
            for doc in doomed:
                docs.remove(doc)
            return len(doomed)

    # -- health --

    def ping(self) -> bool:
        return True

    # -- short links --

    def find_url(self, short_code: str) -> ShortenedUrl | None:
        doc = self._find_one(URLS, {"short_code": short_code})
        return None if doc is None else ShortenedUrl.from_document(doc)

    def insert_url(self, url: ShortenedUrl) -> Any:
        return self._insert(URLS, url.to_document())

    def increment_clicks(self, short_code: str) -> None:
        self._update_one(URLS, {"short_code": short_code}, {"$inc": {"clicks": 1}})

    def delete_url(self, url_id: Any) -> bool:
        return self._delete(URLS, {"_id": url_id}, many=False) > 0

    def list_urls(self, search: str | None, user_id: str | None) -> list[ShortenedUrl]:
        return list(_decode_urls(self._find(URLS, _url_filter(search, user_id))))

    # -- visitors --

    def count_visitors(self, short_code: str) -> int:
        return self._count(VISITORS, {"short_code": short_code})

    def has_visitor(self, short_code: str, visitor_hash: str) -> bool:
        flt = {"short_code": short_code, "visitor_hash": visitor_hash}
        return self._find_one(VISITORS, flt) is not None

    def insert_visitor(self, visitor: UrlVisitor) -> Any:
        return self._insert(VISITORS, visitor.to_document())

    def delete_visitors(self, short_code: str) -> int:
        return self._delete(VISITORS, {"short_code": short_code}, many=True)

    # -- QR codes --

    def find_qr(self, short_code: str, target_type: TargetType | str) -> QrCode | None:
        doc = self._find_one(QR_CODES, _qr_key(short_code, target_type))
        return None if doc is None else QrCode.from_document(doc)

    def count_qr(self, short_code: str, target_type: TargetType | str) -> int:
        return self._count(QR_CODES, _qr_key(short_code, target_type))

    def update_qr_svg(
        self,
        short_code: str,
        target_type: TargetType | str,
        svg_content: str,
        generated_at: int,
    ) -> QrCode | None:
        update = {"$set": {"svg_content": svg_content, "generated_at": generated_at}}
        doc = self._update_one(QR_CODES, _qr_key(short_code, target_type), update)
        return None if doc is None else QrCode.from_document(doc)

    def find_direct_qr(self, original_url: str) -> QrCode | None:
        doc = self._find_one(QR_CODES, _direct_qr_key(original_url))
        return None if doc is None else QrCode.from_document(doc)

    def update_direct_qr(self, original_url: str, svg_content: str, generated_at: int) -> bool:
        update = {"$set": {"svg_content": svg_content, "generated_at": generated_at}}
        return self._update_one(QR_CODES, _direct_qr_key(original_url), update) is not None

    def insert_qr(self, qr: QrCode) -> Any:
        return self._insert(QR_CODES, qr.to_document())

    def list_qr(
        self,
        search: str | None,
        target_type: TargetType | str | None,
        direct_only: bool,
        user_id: str | None,
    ) -> list[QrCode]:
        flt = _qr_filter(search, target_type, direct_only, user_id)
        return [QrCode.from_document(doc) for doc in self._find(QR_CODES, flt)]

    def delete_qrs(self, short_code: str) -> int:
        return self._delete(QR_CODES, {"short_code": short_code}, many=True)

    # -- users --

    def find_user(self, user_id: Any) -> User | None:
        doc = self._find_one(USERS, {"_id": _object_id(user_id)})
        return None if doc is None else User.from_document(doc)

    def find_user_by_username(self, username: str) -> User | None:
        doc = self._find_one(USERS, {"username": username})
        return None if doc is None else User.from_document(doc)

    def insert_user(self, user: User) -> Any:
        return self._insert(USERS, user.to_document())

    def update_user(self, user_id: Any, fields: Mapping[str, Any]) -> bool:
        update = {"$set": dict(fields)}
        return self._update_one(USERS, {"_id": _object_id(user_id)}, update) is not None

    def delete_user(self, user_id: Any) -> bool:
        return self._delete(USERS, {"_id": _object_id(user_id)}, many=False) > 0

    def list_users(self, exclude_id: Any) -> list[User]:
        flt = {} if exclude_id is None else {"_id": {"$ne": _object_id(exclude_id)}}
        return [User.from_document(doc) for doc in self._find(USERS, flt)]


class MongoStore:
    """A store backed by a pymongo database."""

    def __init__(self, database: Any) -> None:
        self.database = database

    def _collection(self, name: str) -> Any:
        return self.database[name]

    # -- health --

    def ping(self) -> bool:
        try:
            self.database.command("ping")
        except PyMongoError:
            return False
        return True

    # -- short links --

    def find_url(self, short_code: str) -> ShortenedUrl | None:
        doc = self._collection(URLS).find_one({"short_code": short_code})
        return None if doc is None else ShortenedUrl.from_document(doc)

    def insert_url(self, url: ShortenedUrl) -> Any:
        return self._collection(URLS).insert_one(url.to_document()).inserted_id

    def increment_clicks(self, short_code: str) -> None:
        self._collection(URLS).update_one({"short_code": short_code}, {"$inc": {"clicks": 1}})

    def delete_url(self, url_id: Any) -> bool:
        return self._collection(URLS).delete_one({"_id": url_id}).deleted_count > 0

    def list_urls(self, search: str | None, user_id: str | None) -> list[ShortenedUrl]:
        return list(_decode_urls(self._collection(URLS).find(_url_filter(search, user_id))))

    # -- visitors --

    def count_visitors(self, short_code: str) -> int:
        return self._collection(VISITORS).count_documents({"short_code": short_code})

    def has_visitor(self, short_code: str, visitor_hash: str) -> bool:
        flt = {"short_code": short_code, "visitor_hash": visitor_hash}
        return self._collection(VISITORS).find_one(flt) is not None

    def insert_visitor(self, visitor: UrlVisitor) -> Any:
        return self._collection(VISITORS).insert_one(visitor.to_document()).inserted_id

    def delete_visitors(self, short_code: str) -> int:
        return self._collection(VISITORS).delete_many({"short_code": short_code}).deleted_count

    # -- QR codes --

    def find_qr(self, short_code: str, target_type: TargetType | str) -> QrCode | None:
        doc = self._collection(QR_CODES).find_one(_qr_key(short_code, target_type))
        return None if doc is None else QrCode.from_document(doc)

    def count_qr(self, short_code: str, target_type: TargetType | str) -> int:
        return self._collection(QR_CODES).count_documents(_qr_key(short_code, target_type))

    def update_qr_svg(
        self,
        short_code: str,
        target_type: TargetType | str,
        svg_content: str,
        generated_at: int,
    ) -> QrCode | None:
        doc = self._collection(QR_CODES).find_one_and_update(
            _qr_key(short_code, target_type),
            {"$set": {"svg_content": svg_content, "generated_at": generated_at}},
            return_document=ReturnDocument.AFTER,
        )
        return None if doc is None else QrCode.from_document(doc)

    def find_direct_qr(self, original_url: str) -> QrCode | None:
        doc = self._collection(QR_CODES).find_one(_direct_qr_key(original_url))
        return None if doc is None else QrCode.from_document(doc)

    def update_direct_qr(self, original_url: str, svg_content: str, generated_at: int) -> bool:
        result = self._collection(QR_CODES).update_one(
            _direct_qr_key(original_url),
            {"$set": {"svg_content": svg_content, "generated_at": generated_at}},
        )
        return result.matched_count > 0

    def insert_qr(self, qr: QrCode) -> Any:
        return self._collection(QR_CODES).insert_one(qr.to_document()).inserted_id

    def list_qr(
        self,
        search: str | None,
        target_type: TargetType | str | None,
        direct_only: bool,
        user_id: str | None,
    ) -> list[QrCode]:
        flt = _qr_filter(search, target_type, direct_only, user_id)
        return [QrCode.from_document(doc) for doc in self._collection(QR_CODES).find(flt)]

    def delete_qrs(self, short_code: str) -> int:
        return self._collection(QR_CODES).delete_many({"short_code": short_code}).deleted_count

    # -- users --

    def find_user(self, user_id: Any) -> User | None:
        doc = self._collection(USERS).find_one({"_id": _object_id(user_id)})
        return None if doc is None else User.from_document(doc)

    def find_user_by_username(self, username: str) -> User | None:
        doc = self._collection(USERS).find_one({"username": username})
        return None if doc is None else User.from_document(doc)

    def insert_user(self, user: User) -> Any:
        return self._collection(USERS).insert_one(user.to_document()).inserted_id

    def update_user(self, user_id: Any, fields: Mapping[str, Any]) -> bool:
        result = self._collection(USERS).update_one(
            {"_id": _object_id(user_id)}, {"$set": dict(fields)}
        )
        return result.matched_count > 0

    def delete_user(self, user_id: Any) -> bool:
        return self._collection(USERS).delete_one({"_id": _object_id(user_id)}).deleted_count > 0

    def list_users(self, exclude_id: Any) -> list[User]:
        flt = {} if exclude_id is None else {"_id": {"$ne": _object_id(exclude_id)}}
        return [User.from_document(doc) for doc in self._collection(USERS).find(flt)]


def connect_mongo(url: str) -> MongoStore:
    """Create a client for a MongoDB connection string and open the url database."""
    try:
        client: MongoClient = MongoClient(url, connect=False)
    except ConfigurationError as exc:
        raise ValueError(f"Failed to parse MongoDB connection string: {exc}") from exc
    return MongoStore(client[DATABASE_NAME])