"""User account management: listing, lookup, creation, editing and deletion."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import bcrypt
from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from shortlink.models import (
    ApiError,
    CreateUserRequest,
    EditUserRequest,
    User,
    now_millis,
    user_response,
)

BCRYPT_COST = 12
_BCRYPT_MAX_BYTES = 72


@contextmanager
def _database(prefix: str = "Database error") -> Iterator[None]:
    """Turn database failures into 500 API errors."""
    try:
        yield
    except PyMongoError as exc:
        raise ApiError(500, f"{prefix}: {exc}") from exc


def _parse_id(value: Any, status: int, message: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as exc:
        raise ApiError(status, message) from exc


def _hash_password(password: str) -> str:
    secret_bytes = password.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    try:
        return bcrypt.hashpw(secret_bytes, bcrypt.gensalt(rounds=BCRYPT_COST)).decode("ascii")
    except ValueError as exc:
        raise ApiError(500, f"Failed to hash password: {exc}") from exc


def _find_existing(store: Any, object_id: ObjectId) -> User:
    with _database():
        user = store.find_user(object_id)
    if user is None:
        raise ApiError(404, "User not found")
    return user


def list_users(store: Any, current_user_id: str | None) -> list[dict[str, Any]]:
    """Every user except the caller."""
    if current_user_id is None:
        raise ApiError(500, "User claims not found in request")
    own_id = _parse_id(current_user_id, 500, "Invalid user ID in token")
    with _database():
        users = store.list_users(own_id)
    return [user_response(user) for user in users]


def get_user(store: Any, user_id: str) -> dict[str, Any]:
    """One user by id."""
    object_id = _parse_id(user_id, 400, "Invalid user ID format")
    return user_response(_find_existing(store, object_id))


def create_user(store: Any, request: CreateUserRequest) -> dict[str, Any]:
    """Register a new user with a hashed password."""
    with _database():
        existing = store.find_user_by_username(request.username)
    if existing is not None:
        raise ApiError(400, "Username already exists")

    new_user = User.create(
        request.username, request.email, request.full_name, _hash_password(request.password)
    )
    with _database("Failed to create user"):
        inserted_id = store.insert_user(new_user)
    with _database():
        inserted = store.find_user(inserted_id)
    if inserted is None:
        raise ApiError(500, "User created but not found")
    return user_response(inserted)


def edit_user(store: Any, user_id: str, request: EditUserRequest) -> dict[str, Any]:
    """Apply the given changes to a user and return the updated record."""
    object_id = _parse_id(user_id, 400, "Invalid user ID format")
    _find_existing(store, object_id)

    fields: dict[str, Any] = {"updated_at": now_millis()}
    if request.username is not None:
        fields["username"] = request.username
    if request.full_name is not None:
        fields["full_name"] = request.full_name
    if request.password is not None:
        fields["password_hash"] = _hash_password(request.password)
    if request.is_active is not None:
        fields["is_active"] = request.is_active

    with _database("Failed to update user"):
        store.update_user(object_id, fields)
    with _database():
        updated = store.find_user(object_id)
    if updated is None:
        raise ApiError(500, "User updated but not found")
    return user_response(updated)


def delete_user(store: Any, user_id: str) -> None:
    """Remove a user."""
    object_id = _parse_id(user_id, 400, "Invalid user ID format")
    _find_existing(store, object_id)
    with _database("Failed to delete user"):
        store.delete_user(object_id)