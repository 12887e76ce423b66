"""QR code operations: regeneration, direct generation and listings."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from pymongo.errors import PyMongoError

from shortlink.models import (
    ApiError,
    CreateQrRequest,
    QrCode,
    QrCodeResponse,
    QrSearchParams,
    RegenerateQrParams,
    TargetType,
    now_millis,
)
from shortlink.qrsvg import qr_svg
from shortlink.urls import short_url_for

DIRECT_PREFIX = "direct-"
DEFAULT_SIZE = 200
_TARGET_NAMES = {target.value for target in TargetType}


@contextmanager
def _database(prefix: str = "Database error") -> Iterator[None]:
    """Turn database failures into 500 API errors."""
    try:
        yield
    except PyMongoError as exc:
        raise ApiError(500, f"{prefix}: {exc}") from exc


def _render(data: str, size: int) -> str:
    try:
        return qr_svg(data, size)
    except ValueError as exc:
        raise ApiError(500, f"QR code generation error: {exc}") from exc


def regenerate_qr(store: Any, code: str, params: RegenerateQrParams) -> str:
    """Return the QR SVG for a short link, rendering it afresh when forced or missing.

    A fresh rendering replaces the stored one only when a stored one exists.
    """
    force = bool(params.force)
    target = TargetType.parse(params.url_type)

    with _database():
        url = store.find_url(code)
    if url is None:
        raise ApiError(404, "URL not found")
    if url.is_expired():
        raise ApiError(410, "This QR code has expired", {"error": "This QR code has expired"})

    if not force:
        with _database():
            existing = store.find_qr(code, target)
        if existing is not None:
            return existing.svg_content

    target_url = url.original_url if target is TargetType.ORIGINAL else short_url_for(code)
    svg = _render(target_url, DEFAULT_SIZE)

    with _database("Failed to update QR code"):
        store.update_qr_svg(code, target, svg, now_millis())
    return svg


def generate_direct_qr(store: Any, request: CreateQrRequest, user_id: str | None = None) -> str:
    """Return a QR SVG pointing straight at a URL, storing it as a direct code."""
    with _database():
        existing = store.find_direct_qr(request.url)
    if existing is not None and not request.force_regenerate:
        return existing.svg_content

    size = DEFAULT_SIZE if request.size is None else request.size
    svg = _render(request.url, size)

    if existing is not None:
        with _database("Failed to update QR code"):
            store.update_direct_qr(request.url, svg, now_millis())
    else:
        unique_id = f"{DIRECT_PREFIX}{str(uuid.uuid4()).split('-')[0]}"
        qr = QrCode.create(unique_id, request.url, svg, TargetType.ORIGINAL, user_id)
        with _database("Failed to save QR code"):
            store.insert_qr(qr)
    return svg


def _valid_target(value: str | None) -> str | None:
    return value if value in _TARGET_NAMES else None


def _response(qr: QrCode, current_user_id: str | None) -> QrCodeResponse:
    owned = (
        current_user_id is not None
        and qr.user_id is not None
        and current_user_id == qr.user_id
    )
    return QrCodeResponse(
        id="" if qr.id is None else str(qr.id),
        short_code=qr.short_code,
        original_url=qr.original_url,
        generated_at=qr.generated_at,
        target_type=qr.target_type.value,
        is_direct=qr.short_code.startswith(DIRECT_PREFIX),
        owned_by_current_user=owned,
        user_id=qr.user_id,
        svg_content=qr.svg_content,
    )


def list_qr_codes(
    store: Any, params: QrSearchParams, current_user_id: str | None = None
) -> list[QrCodeResponse]:
    """All QR codes matching the search parameters."""
    owner = current_user_id if params.owned_only else None
    with _database():
        codes = store.list_qr(
            params.search or None,
            _valid_target(params.target_type),
            bool(params.direct_only),
            owner,
        )
    return [_response(qr, current_user_id) for qr in codes]


def list_user_qr_codes(
    store: Any, user_id: str, params: QrSearchParams, current_user_id: str | None = None
) -> list[QrCodeResponse]:
    """QR codes owned by one user, matching the search parameters."""
    with _database():
        codes = store.list_qr(
            params.search or None,
            _valid_target(params.target_type),
            bool(params.direct_only),
            user_id,
        )
    return [_response(qr, current_user_id) for qr in codes]