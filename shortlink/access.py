"""Authorisation checks for per-user resources."""

from __future__ import annotations

from collections.abc import Mapping

from shortlink.models import ApiError


def check_resource_owner(
    current_user_id: str | None, path_params: Mapping[str, str], param_name: str
) -> bool:
    """Ensure the authenticated user owns the resource named in the path.

    Returns True when ownership was checked and holds, False when the path has
    no such parameter. Raises a 403 ApiError otherwise.
    """
    if current_user_id is None:
        raise ApiError(403, "User not authenticated")
    owner_id = path_params.get(param_name)
    if owner_id is None:
        return False
    if current_user_id != owner_id:
        raise ApiError(403, "Access denied: You can only access your own resources")
    return True