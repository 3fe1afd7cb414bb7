from __future__ import annotations

from typing import Any

from ...errors import InvalidState, NotFound, ValidationFailed
from ...observability.logging import get_logger
from ...repositories import users_repo
from ...repositories.common import now_iso
from ..identity.roles import KNOWN_ROLES

log = get_logger("user_service")


def get_user(user_id: str) -> dict[str, Any]:
    u = users_repo.get_user(user_id)
    if not u:
        raise NotFound("User not found", code="user_not_found")
    return u


def _matches(user: dict[str, Any], needle: str) -> bool:
    fields = (user.get("fullName"), user.get("email"), user.get("phone"))
    return any(needle in str(v).lower() for v in fields if v)


def list_users(
    *, role: str | None = None, status: str | None = None, search: str | None = None
) -> list[dict[str, Any]]:
    needle = str(search or "").strip().lower()
    out: list[dict[str, Any]] = []
    for u in users_repo.list_users():
        if role and role != "all" and role not in (u.get("roles") or []):
            continue
        if status and status != "all" and u.get("status") != status:
            continue
        if needle and not _matches(u, needle):
            continue
        out.append(u)
    return out


def user_counts() -> dict[str, Any]:
    by_status = {s: 0 for s in users_repo.USER_STATUSES}
    by_role = {r: 0 for r in KNOWN_ROLES}
    total = 0
    for u in users_repo.list_users():
        total += 1
        st = str(u.get("status") or "ACTIVE")
        by_status[st] = by_status.get(st, 0) + 1
        for r in u.get("roles") or []:
            by_role[r] = by_role.get(r, 0) + 1
    return {"total": total, "byStatus": by_status, "byRole": by_role}


def suspend_user(user_id: str, *, reason: str, admin_id: str) -> dict[str, Any]:
    if not str(reason or "").strip():
        raise ValidationFailed("A suspension reason is required")
    user = get_user(user_id)
    if user_id == admin_id:
        raise InvalidState("You cannot suspend your own account", code="self_suspend")
    if user.get("status") == "SUSPENDED":
        return user
    updated = users_repo.update_user(
        user_id, {"status": "SUSPENDED", "suspendedReason": reason.strip(), "suspendedAt": now_iso()}
    )
    log.info("user_suspended", user_id=user_id, admin_id=admin_id)
    return updated or get_user(user_id)


def reactivate_user(user_id: str, *, admin_id: str) -> dict[str, Any]:
    get_user(user_id)
    updated = users_repo.update_user(user_id, {"status": "ACTIVE", "suspendedReason": None, "suspendedAt": None})
    log.info("user_reactivated", user_id=user_id, admin_id=admin_id)
    return updated or get_user(user_id)
