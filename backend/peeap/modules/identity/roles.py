from __future__ import annotations

from typing import Any, Iterable


ROLE_USER = "user"
ROLE_MERCHANT = "merchant"
ROLE_DEVELOPER = "developer"
ROLE_SCHOOL_ADMIN = "school_admin"
ROLE_AGENT = "agent"
ROLE_ADMIN = "admin"

KNOWN_ROLES = (ROLE_USER, ROLE_MERCHANT, ROLE_DEVELOPER, ROLE_SCHOOL_ADMIN, ROLE_AGENT, ROLE_ADMIN)

_ALIASES = {
    "admin": ROLE_ADMIN,
    "superadmin": ROLE_ADMIN,
    "merchant": ROLE_MERCHANT,
    "business": ROLE_MERCHANT,
    "developer": ROLE_DEVELOPER,
    "dev": ROLE_DEVELOPER,
    "schooladmin": ROLE_SCHOOL_ADMIN,
    "school": ROLE_SCHOOL_ADMIN,
    "agent": ROLE_AGENT,
    "user": ROLE_USER,
    "customer": ROLE_USER,
    "member": ROLE_USER,
}


def normalize_roles(value: Any) -> list[str]:
    """
    Normalize roles to a canonical list of lowercase role names.

    Accepts a list, tuple, or comma-separated string (Cognito groups or a
    `custom:role` attribute). Every user is at least `user`.
    """
    roles_in: Iterable[Any]
    if isinstance(value, (list, tuple, set)):
        roles_in = value
    elif isinstance(value, str) and value.strip():
        roles_in = value.split(",")
    else:
        roles_in = []

    out: list[str] = []
    for r in roles_in:
        s = str(r or "").strip()
        if not s:
            continue
        low = s.lower().replace("_", "").replace("-", "").replace(" ", "")
        canon = _ALIASES.get(low)
        if canon and canon not in out:
            out.append(canon)

    if ROLE_USER not in out:
        out.append(ROLE_USER)
    return out


def has_role(roles: Any, want: str) -> bool:
    want2 = str(want or "").strip().lower()
    if not want2:
        return False
    return want2 in normalize_roles(roles)


def has_any_role(roles: Any, wanted: Iterable[str]) -> bool:
    rr = normalize_roles(roles)
    return any(str(w).lower() in rr for w in wanted)


def is_admin(roles: Any) -> bool:
    return ROLE_ADMIN in normalize_roles(roles)
