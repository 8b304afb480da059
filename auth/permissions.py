"""Role to permission mapping.

A fixed table - roles never expand by string matching at runtime.
"""

from typing import Iterable

from auth.types import Role

ROLE_PERMISSIONS: dict[Role, tuple[str, ...]] = {
    Role.ADMIN: (
        "users:read", "users:write", "users:delete",
        "questions:read", "questions:write", "questions:delete", "questions:review",
        "games:read", "games:write", "games:moderate",
        "analytics:read", "analytics:write",
        "system:read", "system:write",
    ),
    Role.TEACHER: (
        "users:read",
        "questions:read", "questions:write", "questions:review",
        "games:read", "games:moderate",
        "analytics:read",
    ),
    Role.STUDENT: (
        "questions:read",
        "games:read", "games:join",
        "learning:read", "learning:write",
    ),
}


def permissions_for_roles(roles: Iterable[Role | str]) -> list[str]:
    """Union of permissions for the given roles, first-seen order, no duplicates.

    Unknown role strings contribute nothing.
    """
    seen: dict[str, None] = {}
    for role in roles:
        try:
            role = Role(role)
        except ValueError:
            continue
        for permission in ROLE_PERMISSIONS[role]:
            seen.setdefault(permission, None)
    return list(seen)
