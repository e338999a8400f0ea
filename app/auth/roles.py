"""Role access: each user has one active role mapped to a fixed permission set."""

from typing import Dict, FrozenSet, Iterable, Optional

from app.core.enums import UserRole

ADMIN = UserRole.ADMIN.value
TEACHER = UserRole.TEACHER.value
PARENT = UserRole.PARENT.value
ACCOUNTANT = UserRole.ACCOUNTANT.value

_CRUD = {"create": True, "read": True, "update": True, "delete": True}
_READ = {"read": True}

ROLE_PERMISSIONS: Dict[str, Dict[str, Dict[str, bool]]] = {
    ADMIN: {
        "users": dict(_CRUD),
        "students": dict(_CRUD),
        "classes": dict(_CRUD),
        "academic_years": dict(_CRUD),
        "fees": dict(_CRUD),
        "promotions": dict(_CRUD),
        "security": dict(_CRUD),
    },
    ACCOUNTANT: {
        "students": dict(_READ),
        "classes": dict(_READ),
        "academic_years": dict(_READ),
        "fees": {"create": True, "read": True, "update": True},
    },
    TEACHER: {
        "students": dict(_READ),
        "classes": dict(_READ),
        "academic_years": dict(_READ),
    },
    PARENT: {},
}


def role_permissions(role: Optional[str]) -> Dict[str, Dict[str, bool]]:
    """Permission map for a role; unknown roles get nothing."""
    return {module: dict(actions) for module, actions in ROLE_PERMISSIONS.get(role or "", {}).items()}


def has_role(role: Optional[str], expected: str) -> bool:
    return role == expected


def has_any_role(role: Optional[str], roles: Iterable[str]) -> bool:
    return role is not None and role in set(roles)


def is_admin(role: Optional[str]) -> bool:
    return has_role(role, ADMIN)


def can_manage_finances(role: Optional[str]) -> bool:
    return has_any_role(role, (ADMIN, ACCOUNTANT))


def can_view_students(role: Optional[str]) -> bool:
    return has_any_role(role, (ADMIN, TEACHER, ACCOUNTANT))


def can_modify_students(role: Optional[str]) -> bool:
    return has_role(role, ADMIN)


def capabilities(role: Optional[str]) -> FrozenSet[str]:
    """Named capabilities of a role, as exposed to clients."""
    checks = {
        "is_admin": is_admin,
        "can_manage_finances": can_manage_finances,
        "can_view_students": can_view_students,
        "can_modify_students": can_modify_students,
    }
    return frozenset(name for name, check in checks.items() if check(role))
