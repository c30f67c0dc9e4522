"""
Role model: the closed set of roles and the permissions each one carries.

Everything here is a pure table lookup. Unknown role strings or permissions
are treated as "no permission" rather than raising, so a mistyped value
fails closed.
"""

import logging
from enum import Enum
from typing import Iterable, FrozenSet, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Base roles a user can hold."""
    ADMIN = "ADMIN"
    ACADEMIC_HEAD = "ACADEMIC_HEAD"
    FACULTY = "FACULTY"


class Permission(str, Enum):
    """Capability tokens checked by the HTTP layer."""
    MANAGE_USERS = "MANAGE_USERS"
    MANAGE_ADMINS = "MANAGE_ADMINS"
    MANAGE_FACULTY = "MANAGE_FACULTY"
    VIEW_USERS = "VIEW_USERS"
    MANAGE_COURSES = "MANAGE_COURSES"
    VIEW_COURSES = "VIEW_COURSES"
    VIEW_ALL_LOGS = "VIEW_ALL_LOGS"
    VIEW_LIMITED_LOGS = "VIEW_LIMITED_LOGS"
    USE_BREAK_GLASS = "USE_BREAK_GLASS"
    ACTIVATE_BREAK_GLASS = "ACTIVATE_BREAK_GLASS"
    CAN_ACCESS_FACULTY_LOAD = "CAN_ACCESS_FACULTY_LOAD"
    CAN_ACCESS_AUDIT_LOGS = "CAN_ACCESS_AUDIT_LOGS"


class InvalidRoleSet(ValueError):
    """Raised when a role assignment breaks the role-set rules."""
    pass


ROLE_PERMISSIONS = {
    Role.ADMIN: frozenset(Permission),
    Role.ACADEMIC_HEAD: frozenset({
        Permission.MANAGE_FACULTY,
        Permission.VIEW_USERS,
        Permission.MANAGE_COURSES,
        Permission.VIEW_COURSES,
        Permission.VIEW_LIMITED_LOGS,
        Permission.ACTIVATE_BREAK_GLASS,
        Permission.CAN_ACCESS_FACULTY_LOAD,
        Permission.CAN_ACCESS_AUDIT_LOGS,
    }),
    Role.FACULTY: frozenset({
        Permission.VIEW_COURSES,
        Permission.MANAGE_COURSES,  # Own courses only
    }),
}

# Roles that may never be held together
EXCLUSIVE_ROLES = frozenset({Role.ADMIN, Role.ACADEMIC_HEAD})

# Log modules an Academic Head is allowed to read
ACADEMIC_HEAD_LOG_MODULES = (
    "Course",
    "Courses",
    "Course Management",
    "Class Management",
    "Faculty",
    "Attendance",
    "Enrollment",
)


def parse_role(value) -> Optional[Role]:
    """Convert a stored role value to a Role, or None if it is not one."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).upper())
    except ValueError:
        logger.warning("Ignoring unknown role value", extra={"role": str(value)})
        return None


def parse_roles(values: Optional[Iterable]) -> FrozenSet[Role]:
    """Parse an iterable of stored role values, dropping unknown ones."""
    if not values:
        return frozenset()
    if isinstance(values, (str, Role)):
        values = [values]
    return frozenset(role for role in (parse_role(v) for v in values) if role is not None)


def permissions_of(roles: Iterable) -> FrozenSet[Permission]:
    """Union of permissions across all roles held."""
    granted = set()
    for role in parse_roles(roles):
        granted |= ROLE_PERMISSIONS.get(role, frozenset())
    return frozenset(granted)


def effective_roles(base_roles: Iterable, elevated: bool = False) -> FrozenSet[Role]:
    """
    Roles used for authorization decisions.

    Equal to the base roles, plus ADMIN while a break-glass session is active.
    """
    roles = set(parse_roles(base_roles))
    if elevated:
        roles.add(Role.ADMIN)
    return frozenset(roles)


def has_permission(user, permission, elevated: bool = False) -> bool:
    """
    Check whether a user holds a permission.

    Args:
        user: Any object with a ``roles`` attribute (or None)
        permission: Permission (or its string value)
        elevated: True if the user currently has an active break-glass session

    Returns:
        True if any effective role grants the permission
    """
    if user is None:
        return False

    try:
        wanted = Permission(permission)
    except ValueError:
        return False

    roles = effective_roles(getattr(user, "roles", None), elevated)
    return wanted in permissions_of(roles)


def has_role(user, role: Role) -> bool:
    """Check a user's base roles for a role."""
    if user is None:
        return False
    return role in parse_roles(getattr(user, "roles", None))


def can_manage_user(actor_roles: Iterable, target_roles: Iterable) -> bool:
    """ADMIN can manage anyone; ACADEMIC_HEAD can manage FACULTY."""
    actor = parse_roles(actor_roles)
    target = parse_roles(target_roles)

    if Role.ADMIN in actor:
        return True
    if Role.ACADEMIC_HEAD in actor and Role.FACULTY in target:
        return True
    return False


def can_view_log_module(roles: Iterable, module: Optional[str]) -> bool:
    """ADMIN reads every module, ACADEMIC_HEAD only academic modules, FACULTY none."""
    held = parse_roles(roles)

    if Role.ADMIN in held:
        return True

    if Role.ACADEMIC_HEAD in held and module:
        module_lower = module.lower()
        return any(allowed.lower() in module_lower for allowed in ACADEMIC_HEAD_LOG_MODULES)

    return False


def validate_role_set(roles: Iterable) -> FrozenSet[Role]:
    """
    Validate a base role assignment.

    Raises:
        InvalidRoleSet: empty set, unknown role, or ADMIN together with ACADEMIC_HEAD
    """
    raw = list(roles or [])
    if not raw:
        raise InvalidRoleSet("At least one role is required")

    parsed = parse_roles(raw)
    if len(parsed) != len({str(getattr(r, "value", r)).upper() for r in raw}):
        raise InvalidRoleSet(f"Unknown role in {sorted(str(getattr(r, 'value', r)) for r in raw)}")

    if EXCLUSIVE_ROLES <= parsed:
        raise InvalidRoleSet("A user cannot be both ADMIN and ACADEMIC_HEAD")

    return parsed


def sorted_role_values(roles: Iterable) -> list:
    """Stable list of role strings for storage and audit snapshots."""
    return sorted(role.value for role in parse_roles(roles))
