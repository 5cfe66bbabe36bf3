"""
Role checks for attendance operations.
"""
from ..models.models import User


ADMIN = "admin"
MANAGER = "manager"
SITE_SUPERVISOR = "site_supervisor"
EMPLOYEE = "employee"

# Most privileged first; used to pick a user's primary role
ROLE_ORDER = (ADMIN, MANAGER, SITE_SUPERVISOR, EMPLOYEE)

ATTENDANCE_WRITE_ROLES = (ADMIN, MANAGER, SITE_SUPERVISOR)
ATTENDANCE_APPROVE_ROLES = (ADMIN, MANAGER)
ATTENDANCE_DELETE_ROLES = (ADMIN,)


def role_names(user: User) -> set:
    return {r.name for r in (user.roles or [])}


def get_user_role(user: User) -> str:
    """Get user's primary role."""
    names = role_names(user)
    for role in ROLE_ORDER:
        if role in names:
            return role
    return "user"
