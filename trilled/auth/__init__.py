# trilled/auth/__init__.py
from .auth import (
    AuthService,
    get_current_user,
    get_current_active_user,
    get_optional_user,
    require_roles,
    require_admin_user,
    require_staff_user,
    check_role_assignment,
    check_same_organization
)
from .cookies import CookieHandlers

__all__ = [
    "AuthService",
    "get_current_user",
    "get_current_active_user",
    "get_optional_user",
    "require_roles",
    "require_admin_user",
    "require_staff_user",
    "check_role_assignment",
    "check_same_organization",
    "CookieHandlers"
]
