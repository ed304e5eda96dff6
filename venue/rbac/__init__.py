from .roles import ROLES, get_role_permissions
from .permissions import (
    VIEW_ACTIONS,
    PermissionService,
    build_permission_map,
    check_permission,
    has_module_access,
)

__all__ = [
    "ROLES",
    "get_role_permissions",
    "VIEW_ACTIONS",
    "PermissionService",
    "build_permission_map",
    "check_permission",
    "has_module_access",
]
