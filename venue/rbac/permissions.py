"""
Permission resolution.

A user's permissions are rebuilt from the store on every check:
role documents in `{slug}_roles` (falling back to the built-in matrix)
plus any per-user overrides on the user document. The result is a
mapping of module name to the set of granted actions.
"""

from typing import Iterable

from motor.motor_asyncio import AsyncIOMotorDatabase

from venue.tenant import get_tenant_collection
from venue.utils import Logger, parse_object_id
from .roles import get_role_permissions

logger = Logger("venue.rbac")

WILDCARD = "*"

# Any of these on a module means the user can see that module.
VIEW_ACTIONS: frozenset[str] = frozenset(
    {"view", "manage", "edit", "create", "delete", "export", "send", "convert"}
)


def _split(permission: str) -> tuple[str, str] | None:
    module, sep, action = permission.partition(":")
    module, action = module.strip(), action.strip()
    if not sep or not module or not action:
        return None
    return module, action


def build_permission_map(records: Iterable[str | dict]) -> dict[str, set[str]]:
    """
    Fold permission records into {module: {actions}}.

    Accepts either "module:action" strings or
    {"module_name": ..., "action": ...} records.
    """
    permission_map: dict[str, set[str]] = {}
    for record in records:
        if isinstance(record, dict):
            module = record.get("module_name")
            action = record.get("action")
            if not module or not action:
                continue
        else:
            parts = _split(str(record))
            if parts is None:
                logger.warning(f"Ignoring malformed permission '{record}'")
                continue
            module, action = parts
        permission_map.setdefault(module, set()).add(action)
    return permission_map


def _actions_for(permission_map: dict[str, set[str]], module: str) -> set[str]:
    return permission_map.get(module, set()) | permission_map.get(WILDCARD, set())


def has_module_access(permission_map: dict[str, set[str]], module: str) -> bool:
    """True when any recognised action is granted on `module`."""
    for action in _actions_for(permission_map, module):
        if (
            action == WILDCARD
            or action in VIEW_ACTIONS
            or action.startswith("view_")
            or action.startswith("manage")
        ):
            return True
    return False


def check_permission(permission_map: dict[str, set[str]], required: str) -> bool:
    """
    Check a single "module:action" requirement.

    Supports wildcards:
      - "*:*"          → full access
      - "receipts:*"   → all actions on receipts
      - "receipts:manage" → exact match
      - "receipts:view"   → any action that grants module access
    """
    parts = _split(required or "")
    if parts is None:
        return False
    module, action = parts
    if action == "view":
        return has_module_access(permission_map, module)
    actions = _actions_for(permission_map, module)
    return WILDCARD in actions or action in actions


class PermissionService:
    def __init__(self, db: AsyncIOMotorDatabase, org_slug: str):
        self.db = db
        self.org_slug = org_slug
        self.users = get_tenant_collection(db, org_slug, "users")
        self.roles = get_tenant_collection(db, org_slug, "roles")

    async def get_user_permissions(
        self, user_id: str, user: dict | None = None
    ) -> list[dict]:
        """
        Return the user's permissions as {module_name, action} records.

        Pass `user` when the document is already loaded to skip a lookup.
        """
        if user is None:
            user = await self.users.find_one({"_id": parse_object_id(user_id, "user ID")})
        if not user:
            return []

        role_names = list(user.get("roles") or [])
        if user.get("role") and user["role"] not in role_names:
            role_names.append(user["role"])

        grants: set[str] = set()
        stored: dict[str, dict] = {}
        if role_names:
            async for role in self.roles.find({"name": {"$in": role_names}}):
                stored[role["name"]] = role

        for name in role_names:
            if name in stored:
                grants.update(stored[name].get("permissions") or [])
            else:
                grants.update(get_role_permissions(name))

        grants.update(user.get("permissions") or [])

        records = []
        for grant in sorted(grants):
            parts = _split(grant)
            if parts:
                records.append({"module_name": parts[0], "action": parts[1]})
        return records

    async def get_permission_map(
        self, user_id: str, user: dict | None = None
    ) -> dict[str, set[str]]:
        return build_permission_map(await self.get_user_permissions(user_id, user))

    async def has_permission(self, user_id: str, required: str) -> bool:
        return check_permission(await self.get_permission_map(user_id), required)
