"""
Built-in role definitions and permission matrix.

Permission format:  "{module}:{action}"
  - Modules : events, customers, messages, private_bookings, parking,
              invoices, quotes, employees, receipts, roles, short_links,
              users, loyalty, cashing_up, settings
  - Actions : view, manage, edit, create, delete, export, send, convert,
              submit, view_*  and  *  (wildcard)
  - Wildcard: "*:*"  means ALL modules, ALL actions

A tenant may store its own roles in `{slug}_roles`; those take precedence
over the matrix below for roles with the same name.
"""

ROLES: dict[str, list[str]] = {
    "super_admin": [
        "*:*",
    ],
    "manager": [
        "events:manage",
        "customers:manage",
        "messages:view",
        "messages:send",
        "private_bookings:manage",
        "parking:manage",
        "invoices:manage",
        "quotes:manage",
        "employees:view",
        "receipts:manage",
        "short_links:manage",
        "loyalty:manage",
        "cashing_up:manage",
        "users:view",
        "roles:view",
        "settings:view",
    ],
    "staff": [
        "events:view",
        "customers:view",
        "messages:view",
        "private_bookings:view",
        "parking:view",
        "loyalty:view",
        "cashing_up:submit",
    ],
}


def get_role_permissions(role: str) -> list[str]:
    """Return the built-in permission list for a role name."""
    return ROLES.get(role, [])
