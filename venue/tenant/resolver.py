"""
Tenant collection resolver.

Convention:
  - Tenant-scoped collections:  {org_slug}_{collection_name}
    e.g.  anchor_events, anchor_receipt_transactions
  - Global collections:         {collection_name}
    e.g.  organizations  (shared across all venues)
"""

import re
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorCollection


_SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]*$")


def _validate_slug(org_slug: str) -> str:
    """Ensure the slug is safe for use as a collection name prefix."""
    slug = (org_slug or "").strip().lower()
    if not _SLUG_PATTERN.match(slug):
        raise ValueError(
            f"Invalid org_slug '{org_slug}'. "
            "Must be lowercase alphanumeric with optional hyphens."
        )
    return slug.replace("-", "_")


def get_tenant_collection(
    db: AsyncIOMotorDatabase,
    org_slug: str,
    collection_name: str,
) -> AsyncIOMotorCollection:
    """
    Return a tenant-scoped collection.

    Example:
        get_tenant_collection(db, "anchor", "events")  →  db["anchor_events"]
    """
    return db[f"{_validate_slug(org_slug)}_{collection_name}"]


def get_global_collection(
    db: AsyncIOMotorDatabase,
    collection_name: str,
) -> AsyncIOMotorCollection:
    return db[collection_name]
