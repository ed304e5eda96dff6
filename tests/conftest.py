"""
Shared fixtures.

Every test gets a fresh in-memory motor database (mongomock-motor) and an
empty snapshot cache.
"""

from datetime import datetime, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from venue.cache import snapshot_cache
from venue.tenant import get_tenant_collection

SLUG = "riverside"

# Wednesday 11 March 2026, midday in London.
NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client["venue_ops_test"]


@pytest.fixture(autouse=True)
def clear_snapshot_cache():
    snapshot_cache.clear()
    yield
    snapshot_cache.clear()


@pytest.fixture
def tenant(db):
    def _col(name: str):
        return get_tenant_collection(db, SLUG, name)

    return _col


@pytest.fixture
def make_user(tenant):
    async def _make(role=None, permissions=None, **extra) -> dict:
        doc = {
            "email": extra.pop("email", "pat@riverside.example"),
            "role": role,
            "permissions": permissions or [],
            "is_active": True,
            **extra,
        }
        result = await tenant("users").insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    return _make
