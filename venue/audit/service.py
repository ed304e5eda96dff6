"""
Audit Service — append-only trail of business mutations.

Collection: {slug}_audit_logs (tenant-scoped)

Usage from other services:
    audit = AuditService(db, org_slug)
    await audit.log(
        operation_type="retro_run",
        resource_type="receipt_rule",
        resource_id=rule_id,
        user_id=user_id,
        additional_info={"scope": "pending", "matched": 12},
    )
"""

from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from venue.tenant import get_tenant_collection
from venue.utils import Logger, serialize_mongo_doc, utc_now

logger = Logger("venue.audit")


class AuditService:
    def __init__(self, db: AsyncIOMotorDatabase, org_slug: str):
        self.db = db
        self.org_slug = org_slug
        self.logs = get_tenant_collection(db, org_slug, "audit_logs")

    async def log(
        self,
        operation_type: str,
        resource_type: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        operation_status: str = "success",
        additional_info: dict[str, Any] | None = None,
    ) -> dict | None:
        """
        Record an audit entry. Never raises: a failed audit write is logged
        and the calling mutation still succeeds.
        """
        entry = {
            "operation_type": operation_type,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "operation_status": operation_status,
            "user_id": user_id,
            "user_email": user_email,
            "additional_info": additional_info or {},
            "timestamp": utc_now(),
        }
        try:
            result = await self.logs.insert_one(entry)
        except Exception as e:
            logger.error(
                f"Failed to write audit entry {operation_type}/{resource_type}: {e}"
            )
            return None
        entry["_id"] = result.inserted_id
        return serialize_mongo_doc(entry)
