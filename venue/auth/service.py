"""Authentication service — tenant-scoped login and user resolution."""

from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId

from venue.tenant import get_tenant_collection, get_global_collection
from venue.utils import (
    Logger,
    NotAuthenticatedError,
    NotFoundError,
    PermissionDeniedError,
    serialize_mongo_doc,
    utc_now,
)
from .helpers import verify_password, create_access_token

logger = Logger("venue.auth")


class AuthService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def authenticate(self, identifier: str, password: str, slug: str) -> dict:
        """
        1. Verify the org exists in the global `organizations` collection.
        2. Look up the user in the tenant-scoped `{slug}_users` collection.
        3. Verify password and return JWT + user data.
        """
        orgs = get_global_collection(self.db, "organizations")
        org = await orgs.find_one({"slug": slug})
        if not org or not org.get("is_active", False):
            raise NotFoundError("Organization not found or inactive")

        users = get_tenant_collection(self.db, slug, "users")
        user = await users.find_one(
            {
                "$or": [
                    {"email": identifier},
                    {"phone": identifier},
                    {"username": identifier},
                ]
            }
        )
        if not user or not verify_password(password, user.get("password", "")):
            logger.warning(f"Failed login for '{identifier}' on '{slug}'")
            raise NotAuthenticatedError("Invalid credentials")

        if not user.get("is_active", True):
            raise PermissionDeniedError("Account is deactivated")

        token = create_access_token(
            data={
                "sub": str(user["_id"]),
                "org_slug": slug,
                "role": user.get("role"),
                "email": user.get("email"),
            }
        )

        await users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login": utc_now()}},
        )

        user_data = serialize_mongo_doc(user)
        user_data.pop("password", None)
        user_data["organization"] = serialize_mongo_doc(org)

        return {
            "access_token": token,
            "token_type": "bearer",
            "user": user_data,
        }

    async def resolve_user(self, org_slug: str, user_id: str | None) -> dict:
        """
        Load the active user behind a request.

        Any failure here is fatal for the caller: raises 401 "Not authenticated".
        """
        if not user_id or not ObjectId.is_valid(user_id):
            raise NotAuthenticatedError()

        users = get_tenant_collection(self.db, org_slug, "users")
        user = await users.find_one({"_id": ObjectId(user_id)})
        if not user or not user.get("is_active", True):
            raise NotAuthenticatedError()
        return user
