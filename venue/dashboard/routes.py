from fastapi import APIRouter, Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from venue.cache import DASHBOARD_TAG, revalidate_tag
from venue.config import get_database
from venue.rbac.decorators import require_permission
from venue.utils import Logger, success_response
from .service import load_dashboard_snapshot

logger = Logger("venue.dashboard")

dashboard_router = APIRouter()


@dashboard_router.get("")
async def get_dashboard(
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Permission-gated snapshot of every module the caller can see."""
    snapshot = await load_dashboard_snapshot(
        db,
        org_slug=request.state.org_slug,
        user_id=getattr(request.state, "user_id", None),
    )
    return success_response(data=snapshot.model_dump(mode="json"))


@dashboard_router.post("/revalidate")
@require_permission("settings:manage")
async def revalidate_dashboard(
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Drop every cached dashboard snapshot."""
    purged = revalidate_tag(DASHBOARD_TAG)
    logger.info(f"Dashboard revalidated by {request.state.user_id}: {purged} snapshots purged")
    return success_response(data={"purged": purged}, message="Dashboard revalidated")
