from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from motor.motor_asyncio import AsyncIOMotorDatabase

from venue.config import get_database
from venue.rbac.decorators import require_permission
from venue.utils import ValidationError, success_response
from .classification import ReceiptClassifier
from .schemas import (
    ClassificationUpdateRequest,
    CreateRuleRequest,
    GroupApplyRequest,
    GroupRuleRequest,
    MarkTransactionRequest,
    ReceiptStatusEnum,
    RetroFinalizeRequest,
    RetroRunRequest,
    RetroStepRequest,
    RuleDirectionEnum,
    ToggleRuleRequest,
    UpdateRuleRequest,
)
from .service import UNSET, ReceiptService

receipts_router = APIRouter()


def get_receipt_classifier() -> ReceiptClassifier:
    return ReceiptClassifier()


def _service(request: Request, db, classifier: ReceiptClassifier | None = None) -> ReceiptService:
    return ReceiptService(
        db,
        request.state.org_slug,
        user=getattr(request.state, "user", None),
        classifier=classifier,
    )


def _provided(body, field: str):
    return getattr(body, field) if field in body.model_fields_set else UNSET


# ── Summary / import ─────────────────────────────────────────────


@receipts_router.get("/summary")
@require_permission("receipts:view")
async def get_summary(
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Status totals, last import and AI spend."""
    return success_response(data=await _service(request, db).get_summary())


@receipts_router.post("/import")
@require_permission("receipts:manage")
async def import_statement(
    request: Request,
    statement: UploadFile = File(...),
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Upload a CSV bank statement."""
    filename = statement.filename or "statement.csv"
    if not (statement.content_type == "text/csv" or filename.lower().endswith(".csv")):
        raise ValidationError("Only CSV bank statements are supported")

    content = await statement.read()
    if not content:
        raise ValidationError("File is empty")

    result = await _service(request, db).import_statement(filename, content)
    return success_response(data=result, message="Statement imported", code=201)


# ── Rules ────────────────────────────────────────────────────────


@receipts_router.get("/rules")
@require_permission("receipts:manage")
async def list_rules(
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    return success_response(data=await _service(request, db).list_rules())


@receipts_router.post("/rules")
@require_permission("receipts:manage")
async def create_rule(
    request: Request,
    body: CreateRuleRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    result = await _service(request, db).create_rule(body.model_dump(mode="json"))
    return success_response(data=result, message="Rule created", code=201)


@receipts_router.put("/rules/{rule_id}")
@require_permission("receipts:manage")
async def update_rule(
    request: Request,
    rule_id: str,
    body: UpdateRuleRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    result = await _service(request, db).update_rule(rule_id, body.model_dump(mode="json"))
    return success_response(data=result, message="Rule updated")


@receipts_router.patch("/rules/{rule_id}/toggle")
@require_permission("receipts:manage")
async def toggle_rule(
    request: Request,
    rule_id: str,
    body: ToggleRuleRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Enable or disable a rule. Enabling re-runs automation on pending rows."""
    result = await _service(request, db).toggle_rule(rule_id, body.is_active)
    return success_response(data=result, message="Rule status updated")


@receipts_router.delete("/rules/{rule_id}")
@require_permission("receipts:manage")
async def delete_rule(
    request: Request,
    rule_id: str,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    await _service(request, db).delete_rule(rule_id)
    return success_response(message="Rule deleted")


# ── Retroactive runs ─────────────────────────────────────────────


@receipts_router.post("/rules/{rule_id}/retro/step")
@require_permission("receipts:manage")
async def run_retro_step(
    request: Request,
    rule_id: str,
    body: RetroStepRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Apply a rule to one page of existing transactions."""
    result = await _service(request, db).run_retro_step(
        rule_id, scope=body.scope.value, offset=body.offset, chunk_size=body.chunk_size,
    )
    return success_response(data=result)


@receipts_router.post("/rules/{rule_id}/retro/finalize")
@require_permission("receipts:manage")
async def finalize_retro_run(
    request: Request,
    rule_id: str,
    body: RetroFinalizeRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    totals = body.model_dump(exclude={"scope"})
    await _service(request, db).finalize_retro_run(rule_id, body.scope.value, totals)
    return success_response(message="Retro run recorded")


@receipts_router.post("/rules/{rule_id}/retro")
@require_permission("receipts:manage")
async def run_retro(
    request: Request,
    rule_id: str,
    body: RetroRunRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Run a rule over existing transactions within the server time budget."""
    result = await _service(request, db).run_retro(rule_id, scope=body.scope.value, offset=body.offset)
    return success_response(data=result)


# ── Bulk review ──────────────────────────────────────────────────


@receipts_router.get("/groups")
@require_permission("receipts:manage")
async def list_groups(
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    statuses: Optional[List[ReceiptStatusEnum]] = Query(None),
    only_unclassified: bool = Query(True),
    db: AsyncIOMotorDatabase = Depends(get_database),
    classifier: ReceiptClassifier = Depends(get_receipt_classifier),
):
    """Transactions grouped by identical details, with a vendor/expense suggestion."""
    result = await _service(request, db, classifier).get_bulk_review_groups(
        limit=limit,
        statuses=[s.value for s in statuses] if statuses else None,
        only_unclassified=only_unclassified,
    )
    return success_response(data=result)


@receipts_router.post("/groups/apply")
@require_permission("receipts:manage")
async def apply_group(
    request: Request,
    body: GroupApplyRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    result = await _service(request, db).apply_group_classification(
        body.details,
        vendor_name=_provided(body, "vendor_name"),
        expense_category=_provided(body, "expense_category"),
        statuses=[s.value for s in body.statuses] if body.statuses else None,
    )
    return success_response(data=result, message="Classification applied")


@receipts_router.post("/groups/rule")
@require_permission("receipts:manage")
async def create_group_rule(
    request: Request,
    body: GroupRuleRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    result = await _service(request, db).create_rule_from_group(body.model_dump(mode="json"))
    return success_response(data=result, message="Rule created", code=201)


# ── Single transaction ───────────────────────────────────────────


@receipts_router.get("/transactions")
@require_permission("receipts:view")
async def list_transactions(
    request: Request,
    status: Optional[ReceiptStatusEnum] = Query(None),
    month: Optional[str] = Query(None, description="YYYY-MM"),
    search: Optional[str] = Query(None, max_length=200),
    direction: Optional[RuleDirectionEnum] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=5000),
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Paginated transactions; a month filter returns the whole month on one page."""
    result = await _service(request, db).list_transactions(
        status=status.value if status else None,
        month=month,
        search=search,
        direction=direction.value if direction else None,
        page=page,
        page_size=page_size,
    )
    return success_response(data=result)


@receipts_router.patch("/transactions/{transaction_id}/status")
@require_permission("receipts:manage")
async def mark_transaction(
    request: Request,
    transaction_id: str,
    body: MarkTransactionRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    result = await _service(request, db).mark_transaction(
        transaction_id,
        body.status.value,
        note=body.note,
        receipt_required=body.receipt_required,
    )
    return success_response(data=result, message="Transaction updated")


@receipts_router.patch("/transactions/{transaction_id}/classification")
@require_permission("receipts:manage")
async def update_classification(
    request: Request,
    transaction_id: str,
    body: ClassificationUpdateRequest,
    db: AsyncIOMotorDatabase = Depends(get_database),
):
    """Manually set vendor / expense on one transaction; returns a rule suggestion."""
    result = await _service(request, db).update_transaction_classification(
        transaction_id,
        vendor_name=_provided(body, "vendor_name"),
        expense_category=_provided(body, "expense_category"),
    )
    return success_response(data=result, message="Classification updated")
