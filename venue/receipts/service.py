"""
Receipt Service — bank-statement transactions, auto-tagging rules and
bulk classification.

Collections (tenant-scoped):
    receipt_transactions      one row per statement line
    receipt_rules             keyword / direction / amount rules
    receipt_transaction_logs  per-transaction action trail
    receipt_batches           one row per CSV import
    ai_usage_events           OpenAI spend (written by classification)

Every write that changes what the dashboard shows ends with
`revalidate_tag("dashboard")`.
"""

import hashlib
import re
import time
from collections import Counter
from typing import Any, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import BulkWriteError

from venue.audit import AuditService
from venue.cache import DASHBOARD_TAG, revalidate_tag
from venue.config import settings
from venue.tenant import get_tenant_collection
from venue.utils import (
    Logger,
    NotFoundError,
    ValidationError,
    parse_object_id,
    serialize_mongo_doc,
    utc_now,
)
from .classification import ReceiptClassifier, record_ai_usage
from .rules import (
    build_rule_suggestion,
    chunked,
    coerce_expense_category,
    derive_direction,
    details_hash,
    get_transaction_direction,
    is_incoming_only,
    normalize_vendor,
    parse_statement_csv,
    round_currency,
    select_best_rule,
    unique,
)
from .schemas import ReceiptStatusEnum

logger = Logger("venue.receipts")

UNSET: Any = object()

ALL_STATUSES = [s.value for s in ReceiptStatusEnum]
AUTOMATION_FETCH_CHUNK = 100
SAMPLE_LIMIT = 50
DEFAULT_GROUP_LIMIT = 10
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
MAX_MONTH_PAGE_SIZE = 5000
DUPLICATE_KEY = 11000

_SEARCH_STRIP = re.compile(r"[,%_()\"'\\]")
_MONTH = re.compile(r"^(\d{4})-(\d{2})$")


def _empty_automation_result() -> dict:
    return {
        "status_auto_updated": 0,
        "classification_updated": 0,
        "matched": 0,
        "vendor_intended": 0,
        "expense_intended": 0,
        "samples": [],
    }


def _sample(tx: dict) -> dict:
    return {
        "id": str(tx["_id"]),
        "status": tx.get("status"),
        "direction": get_transaction_direction(tx),
        "details": tx.get("details"),
        "transaction_type": tx.get("transaction_type"),
        "amount_in": tx.get("amount_in"),
        "amount_out": tx.get("amount_out"),
        "vendor_name": tx.get("vendor_name"),
        "vendor_source": tx.get("vendor_source"),
        "expense_category": tx.get("expense_category"),
        "expense_source": tx.get("expense_category_source"),
    }


class ReceiptService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        org_slug: str,
        user: dict | None = None,
        classifier: ReceiptClassifier | None = None,
    ):
        self.db = db
        self.org_slug = org_slug
        self.user = user or {}
        self.classifier = classifier or ReceiptClassifier()
        self.transactions = get_tenant_collection(db, org_slug, "receipt_transactions")
        self.rules = get_tenant_collection(db, org_slug, "receipt_rules")
        self.logs = get_tenant_collection(db, org_slug, "receipt_transaction_logs")
        self.batches = get_tenant_collection(db, org_slug, "receipt_batches")
        self.ai_usage = get_tenant_collection(db, org_slug, "ai_usage_events")
        self.audit = AuditService(db, org_slug)

    @property
    def user_id(self) -> str | None:
        return self.user.get("sub")

    async def _audit(self, operation_type: str, resource_type: str, resource_id, info=None):
        await self.audit.log(
            operation_type=operation_type,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            user_id=self.user_id,
            user_email=self.user.get("email"),
            additional_info=info,
        )

    # ══════════════════════════════════════════════════════════════
    # RULES
    # ══════════════════════════════════════════════════════════════

    async def _get_rule_doc(self, rule_id: str) -> dict:
        rule = await self.rules.find_one({"_id": parse_object_id(rule_id, "rule ID")})
        if not rule:
            raise NotFoundError("Rule not found")
        return rule

    async def list_rules(self) -> list[dict]:
        cursor = self.rules.find({}).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        return [serialize_mongo_doc(r) async for r in cursor]

    async def create_rule(self, data: dict) -> dict:
        now = utc_now()
        doc = {
            **data,
            "created_by": self.user_id,
            "updated_by": self.user_id,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.rules.insert_one(doc)
        doc["_id"] = result.inserted_id

        await self._audit("create", "receipt_rule", result.inserted_id, data)
        revalidate_tag(DASHBOARD_TAG)
        logger.info(f"Created receipt rule '{doc['name']}' on {self.org_slug}")
        return {"rule": serialize_mongo_doc(doc), "can_prompt_retro": True}

    async def update_rule(self, rule_id: str, data: dict) -> dict:
        oid = parse_object_id(rule_id, "rule ID")
        result = await self.rules.update_one(
            {"_id": oid},
            {"$set": {**data, "updated_by": self.user_id, "updated_at": utc_now()}},
        )
        if result.matched_count == 0:
            raise NotFoundError("Rule not found")

        await self._audit("update", "receipt_rule", rule_id, data)
        revalidate_tag(DASHBOARD_TAG)
        rule = await self.rules.find_one({"_id": oid})
        return {"rule": serialize_mongo_doc(rule), "can_prompt_retro": True}

    async def toggle_rule(self, rule_id: str, is_active: bool) -> dict:
        """Flip `is_active`. Activating a rule re-runs automation over pending rows."""
        oid = parse_object_id(rule_id, "rule ID")
        result = await self.rules.update_one(
            {"_id": oid},
            {"$set": {"is_active": is_active, "updated_by": self.user_id, "updated_at": utc_now()}},
        )
        if result.matched_count == 0:
            raise NotFoundError("Rule not found")

        await self._audit("toggle", "receipt_rule", rule_id, {"is_active": is_active})

        if is_active:
            await self.refresh_pending_automation()

        revalidate_tag(DASHBOARD_TAG)
        rule = await self.rules.find_one({"_id": oid})
        return {"rule": serialize_mongo_doc(rule)}

    async def delete_rule(self, rule_id: str) -> None:
        result = await self.rules.delete_one({"_id": parse_object_id(rule_id, "rule ID")})
        if result.deleted_count == 0:
            raise NotFoundError("Rule not found")

        await self._audit("delete", "receipt_rule", rule_id)
        revalidate_tag(DASHBOARD_TAG)

    # ══════════════════════════════════════════════════════════════
    # AUTOMATION
    # ══════════════════════════════════════════════════════════════

    async def _fetch_transactions(self, ids: list[ObjectId]) -> list[dict]:
        rows = []
        for chunk in chunked(ids, AUTOMATION_FETCH_CHUNK):
            cursor = self.transactions.find({"_id": {"$in": list(chunk)}})
            rows.extend([tx async for tx in cursor])
        return rows

    async def apply_automation_rules(
        self,
        transaction_ids: list[ObjectId],
        include_closed: bool = False,
        target_rule_id: ObjectId | None = None,
        override_manual: bool = False,
        allow_closed_status_updates: bool = False,
    ) -> dict:
        """
        Run active rules over the given transactions.

        - only pending rows are inspected unless `include_closed`
        - manual vendor / expense values are kept unless `override_manual`
        - expense categories are only written on outgoing rows
        - status only moves on pending rows unless `allow_closed_status_updates`
        """
        if not transaction_ids:
            return _empty_automation_result()

        rule_filter: dict = {"is_active": True}
        if target_rule_id is not None:
            rule_filter["_id"] = target_rule_id
        rules = await self.rules.find(rule_filter).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        ).to_list(None)

        transactions = await self._fetch_transactions(transaction_ids)

        if not rules or not transactions:
            if target_rule_id is not None:
                logger.warning(
                    f"Automation skipped for rule {target_rule_id}: "
                    f"{len(rules)} rules, {len(transactions)} transactions"
                )
            return _empty_automation_result()

        result = _empty_automation_result()
        inspected = []
        log_entries = []
        now = utc_now()

        for tx in transactions:
            is_pending = tx.get("status") == "pending"
            if not include_closed and not is_pending:
                continue

            inspected.append(tx)
            rule = select_best_rule(rules, tx)
            if rule is None:
                continue

            result["matched"] += 1
            direction = get_transaction_direction(tx)

            vendor_locked = not override_manual and tx.get("vendor_source") == "manual"
            expense_locked = not override_manual and tx.get("expense_category_source") == "manual"

            update_vendor = bool(
                rule.get("set_vendor_name")
                and not vendor_locked
                and (
                    tx.get("vendor_name") != rule["set_vendor_name"]
                    or tx.get("vendor_source") != "rule"
                    or tx.get("vendor_rule_id") != rule["_id"]
                )
            )
            update_expense = bool(
                rule.get("set_expense_category")
                and direction == "out"
                and not expense_locked
                and (
                    tx.get("expense_category") != rule["set_expense_category"]
                    or tx.get("expense_category_source") != "rule"
                    or tx.get("expense_rule_id") != rule["_id"]
                )
            )

            changes: dict = {}
            notes = []
            target_status = rule.get("auto_status") or "no_receipt_required"
            allow_status = is_pending or allow_closed_status_updates
            status_changed = allow_status and target_status != tx.get("status")

            if allow_status and (status_changed or target_status != "pending"):
                if status_changed:
                    changes["status"] = target_status
                changes.update({
                    "receipt_required": target_status == "pending",
                    "marked_by": None,
                    "marked_by_email": None,
                    "marked_at": now,
                    "marked_method": "rule",
                    "rule_applied_id": rule["_id"],
                })

            if update_vendor:
                result["vendor_intended"] += 1
                changes.update({
                    "vendor_name": rule["set_vendor_name"],
                    "vendor_source": "rule",
                    "vendor_rule_id": rule["_id"],
                    "vendor_updated_at": now,
                })
                notes.append(f"Vendor → {rule['set_vendor_name']}")

            if update_expense:
                result["expense_intended"] += 1
                changes.update({
                    "expense_category": rule["set_expense_category"],
                    "expense_category_source": "rule",
                    "expense_rule_id": rule["_id"],
                    "expense_updated_at": now,
                })
                notes.append(f"Expense → {rule['set_expense_category']}")

            if not changes:
                continue

            changes["updated_at"] = now
            try:
                updated = await self.transactions.update_one({"_id": tx["_id"]}, {"$set": changes})
            except Exception as e:
                logger.warning(f"Failed to persist rule {rule['_id']} on transaction {tx['_id']}: {e}")
                continue
            if updated.matched_count == 0:
                logger.warning(f"Rule {rule['_id']} update matched no transaction {tx['_id']}")
                continue

            if status_changed:
                result["status_auto_updated"] += 1
                log_entries.append({
                    "transaction_id": tx["_id"],
                    "previous_status": tx.get("status"),
                    "new_status": target_status,
                    "action_type": "rule_auto_mark",
                    "note": f"Auto-marked by rule: {rule['name']}",
                    "performed_by": None,
                    "rule_id": rule["_id"],
                    "performed_at": now,
                })

            if notes:
                result["classification_updated"] += 1
                log_entries.append({
                    "transaction_id": tx["_id"],
                    "previous_status": tx.get("status"),
                    "new_status": target_status if status_changed else tx.get("status"),
                    "action_type": "rule_classification",
                    "note": f"Classification updated by rule {rule['name']}: {' | '.join(notes)}",
                    "performed_by": None,
                    "rule_id": rule["_id"],
                    "performed_at": now,
                })

        if log_entries:
            await self.logs.insert_many(log_entries)

        if target_rule_id is not None:
            logger.info(
                f"Rule {target_rule_id}: {len(transactions)} fetched, {result['matched']} matched, "
                f"{result['status_auto_updated']} auto-marked, "
                f"{result['classification_updated']} classified"
            )

        result["samples"] = [_sample(tx) for tx in inspected[:SAMPLE_LIMIT]]
        return result

    async def refresh_pending_automation(self) -> dict:
        limit = settings.receipt_automation_refresh_limit
        cursor = self.transactions.find({"status": "pending"}, {"_id": 1}).limit(limit)
        ids = [row["_id"] async for row in cursor]
        return await self.apply_automation_rules(ids)

    # ══════════════════════════════════════════════════════════════
    # RETROACTIVE RUNS
    # ══════════════════════════════════════════════════════════════

    async def run_retro_step(
        self,
        rule_id: str,
        scope: str = "pending",
        offset: int = 0,
        chunk_size: int | None = None,
    ) -> dict:
        """
        Apply one rule to one page of transactions, newest first.

        Call again with `next_offset` until `done`. Scope `all` also
        revisits closed rows, overrides manual classifications and lets
        the rule move closed statuses.
        """
        started = time.monotonic()
        chunk_size = chunk_size or settings.receipt_retro_chunk_size

        rule = await self._get_rule_doc(rule_id)
        if not rule.get("is_active", True):
            raise ValidationError("Enable the rule before running it")

        filters = {"status": "pending"} if scope == "pending" else {}
        total = await self.transactions.count_documents(filters)
        cursor = (
            self.transactions.find(filters, {"_id": 1})
            .sort([("transaction_date", DESCENDING), ("_id", DESCENDING)])
            .skip(offset)
            .limit(chunk_size)
        )
        ids = [row["_id"] async for row in cursor]

        if not ids:
            return {
                "reviewed": 0,
                **_empty_automation_result(),
                "next_offset": offset,
                "total": total,
                "done": True,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
            }

        include_all = scope == "all"
        summary = await self.apply_automation_rules(
            ids,
            include_closed=include_all,
            target_rule_id=rule["_id"],
            override_manual=include_all,
            allow_closed_status_updates=include_all,
        )

        next_offset = offset + len(ids)
        return {
            "reviewed": len(ids),
            **summary,
            "next_offset": next_offset,
            "total": total,
            "done": next_offset >= total,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
        }

    async def finalize_retro_run(self, rule_id: str, scope: str, totals: dict) -> None:
        await self._audit(
            "retro_run",
            "receipt_rule",
            rule_id,
            {
                "scope": scope,
                "reviewed": totals.get("reviewed", 0),
                "auto_marked": totals.get("status_auto_updated", 0),
                "classified": totals.get("classification_updated", 0),
                "matched": totals.get("matched", 0),
                "vendor_intended": totals.get("vendor_intended", 0),
                "expense_intended": totals.get("expense_intended", 0),
            },
        )
        revalidate_tag(DASHBOARD_TAG)

    async def run_retro(self, rule_id: str, scope: str = "pending", offset: int = 0) -> dict:
        """
        Loop retro steps until done or the time budget runs out. A partial
        result carries `done=False` and the `next_offset` to resume from.
        """
        started = time.monotonic()
        budget = settings.receipt_retro_time_budget_seconds
        counters = ("reviewed", "matched", "status_auto_updated", "classification_updated",
                    "vendor_intended", "expense_intended")
        totals = dict.fromkeys(counters, 0)
        samples: list[dict] = []
        total = 0

        while True:
            step = await self.run_retro_step(rule_id, scope=scope, offset=offset)
            for key in counters:
                totals[key] += step[key]
            if not samples and step["samples"]:
                samples = step["samples"]
            offset = step["next_offset"]
            total = step["total"]

            if step["done"]:
                await self.finalize_retro_run(rule_id, scope, totals)
                return {
                    "rule_id": rule_id, "scope": scope, **totals, "samples": samples,
                    "next_offset": offset, "total": total, "done": True,
                }

            if time.monotonic() - started > budget:
                logger.warning(
                    f"Retro run for rule {rule_id} exceeded {budget}s; "
                    f"returning partial result at offset {offset}/{total}"
                )
                return {
                    "rule_id": rule_id, "scope": scope, **totals, "samples": samples,
                    "next_offset": offset, "total": total, "done": False,
                }

    # ══════════════════════════════════════════════════════════════
    # BULK REVIEW
    # ══════════════════════════════════════════════════════════════

    @staticmethod
    def _needs_vendor(tx: dict) -> bool:
        return not tx.get("vendor_name")

    @staticmethod
    def _needs_expense(tx: dict) -> bool:
        amount_out = tx.get("amount_out")
        return not tx.get("expense_category") and isinstance(amount_out, (int, float)) and amount_out > 0

    def _summarise_group(self, details: str, rows: list[dict]) -> dict:
        rows.sort(key=lambda r: (r.get("transaction_date") or "", str(r["_id"])), reverse=True)
        dates = [r["transaction_date"] for r in rows if r.get("transaction_date")]
        vendors = Counter(r["vendor_name"] for r in rows if r.get("vendor_name"))
        expenses = Counter(r["expense_category"] for r in rows if r.get("expense_category"))
        sample = rows[0]

        return {
            "details": details,
            "transaction_ids": [str(r["_id"]) for r in rows],
            "transaction_count": len(rows),
            "needs_vendor_count": sum(1 for r in rows if self._needs_vendor(r)),
            "needs_expense_count": sum(1 for r in rows if self._needs_expense(r)),
            "total_in": round_currency(sum(r.get("amount_in") or 0 for r in rows)),
            "total_out": round_currency(sum(r.get("amount_out") or 0 for r in rows)),
            "first_date": min(dates) if dates else None,
            "last_date": max(dates) if dates else None,
            "dominant_vendor": normalize_vendor(vendors.most_common(1)[0][0]) if vendors else None,
            "dominant_expense": coerce_expense_category(expenses.most_common(1)[0][0]) if expenses else None,
            "sample_transaction": {
                "id": str(sample["_id"]),
                "transaction_date": sample.get("transaction_date"),
                "transaction_type": sample.get("transaction_type"),
                "amount_in": sample.get("amount_in"),
                "amount_out": sample.get("amount_out"),
                "vendor_name": sample.get("vendor_name"),
                "vendor_source": sample.get("vendor_source"),
                "expense_category": sample.get("expense_category"),
                "expense_category_source": sample.get("expense_category_source"),
            },
        }

    async def _group_suggestion(self, group: dict) -> dict:
        existing_vendor = group["dominant_vendor"]
        existing_expense = group["dominant_expense"]
        suggestion = {
            "vendor_name": existing_vendor,
            "expense_category": existing_expense,
            "reasoning": None,
            "source": "existing" if existing_vendor or existing_expense else "none",
            "model": None,
        }

        needs_ai = (
            group["needs_vendor_count"] > 0
            or group["needs_expense_count"] > 0
            or (not existing_vendor and not existing_expense)
        )
        if not self.classifier.enabled or not needs_ai:
            return suggestion

        sample = group["sample_transaction"]
        count = group["transaction_count"] or 1
        amount_in = sample.get("amount_in") or (group["total_in"] / count) or None
        amount_out = sample.get("amount_out") or (group["total_out"] / count) or None

        outcome = await self.classifier.classify(
            details=group["details"],
            amount_in=amount_in,
            amount_out=amount_out,
            transaction_type=sample.get("transaction_type"),
            direction=derive_direction(amount_in, amount_out),
            existing_vendor=existing_vendor,
            existing_expense=existing_expense,
        )
        if outcome is None:
            return suggestion

        if outcome.usage is not None:
            await record_ai_usage(
                self.db, self.org_slug, outcome.usage, f"receipt_group:{details_hash(group['details'])}"
            )

        return {
            "vendor_name": outcome.result.vendor_name or existing_vendor,
            "expense_category": outcome.result.expense_category or existing_expense,
            "reasoning": outcome.result.reasoning,
            "source": "ai",
            "model": outcome.usage.model if outcome.usage else None,
        }

    async def get_bulk_review_groups(
        self,
        limit: int = DEFAULT_GROUP_LIMIT,
        statuses: list[str] | None = None,
        only_unclassified: bool = True,
    ) -> dict:
        """Group transactions by identical `details`, largest groups first."""
        statuses = unique(statuses) if statuses else ["pending"]
        filters: dict = {"status": {"$in": statuses}}
        if only_unclassified:
            filters["$or"] = [
                {"vendor_name": None},
                {"expense_category": None, "amount_out": {"$gt": 0}},
            ]

        grouped: dict[str, list[dict]] = {}
        async for tx in self.transactions.find(filters):
            grouped.setdefault(tx.get("details") or "", []).append(tx)

        summaries = [self._summarise_group(details, rows) for details, rows in grouped.items()]
        summaries.sort(key=lambda g: (-g["transaction_count"], -g["total_out"], g["details"]))

        groups = []
        for group in summaries[:limit]:
            group["suggestion"] = await self._group_suggestion(group)
            groups.append(group)

        return {
            "groups": groups,
            "generated_at": utc_now().isoformat(),
            "config": {
                "limit": limit,
                "statuses": statuses,
                "only_unclassified": only_unclassified,
                "openai_enabled": self.classifier.enabled,
            },
        }

    async def apply_group_classification(
        self,
        details: str,
        vendor_name: Optional[str] = UNSET,
        expense_category: Optional[str] = UNSET,
        statuses: list[str] | None = None,
    ) -> dict:
        """
        Set vendor and/or expense on every transaction whose `details` equal
        `details`. Leave a field UNSET to keep it; pass None to clear it.
        Incoming-only rows never receive an expense category.
        """
        vendor_provided = vendor_name is not UNSET
        expense_provided = expense_category is not UNSET
        if not vendor_provided and not expense_provided:
            raise ValidationError("Nothing to update")

        vendor = normalize_vendor(vendor_name) if vendor_provided else None
        expense = coerce_expense_category(expense_category) if expense_provided else None
        if expense_provided and expense_category and not expense:
            raise ValidationError("Expense category is not recognised")

        statuses = unique(statuses) if statuses else ALL_STATUSES
        cursor = self.transactions.find(
            {"details": details, "status": {"$in": statuses}},
            {"status": 1, "amount_in": 1, "amount_out": 1},
        )
        matches = [row async for row in cursor]
        if not matches:
            return {"updated": 0, "skipped_incoming_count": 0}

        now = utc_now()
        all_ids = [row["_id"] for row in matches]
        incoming_ids = {row["_id"] for row in matches if is_incoming_only(row)}
        updated_ids: set = set()

        if vendor_provided:
            await self.transactions.update_many(
                {"_id": {"$in": all_ids}},
                {"$set": {
                    "vendor_name": vendor,
                    "vendor_source": "manual" if vendor else None,
                    "vendor_rule_id": None,
                    "vendor_updated_at": now,
                    "updated_at": now,
                }},
            )
            updated_ids.update(all_ids)

        if expense_provided:
            eligible = [i for i in all_ids if i not in incoming_ids]
            if eligible:
                await self.transactions.update_many(
                    {"_id": {"$in": eligible}},
                    {"$set": {
                        "expense_category": expense,
                        "expense_category_source": "manual" if expense else None,
                        "expense_rule_id": None,
                        "expense_updated_at": now,
                        "updated_at": now,
                    }},
                )
                updated_ids.update(eligible)

        skipped_incoming = len(incoming_ids) if expense_provided else 0

        notes = []
        if vendor_provided:
            notes.append(f"Vendor → {vendor}" if vendor else "Vendor cleared")
        if expense_provided:
            notes.append(f"Expense → {expense}" if expense else "Expense cleared")
        note = f"Bulk classification: {' | '.join(notes)}"

        status_by_id = {row["_id"]: row.get("status") for row in matches}
        if updated_ids:
            await self.logs.insert_many([
                {
                    "transaction_id": tx_id,
                    "previous_status": status_by_id.get(tx_id),
                    "new_status": status_by_id.get(tx_id),
                    "action_type": "bulk_classification",
                    "note": note,
                    "performed_by": self.user_id,
                    "rule_id": None,
                    "performed_at": now,
                }
                for tx_id in updated_ids
            ])

        await self._audit(
            "bulk_classification",
            "receipt_transaction",
            None,
            {
                "details": details,
                "vendor": vendor if vendor_provided else None,
                "expense": expense if expense_provided else None,
                "statuses": statuses,
                "updated": len(updated_ids),
                "skipped_incoming": skipped_incoming,
            },
        )
        revalidate_tag(DASHBOARD_TAG)

        return {"updated": len(updated_ids), "skipped_incoming_count": skipped_incoming}

    async def create_rule_from_group(self, data: dict) -> dict:
        rule = {
            "name": data["name"],
            "description": data.get("description"),
            "match_description": data.get("match_description") or data["details"],
            "match_transaction_type": None,
            "match_direction": data.get("match_direction", "both"),
            "match_min_amount": None,
            "match_max_amount": None,
            "auto_status": data.get("auto_status", "no_receipt_required"),
            "set_vendor_name": normalize_vendor(data.get("vendor_name")),
            "set_expense_category": coerce_expense_category(data.get("expense_category")),
            "is_active": True,
        }
        if rule["set_expense_category"] and rule["match_direction"] != "out":
            raise ValidationError("Expense auto-tagging rules must use outgoing direction")
        return await self.create_rule(rule)

    # ══════════════════════════════════════════════════════════════
    # SINGLE TRANSACTION
    # ══════════════════════════════════════════════════════════════

    async def list_transactions(
        self,
        status: Optional[str] = None,
        month: Optional[str] = None,
        search: Optional[str] = None,
        direction: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict:
        """
        Paginated transaction list, newest first.

        A month (`YYYY-MM`) scopes the list to that calendar month and
        returns it as a single page of up to MAX_MONTH_PAGE_SIZE rows.
        """
        query: dict = {}
        if status:
            query["status"] = status

        if month:
            match = _MONTH.match(month)
            if not match or not 1 <= int(match.group(2)) <= 12:
                raise ValidationError("Month must be in YYYY-MM format")
            year, month_number = int(match.group(1)), int(match.group(2))
            next_year, next_month = (year + 1, 1) if month_number == 12 else (year, month_number + 1)
            query["transaction_date"] = {
                "$gte": f"{year:04d}-{month_number:02d}-01",
                "$lt": f"{next_year:04d}-{next_month:02d}-01",
            }
            page = 1
            page_size = min(max(page_size, 1), MAX_MONTH_PAGE_SIZE)
        else:
            page = max(page, 1)
            page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        if direction == "in":
            query["amount_in"] = {"$gt": 0}
        elif direction == "out":
            query["amount_out"] = {"$gt": 0}

        term = _SEARCH_STRIP.sub("", (search or "").strip())[:80]
        if term:
            pattern = {"$regex": re.escape(term), "$options": "i"}
            query["$or"] = [{"details": pattern}, {"transaction_type": pattern}]

        total = await self.transactions.count_documents(query)
        cursor = (
            self.transactions.find(query)
            .sort([("transaction_date", DESCENDING), ("details", ASCENDING), ("_id", ASCENDING)])
            .skip((page - 1) * page_size)
            .limit(page_size)
        )
        rows = await cursor.to_list(length=page_size)

        return {
            "transactions": [serialize_mongo_doc(tx) for tx in rows],
            "pagination": {"page": page, "page_size": page_size, "total": total},
        }

    async def mark_transaction(
        self,
        transaction_id: str,
        status: str,
        note: Optional[str] = None,
        receipt_required: Optional[bool] = None,
    ) -> dict:
        """Manually set a transaction's receipt status."""
        if status not in ALL_STATUSES:
            raise ValidationError(f"Unknown receipt status: {status}")

        oid = parse_object_id(transaction_id, "transaction ID")
        tx = await self.transactions.find_one({"_id": oid})
        if not tx:
            raise NotFoundError("Transaction not found")

        now = utc_now()
        note = (note or "").strip() or None
        changes = {
            "status": status,
            "receipt_required": status == "pending" if receipt_required is None else receipt_required,
            "marked_by": self.user_id,
            "marked_by_email": self.user.get("email"),
            "marked_at": now,
            "marked_method": "manual",
            "rule_applied_id": None,
            "notes": note,
            "updated_at": now,
        }
        await self.transactions.update_one({"_id": oid}, {"$set": changes})
        updated = await self.transactions.find_one({"_id": oid})

        await self.logs.insert_one({
            "transaction_id": oid,
            "previous_status": tx.get("status"),
            "new_status": status,
            "action_type": "manual_update",
            "note": note,
            "performed_by": self.user_id,
            "rule_id": None,
            "performed_at": now,
        })
        await self._audit(
            "update_status",
            "receipt_transaction",
            transaction_id,
            {"previous_status": tx.get("status"), "new_status": status, "note": note},
        )
        revalidate_tag(DASHBOARD_TAG)

        return {"transaction": serialize_mongo_doc(updated)}

    async def update_transaction_classification(
        self,
        transaction_id: str,
        vendor_name: Optional[str] = UNSET,
        expense_category: Optional[str] = UNSET,
    ) -> dict:
        """Manually classify one transaction and suggest a rule for similar ones."""
        vendor_provided = vendor_name is not UNSET
        expense_provided = expense_category is not UNSET
        if not vendor_provided and not expense_provided:
            raise ValidationError("Nothing to update")

        oid = parse_object_id(transaction_id, "transaction ID")
        tx = await self.transactions.find_one({"_id": oid})
        if not tx:
            raise NotFoundError("Transaction not found")

        vendor = normalize_vendor(vendor_name) if vendor_provided else None
        expense = coerce_expense_category(expense_category) if expense_provided else None

        if expense_provided and expense and is_incoming_only(tx):
            raise ValidationError("Expense categories can only be set on outgoing transactions")

        now = utc_now()
        changes: dict = {}
        notes = []
        vendor_changed = vendor_provided and tx.get("vendor_name") != vendor
        expense_changed = expense_provided and tx.get("expense_category") != expense

        if vendor_changed:
            changes.update({
                "vendor_name": vendor,
                "vendor_source": "manual" if vendor else None,
                "vendor_rule_id": None,
                "vendor_updated_at": now,
            })
            notes.append(f"Vendor → {vendor}" if vendor else "Vendor cleared")

        if expense_changed:
            changes.update({
                "expense_category": expense,
                "expense_category_source": "manual" if expense else None,
                "expense_rule_id": None,
                "expense_updated_at": now,
            })
            notes.append(f"Expense → {expense}" if expense else "Expense cleared")

        if not changes:
            return {"transaction": serialize_mongo_doc(tx), "rule_suggestion": None}

        changes["updated_at"] = now
        await self.transactions.update_one({"_id": oid}, {"$set": changes})
        updated = await self.transactions.find_one({"_id": oid})

        await self.logs.insert_one({
            "transaction_id": oid,
            "previous_status": tx.get("status"),
            "new_status": updated.get("status"),
            "action_type": "manual_classification",
            "note": " | ".join(notes),
            "performed_by": self.user_id,
            "rule_id": None,
            "performed_at": now,
        })
        await self._audit(
            "update_classification",
            "receipt_transaction",
            transaction_id,
            {
                "vendor_changed": vendor_changed,
                "expense_changed": expense_changed,
                "vendor": vendor,
                "expense": expense,
            },
        )
        revalidate_tag(DASHBOARD_TAG)

        suggestion = build_rule_suggestion(
            updated,
            vendor_name=vendor if vendor_changed else None,
            expense_category=expense if expense_changed else None,
        )
        return {"transaction": serialize_mongo_doc(updated), "rule_suggestion": suggestion}

    # ══════════════════════════════════════════════════════════════
    # IMPORT / SUMMARY
    # ══════════════════════════════════════════════════════════════

    async def import_statement(self, filename: str, content: bytes) -> dict:
        """
        Store a CSV bank statement. Lines already imported (same dedupe hash)
        are skipped; new lines go through automation straight away.
        """
        rows = parse_statement_csv(content)
        if not rows:
            raise ValidationError("No valid transactions found in the CSV file.")

        await self.ensure_indexes()
        now = utc_now()
        batch = {
            "original_filename": filename,
            "source_hash": hashlib.sha256(content).hexdigest(),
            "row_count": len(rows),
            "uploaded_by": self.user_id,
            "uploaded_at": now,
        }
        batch_result = await self.batches.insert_one(batch)
        batch["_id"] = batch_result.inserted_id

        hashes = [row["dedupe_hash"] for row in rows]
        existing = {
            doc["dedupe_hash"]
            async for doc in self.transactions.find({"dedupe_hash": {"$in": hashes}}, {"dedupe_hash": 1})
        }

        fresh = []
        for row in rows:
            if row["dedupe_hash"] in existing:
                continue
            existing.add(row["dedupe_hash"])
            fresh.append({
                **row,
                "batch_id": batch["_id"],
                "status": "pending",
                "receipt_required": True,
                "vendor_name": None,
                "vendor_source": None,
                "vendor_rule_id": None,
                "expense_category": None,
                "expense_category_source": None,
                "expense_rule_id": None,
                "marked_by": None,
                "marked_by_email": None,
                "marked_at": None,
                "marked_method": None,
                "rule_applied_id": None,
                "notes": None,
                "created_at": now,
                "updated_at": now,
            })

        inserted_ids = await self._insert_new_rows(fresh)

        automation = await self.apply_automation_rules(inserted_ids)

        if inserted_ids:
            await self.logs.insert_many([
                {
                    "transaction_id": tx_id,
                    "previous_status": None,
                    "new_status": "pending",
                    "action_type": "import",
                    "note": f"Imported via {filename}",
                    "performed_by": self.user_id,
                    "rule_id": None,
                    "performed_at": now,
                }
                for tx_id in inserted_ids
            ])

        summary = {
            "filename": filename,
            "rows": len(rows),
            "inserted": len(inserted_ids),
            "skipped": len(rows) - len(inserted_ids),
            "auto_applied": automation["status_auto_updated"],
            "auto_classified": automation["classification_updated"],
        }
        await self._audit("create", "receipt_batch", batch["_id"], summary)
        revalidate_tag(DASHBOARD_TAG)
        logger.info(
            f"Imported {filename} on {self.org_slug}: "
            f"{summary['inserted']} new, {summary['skipped']} duplicates"
        )

        return {"batch": serialize_mongo_doc(batch), **summary}

    async def ensure_indexes(self):
        await self.transactions.create_index("dedupe_hash", unique=True)

    async def _insert_new_rows(self, docs: list[dict]) -> list:
        """
        Insert statement rows, returning the ids that landed. Rows rejected by
        the unique dedupe index (a concurrent import got there first) count
        as skipped.
        """
        if not docs:
            return []
        try:
            result = await self.transactions.insert_many(docs, ordered=False)
            return list(result.inserted_ids)
        except BulkWriteError as e:
            write_errors = e.details.get("writeErrors", [])
            if not write_errors or any(err.get("code") != DUPLICATE_KEY for err in write_errors):
                raise
            rejected = {err["index"] for err in write_errors}
            logger.warning(
                f"Skipped {len(rejected)} statement rows on {self.org_slug} already imported concurrently"
            )
            return [doc["_id"] for index, doc in enumerate(docs) if index not in rejected]

    async def get_summary(self) -> dict:
        status_rows = await self.transactions.aggregate(
            [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        ).to_list(None)
        counts = {row["_id"]: row["count"] for row in status_rows}
        last_batch = await self.batches.find_one({}, sort=[("uploaded_at", DESCENDING)])

        try:
            cost_rows = await self.ai_usage.aggregate(
                [{"$group": {"_id": None, "total": {"$sum": "$cost"}}}]
            ).to_list(1)
            openai_cost = round(float(cost_rows[0]["total"]), 4) if cost_rows else 0.0
        except Exception as e:
            logger.error(f"Failed to fetch OpenAI usage total: {e}")
            openai_cost = 0.0

        totals = {status: int(counts.get(status, 0)) for status in ALL_STATUSES}
        return {
            "totals": totals,
            "needs_attention": totals["pending"],
            "last_import": serialize_mongo_doc(last_batch) if last_batch else None,
            "openai_cost": openai_cost,
        }
