"""
Dashboard Service — permission-gated snapshot of every business module.

One call resolves the user, loads their permissions, then runs the fetcher
of every module they may see concurrently and merges the results:

    snapshot = await load_dashboard_snapshot(db, org_slug, user_id)

A fetcher that fails never sinks the snapshot: its slice is reset to zero
values and carries an error string instead. Only an unresolvable user is
fatal (401). Snapshots are cached per tenant + user for
`settings.dashboard_cache_ttl_seconds` under the "dashboard" tag; any write
that should show up immediately calls `revalidate_tag("dashboard")`.

Collections read (all tenant-scoped): events, customers, messages,
private_bookings, parking_bookings, invoices, invoice_vendors, employees,
receipt_transactions, receipt_batches, ai_usage_events, quotes, roles,
short_links, users, sites, cashup_sessions, cashup_targets, cron_job_runs.
"""

import asyncio
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

from motor.motor_asyncio import AsyncIOMotorDatabase

from venue.auth import AuthService
from venue.cache import DASHBOARD_TAG, snapshot_cache
from venue.config import settings
from venue.rbac import PermissionService, has_module_access
from venue.tenant import get_tenant_collection
from venue.utils import Logger
from .schemas import (
    CashingUpSnapshot,
    CustomersSnapshot,
    DashboardSnapshot,
    EmployeesSnapshot,
    EventSummary,
    EventsSnapshot,
    InvoiceSummary,
    InvoicesSnapshot,
    LoyaltySnapshot,
    MessagesSnapshot,
    ModuleSnapshot,
    ParkingBookingSummary,
    ParkingSnapshot,
    PrivateBookingSummary,
    PrivateBookingsSnapshot,
    ProfileSnapshot,
    QuotesSnapshot,
    ReceiptsSnapshot,
    RolesSnapshot,
    ShortLinksSnapshot,
    SystemHealthSnapshot,
    UsersSnapshot,
)

logger = Logger("venue.dashboard")

EVENTS_LIMIT = 25
PRIVATE_BOOKINGS_LIMIT = 20
PARKING_LIMIT = 20
INVOICE_LIST_LIMIT = 5

UNPAID_INVOICE_STATUSES = ["draft", "sent", "partially_paid", "overdue"]
SCHEDULE_INVOICE_STATUSES = ["sent", "partially_paid", "overdue"]
OPEN_PRIVATE_BOOKING_STATUSES = ["draft", "confirmed"]
OPEN_PARKING_STATUSES = ["pending_payment", "confirmed"]


def _iso(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _as_number(value) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DashboardService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        org_slug: str,
        now: datetime | None = None,
        tz: str | None = None,
    ):
        self.db = db
        self.org_slug = org_slug
        self.tz = ZoneInfo(tz or settings.timezone)
        self.now = (now or datetime.now(timezone.utc)).astimezone(self.tz)
        self.today = self.now.date()
        self.today_iso = self.today.isoformat()

    def _col(self, name: str):
        return get_tenant_collection(self.db, self.org_slug, name)

    def _local_midnight_utc(self, day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=self.tz).astimezone(timezone.utc)

    # ── Snapshot assembly ────────────────────────────────────────

    async def _load_permissions(self, user: dict) -> dict[str, set[str]]:
        try:
            return await PermissionService(self.db, self.org_slug).get_permission_map(
                str(user["_id"]), user=user
            )
        except Exception as e:
            logger.error(f"Failed to load user permissions for dashboard snapshot: {e}")
            return {}

    @staticmethod
    async def _guard(
        label: str,
        snapshot: ModuleSnapshot,
        message: str,
        fetch: Callable[[ModuleSnapshot], Awaitable[None]],
    ) -> None:
        try:
            await fetch(snapshot)
        except Exception as e:
            logger.error(f"Failed to load dashboard {label}: {e}")
            defaults = type(snapshot)(permitted=snapshot.permitted)
            for field_name in type(snapshot).model_fields:
                setattr(snapshot, field_name, getattr(defaults, field_name))
            snapshot.error = message

    async def build_snapshot(self, user: dict) -> DashboardSnapshot:
        """Compute a fresh snapshot for an already-resolved user document."""
        permissions = await self._load_permissions(user)

        def can(*modules: str) -> bool:
            return any(has_module_access(permissions, m) for m in modules)

        events = EventsSnapshot(permitted=can("events"))
        customers = CustomersSnapshot(permitted=can("customers"))
        messages = MessagesSnapshot(permitted=can("messages"))
        private_bookings = PrivateBookingsSnapshot(permitted=can("private_bookings"))
        parking = ParkingSnapshot(permitted=can("parking"))
        invoices = InvoicesSnapshot(permitted=can("invoices"))
        employees = EmployeesSnapshot(permitted=can("employees"))
        receipts = ReceiptsSnapshot(permitted=can("receipts"))
        quotes = QuotesSnapshot(permitted=can("quotes", "invoices"))
        roles = RolesSnapshot(permitted=can("roles"))
        short_links = ShortLinksSnapshot(permitted=can("short_links"))
        users = UsersSnapshot(permitted=can("users"))
        loyalty = LoyaltySnapshot(permitted=can("loyalty"))
        cashing_up = CashingUpSnapshot(permitted=can("cashing_up"))
        system_health = SystemHealthSnapshot(permitted=can("settings", "users"))

        plan = [
            ("cashing up metrics", cashing_up, "Failed to load cashing up metrics", self._load_cashing_up),
            ("events", events, "Failed to load events", self._load_events),
            ("customer metrics", customers, "Failed to load customer metrics", self._load_customers),
            ("message metrics", messages, "Failed to load message metrics", self._load_messages),
            ("private bookings", private_bookings, "Failed to load private bookings", self._load_private_bookings),
            ("parking bookings", parking, "Failed to load parking bookings", self._load_parking),
            ("invoices", invoices, "Failed to load invoices", self._load_invoices),
            ("employee metrics", employees, "Failed to load employee metrics", self._load_employees),
            ("receipt metrics", receipts, "Failed to load receipt metrics", self._load_receipts),
            ("quote metrics", quotes, "Failed to load quote metrics", self._load_quotes),
            ("role metrics", roles, "Failed to load role metrics", self._load_roles),
            ("short link metrics", short_links, "Failed to load short link metrics", self._load_short_links),
            ("user metrics", users, "Failed to load user metrics", self._load_users),
            ("system health", system_health, "Failed to load system health", self._load_system_health),
        ]

        await asyncio.gather(
            *(
                self._guard(label, snap, message, fetch)
                for label, snap, message, fetch in plan
                if snap.permitted
            )
        )

        profile = ProfileSnapshot(
            permitted=True,
            email=user.get("email"),
            last_sign_in_at=_iso(user.get("last_login")),
        )

        return DashboardSnapshot(
            generated_at=datetime.now(timezone.utc).isoformat(),
            user=profile,
            events=events,
            customers=customers,
            messages=messages,
            private_bookings=private_bookings,
            parking=parking,
            invoices=invoices,
            employees=employees,
            receipts=receipts,
            quotes=quotes,
            roles=roles,
            short_links=short_links,
            users=users,
            loyalty=loyalty,
            cashing_up=cashing_up,
            system_health=system_health,
        )

    # ── Module fetchers ──────────────────────────────────────────

    async def _load_events(self, snap: EventsSnapshot) -> None:
        col = self._col("events")
        filters = {"date": {"$gte": self.today_iso}}
        cursor = (
            col.find(filters, {"name": 1, "date": 1, "time": 1})
            .sort([("date", 1), ("time", 1)])
            .limit(EVENTS_LIMIT)
        )
        docs, count = await asyncio.gather(
            cursor.to_list(length=EVENTS_LIMIT), col.count_documents(filters)
        )

        processed = [
            EventSummary(
                id=str(d["_id"]),
                name=d.get("name") or "Untitled event",
                date=_iso(d.get("date")),
                time=_iso(d.get("time")),
            )
            for d in docs
        ]
        today = [e for e in processed if e.date == self.today_iso]
        upcoming = [e for e in processed if e.date != self.today_iso]

        snap.today = today
        snap.upcoming = upcoming
        snap.total_upcoming = count if isinstance(count, int) else len(upcoming)
        snap.next_upcoming = upcoming[0] if upcoming else None

    async def _load_customers(self, snap: CustomersSnapshot) -> None:
        col = self._col("customers")
        seven_days_ago = self.now.astimezone(timezone.utc) - timedelta(days=7)
        month_start_day = self.today.replace(day=1)
        last_month_start_day = (month_start_day - timedelta(days=1)).replace(day=1)
        month_start = self._local_midnight_utc(month_start_day)
        last_month_start = self._local_midnight_utc(last_month_start_day)

        total, new_week, new_month, last_month = await asyncio.gather(
            col.count_documents({}),
            col.count_documents({"created_at": {"$gte": seven_days_ago}}),
            col.count_documents({"created_at": {"$gte": month_start}}),
            col.count_documents(
                {"created_at": {"$gte": last_month_start, "$lt": month_start}}
            ),
        )

        snap.total = total
        snap.new_this_week = new_week
        snap.new_this_month = new_month
        snap.new_last_month = last_month

    async def _load_messages(self, snap: MessagesSnapshot) -> None:
        snap.unread = await self._col("messages").count_documents(
            {"direction": "inbound", "read_at": None}
        )

    async def _load_private_bookings(self, snap: PrivateBookingsSnapshot) -> None:
        cursor = (
            self._col("private_bookings")
            .find(
                {
                    "event_date": {"$gte": self.today_iso},
                    "status": {"$in": OPEN_PRIVATE_BOOKING_STATUSES},
                }
            )
            .sort([("event_date", 1), ("start_time", 1)])
            .limit(PRIVATE_BOOKINGS_LIMIT)
        )
        docs = await cursor.to_list(length=PRIVATE_BOOKINGS_LIMIT)

        upcoming = []
        for d in docs:
            event_date = _iso(d.get("event_date"))
            days_until = None
            if event_date:
                try:
                    days_until = (date.fromisoformat(event_date[:10]) - self.today).days
                except ValueError:
                    days_until = None
            upcoming.append(
                PrivateBookingSummary(
                    id=str(d["_id"]),
                    customer_name=d.get("customer_name"),
                    customer_id=_iso(d.get("customer_id")),
                    event_date=event_date,
                    start_time=_iso(d.get("start_time")),
                    status=d.get("status"),
                    hold_expiry=_iso(d.get("hold_expiry")),
                    deposit_status=d.get("deposit_status"),
                    balance_due_date=_iso(d.get("balance_due_date")),
                    days_until_event=days_until,
                )
            )

        snap.upcoming = upcoming
        snap.total_upcoming = len(upcoming)

    async def _load_parking(self, snap: ParkingSnapshot) -> None:
        col = self._col("parking_bookings")
        filters = {
            "start_at": {"$gte": self._local_midnight_utc(self.today)},
            "status": {"$in": OPEN_PARKING_STATUSES},
        }
        cursor = col.find(filters).sort("start_at", 1).limit(PARKING_LIMIT)
        docs, count = await asyncio.gather(
            cursor.to_list(length=PARKING_LIMIT), col.count_documents(filters)
        )

        upcoming = []
        arrivals_today = 0
        for d in docs:
            start_at = d.get("start_at")
            if isinstance(start_at, datetime) and _as_utc(start_at).astimezone(self.tz).date() == self.today:
                arrivals_today += 1
            upcoming.append(
                ParkingBookingSummary(
                    id=str(d["_id"]),
                    reference=d.get("reference"),
                    customer_first_name=d.get("customer_first_name"),
                    customer_last_name=d.get("customer_last_name"),
                    vehicle_registration=d.get("vehicle_registration"),
                    start_at=_iso(start_at),
                    end_at=_iso(d.get("end_at")),
                    status=d.get("status"),
                    payment_status=d.get("payment_status"),
                )
            )

        snap.upcoming = upcoming
        snap.total_upcoming = count if isinstance(count, int) else len(upcoming)
        snap.arrivals_today = arrivals_today
        snap.pending_payments = sum(1 for b in upcoming if b.payment_status == "pending")
        snap.next_booking = upcoming[0] if upcoming else None

    def _invoice_list_pipeline(self, match: dict) -> list[dict]:
        return [
            {"$match": match},
            {"$sort": {"due_date": 1}},
            {"$limit": INVOICE_LIST_LIMIT},
            {"$lookup": {
                "from": self._col("invoice_vendors").name,
                "localField": "vendor_id",
                "foreignField": "_id",
                "as": "vendor",
            }},
        ]

    @staticmethod
    def _invoice_summary(doc: dict) -> InvoiceSummary:
        vendors = doc.get("vendor") or []
        return InvoiceSummary(
            id=str(doc["_id"]),
            invoice_number=doc.get("invoice_number"),
            total_amount=_as_number(doc["total_amount"]) if doc.get("total_amount") is not None else None,
            status=doc.get("status"),
            due_date=_iso(doc.get("due_date")),
            vendor_name=vendors[0].get("name") if vendors else None,
        )

    async def _load_invoices(self, snap: InvoicesSnapshot) -> None:
        col = self._col("invoices")
        unpaid_match = {"status": {"$in": UNPAID_INVOICE_STATUSES}}
        overdue_match = {
            "status": {"$in": SCHEDULE_INVOICE_STATUSES},
            "due_date": {"$lt": self.today_iso},
        }
        due_today_match = {
            "status": {"$in": SCHEDULE_INVOICE_STATUSES},
            "due_date": self.today_iso,
        }
        value_pipeline = [
            {"$match": unpaid_match},
            {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
        ]

        unpaid, unpaid_count, overdue_count, value, overdue, due_today = await asyncio.gather(
            col.aggregate(self._invoice_list_pipeline(unpaid_match)).to_list(INVOICE_LIST_LIMIT),
            col.count_documents(unpaid_match),
            col.count_documents(overdue_match),
            col.aggregate(value_pipeline).to_list(1),
            col.aggregate(self._invoice_list_pipeline(overdue_match)).to_list(INVOICE_LIST_LIMIT),
            col.aggregate(self._invoice_list_pipeline(due_today_match)).to_list(INVOICE_LIST_LIMIT),
        )

        snap.unpaid = [self._invoice_summary(d) for d in unpaid]
        snap.unpaid_count = unpaid_count
        snap.overdue_count = overdue_count
        snap.total_unpaid_value = round(_as_number(value[0]["total"]) if value else 0.0, 2)
        snap.overdue = [self._invoice_summary(d) for d in overdue]
        snap.due_today = [self._invoice_summary(d) for d in due_today]

    async def _load_employees(self, snap: EmployeesSnapshot) -> None:
        snap.active_count = await self._col("employees").count_documents({"status": "Active"})

    async def _openai_usage_total(self) -> float | None:
        try:
            rows = await self._col("ai_usage_events").aggregate(
                [{"$group": {"_id": None, "total": {"$sum": "$cost"}}}]
            ).to_list(1)
        except Exception as e:
            logger.error(f"Failed to load OpenAI usage total for receipts: {e}")
            return None
        return round(_as_number(rows[0]["total"]), 4) if rows else 0.0

    async def _load_receipts(self, snap: ReceiptsSnapshot) -> None:
        status_rows, last_batch, openai_cost = await asyncio.gather(
            self._col("receipt_transactions").aggregate(
                [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
            ).to_list(None),
            self._col("receipt_batches").find_one({}, sort=[("uploaded_at", -1)]),
            self._openai_usage_total(),
        )

        counts = {row["_id"]: row["count"] for row in status_rows}
        pending = int(counts.get("pending", 0))

        snap.pending_count = pending
        snap.cant_find_count = int(counts.get("cant_find", 0))
        snap.needs_attention = pending
        snap.last_import_at = _iso(last_batch.get("uploaded_at")) if last_batch else None
        snap.openai_cost = openai_cost

    async def _load_quotes(self, snap: QuotesSnapshot) -> None:
        docs = await self._col("quotes").find(
            {}, {"status": 1, "total_amount": 1, "valid_until": 1}
        ).to_list(None)

        draft_count = 0
        pending = expired = accepted = 0.0
        for quote in docs:
            status = quote.get("status") or "draft"
            amount = _as_number(quote.get("total_amount"))

            if status == "draft":
                draft_count += 1
            elif status == "sent":
                valid_until = _iso(quote.get("valid_until"))
                if valid_until and valid_until[:10] < self.today_iso:
                    expired += amount
                else:
                    pending += amount
            elif status == "accepted":
                accepted += amount

        snap.draft_count = draft_count
        snap.total_pending_value = round(pending, 2)
        snap.total_expired_value = round(expired, 2)
        snap.total_accepted_value = round(accepted, 2)

    async def _load_roles(self, snap: RolesSnapshot) -> None:
        snap.total_roles = await self._col("roles").count_documents({})

    async def _load_short_links(self, snap: ShortLinksSnapshot) -> None:
        snap.active_count = await self._col("short_links").count_documents({})

    async def _load_users(self, snap: UsersSnapshot) -> None:
        snap.total_users = await self._col("users").count_documents({})

    async def _load_system_health(self, snap: SystemHealthSnapshot) -> None:
        one_day_ago = self.now.astimezone(timezone.utc) - timedelta(days=1)
        failed_recent = {"status": "failed", "created_at": {"$gte": one_day_ago}}

        sms_result, cron_result = await asyncio.gather(
            self._col("messages").count_documents(failed_recent),
            self._col("cron_job_runs").count_documents(failed_recent),
            return_exceptions=True,
        )
        if isinstance(sms_result, BaseException):
            raise sms_result

        if isinstance(cron_result, BaseException):
            logger.warning(f"Failed to fetch cron job runs: {cron_result}")
            cron_result = 0

        snap.sms_failures_24h = sms_result
        snap.failed_cron_jobs_24h = cron_result

    async def _load_cashing_up(self, snap: CashingUpSnapshot) -> None:
        site = await self._col("sites").find_one({})
        if not site:
            return

        sessions = self._col("cashup_sessions")
        site_id = site["_id"]
        week_start = self.today - timedelta(days=self.today.weekday())

        this_week = await sessions.find(
            {
                "site_id": site_id,
                "session_date": {"$gte": week_start.isoformat(), "$lte": self.today_iso},
            },
            {"total_counted_amount": 1, "session_date": 1, "status": 1},
        ).to_list(None)

        completed = [s for s in this_week if s.get("status") and s["status"] != "draft"]
        last_completed = (
            date.fromisoformat(max(s["session_date"] for s in completed)) if completed else None
        )
        completed_days = (
            (last_completed - week_start).days + 1
            if last_completed and last_completed >= week_start
            else 0
        )

        this_week_end = last_completed if completed_days > 0 else week_start - timedelta(days=1)
        last_week_start = week_start - timedelta(weeks=1)
        last_year_start = week_start - timedelta(weeks=52)

        async def _period_total(start: date) -> float:
            end = start + timedelta(days=completed_days - 1)
            rows = await sessions.find(
                {
                    "site_id": site_id,
                    "session_date": {"$gte": start.isoformat(), "$lte": end.isoformat()},
                },
                {"total_counted_amount": 1},
            ).to_list(None)
            return sum(_as_number(r.get("total_counted_amount")) for r in rows)

        last_week_total, last_year_total, targets = await asyncio.gather(
            _period_total(last_week_start),
            _period_total(last_year_start),
            self._col("cashup_targets")
            .find({"site_id": site_id})
            .sort("effective_from", -1)
            .to_list(None),
        )

        cutoff = this_week_end.isoformat()
        this_week_completed = [s for s in this_week if s["session_date"] <= cutoff]

        target_sum = 0.0
        if completed_days > 0:
            day = week_start
            while day <= this_week_end:
                # day_of_week follows the Sunday=0 convention
                dow = day.isoweekday() % 7
                day_iso = day.isoformat()
                target = next(
                    (
                        t for t in targets
                        if t.get("day_of_week") == dow and str(t.get("effective_from")) <= day_iso
                    ),
                    None,
                )
                if target:
                    target_sum += _as_number(target.get("target_amount"))
                day += timedelta(days=1)

        snap.this_week_total = round(
            sum(_as_number(s.get("total_counted_amount")) for s in this_week_completed), 2
        )
        snap.last_week_total = round(last_week_total, 2)
        snap.last_year_total = round(last_year_total, 2)
        snap.sessions_submitted_count = sum(
            1 for s in this_week_completed if s.get("status") != "draft"
        )
        snap.this_week_target = round(target_sum, 2)
        snap.completed_through = last_completed.strftime("%A") if completed_days > 0 else None


# ── Cached entry point ───────────────────────────────────────────


def snapshot_cache_key(org_slug: str, user_id: str) -> str:
    return f"dashboard-snapshot:{org_slug}:{user_id}"


async def load_dashboard_snapshot(
    db: AsyncIOMotorDatabase, org_slug: str, user_id: str | None
) -> DashboardSnapshot:
    """
    Resolve the user (fatal on failure), then serve the cached snapshot or
    compute a fresh one.
    """
    user = await AuthService(db).resolve_user(org_slug, user_id)

    async def _compute() -> DashboardSnapshot:
        started = asyncio.get_running_loop().time()
        snapshot = await DashboardService(db, org_slug).build_snapshot(user)
        elapsed = round((asyncio.get_running_loop().time() - started) * 1000, 2)
        logger.info(f"Built dashboard snapshot for {org_slug}/{user_id} in {elapsed}ms")
        return snapshot

    return await snapshot_cache.get_or_set(
        snapshot_cache_key(org_slug, str(user["_id"])),
        _compute,
        tags=[DASHBOARD_TAG],
    )
