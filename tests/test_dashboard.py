from datetime import datetime, timezone

import pytest
from bson import ObjectId
from fastapi import HTTPException

from venue.cache import DASHBOARD_TAG, revalidate_tag
from venue.dashboard import DashboardService, load_dashboard_snapshot
from venue.rbac import PermissionService
from .conftest import NOW, SLUG


@pytest.fixture
async def seeded_events(tenant):
    await tenant("events").insert_many(
        [
            {"name": "Quiz Night", "date": "2026-03-11", "time": "19:00"},
            {"name": None, "date": "2026-03-14", "time": "20:00"},
            {"name": "Open Mic", "date": "2026-03-20", "time": "18:30"},
            {"name": "Last Week", "date": "2026-03-01", "time": "19:00"},
        ]
    )


async def test_events_only_user_sees_events_and_nothing_else(db, make_user, seeded_events):
    user = await make_user(permissions=["events:view"])

    snapshot = await DashboardService(db, SLUG, now=NOW).build_snapshot(user)

    assert snapshot.events.permitted
    assert snapshot.events.error is None
    assert [e.name for e in snapshot.events.today] == ["Quiz Night"]
    assert [e.name for e in snapshot.events.upcoming] == ["Untitled event", "Open Mic"]
    assert snapshot.events.total_upcoming == 3
    assert snapshot.events.next_upcoming.name == "Untitled event"

    assert not snapshot.customers.permitted
    assert snapshot.customers.total == 0
    assert snapshot.customers.error is None
    assert not snapshot.invoices.permitted
    assert snapshot.user.permitted
    assert snapshot.user.email == "pat@riverside.example"


async def test_failing_module_reports_error_without_touching_others(
    db, make_user, seeded_events, monkeypatch
):
    async def broken_customers(self, snap):
        snap.total = 99
        raise RuntimeError("connection reset")

    monkeypatch.setattr(DashboardService, "_load_customers", broken_customers)
    user = await make_user(permissions=["events:view", "customers:view"])

    snapshot = await DashboardService(db, SLUG, now=NOW).build_snapshot(user)

    assert snapshot.customers.permitted
    assert snapshot.customers.error == "Failed to load customer metrics"
    assert snapshot.customers.total == 0
    assert snapshot.events.error is None
    assert len(snapshot.events.today) == 1


async def test_modules_without_permission_issue_no_queries(db, make_user, monkeypatch):
    called = []

    def recorder(name):
        async def _fetch(self, snap):
            called.append(name)

        return _fetch

    for name in ("_load_events", "_load_customers", "_load_invoices", "_load_receipts",
                 "_load_cashing_up", "_load_system_health"):
        monkeypatch.setattr(DashboardService, name, recorder(name))

    user = await make_user(permissions=["events:view", "invoices:export"])
    snapshot = await DashboardService(db, SLUG, now=NOW).build_snapshot(user)

    assert sorted(called) == ["_load_events", "_load_invoices"]
    assert snapshot.invoices.permitted
    assert not snapshot.receipts.permitted


async def test_quotes_and_system_health_have_alternative_gates(db, make_user):
    user = await make_user(permissions=["invoices:view", "users:view"])

    snapshot = await DashboardService(db, SLUG, now=NOW).build_snapshot(user)

    assert snapshot.quotes.permitted
    assert snapshot.system_health.permitted
    assert not snapshot.roles.permitted


async def test_permission_lookup_failure_yields_empty_map(db, make_user, monkeypatch):
    async def broken(self, user_id, user=None):
        raise RuntimeError("roles collection unavailable")

    monkeypatch.setattr(PermissionService, "get_permission_map", broken)
    user = await make_user(role="super_admin")

    snapshot = await DashboardService(db, SLUG, now=NOW).build_snapshot(user)

    assert not snapshot.events.permitted
    assert not snapshot.receipts.permitted
    assert snapshot.user.permitted


async def test_super_admin_snapshot_on_empty_store(db, make_user):
    user = await make_user(role="super_admin")

    snapshot = await DashboardService(db, SLUG, now=NOW).build_snapshot(user)

    slices = [
        snapshot.events, snapshot.customers, snapshot.messages, snapshot.private_bookings,
        snapshot.parking, snapshot.invoices, snapshot.employees, snapshot.receipts,
        snapshot.quotes, snapshot.roles, snapshot.short_links, snapshot.users,
        snapshot.loyalty, snapshot.cashing_up, snapshot.system_health,
    ]
    assert all(s.permitted for s in slices)
    assert [s.error for s in slices if s.error] == []
    assert snapshot.users.total_users == 1
    assert snapshot.receipts.openai_cost == 0.0
    assert snapshot.cashing_up.completed_through is None


async def test_invoice_lists_and_totals(db, tenant, make_user):
    vendor = await tenant("invoice_vendors").insert_one({"name": "Booker Wholesale"})
    await tenant("invoices").insert_many(
        [
            {"invoice_number": "INV-1", "status": "sent", "total_amount": 120.5,
             "due_date": "2026-03-01", "vendor_id": vendor.inserted_id},
            {"invoice_number": "INV-2", "status": "overdue", "total_amount": 80,
             "due_date": "2026-03-11", "vendor_id": vendor.inserted_id},
            {"invoice_number": "INV-3", "status": "draft", "total_amount": 10,
             "due_date": "2026-03-30"},
            {"invoice_number": "INV-4", "status": "paid", "total_amount": 500,
             "due_date": "2026-02-01"},
        ]
    )
    user = await make_user(permissions=["invoices:view"])

    snapshot = await DashboardService(db, SLUG, now=NOW).build_snapshot(user)
    invoices = snapshot.invoices

    assert invoices.error is None
    assert invoices.unpaid_count == 3
    assert invoices.total_unpaid_value == 210.5
    assert [i.invoice_number for i in invoices.unpaid] == ["INV-1", "INV-2", "INV-3"]
    assert invoices.unpaid[0].vendor_name == "Booker Wholesale"
    assert invoices.unpaid[2].vendor_name is None
    assert invoices.overdue_count == 1
    assert [i.invoice_number for i in invoices.overdue] == ["INV-1"]
    assert [i.invoice_number for i in invoices.due_today] == ["INV-2"]


async def test_quote_values_split_by_status_and_expiry(db, tenant, make_user):
    await tenant("quotes").insert_many(
        [
            {"status": "draft", "total_amount": 50},
            {"status": "sent", "total_amount": 100, "valid_until": "2026-04-01"},
            {"status": "sent", "total_amount": 40, "valid_until": "2026-03-01"},
            {"status": "accepted", "total_amount": 250.5},
        ]
    )
    user = await make_user(permissions=["quotes:view"])

    quotes = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).quotes

    assert quotes.draft_count == 1
    assert quotes.total_pending_value == 100
    assert quotes.total_expired_value == 40
    assert quotes.total_accepted_value == 250.5


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class _FailingCollection:
    def __init__(self, name):
        self.name = name

    async def count_documents(self, *args, **kwargs):
        raise RuntimeError(f"{self.name} unavailable")

    def aggregate(self, *args, **kwargs):
        raise RuntimeError(f"{self.name} unavailable")


def _fail_collection(monkeypatch, broken: str):
    original = DashboardService._col

    def _col(self, name):
        return _FailingCollection(name) if name == broken else original(self, name)

    monkeypatch.setattr(DashboardService, "_col", _col)


async def test_parking_arrivals_and_pending_payments(db, tenant, make_user):
    await tenant("parking_bookings").insert_many(
        [
            {"reference": "PK-A", "start_at": _utc(2026, 3, 11, 18), "status": "confirmed", "payment_status": "paid"},
            {"reference": "PK-B", "start_at": _utc(2026, 3, 11, 9), "status": "pending_payment", "payment_status": "pending"},
            {"reference": "PK-C", "start_at": _utc(2026, 3, 13, 10), "status": "confirmed", "payment_status": "pending"},
            {"reference": "PK-D", "start_at": _utc(2026, 3, 12, 10), "status": "cancelled", "payment_status": "pending"},
            {"reference": "PK-E", "start_at": _utc(2026, 3, 10, 10), "status": "confirmed", "payment_status": "pending"},
        ]
    )
    user = await make_user(permissions=["parking:view"])

    parking = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).parking

    assert parking.error is None
    assert [b.reference for b in parking.upcoming] == ["PK-B", "PK-A", "PK-C"]
    assert parking.total_upcoming == 3
    assert parking.arrivals_today == 2
    assert parking.pending_payments == 2
    assert parking.next_booking.reference == "PK-B"


async def test_private_bookings_open_statuses_and_days_until(db, tenant, make_user):
    await tenant("private_bookings").insert_many(
        [
            {"customer_name": "Alex", "event_date": "2026-03-11", "start_time": "18:00", "status": "draft"},
            {"customer_name": "Jordan", "event_date": "2026-03-20", "start_time": "19:00", "status": "confirmed"},
            {"customer_name": "Casey", "event_date": "2026-03-15", "start_time": "19:00", "status": "cancelled"},
            {"customer_name": "Robin", "event_date": "2026-03-01", "start_time": "19:00", "status": "confirmed"},
            {"customer_name": "Sam", "event_date": "2026-03-11", "start_time": "12:00", "status": "confirmed"},
        ]
    )
    user = await make_user(permissions=["private_bookings:view"])

    bookings = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).private_bookings

    assert bookings.error is None
    assert [b.customer_name for b in bookings.upcoming] == ["Sam", "Alex", "Jordan"]
    assert [b.days_until_event for b in bookings.upcoming] == [0, 0, 9]
    assert bookings.total_upcoming == 3


async def test_customer_signup_windows(db, tenant, make_user):
    await tenant("customers").insert_many(
        [
            {"name": "a", "created_at": _utc(2026, 3, 10, 9)},
            {"name": "b", "created_at": _utc(2026, 3, 5, 12)},
            {"name": "c", "created_at": _utc(2026, 3, 2, 9)},
            {"name": "d", "created_at": _utc(2026, 2, 20, 9)},
            {"name": "e", "created_at": _utc(2026, 2, 1, 0)},
            {"name": "f", "created_at": _utc(2026, 1, 31, 23)},
        ]
    )
    user = await make_user(permissions=["customers:view"])

    customers = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).customers

    assert customers.error is None
    assert customers.total == 6
    assert customers.new_this_week == 2
    assert customers.new_this_month == 3
    assert customers.new_last_month == 2


async def test_unread_counts_only_inbound_messages(db, tenant, make_user):
    await tenant("messages").insert_many(
        [
            {"direction": "inbound", "read_at": None},
            {"direction": "inbound"},
            {"direction": "inbound", "read_at": _utc(2026, 3, 11, 8)},
            {"direction": "outbound", "read_at": None},
        ]
    )
    user = await make_user(permissions=["messages:view"])

    messages = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).messages

    assert messages.error is None
    assert messages.unread == 2


async def test_system_health_counts_recent_failures(db, tenant, make_user):
    await tenant("messages").insert_many(
        [
            {"status": "failed", "created_at": _utc(2026, 3, 11, 6)},
            {"status": "failed", "created_at": _utc(2026, 3, 9, 6)},
            {"status": "delivered", "created_at": _utc(2026, 3, 11, 6)},
        ]
    )
    await tenant("cron_job_runs").insert_many(
        [
            {"status": "failed", "created_at": _utc(2026, 3, 11, 2)},
            {"status": "failed", "created_at": _utc(2026, 3, 10, 13)},
            {"status": "succeeded", "created_at": _utc(2026, 3, 11, 2)},
        ]
    )
    user = await make_user(permissions=["settings:view"])

    health = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).system_health

    assert health.error is None
    assert health.sms_failures_24h == 1
    assert health.failed_cron_jobs_24h == 2


async def test_cron_lookup_failure_degrades_to_zero(db, tenant, make_user, monkeypatch):
    await tenant("messages").insert_one({"status": "failed", "created_at": _utc(2026, 3, 11, 6)})
    _fail_collection(monkeypatch, "cron_job_runs")
    user = await make_user(permissions=["settings:view"])

    health = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).system_health

    assert health.error is None
    assert health.sms_failures_24h == 1
    assert health.failed_cron_jobs_24h == 0


async def test_sms_lookup_failure_fails_system_health(db, make_user, monkeypatch):
    _fail_collection(monkeypatch, "messages")
    user = await make_user(permissions=["settings:view"])

    health = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).system_health

    assert health.error == "Failed to load system health"


async def test_receipts_openai_cost_unknown_when_usage_lookup_fails(db, tenant, make_user, monkeypatch):
    await tenant("receipt_transactions").insert_many(
        [{"status": "pending"}, {"status": "pending"}, {"status": "cant_find"}, {"status": "completed"}]
    )
    await tenant("receipt_batches").insert_one({"uploaded_at": _utc(2026, 3, 10, 9)})
    _fail_collection(monkeypatch, "ai_usage_events")
    user = await make_user(permissions=["receipts:view"])

    receipts = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).receipts

    assert receipts.error is None
    assert receipts.pending_count == 2
    assert receipts.needs_attention == 2
    assert receipts.cant_find_count == 1
    assert receipts.last_import_at.startswith("2026-03-10T09:00")
    assert receipts.openai_cost is None


async def test_receipts_openai_cost_sums_usage(db, tenant, make_user):
    await tenant("ai_usage_events").insert_many([{"cost": 0.0012}, {"cost": 0.00031}])
    user = await make_user(permissions=["receipts:view"])

    receipts = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).receipts

    assert receipts.openai_cost == 0.0015


async def test_cashing_up_compares_completed_days(db, tenant, make_user):
    site_id = (await tenant("sites").insert_one({"name": "Riverside"})).inserted_id
    await tenant("cashup_sessions").insert_many(
        [
            # this week (Mon 9th - Wed 11th)
            {"site_id": site_id, "session_date": "2026-03-09", "status": "submitted", "total_counted_amount": 1000},
            {"site_id": site_id, "session_date": "2026-03-10", "status": "approved", "total_counted_amount": 1200},
            {"site_id": site_id, "session_date": "2026-03-11", "status": "draft", "total_counted_amount": 500},
            # last week, same two days plus one extra
            {"site_id": site_id, "session_date": "2026-03-02", "status": "approved", "total_counted_amount": 900},
            {"site_id": site_id, "session_date": "2026-03-03", "status": "approved", "total_counted_amount": 1100},
            {"site_id": site_id, "session_date": "2026-03-04", "status": "approved", "total_counted_amount": 5000},
            # 52 weeks earlier
            {"site_id": site_id, "session_date": "2025-03-10", "status": "approved", "total_counted_amount": 800},
        ]
    )
    await tenant("cashup_targets").insert_many(
        [
            {"site_id": site_id, "day_of_week": 1, "target_amount": 900, "effective_from": "2025-01-01"},
            {"site_id": site_id, "day_of_week": 1, "target_amount": 1100, "effective_from": "2026-01-01"},
            {"site_id": site_id, "day_of_week": 2, "target_amount": 1000, "effective_from": "2026-01-01"},
            {"site_id": site_id, "day_of_week": 3, "target_amount": 7000, "effective_from": "2026-01-01"},
        ]
    )
    user = await make_user(permissions=["cashing_up:view"])

    cashing_up = (await DashboardService(db, SLUG, now=NOW).build_snapshot(user)).cashing_up

    assert cashing_up.error is None
    assert cashing_up.completed_through == "Tuesday"
    assert cashing_up.this_week_total == 2200
    assert cashing_up.last_week_total == 2000
    assert cashing_up.last_year_total == 800
    assert cashing_up.sessions_submitted_count == 2
    assert cashing_up.this_week_target == 2100


async def test_snapshot_is_cached_until_revalidated(db, make_user, monkeypatch):
    builds = 0
    original = DashboardService.build_snapshot

    async def counting(self, user):
        nonlocal builds
        builds += 1
        return await original(self, user)

    monkeypatch.setattr(DashboardService, "build_snapshot", counting)
    user = await make_user(permissions=["events:view"])

    first = await load_dashboard_snapshot(db, SLUG, str(user["_id"]))
    second = await load_dashboard_snapshot(db, SLUG, str(user["_id"]))

    assert builds == 1
    assert second.generated_at == first.generated_at

    assert revalidate_tag(DASHBOARD_TAG) == 1
    third = await load_dashboard_snapshot(db, SLUG, str(user["_id"]))

    assert builds == 2
    assert third is not first


@pytest.mark.parametrize("user_id", [None, "not-an-id", str(ObjectId())])
async def test_unresolvable_user_is_fatal(db, user_id):
    with pytest.raises(HTTPException) as exc:
        await load_dashboard_snapshot(db, SLUG, user_id)

    assert exc.value.status_code == 401
    assert exc.value.detail == "Not authenticated"


async def test_inactive_user_is_rejected(db, make_user):
    user = await make_user(permissions=["events:view"], is_active=False)

    with pytest.raises(HTTPException) as exc:
        await load_dashboard_snapshot(db, SLUG, str(user["_id"]))

    assert exc.value.status_code == 401
