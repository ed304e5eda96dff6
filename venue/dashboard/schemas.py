"""
Dashboard snapshot shapes.

Every module slice carries `permitted` and an optional `error`. Data fields
default to zero / empty so a slice that is not permitted, or whose fetch
failed, is still well-formed.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ModuleSnapshot(BaseModel):
    permitted: bool = False
    error: Optional[str] = None


# ── Events ───────────────────────────────────────────────────────


class EventSummary(BaseModel):
    id: str
    name: str
    date: Optional[str] = None
    time: Optional[str] = None


class EventsSnapshot(ModuleSnapshot):
    today: list[EventSummary] = Field(default_factory=list)
    upcoming: list[EventSummary] = Field(default_factory=list)
    total_upcoming: int = 0
    next_upcoming: Optional[EventSummary] = None


# ── Customers / messages ─────────────────────────────────────────


class CustomersSnapshot(ModuleSnapshot):
    total: int = 0
    new_this_week: int = 0
    new_this_month: int = 0
    new_last_month: int = 0


class MessagesSnapshot(ModuleSnapshot):
    unread: int = 0


# ── Bookings ─────────────────────────────────────────────────────


class PrivateBookingSummary(BaseModel):
    id: str
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    event_date: Optional[str] = None
    start_time: Optional[str] = None
    status: Optional[str] = None
    hold_expiry: Optional[str] = None
    deposit_status: Optional[str] = None
    balance_due_date: Optional[str] = None
    days_until_event: Optional[int] = None


class PrivateBookingsSnapshot(ModuleSnapshot):
    upcoming: list[PrivateBookingSummary] = Field(default_factory=list)
    total_upcoming: int = 0


class ParkingBookingSummary(BaseModel):
    id: str
    reference: Optional[str] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    vehicle_registration: Optional[str] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None


class ParkingSnapshot(ModuleSnapshot):
    upcoming: list[ParkingBookingSummary] = Field(default_factory=list)
    total_upcoming: int = 0
    arrivals_today: int = 0
    pending_payments: int = 0
    next_booking: Optional[ParkingBookingSummary] = None


# ── Finance ──────────────────────────────────────────────────────


class InvoiceSummary(BaseModel):
    id: str
    invoice_number: Optional[str] = None
    total_amount: Optional[float] = None
    status: Optional[str] = None
    due_date: Optional[str] = None
    vendor_name: Optional[str] = None


class InvoicesSnapshot(ModuleSnapshot):
    unpaid: list[InvoiceSummary] = Field(default_factory=list)
    unpaid_count: int = 0
    overdue_count: int = 0
    total_unpaid_value: float = 0.0
    overdue: list[InvoiceSummary] = Field(default_factory=list)
    due_today: list[InvoiceSummary] = Field(default_factory=list)


class ReceiptsSnapshot(ModuleSnapshot):
    pending_count: int = 0
    cant_find_count: int = 0
    needs_attention: int = 0
    last_import_at: Optional[str] = None
    openai_cost: Optional[float] = None


class QuotesSnapshot(ModuleSnapshot):
    total_pending_value: float = 0.0
    total_expired_value: float = 0.0
    total_accepted_value: float = 0.0
    draft_count: int = 0


class CashingUpSnapshot(ModuleSnapshot):
    this_week_total: float = 0.0
    this_week_target: float = 0.0
    last_week_total: float = 0.0
    last_year_total: float = 0.0
    sessions_submitted_count: int = 0
    completed_through: Optional[str] = None


# ── People / admin ───────────────────────────────────────────────


class EmployeesSnapshot(ModuleSnapshot):
    active_count: int = 0


class RolesSnapshot(ModuleSnapshot):
    total_roles: int = 0


class ShortLinksSnapshot(ModuleSnapshot):
    active_count: int = 0


class UsersSnapshot(ModuleSnapshot):
    total_users: int = 0


class LoyaltySnapshot(ModuleSnapshot):
    pass


class SystemHealthSnapshot(ModuleSnapshot):
    sms_failures_24h: int = 0
    failed_cron_jobs_24h: int = 0


class ProfileSnapshot(BaseModel):
    permitted: bool = True
    email: Optional[str] = None
    last_sign_in_at: Optional[str] = None


# ── Snapshot ─────────────────────────────────────────────────────


class DashboardSnapshot(BaseModel):
    generated_at: str
    user: ProfileSnapshot
    events: EventsSnapshot
    customers: CustomersSnapshot
    messages: MessagesSnapshot
    private_bookings: PrivateBookingsSnapshot
    parking: ParkingSnapshot
    invoices: InvoicesSnapshot
    employees: EmployeesSnapshot
    receipts: ReceiptsSnapshot
    quotes: QuotesSnapshot
    roles: RolesSnapshot
    short_links: ShortLinksSnapshot
    users: UsersSnapshot
    loyalty: LoyaltySnapshot
    cashing_up: CashingUpSnapshot
    system_health: SystemHealthSnapshot
