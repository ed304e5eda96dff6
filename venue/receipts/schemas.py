"""
Receipt workspace schemas — bank-statement transactions and auto-tagging rules.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ReceiptStatusEnum(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    AUTO_COMPLETED = "auto_completed"
    NO_RECEIPT_REQUIRED = "no_receipt_required"
    CANT_FIND = "cant_find"


class RuleDirectionEnum(str, Enum):
    IN = "in"
    OUT = "out"
    BOTH = "both"


class RetroScopeEnum(str, Enum):
    PENDING = "pending"
    ALL = "all"


EXPENSE_CATEGORIES = (
    "Total Staff",
    "Business Rate",
    "Water Rates",
    "Heat/Light/Power",
    "Premises Repairs/Maintenance",
    "Equipment Repairs/Maintenance",
    "Gardening Expenses",
    "Buildings Insurance",
    "Maintenance and Service Plan Charges",
    "Licensing",
    "Tenant Insurance",
    "Entertainment",
    "Sky / PRS / Vidimix",
    "Marketing/Promotion/Advertising",
    "Print/Post Stationary",
    "Telephone",
    "Travel/Car",
    "Waste Disposal/Cleaning/Hygiene",
    "Third Party Booking Fee",
    "Accountant/StockTaker/Professional Fees",
    "Bank Charges/Credit Card Commission",
    "Equipment Hire",
    "Sundries/Consumables",
    "Drinks Stock",
    "Food Stock",
)

VENDOR_NAME_MAX_LENGTH = 120


def _clean_optional(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


def _check_expense_category(v):
    if v is None:
        return v
    for option in EXPENSE_CATEGORIES:
        if option.lower() == v.strip().lower():
            return option
    raise ValueError("Expense category is not recognised")


# ── Rules ────────────────────────────────────────────────────────


class RuleBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=500)
    match_description: Optional[str] = Field(
        None, max_length=300, description="Comma-separated keywords"
    )
    match_transaction_type: Optional[str] = Field(None, max_length=120)
    match_direction: RuleDirectionEnum = RuleDirectionEnum.BOTH
    match_min_amount: Optional[float] = Field(None, ge=0)
    match_max_amount: Optional[float] = Field(None, ge=0)
    auto_status: ReceiptStatusEnum = ReceiptStatusEnum.NO_RECEIPT_REQUIRED
    set_vendor_name: Optional[str] = Field(None, max_length=VENDOR_NAME_MAX_LENGTH)
    set_expense_category: Optional[str] = None
    is_active: bool = True

    @field_validator(
        "description", "match_description", "match_transaction_type", "set_vendor_name",
        mode="before",
    )
    @classmethod
    def strip_text(cls, v):
        return _clean_optional(v)

    @field_validator("set_expense_category")
    @classmethod
    def validate_expense(cls, v):
        return _check_expense_category(_clean_optional(v))

    @model_validator(mode="after")
    def validate_rule(self):
        if (
            self.match_min_amount is not None
            and self.match_max_amount is not None
            and self.match_min_amount > self.match_max_amount
        ):
            raise ValueError("Minimum amount cannot exceed maximum amount")
        if self.set_expense_category and self.match_direction != RuleDirectionEnum.OUT:
            raise ValueError("Expense auto-tagging rules must use outgoing direction")
        return self


class CreateRuleRequest(RuleBase):
    """POST /receipts/rules"""


class UpdateRuleRequest(RuleBase):
    """PUT /receipts/rules/{id} — full replacement of the rule definition."""


class ToggleRuleRequest(BaseModel):
    is_active: bool


class RetroStepRequest(BaseModel):
    scope: RetroScopeEnum = RetroScopeEnum.PENDING
    offset: int = Field(0, ge=0)
    chunk_size: Optional[int] = Field(None, ge=1, le=500)


class RetroFinalizeRequest(BaseModel):
    scope: RetroScopeEnum = RetroScopeEnum.PENDING
    reviewed: int = Field(0, ge=0)
    status_auto_updated: int = Field(0, ge=0)
    classification_updated: int = Field(0, ge=0)
    matched: int = Field(0, ge=0)
    vendor_intended: int = Field(0, ge=0)
    expense_intended: int = Field(0, ge=0)


class RetroRunRequest(BaseModel):
    scope: RetroScopeEnum = RetroScopeEnum.PENDING
    offset: int = Field(0, ge=0)


# ── Bulk review groups ───────────────────────────────────────────


class GroupApplyRequest(BaseModel):
    """
    POST /receipts/groups/apply

    Omitting `vendor_name` leaves vendors untouched; sending it as null
    clears them. Same for `expense_category`.
    """

    details: str = Field(..., min_length=1)
    vendor_name: Optional[str] = Field(None, max_length=VENDOR_NAME_MAX_LENGTH)
    expense_category: Optional[str] = None
    statuses: Optional[List[ReceiptStatusEnum]] = None

    @field_validator("vendor_name", mode="before")
    @classmethod
    def strip_vendor(cls, v):
        return _clean_optional(v)

    @field_validator("expense_category")
    @classmethod
    def validate_expense(cls, v):
        return _check_expense_category(_clean_optional(v))


class GroupRuleRequest(BaseModel):
    """POST /receipts/groups/rule"""

    details: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=500)
    match_description: Optional[str] = Field(None, max_length=300)
    match_direction: RuleDirectionEnum = RuleDirectionEnum.BOTH
    auto_status: ReceiptStatusEnum = ReceiptStatusEnum.NO_RECEIPT_REQUIRED
    vendor_name: Optional[str] = Field(None, max_length=VENDOR_NAME_MAX_LENGTH)
    expense_category: Optional[str] = None

    @field_validator("description", "match_description", "vendor_name", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _clean_optional(v)

    @field_validator("expense_category")
    @classmethod
    def validate_expense(cls, v):
        return _check_expense_category(_clean_optional(v))

    @model_validator(mode="after")
    def validate_direction(self):
        if self.expense_category and self.match_direction != RuleDirectionEnum.OUT:
            raise ValueError("Expense auto-tagging rules must use outgoing direction")
        return self


# ── Single transaction ───────────────────────────────────────────


class ClassificationUpdateRequest(BaseModel):
    """
    PATCH /receipts/transactions/{id}/classification

    Same presence semantics as GroupApplyRequest.
    """

    vendor_name: Optional[str] = Field(None, max_length=VENDOR_NAME_MAX_LENGTH)
    expense_category: Optional[str] = None

    @field_validator("vendor_name", mode="before")
    @classmethod
    def strip_vendor(cls, v):
        return _clean_optional(v)

    @field_validator("expense_category")
    @classmethod
    def validate_expense(cls, v):
        return _check_expense_category(_clean_optional(v))


class MarkTransactionRequest(BaseModel):
    """
    PATCH /receipts/transactions/{id}/status

    `receipt_required` defaults to true only when moving back to pending.
    """

    status: ReceiptStatusEnum
    note: Optional[str] = Field(None, max_length=500)
    receipt_required: Optional[bool] = None
