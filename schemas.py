import datetime as dt
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    BudgetPeriod,
    Category,
    Direction,
    RecurringFrequency,
    RecurringStatus,
    RecurringType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    institution: Optional[str] = Field(default=None, max_length=100)
    type: AccountType = AccountType.checking
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    color: Optional[str] = Field(default=None, max_length=9)
    initial_balance_cents: Optional[int] = None
    initial_balance_date: Optional[date] = None


class InitialBalanceIn(BaseModel):
    initial_balance_cents: int
    initial_balance_date: Optional[date] = None


class BalanceCheckpointIn(BaseModel):
    as_of_date: date
    balance_cents: int
    note: Optional[str] = Field(default=None, max_length=500)


class RecurringTransactionIn(BaseModel):
    account_id: int
    name: str = Field(..., min_length=1, max_length=120)
    merchant: Optional[str] = Field(default=None, max_length=120)
    category: Optional[Category] = None
    subcategory: Optional[str] = Field(default=None, max_length=60)
    amount_cents: int
    frequency: RecurringFrequency = RecurringFrequency.monthly
    type: RecurringType = RecurringType.subscription
    start_date: Optional[date] = None
    next_expected: Optional[date] = None


class RecurringTransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    merchant: Optional[str] = Field(default=None, max_length=120)
    category: Optional[Category] = None
    subcategory: Optional[str] = Field(default=None, max_length=60)
    amount_cents: Optional[int] = None
    frequency: Optional[RecurringFrequency] = None
    next_expected: Optional[date] = None


class TypeChangeIn(BaseModel):
    type: RecurringType


class MergeIn(BaseModel):
    target_id: int
    source_id: int


class ParsedTransaction(BaseModel):
    """One normalized statement row, ready for duplicate checks and import."""

    row_number: int
    account_id: int
    date: dt.date
    value_date: Optional[dt.date] = None
    amount_cents: int
    direction: Direction
    merchant: str
    merchant_original: str
    description: str = ""
    category: Category
    subcategory: Optional[str] = None
    payment_method: str = "other"
    statement_balance_cents: Optional[int] = None
    fingerprint: str
    is_duplicate: bool = False


class RowSkippedOut(BaseModel):
    row_number: int
    reason: str


class DateRange(BaseModel):
    start: date
    end: date


class ParseResult(BaseModel):
    transactions: list[ParsedTransaction]
    total_rows: int
    new_count: int
    duplicate_count: int
    date_range: Optional[DateRange] = None
    skipped_rows: list[RowSkippedOut] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ImportSummary(BaseModel):
    account_id: int
    imported: int
    skipped_duplicates: int
    batches: int
    cancelled: bool = False
    warnings: list[str] = Field(default_factory=list)
    recurring_detected: int = 0


class SyncResult(BaseModel):
    recurring_updated: int = 0
    transactions_linked: int = 0
    new_recurring_created: int = 0
    errors: list[str] = Field(default_factory=list)


class RecalculationOut(BaseModel):
    account_id: int
    balance_cents: int
    transactions: int
    warnings: list[str] = Field(default_factory=list)


# Snapshot rows. Unknown keys are ignored so newer exports stay readable.


class SnapshotAccount(BaseModel):
    id: int
    name: str = Field(..., min_length=1)
    institution: Optional[str] = None
    type: AccountType = AccountType.checking
    currency: str = "EUR"
    color: Optional[str] = None
    balance_cents: int = 0
    initial_balance_cents: Optional[int] = None
    initial_balance_date: Optional[date] = None
    is_active: bool = True


class SnapshotTransaction(BaseModel):
    id: int
    account_id: int
    date: dt.date
    value_date: Optional[dt.date] = None
    amount_cents: int
    direction: Optional[Direction] = None
    merchant: str
    merchant_original: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    category: Category = Category.services
    subcategory: Optional[str] = None
    payment_method: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    fingerprint: Optional[str] = None
    balance_after_cents: Optional[int] = None
    is_recurring: bool = False
    recurring_id: Optional[int] = None


class SnapshotCheckpoint(BaseModel):
    id: int
    account_id: int
    as_of_date: date
    balance_cents: int
    note: Optional[str] = None


class SnapshotOccurrence(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: Optional[int] = None
    date: dt.date
    amount_cents: int
    status: Literal["paid"] = "paid"


class SnapshotRecurring(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    name: str
    merchant: Optional[str] = None
    signature: Optional[str] = None
    category: Category
    subcategory: Optional[str] = None
    amount_cents: int
    average_amount_cents: Optional[int] = None
    is_variable: bool = False
    frequency: RecurringFrequency
    type: RecurringType = RecurringType.subscription
    status: RecurringStatus = RecurringStatus.active
    last_detected: Optional[date] = None
    next_expected: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    cancelled_at: Optional[dt.datetime] = None
    is_excluded: bool = False
    is_user_created: bool = False
    occurrences: list[SnapshotOccurrence] = Field(default_factory=list)


class SnapshotBudget(BaseModel):
    id: int
    category: Category
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    year: int
    month: Optional[int] = Field(default=None, ge=1, le=12)


class SnapshotGoal(BaseModel):
    id: int
    name: str
    target_amount_cents: int
    current_amount_cents: int = 0
    deadline: Optional[date] = None
    is_active: bool = True
    linked_account_id: Optional[int] = None


class SnapshotSetting(BaseModel):
    key: str = Field(..., min_length=1)
    value: str


class SnapshotIssue(BaseModel):
    level: Literal["warning", "error"]
    message: str
    table: Optional[str] = None


class AccountSummary(BaseModel):
    id: int
    name: str
    transactions: int


class SnapshotPreview(BaseModel):
    version: Optional[int] = None
    created_at: Optional[str] = None
    counts: dict[str, int] = Field(default_factory=dict)
    transaction_date_range: Optional[DateRange] = None
    accounts_summary: list[AccountSummary] = Field(default_factory=list)
    issues: list[SnapshotIssue] = Field(default_factory=list)


class RestoreSummary(BaseModel):
    counts: dict[str, int]
    transaction_date_range: Optional[DateRange] = None
    warnings: list[str] = Field(default_factory=list)


# API responses


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    institution: Optional[str] = None
    type: AccountType
    currency: str
    balance_cents: int
    initial_balance_cents: Optional[int] = None
    initial_balance_date: Optional[date] = None
    is_active: bool
    last_recalculated_at: Optional[dt.datetime] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    date: dt.date
    amount_cents: int
    direction: Direction
    merchant: str
    description: Optional[str] = None
    category: Category
    subcategory: Optional[str] = None
    payment_method: Optional[str] = None
    balance_after_cents: Optional[int] = None
    is_recurring: bool
    recurring_id: Optional[int] = None


class CheckpointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    as_of_date: date
    balance_cents: int
    note: Optional[str] = None


class RecurringOut(SnapshotRecurring):
    is_shown_active: bool
