import json
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class Direction(str, Enum):
    credit = "credit"
    debit = "debit"

    @classmethod
    def for_amount(cls, amount_cents: int) -> "Direction":
        return cls.debit if amount_cents < 0 else cls.credit


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    investment = "investment"


class Category(str, Enum):
    income = "Income"
    housing = "Housing"
    food = "Food"
    transport = "Transport"
    shopping = "Shopping"
    bills = "Bills"
    health = "Health"
    entertainment = "Entertainment"
    family = "Family"
    services = "Services"
    transfers = "Transfers"
    taxes = "Taxes"


# Fallback for anything the classifier cannot place.
DEFAULT_CATEGORY = Category.services
DEFAULT_SUBCATEGORY = "Other"

SUBCATEGORIES: dict[Category, tuple[str, ...]] = {
    Category.income: ("Salary", "Bonus", "Refunds", "Benefits", "Investment", "Other"),
    Category.housing: (
        "Rent",
        "Mortgage",
        "Utilities",
        "Insurance",
        "Repairs",
        "Furniture",
    ),
    Category.food: (
        "Groceries",
        "Restaurants",
        "Delivery",
        "Fast Food",
        "Coffee & Bakery",
    ),
    Category.transport: (
        "Fuel",
        "Public Transit",
        "Ride-hailing",
        "Parking",
        "Car Service",
        "Insurance",
    ),
    Category.shopping: ("Clothing", "Electronics", "Online", "Retail", "Beauty"),
    Category.bills: (
        "Phone",
        "Internet",
        "Subscriptions",
        "Software",
        "Insurance",
        "Bank Fees",
    ),
    Category.health: ("Pharmacy", "Doctor", "Hospital", "Insurance"),
    Category.entertainment: ("Cinema", "Games", "Events", "Sports", "Hobbies"),
    Category.family: ("Childcare", "Education", "Activities", "Clothing"),
    Category.services: ("Laundry", "Cleaning", "Professional", "Other"),
    Category.transfers: ("To Savings", "To Investment", "To Others", "From Others"),
    Category.taxes: ("Income Tax", "Property Tax", "Fines", "Other"),
}


class RecurringFrequency(str, Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class RecurringType(str, Enum):
    subscription = "subscription"
    bill = "bill"
    loan = "loan"
    income = "income"


class RecurringStatus(str, Enum):
    active = "active"
    paused = "paused"
    cancelled = "cancelled"
    completed = "completed"


TERMINAL_STATUSES = frozenset({RecurringStatus.cancelled, RecurringStatus.completed})

DEFAULT_CATEGORY_BY_TYPE: dict[RecurringType, Category] = {
    RecurringType.subscription: Category.bills,
    RecurringType.bill: Category.bills,
    RecurringType.loan: Category.housing,
    RecurringType.income: Category.income,
}


class BudgetPeriod(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    institution: Mapped[Optional[str]] = mapped_column(String(100))
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.checking
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    color: Mapped[Optional[str]] = mapped_column(String(9))
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    initial_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    initial_balance_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_recalculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )
    checkpoints: Mapped[list["BalanceCheckpoint"]] = relationship(
        "BalanceCheckpoint", back_populates="account"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    value_date: Mapped[Optional[date]] = mapped_column(Date)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[Direction] = mapped_column(SAEnum(Direction), nullable=False)
    merchant: Mapped[str] = mapped_column(String(120), nullable=False)
    merchant_original: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Category] = mapped_column(
        SAEnum(Category), nullable=False, default=DEFAULT_CATEGORY
    )
    subcategory: Mapped[Optional[str]] = mapped_column(String(60))
    payment_method: Mapped[Optional[str]] = mapped_column(String(20))
    tags_json: Mapped[Optional[str]] = mapped_column(Text)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    balance_after_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_transactions.id", ondelete="SET NULL")
    )

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    recurring: Mapped[Optional["RecurringTransaction"]] = relationship(
        "RecurringTransaction", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date", "id"),
        Index("ix_transactions_account_fingerprint", "account_id", "fingerprint"),
        CheckConstraint(
            "(amount_cents < 0 AND direction = 'debit') OR "
            "(amount_cents >= 0 AND direction = 'credit')",
            name="ck_transactions_direction_sign",
        ),
    )

    @property
    def tags(self) -> list[str]:
        if not self.tags_json:
            return []
        return list(json.loads(self.tags_json))

    @tags.setter
    def tags(self, value: list[str]) -> None:
        clean = sorted({t.strip() for t in value if t and t.strip()})
        self.tags_json = json.dumps(clean) if clean else None


class BalanceCheckpoint(Base, TimestampMixin):
    __tablename__ = "balance_checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["Account"] = relationship("Account", back_populates="checkpoints")

    __table_args__ = (
        Index("ix_balance_checkpoint_account_date", "account_id", "as_of_date"),
    )


class RecurringTransaction(Base, TimestampMixin):
    __tablename__ = "recurring_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    merchant: Mapped[Optional[str]] = mapped_column(String(120))
    signature: Mapped[Optional[str]] = mapped_column(String(200))
    category: Mapped[Category] = mapped_column(SAEnum(Category), nullable=False)
    subcategory: Mapped[Optional[str]] = mapped_column(String(60))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    average_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_variable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    frequency: Mapped[RecurringFrequency] = mapped_column(
        SAEnum(RecurringFrequency), nullable=False, default=RecurringFrequency.monthly
    )
    type: Mapped[RecurringType] = mapped_column(
        SAEnum(RecurringType), nullable=False, default=RecurringType.subscription
    )
    status: Mapped[RecurringStatus] = mapped_column(
        SAEnum(RecurringStatus), nullable=False, default=RecurringStatus.active
    )
    last_detected: Mapped[Optional[date]] = mapped_column(Date)
    next_expected: Mapped[Optional[date]] = mapped_column(Date)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_excluded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_user_created: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    occurrences: Mapped[list["RecurringOccurrence"]] = relationship(
        "RecurringOccurrence",
        back_populates="recurring",
        cascade="all, delete-orphan",
        order_by="(RecurringOccurrence.date, RecurringOccurrence.id)",
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring"
    )

    __table_args__ = (
        Index("ix_recurring_account_signature", "account_id", "signature"),
        CheckConstraint(
            "(status NOT IN ('cancelled', 'completed')) OR end_date IS NOT NULL",
            name="ck_recurring_ended_has_end_date",
        ),
    )

    @property
    def is_ended(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_shown_active(self) -> bool:
        return self.status == RecurringStatus.active and not self.is_excluded


class RecurringOccurrence(Base):
    __tablename__ = "recurring_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recurring_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_transactions.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="paid")

    recurring: Mapped["RecurringTransaction"] = relationship(
        "RecurringTransaction", back_populates="occurrences"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_id", "transaction_id", name="uq_occurrence_recurring_txn"
        ),
    )

    @property
    def key(self) -> tuple:
        if self.transaction_id is not None:
            return ("txn", self.transaction_id)
        return ("date", self.date, self.amount_cents)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category: Mapped[Category] = mapped_column(SAEnum(Category), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[BudgetPeriod] = mapped_column(
        SAEnum(BudgetPeriod), nullable=False, default=BudgetPeriod.monthly
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    deadline: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    linked_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )


class Setting(Base):
    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
