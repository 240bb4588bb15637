"""ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None

CATEGORIES = (
    "income",
    "housing",
    "food",
    "transport",
    "shopping",
    "bills",
    "health",
    "entertainment",
    "family",
    "services",
    "transfers",
    "taxes",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("institution", sa.String(length=100)),
        sa.Column(
            "type",
            sa.Enum("checking", "savings", "credit", "investment", name="accounttype"),
            nullable=False,
        ),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("color", sa.String(length=9)),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("initial_balance_cents", sa.Integer()),
        sa.Column("initial_balance_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_recalculated_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("merchant", sa.String(length=120)),
        sa.Column("signature", sa.String(length=200)),
        sa.Column("category", sa.Enum(*CATEGORIES, name="category"), nullable=False),
        sa.Column("subcategory", sa.String(length=60)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("average_amount_cents", sa.Integer()),
        sa.Column("is_variable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "frequency",
            sa.Enum(
                "weekly",
                "biweekly",
                "monthly",
                "quarterly",
                "yearly",
                name="recurringfrequency",
            ),
            nullable=False,
        ),
        sa.Column(
            "type",
            sa.Enum("subscription", "bill", "loan", "income", name="recurringtype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "cancelled", "completed", name="recurringstatus"),
            nullable=False,
        ),
        sa.Column("last_detected", sa.Date()),
        sa.Column("next_expected", sa.Date()),
        sa.Column("start_date", sa.Date()),
        sa.Column("end_date", sa.Date()),
        sa.Column("cancelled_at", sa.DateTime()),
        sa.Column("is_excluded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_user_created", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "(status NOT IN ('cancelled', 'completed')) OR end_date IS NOT NULL",
            name="ck_recurring_ended_has_end_date",
        ),
    )
    op.create_index(
        "ix_recurring_account_signature",
        "recurring_transactions",
        ["account_id", "signature"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("value_date", sa.Date()),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("direction", sa.Enum("credit", "debit", name="direction"), nullable=False),
        sa.Column("merchant", sa.String(length=120), nullable=False),
        sa.Column("merchant_original", sa.String(length=255)),
        sa.Column("description", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("category", sa.Enum(*CATEGORIES, name="category"), nullable=False),
        sa.Column("subcategory", sa.String(length=60)),
        sa.Column("payment_method", sa.String(length=20)),
        sa.Column("tags_json", sa.Text()),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("balance_after_cents", sa.Integer()),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "recurring_id",
            sa.Integer(),
            sa.ForeignKey("recurring_transactions.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "(amount_cents < 0 AND direction = 'debit') OR "
            "(amount_cents >= 0 AND direction = 'credit')",
            name="ck_transactions_direction_sign",
        ),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date", "id"]
    )
    op.create_index(
        "ix_transactions_account_fingerprint",
        "transactions",
        ["account_id", "fingerprint"],
    )

    op.create_table(
        "balance_checkpoints",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("as_of_date", sa.Date(), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
    )
    op.create_index(
        "ix_balance_checkpoint_account_date",
        "balance_checkpoints",
        ["account_id", "as_of_date"],
    )

    op.create_table(
        "recurring_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "recurring_id",
            sa.Integer(),
            sa.ForeignKey("recurring_transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=10), nullable=False, server_default="paid"),
        sa.UniqueConstraint(
            "recurring_id", "transaction_id", name="uq_occurrence_recurring_txn"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("category", sa.Enum(*CATEGORIES, name="category"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "period", sa.Enum("monthly", "yearly", name="budgetperiod"), nullable=False
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("deadline", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "linked_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )

    op.create_table(
        "settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=100), nullable=False, unique=True),
        sa.Column("value", sa.Text(), nullable=False),
    )


def downgrade():
    op.drop_table("settings")
    op.drop_table("goals")
    op.drop_table("budgets")
    op.drop_table("recurring_occurrences")
    op.drop_index("ix_balance_checkpoint_account_date", table_name="balance_checkpoints")
    op.drop_table("balance_checkpoints")
    op.drop_index("ix_transactions_account_fingerprint", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_account_signature", table_name="recurring_transactions")
    op.drop_table("recurring_transactions")
    op.drop_table("accounts")
