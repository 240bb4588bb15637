import json
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

import backups
import ledger
from database import Base, make_engine, make_session_factory
from models import (
    Account,
    BalanceCheckpoint,
    Budget,
    Category,
    Direction,
    Goal,
    RecurringStatus,
    RecurringTransaction,
    Setting,
    Transaction,
)
from recurrence import RecurringDetector
from statement_parser import fingerprint


def make_session():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)()


def seed(session) -> None:
    """Two accounts, 60 transactions each, a checkpoint, a detected series and extras."""
    merchants = ["Carrefour", "Netflix", "Shell", "Pharmacie", "Amazon"]
    for idx, name in enumerate(("Checking", "Savings")):
        account = Account(
            name=name, initial_balance_cents=50_000 * (idx + 1), initial_balance_date=date(2024, 1, 1)
        )
        session.add(account)
        session.flush()
        for n in range(60):
            day = date(2024, 1, 1) + timedelta(days=n * 3)
            merchant = merchants[n % len(merchants)]
            cents = -1349 if merchant == "Netflix" else (n + 1) * (-100 if n % 4 else 150)
            session.add(
                Transaction(
                    account_id=account.id,
                    date=day,
                    amount_cents=cents,
                    direction=Direction.for_amount(cents),
                    merchant=merchant,
                    merchant_original=merchant.upper(),
                    category=Category.shopping,
                    fingerprint=fingerprint(account.id, day, cents, merchant),
                )
            )
        session.add(
            BalanceCheckpoint(account_id=account.id, as_of_date=date(2024, 4, 1), balance_cents=40_000)
        )
    session.add(Budget(category=Category.food, amount_cents=40_000, year=2024, month=3))
    session.add(Goal(name="Holiday", target_amount_cents=200_000, linked_account_id=1))
    session.add(Setting(key="theme", value="dark"))
    session.commit()
    ledger.recalculate_all(session)
    RecurringDetector(session).detect(1)


def test_export_restore_round_trip_across_databases():
    source = make_session()
    seed(source)
    snapshot = backups.build_snapshot_v1(source)
    assert snapshot["meta"]["counts"]["transactions"] == 120
    payload = backups.load_snapshot_bytes(backups.dump_snapshot(snapshot, compress=True), "b.json.gz")
    balances = {a.id: a.balance_cents for a in source.scalars(select(Account)).all()}
    after = {t.id: t.balance_after_cents for t in source.scalars(select(Transaction)).all()}

    target = make_session()
    summary = backups.restore_replace_snapshot_v1(target, payload)

    assert summary.counts["accounts"] == 2
    assert summary.counts["transactions"] == 120
    assert summary.counts["recurring"] == 1
    assert summary.transaction_date_range.start == date(2024, 1, 1)
    assert summary.transaction_date_range.end == date(2024, 1, 1) + timedelta(days=59 * 3)
    assert target.scalar(select(func.count(Transaction.id))) == 120
    assert {a.id: a.balance_cents for a in target.scalars(select(Account)).all()} == balances
    assert {t.id: t.balance_after_cents for t in target.scalars(select(Transaction)).all()} == after
    series = target.scalars(select(RecurringTransaction)).one()
    assert len(series.occurrences) == 12
    assert target.scalar(select(Setting.value).where(Setting.key == "theme")) == "dark"


def test_restore_replaces_existing_rows():
    session = make_session()
    seed(session)
    snapshot = json.loads(backups.dump_snapshot(backups.build_snapshot_v1(session)))
    session.add(
        Account(name="Extra", initial_balance_cents=0, initial_balance_date=date(2024, 1, 1))
    )
    session.commit()

    backups.restore_replace_snapshot_v1(session, snapshot)

    names = [a.name for a in session.scalars(select(Account).order_by(Account.id)).all()]
    assert names == ["Checking", "Savings"]


def test_validate_rejects_unknown_version():
    session = make_session()
    seed(session)
    snapshot = backups.build_snapshot_v1(session)
    snapshot["version"] = "v0"

    validation = backups.validate_snapshot_v1(json.loads(json.dumps(snapshot)))

    assert validation.ok is False
    assert validation.snapshot is None
    assert any("Unsupported snapshot version" in i.message for i in validation.preview.issues)
    with pytest.raises(backups.SnapshotInvalid):
        backups.restore_replace_snapshot_v1(session, snapshot)
    assert session.scalar(select(func.count(Transaction.id))) == 120


def test_validate_reports_errors_and_warnings():
    payload = {
        "version": 1,
        "meta": {"created_at": "2024-06-01T10:00:00Z", "counts": {"transactions": 5}},
        "tables": {
            "accounts": [{"id": 1, "name": "Checking"}, {"id": 1, "name": "Dupe"}],
            "transactions": [
                {
                    "id": 10,
                    "account_id": 2,
                    "date": "2024-01-02",
                    "amount_cents": -500,
                    "direction": "credit",
                    "merchant": "Shop",
                }
            ],
            "recurring": [
                {
                    "id": 1,
                    "account_id": 1,
                    "name": "Gym",
                    "category": "Bills",
                    "amount_cents": -3000,
                    "frequency": "monthly",
                    "status": "cancelled",
                }
            ],
            "budgets": [],
            "goals": [],
            "settings": [],
        },
    }

    validation = backups.validate_snapshot_v1(payload)
    errors = [i.message for i in validation.preview.issues if i.level == "error"]
    warnings = [i.message for i in validation.preview.issues if i.level == "warning"]

    assert not validation.ok
    assert any("duplicate key" in m for m in errors)
    assert any("unknown account" in m for m in errors)
    assert any("no end_date" in m for m in errors)
    assert any("balance_checkpoints is missing" in m for m in warnings)
    assert any("direction that disagrees" in m for m in warnings)
    assert any("meta.counts.transactions" in m for m in warnings)
    assert validation.preview.created_at == "2024-06-01T10:00:00Z"


def test_validate_handles_garbage():
    assert not backups.validate_snapshot_v1([1, 2, 3]).ok
    missing = backups.validate_snapshot_v1({"version": 1})
    assert not missing.ok
    assert any("Missing tables" in i.message for i in missing.preview.issues)
    with pytest.raises(backups.SnapshotInvalid):
        backups.load_snapshot_bytes(b"not json at all")
    with pytest.raises(backups.SnapshotInvalid):
        backups.load_snapshot_bytes(b"\x1f\x8bbroken")


def test_failed_restore_rolls_back(monkeypatch):
    session = make_session()
    seed(session)
    snapshot = backups.build_snapshot_v1(session)
    snapshot["tables"]["transactions"] = snapshot["tables"]["transactions"][:10]
    snapshot["tables"]["recurring"] = []
    for row in snapshot["tables"]["transactions"]:
        row["recurring_id"] = None

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger, "recalculate_all", explode)
    with pytest.raises(backups.RestoreFailure):
        backups.restore_replace_snapshot_v1(session, snapshot)

    assert session.scalar(select(func.count(Transaction.id))) == 120
    assert session.scalar(select(func.count(RecurringTransaction.id))) == 1
    assert session.scalar(select(func.count(Account.id))) == 2


def test_cancelled_series_round_trips_with_end_date():
    session = make_session()
    seed(session)
    series = session.scalars(select(RecurringTransaction)).one()
    series.status = RecurringStatus.cancelled
    series.end_date = date(2024, 6, 30)
    session.commit()
    snapshot = backups.build_snapshot_v1(session)

    target = make_session()
    backups.restore_replace_snapshot_v1(target, snapshot)

    restored = target.scalars(select(RecurringTransaction)).one()
    assert restored.status == RecurringStatus.cancelled
    assert restored.end_date == date(2024, 6, 30)


def test_backup_file_name():
    from datetime import datetime

    stamp = datetime(2024, 6, 1, 8, 30, 0)
    assert backups.backup_file_name(stamp) == "ledger-backup-20240601-083000.json.gz"
    assert backups.backup_file_name(stamp, compress=False) == "ledger-backup-20240601-083000.json"
