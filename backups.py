from __future__ import annotations

import gzip
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

import ledger
from config import get_settings
from models import (
    TERMINAL_STATUSES,
    Account,
    BalanceCheckpoint,
    Budget,
    Direction,
    Goal,
    RecurringOccurrence,
    RecurringTransaction,
    Setting,
    Transaction,
)
from schemas import (
    AccountSummary,
    DateRange,
    RestoreSummary,
    SnapshotAccount,
    SnapshotBudget,
    SnapshotCheckpoint,
    SnapshotGoal,
    SnapshotIssue,
    SnapshotPreview,
    SnapshotRecurring,
    SnapshotSetting,
    SnapshotTransaction,
)
from statement_parser import fingerprint

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
APP_VERSION = "1.0.0"

ROW_SCHEMAS: dict[str, type[BaseModel]] = {
    "accounts": SnapshotAccount,
    "transactions": SnapshotTransaction,
    "balance_checkpoints": SnapshotCheckpoint,
    "recurring": SnapshotRecurring,
    "budgets": SnapshotBudget,
    "goals": SnapshotGoal,
    "settings": SnapshotSetting,
}
TABLES = tuple(ROW_SCHEMAS)
# Older exports predate checkpoints; their absence is tolerated.
OPTIONAL_TABLES = frozenset({"balance_checkpoints"})
ACCOUNTS_SUMMARY_LIMIT = 5


class SnapshotInvalid(ValueError):
    def __init__(self, issues: list[SnapshotIssue]) -> None:
        errors = [i.message for i in issues if i.level == "error"]
        super().__init__("Snapshot is invalid: " + "; ".join(errors or ["unknown error"]))
        self.issues = issues


class RestoreFailure(ValueError):
    pass


@dataclass
class SnapshotValidation:
    ok: bool
    snapshot: Optional[dict[str, Any]]
    preview: SnapshotPreview
    rows: dict[str, list[Any]] = field(default_factory=dict)


# -- export -------------------------------------------------------------------


def _dump_rows(schema: type[BaseModel], objects: list[Any]) -> list[dict[str, Any]]:
    return [
        schema.model_validate(obj, from_attributes=True).model_dump(mode="json")
        for obj in objects
    ]


def build_snapshot_v1(session: Session) -> dict[str, Any]:
    models_by_table = {
        "accounts": (Account, Account.id),
        "transactions": (Transaction, Transaction.id),
        "balance_checkpoints": (BalanceCheckpoint, BalanceCheckpoint.id),
        "recurring": (RecurringTransaction, RecurringTransaction.id),
        "budgets": (Budget, Budget.id),
        "goals": (Goal, Goal.id),
        "settings": (Setting, Setting.key),
    }
    tables: dict[str, list[dict[str, Any]]] = {}
    for name, (model, order) in models_by_table.items():
        objects = list(session.scalars(select(model).order_by(order)).all())
        tables[name] = _dump_rows(ROW_SCHEMAS[name], objects)

    dates = [row["date"] for row in tables["transactions"]]
    return {
        "version": SNAPSHOT_VERSION,
        "meta": {
            "created_at": datetime.utcnow().isoformat(timespec="seconds") + "Z",
            "app_version": APP_VERSION,
            "timezone": get_settings().timezone,
            "counts": {name: len(rows) for name, rows in tables.items()},
            "transaction_date_range": (
                {"start": min(dates), "end": max(dates)} if dates else None
            ),
        },
        "tables": tables,
    }


def dump_snapshot(snapshot: dict[str, Any], compress: bool = False) -> bytes:
    raw = json.dumps(snapshot, ensure_ascii=False, indent=2).encode("utf-8")
    return gzip.compress(raw) if compress else raw


def load_snapshot_bytes(data: bytes, filename: Optional[str] = None) -> Any:
    """Decode an uploaded backup; gzip is detected from the magic bytes or the name."""
    try:
        if data[:2] == b"\x1f\x8b" or (filename or "").lower().endswith(".gz"):
            data = gzip.decompress(data)
        return json.loads(data.decode("utf-8"))
    except (OSError, EOFError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SnapshotInvalid(
            [SnapshotIssue(level="error", message=f"Backup file is not readable JSON: {exc}")]
        ) from exc


def backup_file_name(now: Optional[datetime] = None, compress: bool = True) -> str:
    stamp = (now or datetime.utcnow()).strftime("%Y%m%d-%H%M%S")
    return f"ledger-backup-{stamp}.json" + (".gz" if compress else "")


# -- validation -----------------------------------------------------------------


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def _check_unique(name: str, values: list[Any], issues: list[SnapshotIssue]) -> None:
    dupes = len(values) - len(set(values))
    if dupes:
        issues.append(
            SnapshotIssue(
                level="error", table=name, message=f"tables.{name} has {dupes} duplicate key(s)"
            )
        )


def _check_refs(
    name: str, label: str, refs: list[Optional[int]], known: set[int], issues: list[SnapshotIssue]
) -> None:
    bad = sum(1 for ref in refs if ref is not None and ref not in known)
    if bad:
        issues.append(
            SnapshotIssue(
                level="error",
                table=name,
                message=f"{bad} row(s) in tables.{name} reference an unknown {label}",
            )
        )


def validate_snapshot_v1(payload: Any) -> SnapshotValidation:
    """Check a decoded backup and describe what a restore would bring back.

    ``ok`` is False as soon as one error-level issue exists; warnings never
    block a restore.
    """
    issues: list[SnapshotIssue] = []

    if not isinstance(payload, dict):
        issues.append(SnapshotIssue(level="error", message="Backup is not a JSON object"))
        return SnapshotValidation(ok=False, snapshot=None, preview=SnapshotPreview(issues=issues))

    version = payload.get("version")
    if version is None:
        issues.append(SnapshotIssue(level="error", message="Missing snapshot version"))
    elif isinstance(version, bool) or version != SNAPSHOT_VERSION:
        issues.append(
            SnapshotIssue(level="error", message=f"Unsupported snapshot version: {version!r}")
        )

    meta = payload.get("meta")
    if meta is not None and not isinstance(meta, dict):
        issues.append(SnapshotIssue(level="error", message="meta must be an object"))
        meta = None
    meta = meta or {}
    created_at = meta.get("created_at")

    tables = payload.get("tables")
    if not isinstance(tables, dict):
        issues.append(SnapshotIssue(level="error", message="Missing tables section"))
        tables = {}

    rows: dict[str, list[Any]] = {}
    counts: dict[str, int] = {}
    for name in TABLES:
        raw = tables.get(name)
        if raw is None and name in OPTIONAL_TABLES:
            issues.append(
                SnapshotIssue(
                    level="warning", table=name, message=f"tables.{name} is missing; treated as empty"
                )
            )
            raw = []
        if not isinstance(raw, list):
            issues.append(
                SnapshotIssue(level="error", table=name, message=f"tables.{name} must be a list")
            )
            rows[name] = []
            continue
        parsed: list[Any] = []
        failures: list[str] = []
        for item in raw:
            try:
                parsed.append(ROW_SCHEMAS[name].model_validate(item))
            except ValidationError as exc:
                failures.append(_first_error(exc))
        if failures:
            issues.append(
                SnapshotIssue(
                    level="error",
                    table=name,
                    message=f"{len(failures)} row(s) in tables.{name} are invalid (first: {failures[0]})",
                )
            )
        rows[name] = parsed
        counts[name] = len(raw)

    accounts = rows.get("accounts", [])
    transactions = rows.get("transactions", [])
    recurring = rows.get("recurring", [])
    account_ids = {a.id for a in accounts}
    transaction_ids = {t.id for t in transactions}
    recurring_ids = {r.id for r in recurring}

    _check_unique("accounts", [a.id for a in accounts], issues)
    _check_unique("transactions", [t.id for t in transactions], issues)
    _check_unique("recurring", [r.id for r in recurring], issues)
    _check_unique("balance_checkpoints", [c.id for c in rows.get("balance_checkpoints", [])], issues)
    _check_unique("budgets", [b.id for b in rows.get("budgets", [])], issues)
    _check_unique("goals", [g.id for g in rows.get("goals", [])], issues)
    _check_unique("settings", [s.key for s in rows.get("settings", [])], issues)

    _check_refs("transactions", "account", [t.account_id for t in transactions], account_ids, issues)
    _check_refs("transactions", "recurring item", [t.recurring_id for t in transactions], recurring_ids, issues)
    _check_refs(
        "balance_checkpoints",
        "account",
        [c.account_id for c in rows.get("balance_checkpoints", [])],
        account_ids,
        issues,
    )
    _check_refs("recurring", "account", [r.account_id for r in recurring], account_ids, issues)
    _check_refs(
        "recurring",
        "transaction",
        [o.transaction_id for r in recurring for o in r.occurrences],
        transaction_ids,
        issues,
    )
    _check_refs(
        "goals", "account", [g.linked_account_id for g in rows.get("goals", [])], account_ids, issues
    )

    unended = sum(1 for r in recurring if r.status in TERMINAL_STATUSES and r.end_date is None)
    if unended:
        issues.append(
            SnapshotIssue(
                level="error",
                table="recurring",
                message=f"{unended} cancelled/completed recurring item(s) have no end_date",
            )
        )
    mismatched = sum(
        1
        for t in transactions
        if t.direction is not None and t.direction != Direction.for_amount(t.amount_cents)
    )
    if mismatched:
        issues.append(
            SnapshotIssue(
                level="warning",
                table="transactions",
                message=f"{mismatched} transaction(s) have a direction that disagrees with the amount sign; the sign wins",
            )
        )

    if "accounts" in counts and not accounts:
        issues.append(SnapshotIssue(level="warning", table="accounts", message="Backup contains 0 accounts"))
    if "transactions" in counts and not transactions:
        issues.append(
            SnapshotIssue(level="warning", table="transactions", message="Backup contains 0 transactions")
        )

    declared = meta.get("counts")
    if isinstance(declared, dict):
        for name, actual in counts.items():
            expected = declared.get(name)
            if isinstance(expected, int) and expected != actual:
                issues.append(
                    SnapshotIssue(
                        level="warning",
                        table=name,
                        message=f"meta.counts.{name} declares {expected} row(s) but {actual} were found",
                    )
                )

    date_range = None
    if transactions:
        days = [t.date for t in transactions]
        date_range = DateRange(start=min(days), end=max(days))
    per_account: dict[int, int] = {}
    for t in transactions:
        per_account[t.account_id] = per_account.get(t.account_id, 0) + 1
    preview = SnapshotPreview(
        version=version if version == SNAPSHOT_VERSION and not isinstance(version, bool) else None,
        created_at=created_at if isinstance(created_at, str) else None,
        counts=counts,
        transaction_date_range=date_range,
        accounts_summary=[
            AccountSummary(id=a.id, name=a.name, transactions=per_account.get(a.id, 0))
            for a in accounts[:ACCOUNTS_SUMMARY_LIMIT]
        ],
        issues=issues,
    )

    ok = not any(i.level == "error" for i in issues)
    return SnapshotValidation(
        ok=ok, snapshot=payload if ok else None, preview=preview, rows=rows if ok else {}
    )


# -- restore --------------------------------------------------------------------


def _stage(rows: dict[str, list[Any]]) -> list[list[Any]]:
    """ORM objects for every row, grouped in insert order."""
    accounts = [
        Account(
            id=a.id,
            name=a.name,
            institution=a.institution,
            type=a.type,
            currency=a.currency,
            color=a.color,
            balance_cents=a.balance_cents,
            initial_balance_cents=a.initial_balance_cents,
            initial_balance_date=a.initial_balance_date,
            is_active=a.is_active,
        )
        for a in rows["accounts"]
    ]
    recurring = []
    occurrences = []
    for r in rows["recurring"]:
        recurring.append(
            RecurringTransaction(
                id=r.id,
                account_id=r.account_id,
                name=r.name,
                merchant=r.merchant,
                signature=r.signature,
                category=r.category,
                subcategory=r.subcategory,
                amount_cents=r.amount_cents,
                average_amount_cents=r.average_amount_cents,
                is_variable=r.is_variable,
                frequency=r.frequency,
                type=r.type,
                status=r.status,
                last_detected=r.last_detected,
                next_expected=r.next_expected,
                start_date=r.start_date,
                end_date=r.end_date,
                cancelled_at=r.cancelled_at,
                is_excluded=r.is_excluded,
                is_user_created=r.is_user_created,
            )
        )
        occurrences.extend(
            RecurringOccurrence(
                recurring_id=r.id,
                transaction_id=o.transaction_id,
                date=o.date,
                amount_cents=o.amount_cents,
                status=o.status,
            )
            for o in r.occurrences
        )
    transactions = []
    for t in rows["transactions"]:
        txn = Transaction(
            id=t.id,
            account_id=t.account_id,
            date=t.date,
            value_date=t.value_date,
            amount_cents=t.amount_cents,
            direction=Direction.for_amount(t.amount_cents),
            merchant=t.merchant,
            merchant_original=t.merchant_original,
            description=t.description,
            notes=t.notes,
            category=t.category,
            subcategory=t.subcategory,
            payment_method=t.payment_method,
            fingerprint=t.fingerprint
            or fingerprint(t.account_id, t.date, t.amount_cents, t.merchant),
            is_recurring=t.is_recurring,
            recurring_id=t.recurring_id,
        )
        txn.tags = t.tags
        transactions.append(txn)
    others = (
        [
            BalanceCheckpoint(
                id=c.id,
                account_id=c.account_id,
                as_of_date=c.as_of_date,
                balance_cents=c.balance_cents,
                note=c.note,
            )
            for c in rows["balance_checkpoints"]
        ]
        + [
            Budget(
                id=b.id,
                category=b.category,
                amount_cents=b.amount_cents,
                period=b.period,
                year=b.year,
                month=b.month,
            )
            for b in rows["budgets"]
        ]
        + [
            Goal(
                id=g.id,
                name=g.name,
                target_amount_cents=g.target_amount_cents,
                current_amount_cents=g.current_amount_cents,
                deadline=g.deadline,
                is_active=g.is_active,
                linked_account_id=g.linked_account_id,
            )
            for g in rows["goals"]
        ]
        + [Setting(key=s.key, value=s.value) for s in rows["settings"]]
    )
    return [accounts, recurring, transactions, occurrences, others]


def restore_replace_snapshot_v1(session: Session, snapshot: Any) -> RestoreSummary:
    """Replace every table with the snapshot's rows, then replay all ledgers.

    Rows are staged before anything is deleted and the swap runs in one
    transaction; on any failure the previous data stays in place.
    """
    validation = validate_snapshot_v1(snapshot)
    if not validation.ok:
        raise SnapshotInvalid(validation.preview.issues)

    try:
        staged = _stage(validation.rows)
        for model in (
            RecurringOccurrence,
            Transaction,
            BalanceCheckpoint,
            RecurringTransaction,
            Goal,
            Budget,
            Setting,
            Account,
        ):
            session.execute(delete(model))
        session.expunge_all()
        for group in staged:
            session.add_all(group)
            session.flush()
        recalculations = ledger.recalculate_all(session, commit=False)
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.exception("snapshot_restore_failed")
        raise RestoreFailure(f"Restore failed; previous data kept: {exc}") from exc

    warnings = [i.message for i in validation.preview.issues if i.level == "warning"]
    warnings.extend(w.message for r in recalculations for w in r.warnings)
    counts = dict(validation.preview.counts)
    logger.info(
        "snapshot_restore: "
        + " ".join(f"{name}={count}" for name, count in counts.items())
        + f" warnings={len(warnings)}"
    )
    return RestoreSummary(
        counts=counts,
        transaction_date_range=validation.preview.transaction_date_range,
        warnings=warnings,
    )
