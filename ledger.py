from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import get_settings
from models import Account, BalanceCheckpoint, Transaction
from schemas import ParsedTransaction

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class ReconciliationWarning:
    account_id: int
    message: str


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    date: date
    amount_cents: int
    stored_balance_cents: Optional[int] = None


@dataclass(frozen=True)
class Anchor:
    as_of_date: date
    balance_cents: int


@dataclass
class ReplayResult:
    balances: list[tuple[int, int]]
    final_balance_cents: int
    anchors_applied: int


@dataclass
class RecalculationResult:
    account_id: int
    balance_cents: int
    transactions: int
    updated: int
    warnings: list[ReconciliationWarning] = field(default_factory=list)
    cancelled: bool = False


def effective_anchors(checkpoints: Iterable[BalanceCheckpoint]) -> list[Anchor]:
    """One anchor per date, the most recently created checkpoint winning."""
    latest: dict[date, BalanceCheckpoint] = {}
    for cp in checkpoints:
        current = latest.get(cp.as_of_date)
        if current is None or (cp.created_at, cp.id) >= (current.created_at, current.id):
            latest[cp.as_of_date] = cp
    return [
        Anchor(as_of_date=d, balance_cents=int(latest[d].balance_cents))
        for d in sorted(latest)
    ]


def replay_balances(
    initial_cents: Optional[int],
    entries: Sequence[LedgerEntry],
    anchors: Sequence[Anchor],
) -> ReplayResult:
    """Running balance after each entry.

    Entries must already be ordered by (date, id). An anchor dated D is the
    balance at the start of D: the running figure is reset to it before the
    first entry on or after D. Anchors after the last entry still set the
    final balance.
    """
    running = int(initial_cents or 0)
    pending = sorted(anchors, key=lambda a: a.as_of_date)
    applied = 0
    balances: list[tuple[int, int]] = []
    for entry in entries:
        while applied < len(pending) and pending[applied].as_of_date <= entry.date:
            running = pending[applied].balance_cents
            applied += 1
        running += entry.amount_cents
        balances.append((entry.id, running))
    if applied < len(pending):
        running = pending[-1].balance_cents
        applied = len(pending)
    return ReplayResult(
        balances=balances, final_balance_cents=running, anchors_applied=applied
    )


def reconciliation_warnings(
    account: Account, entries: Sequence[LedgerEntry], anchors: Sequence[Anchor]
) -> list[ReconciliationWarning]:
    warnings: list[ReconciliationWarning] = []
    initial_used = bool(entries) and (
        not anchors or anchors[0].as_of_date > entries[0].date
    )
    if account.initial_balance_cents is None and initial_used:
        warnings.append(
            ReconciliationWarning(
                account.id, "Initial balance is not set; replaying from 0"
            )
        )
    start = account.initial_balance_date
    if start is not None:
        early_anchors = [a for a in anchors if a.as_of_date < start]
        if early_anchors:
            warnings.append(
                ReconciliationWarning(
                    account.id,
                    f"{len(early_anchors)} checkpoint(s) dated before the initial balance date {start.isoformat()}",
                )
            )
        early_entries = sum(1 for e in entries if e.date < start)
        if early_entries:
            warnings.append(
                ReconciliationWarning(
                    account.id,
                    f"{early_entries} transaction(s) dated before the initial balance date {start.isoformat()}",
                )
            )
    return warnings


def load_entries(
    session: Session, account_id: int, until: Optional[date] = None
) -> list[LedgerEntry]:
    stmt = select(
        Transaction.id,
        Transaction.date,
        Transaction.amount_cents,
        Transaction.balance_after_cents,
    ).where(Transaction.account_id == account_id)
    if until is not None:
        stmt = stmt.where(Transaction.date <= until)
    stmt = stmt.order_by(Transaction.date, Transaction.id)
    return [
        LedgerEntry(id=r[0], date=r[1], amount_cents=int(r[2]), stored_balance_cents=r[3])
        for r in session.execute(stmt).all()
    ]


def load_anchors(
    session: Session, account_id: int, until: Optional[date] = None
) -> list[Anchor]:
    stmt = select(BalanceCheckpoint).where(BalanceCheckpoint.account_id == account_id)
    if until is not None:
        stmt = stmt.where(BalanceCheckpoint.as_of_date <= until)
    return effective_anchors(session.scalars(stmt).all())


def _get_account(session: Session, account_id: int) -> Account:
    account = session.get(Account, account_id)
    if not account:
        raise ValueError("Account not found")
    return account


def recalculate(
    session: Session,
    account_id: int,
    *,
    batch_size: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    commit: bool = True,
) -> RecalculationResult:
    """Replay an account's ledger and store balance_after plus the cached balance.

    Every mutation of transactions, the initial balance or checkpoints ends
    here. Writes are flushed in batches; cancellation is checked between
    batches and discards the pass when this call owns the commit.
    """
    account = _get_account(session, account_id)
    size = batch_size or get_settings().recalc_batch_size
    entries = load_entries(session, account_id)
    anchors = load_anchors(session, account_id)
    replay = replay_balances(account.initial_balance_cents, entries, anchors)
    warnings = reconciliation_warnings(account, entries, anchors)

    stored = {e.id: e.stored_balance_cents for e in entries}
    changed = [
        {"id": txn_id, "balance_after_cents": balance}
        for txn_id, balance in replay.balances
        if stored.get(txn_id) != balance
    ]
    total = len(changed)
    done = 0
    # Without an owned commit the pass runs in a savepoint so a cancel leaves
    # nothing half-written in the caller's transaction.
    savepoint = None if commit else session.begin_nested()
    for start in range(0, total, size):
        if should_cancel is not None and should_cancel():
            if savepoint is None:
                session.rollback()
            else:
                savepoint.rollback()
            logger.info(
                f"ledger_recalculate: account_id={account_id} cancelled=True done={done} total={total}"
            )
            return RecalculationResult(
                account_id=account_id,
                balance_cents=int(account.balance_cents or 0),
                transactions=len(entries),
                updated=0,
                warnings=warnings,
                cancelled=True,
            )
        batch = changed[start : start + size]
        session.execute(update(Transaction), batch)
        session.flush()
        done += len(batch)
        if on_progress is not None:
            on_progress(done, total)

    # Bulk updates bypass loaded instances.
    for obj in list(session.identity_map.values()):
        if isinstance(obj, Transaction):
            session.expire(obj, ["balance_after_cents"])

    account.balance_cents = replay.final_balance_cents
    account.last_recalculated_at = datetime.utcnow()
    if savepoint is None:
        session.commit()
    else:
        savepoint.commit()

    for warning in warnings:
        logger.warning(
            f"ledger_warning: account_id={warning.account_id} message={warning.message}"
        )
    logger.info(
        f"ledger_recalculate: account_id={account_id} transactions={len(entries)} "
        f"updated={total} checkpoints={replay.anchors_applied} "
        f"balance_cents={replay.final_balance_cents} warnings={len(warnings)}"
    )
    return RecalculationResult(
        account_id=account_id,
        balance_cents=replay.final_balance_cents,
        transactions=len(entries),
        updated=total,
        warnings=warnings,
    )


def recalculate_all(
    session: Session,
    *,
    on_progress: Optional[ProgressCallback] = None,
    should_cancel: Optional[CancelCheck] = None,
    commit: bool = True,
) -> list[RecalculationResult]:
    account_ids = session.scalars(select(Account.id).order_by(Account.id)).all()
    results: list[RecalculationResult] = []
    for idx, account_id in enumerate(account_ids, start=1):
        if should_cancel is not None and should_cancel():
            break
        results.append(
            recalculate(session, account_id, should_cancel=should_cancel, commit=commit)
        )
        if on_progress is not None:
            on_progress(idx, len(account_ids))
    return results


def balance_as_of(session: Session, account_id: int, day: date) -> int:
    """Balance after every transaction dated on or before ``day``."""
    account = _get_account(session, account_id)
    entries = load_entries(session, account_id, until=day)
    anchors = load_anchors(session, account_id, until=day)
    return replay_balances(account.initial_balance_cents, entries, anchors).final_balance_cents


def verify_consistency(session: Session, account_id: int) -> list[int]:
    """Ids of transactions whose stored balance_after disagrees with a fresh replay."""
    account = _get_account(session, account_id)
    entries = load_entries(session, account_id)
    replay = replay_balances(
        account.initial_balance_cents, entries, load_anchors(session, account_id)
    )
    stored = {e.id: e.stored_balance_cents for e in entries}
    return [txn_id for txn_id, balance in replay.balances if stored[txn_id] != balance]


def initial_balance_from_statement(
    rows: Sequence[ParsedTransaction],
) -> Optional[tuple[int, date]]:
    """Opening balance implied by the earliest row that carries a statement balance.

    Exports list rows newest-first or oldest-first; within the earliest day the
    first row in chronological file order is used.
    """
    with_balance = [r for r in rows if r.statement_balance_cents is not None]
    if not with_balance:
        return None
    descending = len(rows) > 1 and rows[0].date > rows[-1].date
    earliest_day = min(r.date for r in with_balance)
    same_day = [r for r in with_balance if r.date == earliest_day]
    same_day.sort(key=lambda r: r.row_number, reverse=descending)
    first = same_day[0]
    return int(first.statement_balance_cents) - first.amount_cents, first.date
