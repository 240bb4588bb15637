from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Transaction
from schemas import DateRange, ParsedTransaction, ParseResult, RowSkippedOut
from statement_parser import ParsedStatement


def date_span(candidates: Sequence[ParsedTransaction]) -> Optional[DateRange]:
    if not candidates:
        return None
    days = [c.date for c in candidates]
    return DateRange(start=min(days), end=max(days))


def existing_fingerprints(
    session: Session, account_id: int, span: Optional[DateRange]
) -> dict[str, list[int]]:
    """Stored transaction ids grouped by fingerprint, limited to the candidates' span."""
    if span is None:
        return {}
    rows = session.execute(
        select(Transaction.fingerprint, Transaction.id).where(
            Transaction.account_id == account_id,
            Transaction.date >= span.start,
            Transaction.date <= span.end,
        )
    ).all()
    grouped: dict[str, list[int]] = defaultdict(list)
    for fp, txn_id in rows:
        grouped[fp].append(txn_id)
    return dict(grouped)


def mark_duplicates(
    candidates: Iterable[ParsedTransaction], known: Iterable[str]
) -> list[ParsedTransaction]:
    """Flag candidates whose fingerprint is already stored.

    Only stored rows count: two identical rows inside one file both stay new.
    """
    known_set = set(known)
    return [
        c.model_copy(update={"is_duplicate": c.fingerprint in known_set})
        for c in candidates
    ]


def resolve_duplicates(
    session: Session, account_id: int, statement: ParsedStatement
) -> ParseResult:
    candidates = statement.transactions
    span = date_span(candidates)
    marked = mark_duplicates(candidates, existing_fingerprints(session, account_id, span))
    duplicate_count = sum(1 for c in marked if c.is_duplicate)
    warnings = [f"Row {s.row_number}: {s.reason}" for s in statement.skipped]
    return ParseResult(
        transactions=marked,
        total_rows=len(marked),
        new_count=len(marked) - duplicate_count,
        duplicate_count=duplicate_count,
        date_range=span,
        skipped_rows=[
            RowSkippedOut(row_number=s.row_number, reason=s.reason)
            for s in statement.skipped
        ],
        warnings=warnings,
    )
