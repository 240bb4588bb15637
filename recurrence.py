from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    DEFAULT_CATEGORY_BY_TYPE,
    Direction,
    RecurringFrequency,
    RecurringOccurrence,
    RecurringStatus,
    RecurringTransaction,
    RecurringType,
    Transaction,
)
from schemas import SyncResult
from statement_parser import merchant_key

logger = logging.getLogger(__name__)

# Promotion is permissive: either threshold is enough.
MIN_DISTINCT_MONTHS = 3
MIN_OCCURRENCES = 5
AMOUNT_BAND_CENTS = 100
VARIABLE_AMOUNT_RATIO = 0.05
SYNC_AMOUNT_TOLERANCE = 0.20

FREQUENCY_WINDOWS: dict[RecurringFrequency, tuple[int, int]] = {
    RecurringFrequency.weekly: (5, 9),
    RecurringFrequency.biweekly: (10, 18),
    RecurringFrequency.monthly: (19, 45),
    RecurringFrequency.quarterly: (75, 110),
    RecurringFrequency.yearly: (330, 400),
}
# Tie-break order when two windows collect the same number of gaps.
FREQUENCY_PRIORITY = (
    RecurringFrequency.monthly,
    RecurringFrequency.weekly,
    RecurringFrequency.biweekly,
    RecurringFrequency.quarterly,
    RecurringFrequency.yearly,
)
MONTHLY_FACTORS: dict[RecurringFrequency, float] = {
    RecurringFrequency.weekly: 4.33,
    RecurringFrequency.biweekly: 2.17,
    RecurringFrequency.monthly: 1.0,
    RecurringFrequency.quarterly: 1 / 3,
    RecurringFrequency.yearly: 1 / 12,
}


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def next_expected_date(last: date, frequency: RecurringFrequency) -> date:
    if frequency == RecurringFrequency.weekly:
        return last + timedelta(days=7)
    if frequency == RecurringFrequency.biweekly:
        return last + timedelta(days=14)
    if frequency == RecurringFrequency.monthly:
        return add_months(last, 1)
    if frequency == RecurringFrequency.quarterly:
        return add_months(last, 3)
    return add_months(last, 12)


def classify_frequency(gaps: Iterable[int]) -> Optional[RecurringFrequency]:
    """Dominant cadence among day gaps; same-day repeats are ignored."""
    votes: Counter[RecurringFrequency] = Counter()
    for gap in gaps:
        if gap <= 0:
            continue
        for frequency, (low, high) in FREQUENCY_WINDOWS.items():
            if low <= gap <= high:
                votes[frequency] += 1
                break
    if not votes:
        return None
    top = max(votes.values())
    return next(f for f in FREQUENCY_PRIORITY if votes[f] == top)


def monthly_amount(amount_cents: int, frequency: RecurringFrequency) -> int:
    return int(round(abs(amount_cents) * MONTHLY_FACTORS[frequency]))


def signature(txn: Transaction) -> str:
    direction = Direction.for_amount(txn.amount_cents).value
    band = abs(txn.amount_cents) // AMOUNT_BAND_CENTS
    return f"{direction}|{merchant_key(txn.merchant)}|{band}"


def group_transactions(txns: Iterable[Transaction]) -> dict[str, list[Transaction]]:
    """Group by direction and merchant, then split into clusters one band wide.

    A cluster spans at most AMOUNT_BAND_CENTS from its smallest amount, so
    charges wobbling around a band edge stay together. It is keyed by the
    signature of that smallest charge.
    """
    by_merchant: dict[tuple[str, str], list[Transaction]] = defaultdict(list)
    for txn in txns:
        direction = Direction.for_amount(txn.amount_cents).value
        by_merchant[(direction, merchant_key(txn.merchant))].append(txn)

    groups: dict[str, list[Transaction]] = {}
    for members in by_merchant.values():
        members.sort(key=lambda t: (abs(t.amount_cents), t.date, t.id))
        cluster: list[Transaction] = []
        for txn in members:
            width = abs(txn.amount_cents) - abs(cluster[0].amount_cents) if cluster else 0
            if width > AMOUNT_BAND_CENTS:
                groups[signature(cluster[0])] = cluster
                cluster = []
            cluster.append(txn)
        if cluster:
            groups[signature(cluster[0])] = cluster
    for members in groups.values():
        members.sort(key=lambda t: (t.date, t.id))
    return groups


def distinct_months(txns: Sequence[Transaction]) -> int:
    return len({(t.date.year, t.date.month) for t in txns})


def qualifies(txns: Sequence[Transaction]) -> bool:
    return distinct_months(txns) >= MIN_DISTINCT_MONTHS or len(txns) >= MIN_OCCURRENCES


def high_confidence(txns: Sequence[Transaction]) -> bool:
    return distinct_months(txns) >= MIN_DISTINCT_MONTHS and len(txns) >= MIN_OCCURRENCES


@dataclass
class DetectedSeries:
    signature: str
    transactions: list[Transaction]
    frequency: RecurringFrequency

    @property
    def latest(self) -> Transaction:
        return self.transactions[-1]

    @property
    def is_credit(self) -> bool:
        return self.latest.amount_cents > 0

    @property
    def average_amount_cents(self) -> int:
        return int(round(sum(t.amount_cents for t in self.transactions) / len(self.transactions)))


def analyze_group(sig: str, txns: Sequence[Transaction]) -> Optional[DetectedSeries]:
    if not txns or not qualifies(txns):
        return None
    ordered = sorted(txns, key=lambda t: (t.date, t.id))
    gaps = [(b.date - a.date).days for a, b in zip(ordered, ordered[1:])]
    frequency = classify_frequency(gaps)
    if frequency is None:
        return None
    return DetectedSeries(signature=sig, transactions=list(ordered), frequency=frequency)


def add_occurrence(series: RecurringTransaction, txn: Transaction) -> bool:
    """Attach a transaction to a series, keeping occurrences ordered by date."""
    if any(o.transaction_id == txn.id for o in series.occurrences):
        return False
    occurrence = RecurringOccurrence(
        transaction_id=txn.id, date=txn.date, amount_cents=txn.amount_cents, status="paid"
    )
    idx = len(series.occurrences)
    while idx > 0 and series.occurrences[idx - 1].date > txn.date:
        idx -= 1
    series.occurrences.insert(idx, occurrence)
    return True


def link(series: RecurringTransaction, txn: Transaction) -> bool:
    """Point a transaction at a series unless another series already owns it."""
    if txn.recurring_id is not None and txn.recurring_id != series.id:
        return False
    added = add_occurrence(series, txn)
    newly_linked = txn.recurring_id != series.id or not txn.is_recurring
    txn.recurring_id = series.id
    txn.is_recurring = True
    return added or newly_linked


def refresh_amounts(series: RecurringTransaction) -> None:
    amounts = [o.amount_cents for o in series.occurrences]
    if not amounts:
        return
    average = int(round(sum(amounts) / len(amounts)))
    # Sign follows the series type.
    if series.type == RecurringType.income:
        series.average_amount_cents = abs(average)
    else:
        series.average_amount_cents = -abs(average)
    spread = max(abs(a) for a in amounts) - min(abs(a) for a in amounts)
    series.is_variable = spread > abs(average) * VARIABLE_AMOUNT_RATIO
    if not series.is_user_created:
        series.amount_cents = series.average_amount_cents


def series_matches(series: RecurringTransaction, txn: Transaction) -> bool:
    if (txn.amount_cents > 0) != (series.amount_cents > 0):
        return False
    expected = abs(series.amount_cents)
    if abs(abs(txn.amount_cents) - expected) > expected * SYNC_AMOUNT_TOLERANCE:
        return False
    wanted = merchant_key(series.merchant or series.name)
    if not wanted:
        return False
    for raw in (txn.merchant, txn.merchant_original):
        key = merchant_key(raw or "")
        if not key:
            continue
        if key == wanted or wanted in key or key in wanted:
            return True
        if Levenshtein.distance(key, wanted) <= 1:
            return True
    return False


@dataclass
class DetectionResult:
    account_id: int
    created: int = 0
    updated: int = 0
    linked: int = 0
    series_ids: list[int] = field(default_factory=list)


class RecurringDetector:
    def __init__(self, session: Session, lookback_months: Optional[int] = None) -> None:
        self.session = session
        self.lookback_months = lookback_months or get_settings().recurring_lookback_months

    def _history(self, account_id: int, today: date) -> list[Transaction]:
        since = add_months(today, -self.lookback_months)
        stmt = (
            select(Transaction)
            .where(
                Transaction.account_id == account_id,
                Transaction.date >= since,
                Transaction.date <= today,
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def reference_day(self, account_id: int, today: Optional[date] = None) -> date:
        """End of the lookback window: the given day, else the latest transaction."""
        if today is not None:
            return today
        latest = self.session.scalar(
            select(func.max(Transaction.date)).where(Transaction.account_id == account_id)
        )
        return latest or local_today()

    def _account_series(self, account_id: int) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(RecurringTransaction.account_id == account_id)
            .order_by(RecurringTransaction.id)
        )
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def find_series(
        candidates: Sequence[RecurringTransaction], detected: DetectedSeries
    ) -> Optional[RecurringTransaction]:
        """Existing series a detected group belongs to, if any.

        Checked in order: the series already owning most of the group's
        transactions (this covers merged series), a stored signature match,
        then merchant/amount matching for series created by hand.
        """
        by_id = {s.id: s for s in candidates}
        owners = Counter(
            t.recurring_id for t in detected.transactions if t.recurring_id in by_id
        )
        if owners:
            return by_id[owners.most_common(1)[0][0]]
        for series in candidates:
            if series.signature == detected.signature:
                return series
        for series in candidates:
            if series_matches(series, detected.latest):
                return series
        return None

    def create_series(self, account_id: int, detected: DetectedSeries) -> RecurringTransaction:
        latest = detected.latest
        kind = RecurringType.income if detected.is_credit else RecurringType.subscription
        series = RecurringTransaction(
            account_id=account_id,
            name=latest.merchant,
            merchant=latest.merchant,
            signature=detected.signature,
            category=latest.category or DEFAULT_CATEGORY_BY_TYPE[kind],
            subcategory=latest.subcategory,
            amount_cents=detected.average_amount_cents,
            average_amount_cents=detected.average_amount_cents,
            frequency=detected.frequency,
            type=kind,
            status=RecurringStatus.active,
            start_date=detected.transactions[0].date,
            last_detected=latest.date,
            next_expected=next_expected_date(latest.date, detected.frequency),
            is_user_created=False,
        )
        self.session.add(series)
        self.session.flush()
        return series

    def apply(
        self, series: RecurringTransaction, detected: DetectedSeries
    ) -> int:
        linked = sum(1 for txn in detected.transactions if link(series, txn))
        latest = max(o.date for o in series.occurrences) if series.occurrences else None
        series.frequency = detected.frequency
        if latest is not None:
            series.last_detected = latest
            if not series.is_ended:
                series.next_expected = next_expected_date(latest, detected.frequency)
        refresh_amounts(series)
        return linked

    def detect(self, account_id: int, today: Optional[date] = None) -> DetectionResult:
        """Create or refresh series for repeating merchant/amount groups.

        Status is never touched here; excluded series are left alone.
        """
        today = self.reference_day(account_id, today)
        result = DetectionResult(account_id=account_id)
        existing = self._account_series(account_id)
        for sig, members in group_transactions(self._history(account_id, today)).items():
            detected = analyze_group(sig, members)
            if detected is None:
                continue
            series = self.find_series(existing, detected)
            if series is not None and series.is_excluded:
                continue
            if series is None:
                if not any(t.recurring_id is None for t in detected.transactions):
                    continue
                series = self.create_series(account_id, detected)
                existing.append(series)
                result.created += 1
            else:
                if series.signature is None:
                    series.signature = sig
                result.updated += 1
            result.linked += self.apply(series, detected)
            result.series_ids.append(series.id)
        self.session.commit()
        logger.info(
            f"recurring_detect: account_id={account_id} created={result.created} "
            f"updated={result.updated} linked={result.linked}"
        )
        return result

    def sync_and_repair(
        self, account_id: Optional[int] = None, today: Optional[date] = None
    ) -> SyncResult:
        """Re-link history to existing series, then create series for strong leftovers.

        Each series runs in its own savepoint; failures are reported, not raised.
        """
        result = SyncResult()
        stmt = select(RecurringTransaction).where(RecurringTransaction.is_excluded.is_(False))
        if account_id is not None:
            stmt = stmt.where(RecurringTransaction.account_id == account_id)
        all_series = list(self.session.scalars(stmt.order_by(RecurringTransaction.id)).all())

        history: dict[int, list[Transaction]] = {}
        for series in all_series:
            txns = history.get(series.account_id)
            if txns is None:
                txns = list(
                    self.session.scalars(
                        select(Transaction)
                        .where(Transaction.account_id == series.account_id)
                        .order_by(Transaction.date, Transaction.id)
                    ).all()
                )
                history[series.account_id] = txns
            try:
                with self.session.begin_nested():
                    matched = [t for t in txns if series_matches(series, t)]
                    linked = sum(1 for t in matched if link(series, t))
                    owned = [t for t in matched if t.recurring_id == series.id]
                    if owned:
                        latest = max(t.date for t in owned)
                        if series.last_detected is None or latest > series.last_detected:
                            series.last_detected = latest
                        if not series.is_ended:
                            series.next_expected = next_expected_date(
                                series.last_detected, series.frequency
                            )
                        refresh_amounts(series)
                        result.recurring_updated += 1
                    result.transactions_linked += linked
            except (SQLAlchemyError, ValueError) as exc:
                message = f"{series.name} (id={series.id}): {exc}"
                result.errors.append(message)
                logger.warning(f"recurring_sync_error: {message}")

        account_ids = (
            [account_id]
            if account_id is not None
            else list(self.session.scalars(select(Transaction.account_id).distinct()).all())
        )
        for acc_id in account_ids:
            existing = self._account_series(acc_id)
            history_window = self._history(acc_id, self.reference_day(acc_id, today))
            unlinked = [t for t in history_window if t.recurring_id is None]
            for sig, members in group_transactions(unlinked).items():
                if not high_confidence(members):
                    continue
                detected = analyze_group(sig, members)
                if detected is None or self.find_series(existing, detected) is not None:
                    continue
                try:
                    with self.session.begin_nested():
                        series = self.create_series(acc_id, detected)
                        linked = self.apply(series, detected)
                    existing.append(series)
                    result.transactions_linked += linked
                    result.new_recurring_created += 1
                except (SQLAlchemyError, ValueError) as exc:
                    message = f"new series for {detected.latest.merchant}: {exc}"
                    result.errors.append(message)
                    logger.warning(f"recurring_sync_error: {message}")

        self.session.commit()
        logger.info(
            f"recurring_sync: updated={result.recurring_updated} "
            f"linked={result.transactions_linked} created={result.new_recurring_created} "
            f"errors={len(result.errors)}"
        )
        return result
