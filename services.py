from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import ledger
from config import get_settings
from dedup import existing_fingerprints, date_span, resolve_duplicates
from models import (
    DEFAULT_CATEGORY_BY_TYPE,
    TERMINAL_STATUSES,
    Account,
    BalanceCheckpoint,
    Category,
    RecurringOccurrence,
    RecurringStatus,
    RecurringTransaction,
    RecurringType,
    Setting,
    Transaction,
)
from recurrence import (
    RecurringDetector,
    DetectionResult,
    add_occurrence,
    local_today,
    monthly_amount,
    next_expected_date,
    refresh_amounts,
)
from schemas import (
    AccountIn,
    BalanceCheckpointIn,
    ImportSummary,
    InitialBalanceIn,
    ParsedTransaction,
    ParseResult,
    RecurringTransactionIn,
    RecurringTransactionUpdate,
    SyncResult,
)
from statement_parser import parse_statement

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_NAME = "Main Account"


class ImportBatchFailure(ValueError):
    def __init__(self, message: str, committed: int, batch_index: int) -> None:
        super().__init__(message)
        self.committed = committed
        self.batch_index = batch_index


class RecurringTransitionError(ValueError):
    pass


def signed_amount_for_type(amount_cents: int, kind: RecurringType) -> int:
    """Income is stored positive, every other type negative."""
    magnitude = abs(int(amount_cents))
    return magnitude if kind == RecurringType.income else -magnitude


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise ValueError("Account not found")
        return account

    def list(self, active_only: bool = False) -> list[Account]:
        stmt = select(Account).order_by(Account.id)
        if active_only:
            stmt = stmt.where(Account.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def create(self, data: AccountIn) -> Account:
        account = Account(
            name=data.name.strip(),
            institution=data.institution,
            type=data.type,
            currency=data.currency.upper(),
            color=data.color,
            initial_balance_cents=data.initial_balance_cents,
            initial_balance_date=data.initial_balance_date,
            balance_cents=data.initial_balance_cents or 0,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def get_or_create_default(self) -> Account:
        account = self.session.scalar(
            select(Account).where(Account.is_active.is_(True)).order_by(Account.id).limit(1)
        )
        if account:
            return account
        logger.info(f"account_default_created: name={DEFAULT_ACCOUNT_NAME}")
        return self.create(AccountIn(name=DEFAULT_ACCOUNT_NAME))

    def set_initial_balance(
        self, account_id: int, data: InitialBalanceIn
    ) -> ledger.RecalculationResult:
        account = self.get(account_id)
        account.initial_balance_cents = data.initial_balance_cents
        account.initial_balance_date = data.initial_balance_date
        self.session.flush()
        return ledger.recalculate(self.session, account_id)

    def transactions(
        self,
        account_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        self.get(account_id)
        stmt = select(Transaction).where(Transaction.account_id == account_id)
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())


class BalanceCheckpointService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, checkpoint_id: int) -> BalanceCheckpoint:
        checkpoint = self.session.get(BalanceCheckpoint, checkpoint_id)
        if not checkpoint:
            raise ValueError("Balance checkpoint not found")
        return checkpoint

    def list(self, account_id: int) -> list[BalanceCheckpoint]:
        stmt = (
            select(BalanceCheckpoint)
            .where(BalanceCheckpoint.account_id == account_id)
            .order_by(BalanceCheckpoint.as_of_date.desc(), BalanceCheckpoint.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def create(self, account_id: int, data: BalanceCheckpointIn) -> BalanceCheckpoint:
        AccountService(self.session).get(account_id)
        checkpoint = BalanceCheckpoint(
            account_id=account_id,
            as_of_date=data.as_of_date,
            balance_cents=data.balance_cents,
            note=data.note,
        )
        self.session.add(checkpoint)
        self.session.flush()
        ledger.recalculate(self.session, account_id)
        self.session.refresh(checkpoint)
        return checkpoint

    def update(self, checkpoint_id: int, data: BalanceCheckpointIn) -> BalanceCheckpoint:
        checkpoint = self.get(checkpoint_id)
        checkpoint.as_of_date = data.as_of_date
        checkpoint.balance_cents = data.balance_cents
        checkpoint.note = data.note
        self.session.flush()
        ledger.recalculate(self.session, checkpoint.account_id)
        self.session.refresh(checkpoint)
        return checkpoint

    def delete(self, checkpoint_id: int) -> None:
        checkpoint = self.get(checkpoint_id)
        account_id = checkpoint.account_id
        self.session.delete(checkpoint)
        self.session.flush()
        ledger.recalculate(self.session, account_id)


class ImportService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def _account_id(self, account_id: Optional[int]) -> int:
        if account_id is None:
            return AccountService(self.session).get_or_create_default().id
        return AccountService(self.session).get(account_id).id

    def preview(
        self,
        content: Union[bytes, str],
        filename: Optional[str] = None,
        account_id: Optional[int] = None,
    ) -> ParseResult:
        target = self._account_id(account_id)
        statement = parse_statement(content, target, filename)
        return resolve_duplicates(self.session, target, statement)

    def commit(
        self,
        content: Union[bytes, str],
        filename: Optional[str] = None,
        account_id: Optional[int] = None,
        *,
        on_progress: Optional[Callable[[int, int], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> ImportSummary:
        result = self.preview(content, filename, account_id)
        target = self._account_id(account_id)
        return self.commit_rows(
            target,
            result.transactions,
            warnings=result.warnings,
            on_progress=on_progress,
            should_cancel=should_cancel,
        )

    def commit_rows(
        self,
        account_id: int,
        rows: list[ParsedTransaction],
        *,
        warnings: Optional[list[str]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> ImportSummary:
        """Insert the non-duplicate rows in committed batches.

        Fingerprints are re-checked against the store first, so retrying after
        a failed batch does not import the earlier batches twice.
        """
        account = AccountService(self.session).get(account_id)
        known = existing_fingerprints(self.session, account_id, date_span(rows))
        fresh = [r for r in rows if not r.is_duplicate and r.fingerprint not in known]
        summary = ImportSummary(
            account_id=account_id,
            imported=0,
            skipped_duplicates=len(rows) - len(fresh),
            batches=0,
            warnings=list(warnings or []),
        )

        size = self.settings.import_batch_size
        for batch_index, start in enumerate(range(0, len(fresh), size)):
            if should_cancel is not None and should_cancel():
                summary.cancelled = True
                break
            batch = fresh[start : start + size]
            try:
                self.session.add_all([self._to_model(row) for row in batch])
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.warning(
                    f"import_batch_failed: account_id={account_id} batch={batch_index} "
                    f"committed={summary.imported} error={exc}"
                )
                raise ImportBatchFailure(
                    f"Import failed in batch {batch_index + 1}; "
                    f"{summary.imported} transaction(s) were already saved",
                    committed=summary.imported,
                    batch_index=batch_index,
                ) from exc
            summary.imported += len(batch)
            summary.batches += 1
            if on_progress is not None:
                on_progress(summary.imported, len(fresh))

        if account.initial_balance_cents is None:
            seeded = ledger.initial_balance_from_statement(rows)
            if seeded is not None:
                account.initial_balance_cents, account.initial_balance_date = seeded
                self.session.flush()
        recalculation = ledger.recalculate(self.session, account_id)
        summary.warnings.extend(w.message for w in recalculation.warnings)

        if summary.imported and self.settings.detect_recurring_after_import:
            detection = RecurringService(self.session).detect(account_id)
            summary.recurring_detected = detection.created + detection.updated

        SettingsService(self.session).set("last_import_at", datetime.utcnow().isoformat())
        logger.info(
            f"import_commit: account_id={account_id} imported={summary.imported} "
            f"duplicates={summary.skipped_duplicates} batches={summary.batches} "
            f"cancelled={summary.cancelled}"
        )
        return summary

    @staticmethod
    def _to_model(row: ParsedTransaction) -> Transaction:
        return Transaction(
            account_id=row.account_id,
            date=row.date,
            value_date=row.value_date,
            amount_cents=row.amount_cents,
            direction=row.direction,
            merchant=row.merchant,
            merchant_original=row.merchant_original,
            description=row.description,
            category=row.category,
            subcategory=row.subcategory,
            payment_method=row.payment_method,
            fingerprint=row.fingerprint,
        )


class RecurringService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, recurring_id: int) -> RecurringTransaction:
        item = self.session.get(RecurringTransaction, recurring_id)
        if not item:
            raise ValueError("Recurring item not found")
        return item

    def list(self, account_id: Optional[int] = None) -> list[RecurringTransaction]:
        stmt = select(RecurringTransaction).order_by(
            RecurringTransaction.next_expected, RecurringTransaction.id
        )
        if account_id is not None:
            stmt = stmt.where(RecurringTransaction.account_id == account_id)
        return list(self.session.scalars(stmt).all())

    def list_active(self, account_id: Optional[int] = None) -> list[RecurringTransaction]:
        return [item for item in self.list(account_id) if item.is_shown_active]

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        AccountService(self.session).get(data.account_id)
        start = data.start_date or local_today()
        item = RecurringTransaction(
            account_id=data.account_id,
            name=data.name.strip(),
            merchant=(data.merchant or data.name).strip(),
            category=data.category or DEFAULT_CATEGORY_BY_TYPE[data.type],
            subcategory=data.subcategory,
            amount_cents=signed_amount_for_type(data.amount_cents, data.type),
            frequency=data.frequency,
            type=data.type,
            status=RecurringStatus.active,
            start_date=start,
            next_expected=data.next_expected or next_expected_date(start, data.frequency),
            is_user_created=True,
        )
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def update(self, recurring_id: int, data: RecurringTransactionUpdate) -> RecurringTransaction:
        item = self.get(recurring_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None:
                continue
            if field == "amount_cents":
                value = signed_amount_for_type(value, item.type)
            setattr(item, field, value)
        self.session.commit()
        self.session.refresh(item)
        return item

    def _linked_transactions(self, recurring_id: int) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.recurring_id == recurring_id)
        return list(self.session.scalars(stmt).all())

    def _drop(self, item: RecurringTransaction) -> None:
        self.session.flush()
        self.session.expire(item, ["transactions"])
        self.session.delete(item)

    def delete(self, recurring_id: int) -> None:
        item = self.get(recurring_id)
        for txn in self._linked_transactions(item.id):
            txn.recurring_id = None
            txn.is_recurring = False
        self._drop(item)
        self.session.commit()

    def _require_open(self, item: RecurringTransaction, action: str) -> None:
        if item.status in TERMINAL_STATUSES:
            raise RecurringTransitionError(
                f"Cannot {action} a {item.status.value} recurring item"
            )

    def pause(self, recurring_id: int) -> RecurringTransaction:
        item = self.get(recurring_id)
        if item.status != RecurringStatus.active:
            raise RecurringTransitionError(
                f"Only active items can be paused (status is {item.status.value})"
            )
        item.status = RecurringStatus.paused
        self.session.commit()
        return item

    def resume(self, recurring_id: int) -> RecurringTransaction:
        item = self.get(recurring_id)
        if item.status != RecurringStatus.paused:
            raise RecurringTransitionError(
                f"Only paused items can be resumed (status is {item.status.value})"
            )
        item.status = RecurringStatus.active
        self.session.commit()
        return item

    def toggle_pause(self, recurring_id: int) -> RecurringTransaction:
        item = self.get(recurring_id)
        if item.status == RecurringStatus.paused:
            return self.resume(recurring_id)
        return self.pause(recurring_id)

    def cancel(self, recurring_id: int, on: Optional[date] = None) -> RecurringTransaction:
        item = self.get(recurring_id)
        self._require_open(item, "cancel")
        item.status = RecurringStatus.cancelled
        item.cancelled_at = datetime.utcnow()
        item.end_date = on or local_today()
        self.session.commit()
        return item

    def complete(self, recurring_id: int, on: Optional[date] = None) -> RecurringTransaction:
        item = self.get(recurring_id)
        self._require_open(item, "complete")
        if item.type != RecurringType.loan:
            raise RecurringTransitionError("Only loans can be marked as completed")
        item.status = RecurringStatus.completed
        item.end_date = on or local_today()
        self.session.commit()
        return item

    def exclude(self, recurring_id: int) -> RecurringTransaction:
        item = self.get(recurring_id)
        self._require_open(item, "exclude")
        item.is_excluded = True
        self.session.commit()
        return item

    def change_type(self, recurring_id: int, new_type: RecurringType) -> RecurringTransaction:
        """Switch type; crossing the income boundary flips the sign and resets the category."""
        item = self.get(recurring_id)
        old_type = item.type
        if new_type == old_type:
            return item
        crosses_income = RecurringType.income in (old_type, new_type)
        item.type = new_type
        if crosses_income:
            item.amount_cents = signed_amount_for_type(item.amount_cents, new_type)
            if item.average_amount_cents is not None:
                item.average_amount_cents = signed_amount_for_type(
                    item.average_amount_cents, new_type
                )
            item.category = DEFAULT_CATEGORY_BY_TYPE[new_type]
            item.subcategory = None
        self.session.commit()
        logger.info(
            f"recurring_type_change: id={item.id} from={old_type.value} to={new_type.value} "
            f"amount_cents={item.amount_cents}"
        )
        return item

    def merge(self, target_id: int, source_id: int) -> RecurringTransaction:
        """Fold source into target: occurrences are unioned, source is deleted.

        Target keeps its status and type.
        """
        if target_id == source_id:
            raise RecurringTransitionError("Cannot merge a recurring item into itself")
        target = self.get(target_id)
        source = self.get(source_id)
        if target.account_id != source.account_id:
            raise ValueError("Cannot merge recurring items from different accounts")

        known = {o.key for o in target.occurrences}
        for occ in source.occurrences:
            if occ.key in known:
                continue
            known.add(occ.key)
            target.occurrences.append(
                RecurringOccurrence(
                    transaction_id=occ.transaction_id,
                    date=occ.date,
                    amount_cents=occ.amount_cents,
                    status=occ.status,
                )
            )
        target.occurrences.sort(key=lambda o: (o.date, o.transaction_id or 0))
        for txn in self._linked_transactions(source.id):
            txn.recurring_id = target.id
            txn.is_recurring = True

        dates = [o.date for o in target.occurrences]
        if dates:
            target.last_detected = max(dates)
            starts = [d for d in (target.start_date, source.start_date, min(dates)) if d]
            target.start_date = min(starts)
            if target.status not in TERMINAL_STATUSES:
                target.next_expected = next_expected_date(target.last_detected, target.frequency)
        refresh_amounts(target)

        self._drop(source)
        self.session.commit()
        self.session.refresh(target)
        logger.info(
            f"recurring_merge: target_id={target_id} source_id={source_id} "
            f"occurrences={len(target.occurrences)}"
        )
        return target

    def link_transaction(self, recurring_id: int, transaction_id: int) -> RecurringTransaction:
        item = self.get(recurring_id)
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise ValueError("Transaction not found")
        if txn.account_id != item.account_id:
            raise ValueError("Transaction belongs to another account")
        previous = (
            self.session.get(RecurringTransaction, txn.recurring_id)
            if txn.recurring_id is not None
            else None
        )
        if previous is not None and previous.id != item.id:
            for occ in list(previous.occurrences):
                if occ.transaction_id == txn.id:
                    previous.occurrences.remove(occ)
            refresh_amounts(previous)
        txn.recurring_id = item.id
        txn.is_recurring = True
        add_occurrence(item, txn)
        if item.last_detected is None or txn.date > item.last_detected:
            item.last_detected = txn.date
            if item.status not in TERMINAL_STATUSES:
                item.next_expected = next_expected_date(txn.date, item.frequency)
        refresh_amounts(item)
        self.session.commit()
        return item

    def detect(self, account_id: int, today: Optional[date] = None) -> DetectionResult:
        AccountService(self.session).get(account_id)
        return RecurringDetector(self.session).detect(account_id, today)

    def sync_and_repair(
        self, account_id: Optional[int] = None, today: Optional[date] = None
    ) -> SyncResult:
        return RecurringDetector(self.session).sync_and_repair(account_id, today)

    def get_statistics(self, account_id: Optional[int] = None) -> dict[str, object]:
        items = self.list_active(account_id)
        by_type: dict[str, dict[str, int]] = {
            kind.value: {"count": 0, "monthly_cents": 0} for kind in RecurringType
        }
        by_category: dict[Category, int] = {}
        total_income = 0
        total_expenses = 0
        for item in items:
            monthly = monthly_amount(item.amount_cents, item.frequency)
            bucket = by_type[item.type.value]
            bucket["count"] += 1
            bucket["monthly_cents"] += monthly
            if item.type == RecurringType.income:
                total_income += monthly
            else:
                total_expenses += monthly
                by_category[item.category] = by_category.get(item.category, 0) + monthly

        return {
            "total_monthly_income": total_income,
            "total_monthly_expenses": total_expenses,
            "net_monthly": total_income - total_expenses,
            "by_type": by_type,
            "expense_breakdown": [
                {"category": cat.value, "monthly_cents": amount}
                for cat, amount in sorted(by_category.items(), key=lambda x: x[1], reverse=True)
            ],
            "active_count": len(items),
        }


class SettingsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.session.scalar(select(Setting).where(Setting.key == key))
        return row.value if row else default

    def set(self, key: str, value: str) -> None:
        row = self.session.scalar(select(Setting).where(Setting.key == key))
        if row:
            row.value = value
        else:
            self.session.add(Setting(key=key, value=value))
        self.session.commit()

    def all(self) -> dict[str, str]:
        rows = self.session.scalars(select(Setting).order_by(Setting.key)).all()
        return {row.key: row.value for row in rows}
