from datetime import date

from sqlalchemy import update

import ledger
from database import Base, make_engine, make_session_factory
from models import Account, BalanceCheckpoint, Category, Direction, Transaction
from schemas import BalanceCheckpointIn, InitialBalanceIn, ParsedTransaction
from services import AccountService, BalanceCheckpointService
from statement_parser import fingerprint


def make_session():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)()


def add_account(session, initial=None, initial_date=None, name="Checking") -> Account:
    account = Account(
        name=name, initial_balance_cents=initial, initial_balance_date=initial_date
    )
    session.add(account)
    session.flush()
    return account


def add_txn(session, account, day, cents, merchant="Shop") -> Transaction:
    txn = Transaction(
        account_id=account.id,
        date=day,
        amount_cents=cents,
        direction=Direction.for_amount(cents),
        merchant=merchant,
        merchant_original=merchant,
        category=Category.shopping,
        fingerprint=fingerprint(account.id, day, cents, merchant),
    )
    session.add(txn)
    session.flush()
    return txn


def test_replay_is_ordered_by_date_then_id():
    session = make_session()
    account = add_account(session, initial=100_000, initial_date=date(2024, 1, 1))
    late = add_txn(session, account, date(2024, 1, 10), -2_000)
    early = add_txn(session, account, date(2024, 1, 5), -1_000)
    same_day = add_txn(session, account, date(2024, 1, 10), 500)

    result = ledger.recalculate(session, account.id)

    assert result.balance_cents == 97_500
    assert result.warnings == []
    assert early.balance_after_cents == 99_000
    assert late.balance_after_cents == 97_000
    assert same_day.balance_after_cents == 97_500
    assert session.get(Account, account.id).balance_cents == 97_500
    assert session.get(Account, account.id).last_recalculated_at is not None


def test_recalculate_is_deterministic():
    session = make_session()
    account = add_account(session, initial=0, initial_date=date(2024, 1, 1))
    for day in range(1, 11):
        add_txn(session, account, date(2024, 2, day), day * 100)

    first = ledger.recalculate(session, account.id, batch_size=3)
    balances = [
        t.balance_after_cents
        for t in session.query(Transaction).order_by(Transaction.date, Transaction.id)
    ]
    second = ledger.recalculate(session, account.id, batch_size=3)

    assert first.updated == 10
    assert second.updated == 0
    assert first.balance_cents == second.balance_cents == 5_500
    assert balances == [sum(range(1, d + 1)) * 100 for d in range(1, 11)]
    assert ledger.verify_consistency(session, account.id) == []


def test_checkpoint_anchors_start_of_day():
    session = make_session()
    account = add_account(session, initial=100_000, initial_date=date(2024, 1, 1))
    a = add_txn(session, account, date(2024, 1, 5), -1_000)
    b = add_txn(session, account, date(2024, 1, 10), -2_000)
    c = add_txn(session, account, date(2024, 1, 15), -3_000)
    session.commit()

    BalanceCheckpointService(session).create(
        account.id, BalanceCheckpointIn(as_of_date=date(2024, 1, 10), balance_cents=50_000)
    )

    assert a.balance_after_cents == 99_000
    assert b.balance_after_cents == 48_000
    assert c.balance_after_cents == 45_000
    assert session.get(Account, account.id).balance_cents == 45_000


def test_latest_checkpoint_on_same_date_wins():
    session = make_session()
    account = add_account(session, initial=0, initial_date=date(2024, 1, 1))
    txn = add_txn(session, account, date(2024, 3, 1), 1_000)
    session.commit()

    service = BalanceCheckpointService(session)
    service.create(account.id, BalanceCheckpointIn(as_of_date=date(2024, 3, 1), balance_cents=10_000))
    service.create(account.id, BalanceCheckpointIn(as_of_date=date(2024, 3, 1), balance_cents=20_000))

    assert txn.balance_after_cents == 21_000


def test_trailing_checkpoint_sets_current_balance():
    session = make_session()
    account = add_account(session, initial=10_000, initial_date=date(2024, 1, 1))
    add_txn(session, account, date(2024, 1, 2), -1_000)
    session.commit()

    checkpoint = BalanceCheckpointService(session).create(
        account.id, BalanceCheckpointIn(as_of_date=date(2024, 2, 1), balance_cents=7_777)
    )
    assert session.get(Account, account.id).balance_cents == 7_777

    BalanceCheckpointService(session).delete(checkpoint.id)
    assert session.get(Account, account.id).balance_cents == 9_000


def test_missing_initial_balance_warns_only_when_used():
    session = make_session()
    account = add_account(session)
    add_txn(session, account, date(2024, 1, 5), -1_000)

    result = ledger.recalculate(session, account.id)
    assert result.balance_cents == -1_000
    assert any("Initial balance is not set" in w.message for w in result.warnings)

    session.add(
        BalanceCheckpoint(account_id=account.id, as_of_date=date(2024, 1, 1), balance_cents=5_000)
    )
    session.flush()
    result = ledger.recalculate(session, account.id)
    assert result.balance_cents == 4_000
    assert result.warnings == []


def test_rows_before_initial_date_are_reported():
    session = make_session()
    account = add_account(session, initial=1_000, initial_date=date(2024, 6, 1))
    add_txn(session, account, date(2024, 5, 30), -100)
    session.add(
        BalanceCheckpoint(account_id=account.id, as_of_date=date(2024, 5, 1), balance_cents=0)
    )
    session.flush()

    messages = [w.message for w in ledger.recalculate(session, account.id).warnings]
    assert any("checkpoint(s) dated before" in m for m in messages)
    assert any("transaction(s) dated before" in m for m in messages)


def test_set_initial_balance_replays():
    session = make_session()
    account = add_account(session, initial=0, initial_date=date(2024, 1, 1))
    txn = add_txn(session, account, date(2024, 1, 2), 250)
    session.commit()

    result = AccountService(session).set_initial_balance(
        account.id,
        InitialBalanceIn(initial_balance_cents=1_000, initial_balance_date=date(2024, 1, 1)),
    )
    assert result.balance_cents == 1_250
    assert txn.balance_after_cents == 1_250


def test_balance_as_of_and_consistency_check():
    session = make_session()
    account = add_account(session, initial=1_000, initial_date=date(2024, 1, 1))
    first = add_txn(session, account, date(2024, 1, 2), -100)
    add_txn(session, account, date(2024, 1, 20), -200)
    ledger.recalculate(session, account.id)

    assert ledger.balance_as_of(session, account.id, date(2024, 1, 1)) == 1_000
    assert ledger.balance_as_of(session, account.id, date(2024, 1, 10)) == 900
    assert ledger.balance_as_of(session, account.id, date(2024, 2, 1)) == 700

    session.execute(
        update(Transaction).where(Transaction.id == first.id).values(balance_after_cents=1)
    )
    assert ledger.verify_consistency(session, account.id) == [first.id]


def test_cancelled_recalculation_keeps_stored_balances():
    session = make_session()
    account = add_account(session, initial=0, initial_date=date(2024, 1, 1))
    for day in range(1, 6):
        add_txn(session, account, date(2024, 1, day), 100)
    session.commit()

    result = ledger.recalculate(session, account.id, batch_size=2, should_cancel=lambda: True)

    assert result.cancelled
    assert result.updated == 0
    assert all(t.balance_after_cents is None for t in session.query(Transaction))


def test_cancel_inside_caller_transaction_discards_flushed_batches():
    session = make_session()
    account = add_account(session, initial=0, initial_date=date(2024, 1, 1))
    for day in range(1, 6):
        add_txn(session, account, date(2024, 1, day), 100)
    session.commit()
    checks = iter([False, True])

    result = ledger.recalculate(
        session, account.id, batch_size=2, should_cancel=lambda: next(checks), commit=False
    )
    session.commit()

    assert result.cancelled
    assert all(t.balance_after_cents is None for t in session.query(Transaction))
    assert session.get(Account, account.id).balance_cents == 0


def test_recalculate_without_commit_leaves_commit_to_caller():
    session = make_session()
    account = add_account(session, initial=0, initial_date=date(2024, 1, 1))
    for day in range(1, 4):
        add_txn(session, account, date(2024, 1, day), 100)
    session.commit()

    result = ledger.recalculate(session, account.id, batch_size=1, commit=False)
    session.rollback()

    assert result.balance_cents == 300
    assert all(t.balance_after_cents is None for t in session.query(Transaction))


def test_recalculate_all_reports_progress():
    session = make_session()
    for name in ("A", "B"):
        account = add_account(session, initial=0, initial_date=date(2024, 1, 1), name=name)
        add_txn(session, account, date(2024, 1, 2), 100)
    seen = []

    results = ledger.recalculate_all(session, on_progress=lambda done, total: seen.append((done, total)))

    assert [r.balance_cents for r in results] == [100, 100]
    assert seen == [(1, 2), (2, 2)]


def _row(n, day, amount, balance):
    return ParsedTransaction(
        row_number=n,
        account_id=1,
        date=day,
        amount_cents=amount,
        direction=Direction.for_amount(amount),
        merchant="X",
        merchant_original="X",
        category=Category.services,
        statement_balance_cents=balance,
        fingerprint=str(n),
    )


def test_initial_balance_from_statement_handles_file_order():
    ascending = [
        _row(1, date(2024, 1, 1), -100, 900),
        _row(2, date(2024, 1, 1), -50, 850),
        _row(3, date(2024, 1, 2), 10, 860),
    ]
    assert ledger.initial_balance_from_statement(ascending) == (1_000, date(2024, 1, 1))

    descending = [
        _row(1, date(2024, 1, 2), 10, 860),
        _row(2, date(2024, 1, 1), -50, 850),
        _row(3, date(2024, 1, 1), -100, 900),
    ]
    assert ledger.initial_balance_from_statement(descending) == (1_000, date(2024, 1, 1))
    assert ledger.initial_balance_from_statement([_row(1, date(2024, 1, 1), 5, None)]) is None
