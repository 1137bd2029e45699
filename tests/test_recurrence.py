from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    Account,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from recurrence import GENERATED_SUFFIX, RecurringEngine, next_occurrence
from schemas import AccountIn, TransactionIn
from services import AccountService, LedgerService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_recurring(session, **overrides):
    user = User(email="ana@example.com")
    session.add(user)
    session.commit()
    account = AccountService(session, user.id).create(
        AccountIn(name="Main", balance_cents=10_000)
    )
    data = dict(
        account_id=account.id,
        type=TransactionType.expense,
        amount_cents=1_500,
        date=date(2024, 1, 1),
        category="bills",
        description="Rent",
        is_recurring=True,
        recurring_interval=RecurringInterval.monthly,
    )
    data.update(overrides)
    txn = LedgerService(session, user.id).create(TransactionIn(**data))
    return user, account, txn


def balance(session, account_id: int) -> int:
    return session.scalar(
        select(Account.balance_cents).where(Account.id == account_id)
    )


def generated_count(session) -> int:
    return session.scalar(
        select(func.count(Transaction.id)).where(Transaction.is_recurring.is_(False))
    )


@pytest.mark.parametrize(
    "start, interval, expected",
    [
        (date(2024, 1, 31), RecurringInterval.monthly, date(2024, 2, 29)),
        (date(2023, 1, 31), RecurringInterval.monthly, date(2023, 2, 28)),
        (date(2024, 12, 15), RecurringInterval.monthly, date(2025, 1, 15)),
        (date(2024, 2, 29), RecurringInterval.yearly, date(2025, 2, 28)),
        (date(2024, 12, 31), RecurringInterval.daily, date(2025, 1, 1)),
        (date(2024, 3, 1), RecurringInterval.weekly, date(2024, 3, 8)),
    ],
)
def test_next_occurrence(start, interval, expected):
    assert next_occurrence(start, interval) == expected


def test_never_processed_row_is_due_even_with_future_date():
    session = make_session()
    _, _, txn = setup_recurring(session, date=date(2024, 5, 1))
    engine = RecurringEngine(session)

    due = engine.find_due(datetime(2024, 4, 1, 0, 0))
    assert [t.id for t in due] == [txn.id]


def test_non_completed_rows_are_never_due():
    session = make_session()
    setup_recurring(session, status=TransactionStatus.pending)

    assert RecurringEngine(session).find_due(datetime(2024, 4, 1)) == []


def test_process_due_is_idempotent():
    session = make_session()
    user, account, txn = setup_recurring(session)
    engine = RecurringEngine(session)
    now = datetime(2024, 2, 1, 0, 5)

    generated = engine.process_due(txn.id, user.id, now)
    assert generated is not None
    assert generated.date == date(2024, 2, 1)
    assert generated.description == "Rent" + GENERATED_SUFFIX
    assert generated.is_recurring is False
    assert engine.process_due(txn.id, user.id, now) is None

    assert generated_count(session) == 1
    assert balance(session, account.id) == 10_000 - 2 * 1_500
    original = session.get(Transaction, txn.id)
    assert original.last_processed == now
    assert original.next_recurring_date == date(2024, 3, 1)


def test_missed_runs_fire_once_and_advance_from_today():
    session = make_session()
    user, _, txn = setup_recurring(session)
    engine = RecurringEngine(session)
    engine.process_due(txn.id, user.id, datetime(2024, 2, 1))

    late = datetime(2024, 4, 15, 9, 0)
    assert engine.process_due(txn.id, user.id, late) is not None
    assert engine.process_due(txn.id, user.id, late) is None
    assert generated_count(session) == 2
    assert session.get(Transaction, txn.id).next_recurring_date == date(2024, 5, 15)


def test_failed_posting_leaves_row_due(monkeypatch):
    session = make_session()
    user, account, txn = setup_recurring(session)

    def boom(self, generated):
        raise RuntimeError("store went away")

    monkeypatch.setattr(LedgerService, "post", boom)
    with pytest.raises(RuntimeError):
        RecurringEngine(session).process_due(txn.id, user.id, datetime(2024, 2, 1))
    monkeypatch.undo()

    assert generated_count(session) == 0
    assert balance(session, account.id) == 10_000 - 1_500
    due = RecurringEngine(session).find_due(datetime(2024, 2, 1))
    assert [t.id for t in due] == [txn.id]


def test_fan_out_dispatches_every_due_row():
    session = make_session()
    user, _, txn = setup_recurring(session)
    batches = []

    count = RecurringEngine(session).fan_out(batches.append, datetime(2024, 2, 1))

    assert count == 1
    assert len(batches) == 1
    assert [(i.transaction_id, i.user_id) for i in batches[0]] == [(txn.id, user.id)]


def test_fan_out_with_nothing_due_skips_dispatch():
    session = make_session()
    user, _, txn = setup_recurring(session)
    RecurringEngine(session).process_due(txn.id, user.id, datetime(2024, 2, 1))
    batches = []

    assert RecurringEngine(session).fan_out(batches.append, datetime(2024, 2, 2)) == 0
    assert batches == []
