import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import Conflict
from models import Account, User
from schemas import AccountIn
from services import AccountService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def default_ids(session, user_id: int) -> list[int]:
    return list(
        session.scalars(
            select(Account.id).where(
                Account.user_id == user_id, Account.is_default.is_(True)
            )
        )
    )


def test_first_account_becomes_default() -> None:
    session = make_session()
    user = User(email="ana@example.com")
    session.add(user)
    session.commit()
    service = AccountService(session, user.id)

    first = service.create(AccountIn(name="Main"))
    second = service.create(AccountIn(name="Savings"))

    assert first.is_default is True
    assert second.is_default is False
    assert default_ids(session, user.id) == [first.id]


def test_default_is_exclusive_per_user() -> None:
    session = make_session()
    ana = User(email="ana@example.com")
    bo = User(email="bo@example.com")
    session.add_all([ana, bo])
    session.commit()
    service = AccountService(session, ana.id)
    bo_account = AccountService(session, bo.id).create(AccountIn(name="Bo"))

    first = service.create(AccountIn(name="Main"))
    third = service.create(AccountIn(name="Travel", is_default=True))
    assert default_ids(session, ana.id) == [third.id]

    service.set_default(first.id)
    assert default_ids(session, ana.id) == [first.id]
    assert default_ids(session, bo.id) == [bo_account.id]
    assert session.get(Account, third.id).is_default is False


def test_transaction_counts_per_account() -> None:
    session = make_session()
    user = User(email="ana@example.com")
    session.add(user)
    session.commit()
    service = AccountService(session, user.id)
    service.create(AccountIn(name="Main"))

    assert service.transaction_counts() == {}
    assert session.scalar(select(func.count(Account.id))) == 1


def test_second_default_inside_the_unit_is_a_conflict(monkeypatch) -> None:
    session = make_session()
    user = User(email="ana@example.com")
    session.add(user)
    session.commit()
    service = AccountService(session, user.id)
    first = service.create(AccountIn(name="Main"))
    second = service.create(AccountIn(name="Savings"))

    execute = session.execute
    injected = []

    def racing_execute(statement, *args, **kwargs):
        result = execute(statement, *args, **kwargs)
        if not injected and getattr(statement, "is_update", False):
            # Another writer flags ``first`` right after the switch.
            injected.append(True)
            execute(
                update(Account).where(Account.id == first.id).values(is_default=True)
            )
        return result

    monkeypatch.setattr(session, "execute", racing_execute)
    with pytest.raises(Conflict):
        service.set_default(second.id)
    monkeypatch.undo()

    assert injected == [True]
    assert default_ids(session, user.id) == [first.id]
