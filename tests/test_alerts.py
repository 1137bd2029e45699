from datetime import date, datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from alerts import BudgetAlertMonitor, alert_due
from database import Base
from models import Budget, TransactionType, User
from notifications import LogNotificationSender, Notification, render
from schemas import AccountIn, BudgetIn, TransactionIn
from services import AccountService, BudgetService, LedgerService


class RecordingSender:
    def __init__(self, result=True):
        self.result = result
        self.sent: list[Notification] = []

    def send(self, notification):
        self.sent.append(notification)
        return self.result


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_budget(session, spent_cents=900, budget_cents=1_000):
    user = User(email="ana@example.com", name="Ana")
    session.add(user)
    session.commit()
    account = AccountService(session, user.id).create(AccountIn(name="Main"))
    BudgetService(session, user.id).upsert(BudgetIn(amount_cents=budget_cents))
    spend(session, user.id, account.id, spent_cents, date(2024, 3, 10))
    return user, account


def spend(session, user_id, account_id, cents, day):
    LedgerService(session, user_id).create(
        TransactionIn(
            account_id=account_id,
            type=TransactionType.expense,
            amount_cents=cents,
            date=day,
            category="food",
        )
    )


def last_alert(session):
    return session.scalar(select(Budget.last_alert_sent))


def test_alert_due_compares_calendar_month():
    now = datetime(2024, 3, 15)
    assert alert_due(None, now)
    assert not alert_due(datetime(2024, 3, 1), now)
    assert alert_due(datetime(2024, 2, 29, 23, 59), now)
    assert alert_due(datetime(2023, 3, 20), now)


def test_one_alert_per_month():
    session = make_session()
    setup_budget(session)
    sender = RecordingSender()
    monitor = BudgetAlertMonitor(session, sender, threshold_percent=80)
    now = datetime(2024, 3, 15, 6, 0)

    assert monitor.run(now) == 1
    assert monitor.run(datetime(2024, 3, 15, 12, 0)) == 0
    assert last_alert(session) == now
    assert sender.sent[0].recipient == "ana@example.com"
    assert sender.sent[0].subject == "Budget Alert for Main"
    assert sender.sent[0].context["percentage_used"] == 90.0


def test_alert_again_next_month():
    session = make_session()
    user, account = setup_budget(session)
    sender = RecordingSender()
    monitor = BudgetAlertMonitor(session, sender, threshold_percent=80)
    monitor.run(datetime(2024, 3, 15))

    spend(session, user.id, account.id, 850, date(2024, 4, 2))
    april = datetime(2024, 4, 3, 0, 0)
    assert monitor.run(april) == 1
    assert last_alert(session) == april


def test_below_threshold_sends_nothing():
    session = make_session()
    setup_budget(session, spent_cents=500)
    sender = RecordingSender()

    assert BudgetAlertMonitor(session, sender, threshold_percent=80).run(
        datetime(2024, 3, 15)
    ) == 0
    assert sender.sent == []
    assert last_alert(session) is None


def test_failed_send_releases_watermark():
    session = make_session()
    setup_budget(session)
    now = datetime(2024, 3, 15, 6, 0)

    failing = BudgetAlertMonitor(
        session, RecordingSender(result=False), threshold_percent=80
    )
    assert failing.run(now) == 0
    assert last_alert(session) is None

    sender = RecordingSender()
    later = datetime(2024, 3, 15, 12, 0)
    assert BudgetAlertMonitor(session, sender, threshold_percent=80).run(later) == 1
    assert last_alert(session) == later


def test_budget_alert_template_renders():
    notification = Notification(
        recipient="ana@example.com",
        subject="Budget Alert for Main",
        template="budget_alert",
        context={
            "username": "Ana",
            "account_name": "Main",
            "percentage_used": 90.0,
            "budget_cents": 100_000,
            "expenses_cents": 90_000,
        },
    )
    html = render(notification)
    assert "90.0%" in html
    assert "1,000.00" in html
    assert LogNotificationSender().send(notification) is True
