import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from config import get_settings
from database import atomic, session_scope
from models import RecurringInterval, Transaction, TransactionStatus
from schemas import WorkItem


logger = logging.getLogger(__name__)

GENERATED_SUFFIX = " (Recurring)"


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def next_occurrence(from_date: date, interval: RecurringInterval) -> date:
    if interval == RecurringInterval.daily:
        return from_date + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return from_date + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(from_date, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(from_date, 12)
    raise ValueError(f"Unknown recurring interval: {interval}")


def due_clause(today: date) -> ColumnElement[bool]:
    """The one definition of a due recurring transaction.

    Discovery, per-item reload and the claiming update all filter on this, so
    they cannot disagree about what is due.
    """
    return (
        Transaction.is_recurring.is_(True)
        & (Transaction.status == TransactionStatus.completed)
        & or_(
            Transaction.last_processed.is_(None),
            Transaction.next_recurring_date <= today,
        )
    )


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_due(self, now: Optional[datetime] = None) -> list[Transaction]:
        today = (now or local_now()).date()
        stmt = (
            select(Transaction)
            .where(due_clause(today))
            .order_by(Transaction.next_recurring_date, Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def fan_out(
        self,
        dispatch: Callable[[list[WorkItem]], None],
        now: Optional[datetime] = None,
    ) -> int:
        items = [
            WorkItem(transaction_id=txn.id, user_id=txn.user_id)
            for txn in self.find_due(now)
        ]
        # Close the read before handing work to the transport.
        self.session.commit()
        if items:
            dispatch(items)
        logger.info(f"recurring_fan_out: triggered={len(items)}")
        return len(items)

    def process_due(
        self, transaction_id: int, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Transaction]:
        """Generate one occurrence of a due recurring transaction.

        Returns the generated transaction, or None when the row is no longer
        due (already handled by a duplicate or concurrent delivery).
        """
        from services import LedgerService

        now = now or local_now()
        today = now.date()

        original = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == user_id,
                due_clause(today),
            )
            .execution_options(populate_existing=True)
        )
        if original is None:
            self.session.rollback()
            logger.info(
                f"recurring_skip: transaction_id={transaction_id} user_id={user_id}"
            )
            return None

        next_date = next_occurrence(today, original.recurring_interval)
        with atomic(self.session):
            claimed = self.session.execute(
                update(Transaction)
                .where(Transaction.id == original.id, due_clause(today))
                .values(last_processed=now, next_recurring_date=next_date)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                generated = None
            else:
                generated = Transaction(
                    user_id=original.user_id,
                    account_id=original.account_id,
                    type=original.type,
                    amount_cents=original.amount_cents,
                    date=today,
                    category=original.category,
                    description=f"{original.description or ''}{GENERATED_SUFFIX}",
                    is_recurring=False,
                    status=TransactionStatus.completed,
                )
                LedgerService(self.session, original.user_id).post(generated)
        self.session.expire(original)

        if generated is None:
            logger.info(
                f"recurring_skip: transaction_id={transaction_id} user_id={user_id} "
                "reason=claimed_elsewhere"
            )
            return None
        logger.info(
            f"recurring_processed: transaction_id={transaction_id} "
            f"user_id={user_id} generated_id={generated.id} next={next_date}"
        )
        return generated


def process_work_item(item: WorkItem) -> Optional[int]:
    """Transport entry point: handles one delivery in its own session."""
    with session_scope() as session:
        generated = RecurringEngine(session).process_due(
            item.transaction_id, item.user_id
        )
        return generated.id if generated is not None else None
