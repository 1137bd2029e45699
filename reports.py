import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from insights import InsightGenerator
from models import Transaction, TransactionType, User
from notifications import Notification, NotificationSender
from periods import Period, previous_month_period
from recurrence import local_now
from schemas import MonthlyStats


logger = logging.getLogger(__name__)


def monthly_stats(session: Session, user_id: int, period: Period) -> MonthlyStats:
    transactions = session.scalars(
        select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.date.between(period.start, period.end),
        )
    ).all()
    stats = MonthlyStats(transaction_count=len(transactions))
    for txn in transactions:
        if txn.type == TransactionType.expense:
            stats.expense_cents += txn.amount_cents
            stats.by_category[txn.category] = (
                stats.by_category.get(txn.category, 0) + txn.amount_cents
            )
        else:
            stats.income_cents += txn.amount_cents
    return stats


class MonthlyReportService:
    def __init__(
        self,
        session: Session,
        sender: NotificationSender,
        insights: Optional[InsightGenerator] = None,
    ) -> None:
        self.session = session
        self.sender = sender
        self.insights = insights or InsightGenerator()

    def send_reports(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        period = previous_month_period(now.date())
        users = self.session.scalars(select(User).order_by(User.id)).all()
        pending = [
            (user.email, user.name, monthly_stats(self.session, user.id, period))
            for user in users
        ]
        # AI and email calls run after the read is closed.
        self.session.commit()

        sent = 0
        for email, name, stats in pending:
            insights = self.insights.generate(stats, period.label)
            notification = Notification(
                recipient=email,
                subject=f"Your Monthly Financial Report - {period.label}",
                template="monthly_report",
                context={
                    "username": name,
                    "month": period.label,
                    "stats": stats,
                    "insights": insights,
                },
            )
            try:
                delivered = self.sender.send(notification)
            except Exception:
                logger.exception(f"monthly_report_failed: to={email}")
                continue
            if delivered:
                sent += 1
            else:
                logger.warning(f"monthly_report_failed: to={email}")
        logger.info(f"monthly_reports: users={len(pending)} sent={sent}")
        return sent
