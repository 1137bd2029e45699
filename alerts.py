import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from database import atomic
from models import Budget
from notifications import Notification, NotificationSender
from periods import month_period, same_month
from recurrence import local_now
from services import default_account, expense_total


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertCandidate:
    budget_id: int
    user_id: int
    recipient: str
    username: Optional[str]
    account_name: str
    budget_cents: int
    expenses_cents: int
    percentage_used: Decimal
    previous_alert: Optional[datetime]


def percentage_used(expenses_cents: int, budget_cents: int) -> Decimal:
    return Decimal(expenses_cents) / Decimal(budget_cents) * 100


def alert_due(last_alert_sent: Optional[datetime], now: datetime) -> bool:
    """At most one alert per calendar month: compares month/year only."""
    if last_alert_sent is None:
        return True
    return not same_month(last_alert_sent.date(), now.date())


class BudgetAlertMonitor:
    def __init__(
        self,
        session: Session,
        sender: NotificationSender,
        *,
        threshold_percent: Optional[int] = None,
    ) -> None:
        self.session = session
        self.sender = sender
        if threshold_percent is None:
            threshold_percent = get_settings().alert_threshold_percent
        self.threshold = Decimal(threshold_percent)

    def collect(self, now: datetime) -> list[AlertCandidate]:
        period = month_period(now.date())
        budgets = self.session.scalars(
            select(Budget)
            .options(joinedload(Budget.user))
            .order_by(Budget.id)
            .execution_options(populate_existing=True)
        ).all()
        candidates: list[AlertCandidate] = []
        for budget in budgets:
            account = default_account(self.session, budget.user_id)
            if account is None or budget.amount_cents <= 0:
                continue
            expenses = expense_total(self.session, budget.user_id, account.id, period)
            used = percentage_used(expenses, budget.amount_cents)
            if used < self.threshold or not alert_due(budget.last_alert_sent, now):
                continue
            candidates.append(
                AlertCandidate(
                    budget_id=budget.id,
                    user_id=budget.user_id,
                    recipient=budget.user.email,
                    username=budget.user.name,
                    account_name=account.name,
                    budget_cents=budget.amount_cents,
                    expenses_cents=expenses,
                    percentage_used=used,
                    previous_alert=budget.last_alert_sent,
                )
            )
        return candidates

    def run(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        candidates = self.collect(now)
        # Nothing below may hold a database unit open across the send.
        self.session.commit()

        sent = 0
        for candidate in candidates:
            if not self._claim(candidate, now):
                continue
            if self._send(candidate):
                sent += 1
            else:
                self._release(candidate, now)
        logger.info(f"budget_alerts: checked={len(candidates)} sent={sent}")
        return sent

    def _send(self, candidate: AlertCandidate) -> bool:
        notification = Notification(
            recipient=candidate.recipient,
            subject=f"Budget Alert for {candidate.account_name}",
            template="budget_alert",
            context={
                "username": candidate.username,
                "account_name": candidate.account_name,
                "percentage_used": float(candidate.percentage_used),
                "budget_cents": candidate.budget_cents,
                "expenses_cents": candidate.expenses_cents,
            },
        )
        try:
            return bool(self.sender.send(notification))
        except Exception:
            logger.exception(
                f"budget_alert_send_failed: budget_id={candidate.budget_id}"
            )
            return False

    def _claim(self, candidate: AlertCandidate, now: datetime) -> bool:
        period = month_period(now.date())
        month_start = datetime.combine(period.start, time.min)
        next_month_start = datetime.combine(period.end + date.resolution, time.min)
        with atomic(self.session):
            claimed = self.session.execute(
                update(Budget)
                .where(
                    Budget.id == candidate.budget_id,
                    or_(
                        Budget.last_alert_sent.is_(None),
                        Budget.last_alert_sent < month_start,
                        Budget.last_alert_sent >= next_month_start,
                    ),
                )
                .values(last_alert_sent=now)
                .execution_options(synchronize_session=False)
            ).rowcount
        return claimed == 1

    def _release(self, candidate: AlertCandidate, now: datetime) -> None:
        with atomic(self.session):
            self.session.execute(
                update(Budget)
                .where(
                    Budget.id == candidate.budget_id, Budget.last_alert_sent == now
                )
                .values(last_alert_sent=candidate.previous_alert)
                .execution_options(synchronize_session=False)
            )
        logger.warning(
            f"budget_alert_deferred: budget_id={candidate.budget_id} "
            "reason=send_failed"
        )
