import logging
from functools import partial
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from alerts import BudgetAlertMonitor
from config import JobSpec, RetryPolicy, ThrottlePolicy, get_settings
from database import session_scope
from notifications import NotificationSender, default_sender
from recurrence import RecurringEngine, process_work_item
from reports import MonthlyReportService
from schemas import WorkItem
from throttle import KeyedThrottleExecutor


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, sender: Optional[NotificationSender] = None) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.jobs = settings.job_specs()
        self.sender = sender or default_sender(settings)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

        discovery = self.jobs["recurring-discovery"]
        self.executor = KeyedThrottleExecutor(
            discovery.throttle or ThrottlePolicy(limit=10, period_secs=60),
            discovery.retry or RetryPolicy(max_attempts=2, base_delay_secs=1),
            max_workers=settings.worker_threads,
        )

    def dispatch(self, items: list[WorkItem]) -> None:
        for item in items:
            self.executor.submit(
                item.user_id,
                partial(process_work_item, item),
                label=f"recurring:{item.transaction_id}",
            )

    def run_recurring(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: job=recurring-discovery source={source}")
        with session_scope() as session:
            count = RecurringEngine(session).fan_out(self.dispatch)
        logger.info(
            f"scheduler_run: job=recurring-discovery source={source} triggered={count}"
        )
        return count

    def run_budget_alerts(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: job=budget-alerts source={source}")
        with session_scope() as session:
            return BudgetAlertMonitor(session, self.sender).run()

    def run_monthly_reports(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: job=monthly-report source={source}")
        with session_scope() as session:
            return MonthlyReportService(session, self.sender).send_reports()

    def _add(self, spec: JobSpec, func) -> None:
        self.scheduler.add_job(
            func,
            CronTrigger.from_crontab(spec.cron, timezone=self.timezone),
            args=[f"cron:{spec.cron}"],
            id=spec.name,
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
            max_instances=1,
        )

    def start(self) -> None:
        self._add(self.jobs["recurring-discovery"], self.run_recurring)
        self._add(self.jobs["budget-alerts"], self.run_budget_alerts)
        self._add(self.jobs["monthly-report"], self.run_monthly_reports)
        self.scheduler.start()
        logger.info(
            "Scheduler started: "
            + ", ".join(f"{spec.name}={spec.cron}" for spec in self.jobs.values())
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self.executor.shutdown(wait=False)
