import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class ThrottlePolicy:
    limit: int
    period_secs: float


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay_secs: float
    max_delay_secs: float = 60.0


@dataclass(frozen=True)
class JobSpec:
    name: str
    cron: str
    throttle: Optional[ThrottlePolicy] = None
    retry: Optional[RetryPolicy] = None


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        identity_secret: str,
        token_max_age_hours: int,
        throttle_limit: int,
        throttle_period_secs: float,
        retry_max_attempts: int,
        retry_base_delay_secs: float,
        worker_threads: int,
        alert_threshold_percent: int,
        recurring_cron: str,
        alerts_cron: str,
        report_cron: str,
        resend_api_key: Optional[str],
        email_from: str,
        email_timeout_secs: float,
        gemini_api_key: Optional[str],
        gemini_model: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.identity_secret = identity_secret
        self.token_max_age_hours = token_max_age_hours
        self.throttle_limit = throttle_limit
        self.throttle_period_secs = throttle_period_secs
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay_secs = retry_base_delay_secs
        self.worker_threads = worker_threads
        self.alert_threshold_percent = alert_threshold_percent
        self.recurring_cron = recurring_cron
        self.alerts_cron = alerts_cron
        self.report_cron = report_cron
        self.resend_api_key = resend_api_key
        self.email_from = email_from
        self.email_timeout_secs = email_timeout_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model

    def job_specs(self) -> dict[str, JobSpec]:
        retry = RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_secs=self.retry_base_delay_secs,
        )
        return {
            "recurring-discovery": JobSpec(
                name="recurring-discovery",
                cron=self.recurring_cron,
                throttle=ThrottlePolicy(
                    limit=self.throttle_limit,
                    period_secs=self.throttle_period_secs,
                ),
                retry=retry,
            ),
            "budget-alerts": JobSpec(name="budget-alerts", cron=self.alerts_cron),
            "monthly-report": JobSpec(name="monthly-report", cron=self.report_cron),
        }


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    return Settings(
        database_url=os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("LEDGER_TIMEZONE", "Asia/Kolkata"),
        identity_secret=os.getenv(
            "LEDGER_IDENTITY_SECRET",
            "3f9c1d0a6b8e4f27a5c2d9e1b7f04a6c8d2e5f1a9b3c7d0e4f8a2b6c1d5e9f30",
        ),
        token_max_age_hours=int(os.getenv("LEDGER_TOKEN_MAX_AGE_HOURS", "12")),
        throttle_limit=int(os.getenv("LEDGER_THROTTLE_LIMIT", "10")),
        throttle_period_secs=float(os.getenv("LEDGER_THROTTLE_PERIOD_SECS", "60")),
        retry_max_attempts=int(os.getenv("LEDGER_RETRY_MAX_ATTEMPTS", "2")),
        retry_base_delay_secs=float(os.getenv("LEDGER_RETRY_BASE_DELAY_SECS", "1")),
        worker_threads=int(os.getenv("LEDGER_WORKER_THREADS", "4")),
        alert_threshold_percent=int(os.getenv("LEDGER_ALERT_THRESHOLD_PERCENT", "80")),
        recurring_cron=os.getenv("LEDGER_RECURRING_CRON", "0 0 * * *"),
        alerts_cron=os.getenv("LEDGER_ALERTS_CRON", "0 */6 * * *"),
        report_cron=os.getenv("LEDGER_REPORT_CRON", "0 0 1 * *"),
        resend_api_key=os.getenv("LEDGER_RESEND_API_KEY") or None,
        email_from=os.getenv(
            "LEDGER_EMAIL_FROM", "Finance Tracker <onboarding@resend.dev>"
        ),
        email_timeout_secs=float(os.getenv("LEDGER_EMAIL_TIMEOUT_SECS", "10")),
        gemini_api_key=os.getenv("LEDGER_GEMINI_API_KEY") or None,
        gemini_model=os.getenv("LEDGER_GEMINI_MODEL", "gemini-1.5-flash"),
    )
