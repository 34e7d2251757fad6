import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        recurring_page_size: int,
        throttle_limit: int,
        throttle_window_secs: float,
        max_attempts: int,
        backoff_base_secs: float,
        task_timeout_secs: float,
        worker_pool_size: int,
        budget_alert_threshold_pct: int,
        smtp_host: Optional[str],
        smtp_port: Optional[int],
        smtp_user: Optional[str],
        smtp_pass: Optional[str],
        mail_from: Optional[str],
        openai_api_key: Optional[str],
        insights_model: str,
        insights_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.recurring_page_size = recurring_page_size
        self.throttle_limit = throttle_limit
        self.throttle_window_secs = throttle_window_secs
        self.max_attempts = max_attempts
        self.backoff_base_secs = backoff_base_secs
        self.task_timeout_secs = task_timeout_secs
        self.worker_pool_size = worker_pool_size
        self.budget_alert_threshold_pct = budget_alert_threshold_pct
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.mail_from = mail_from
        self.openai_api_key = openai_api_key
        self.insights_model = insights_model
        self.insights_timeout_secs = insights_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    return Settings(
        database_url=os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("LEDGER_TIMEZONE", "UTC"),
        recurring_page_size=int(os.getenv("LEDGER_RECURRING_PAGE_SIZE", "500")),
        throttle_limit=int(os.getenv("LEDGER_THROTTLE_LIMIT", "10")),
        throttle_window_secs=float(os.getenv("LEDGER_THROTTLE_WINDOW_SECS", "60")),
        max_attempts=int(os.getenv("LEDGER_MAX_ATTEMPTS", "2")),
        backoff_base_secs=float(os.getenv("LEDGER_BACKOFF_BASE_SECS", "1")),
        task_timeout_secs=float(os.getenv("LEDGER_TASK_TIMEOUT_SECS", "30")),
        worker_pool_size=int(os.getenv("LEDGER_WORKER_POOL_SIZE", "10")),
        budget_alert_threshold_pct=int(
            os.getenv("LEDGER_BUDGET_ALERT_THRESHOLD_PCT", "80")
        ),
        smtp_host=os.getenv("LEDGER_SMTP_HOST"),
        smtp_port=_optional_int("LEDGER_SMTP_PORT"),
        smtp_user=os.getenv("LEDGER_SMTP_USER"),
        smtp_pass=os.getenv("LEDGER_SMTP_PASS"),
        mail_from=os.getenv("LEDGER_MAIL_FROM"),
        openai_api_key=os.getenv("LEDGER_OPENAI_API_KEY")
        or os.getenv("OPENAI_API_KEY"),
        insights_model=os.getenv("LEDGER_INSIGHTS_MODEL", "gpt-4o-mini"),
        insights_timeout_secs=float(os.getenv("LEDGER_INSIGHTS_TIMEOUT_SECS", "15")),
    )
