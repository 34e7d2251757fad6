import logging
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from budget_monitor import BudgetMonitor
from config import Settings, get_settings
from database import SessionFactory, SessionLocal
from deadletters import DeadLetterRecorder
from dispatcher import RecurringDispatcher
from insights import InsightGenerator
from notifications import Notifier, default_notifier
from processor import OccurrenceProcessor
from queue_transport import SchedulerQueue
from reports import ReportGenerator
from retry import RetryPolicy
from throttle import PerUserThrottle


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RECURRING_JOB_ID = "recurring_daily"
BUDGET_JOB_ID = "budget_check"
REPORT_JOB_ID = "monthly_report"


class SchedulerManager:
    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(
            timezone=settings.timezone,
            executors={
                "default": ThreadPoolExecutor(3),
                "tasks": ThreadPoolExecutor(settings.worker_pool_size),
            },
        )
        retry_policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay_secs=settings.backoff_base_secs,
        )
        dead_letters = DeadLetterRecorder(session_factory)
        notifier = notifier or default_notifier(settings)

        self.queue = SchedulerQueue(
            self.scheduler,
            OccurrenceProcessor(session_factory, settings.task_timeout_secs),
            executor="tasks",
            throttle=PerUserThrottle(
                settings.throttle_limit, settings.throttle_window_secs
            ),
            retry_policy=retry_policy,
            dead_letters=dead_letters.record_task,
        )
        self.dispatcher = RecurringDispatcher(
            session_factory, self.queue, settings.recurring_page_size
        )
        self.budget_monitor = BudgetMonitor(
            session_factory,
            notifier,
            threshold_pct=settings.budget_alert_threshold_pct,
            retry_policy=retry_policy,
            dead_letters=dead_letters,
        )
        self.report_generator = ReportGenerator(
            session_factory,
            notifier,
            InsightGenerator(settings),
            retry_policy=retry_policy,
            dead_letters=dead_letters,
        )
        self._jobs: dict[str, Callable[[], object]] = {
            RECURRING_JOB_ID: self.dispatcher.run_cycle,
            BUDGET_JOB_ID: self.budget_monitor.run_cycle,
            REPORT_JOB_ID: self.report_generator.run_cycle,
        }

    @property
    def job_ids(self) -> list[str]:
        return list(self._jobs)

    def run_job(self, job_id: str, source: str = "manual") -> object:
        job = self._jobs.get(job_id)
        if job is None:
            raise ValueError(f"Unknown job: {job_id}")
        logger.info(f"scheduler_run: job={job_id} source={source}")
        try:
            result = job()
        except Exception:
            logger.exception(f"scheduler_run_failed: job={job_id} source={source}")
            raise
        logger.info(f"scheduler_done: job={job_id} source={source} result={result}")
        return result

    def start(self) -> None:
        self.scheduler.start()
        self.run_job(RECURRING_JOB_ID, "startup")

        self.scheduler.add_job(
            self.run_job,
            CronTrigger(hour=0, minute=0),
            args=[RECURRING_JOB_ID, "daily_00:00"],
            id=RECURRING_JOB_ID,
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_job,
            CronTrigger(hour="*/6", minute=0),
            args=[BUDGET_JOB_ID, "every_6h"],
            id=BUDGET_JOB_ID,
            replace_existing=True,
            misfire_grace_time=900,
        )
        self.scheduler.add_job(
            self.run_job,
            CronTrigger(day=1, hour=0, minute=0),
            args=[REPORT_JOB_ID, "monthly_1st"],
            id=REPORT_JOB_ID,
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )
        logger.info(
            "Scheduler started: recurring daily 00:00, budget check every 6h, "
            "monthly report on the 1st"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
