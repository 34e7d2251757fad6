import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from database import SessionFactory
from deadletters import DeadLetterRecorder
from insights import InsightGenerator
from ledger import LedgerStore
from notifications import Notifier
from periods import Period, previous_month_period
from recurrence import local_now
from retry import RetryPolicy, call_with_retry
from schemas import CategoryLine, MonthlyReportPayload, MonthlyStats, cents_to_decimal

logger = logging.getLogger(__name__)


def build_report_payload(
    stats: MonthlyStats, period: Period, insights: list[str], username: str = ""
) -> MonthlyReportPayload:
    by_category = sorted(
        stats.by_category_cents.items(), key=lambda item: (-item[1], item[0])
    )
    return MonthlyReportPayload(
        username=username,
        month=period.label,
        total_income=cents_to_decimal(stats.total_income_cents),
        total_expenses=cents_to_decimal(stats.total_expenses_cents),
        net=cents_to_decimal(stats.net_cents),
        by_category=[
            CategoryLine(category=name, amount=cents_to_decimal(cents))
            for name, cents in by_category
        ],
        insights=insights,
    )


@dataclass
class ReportCycleResult:
    users: int = 0
    sent: int = 0
    failed: int = 0


class ReportGenerator:
    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: Notifier,
        insights: Optional[InsightGenerator] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        dead_letters: Optional[DeadLetterRecorder] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.insights = insights or InsightGenerator()
        self.retry_policy = retry_policy or RetryPolicy()
        self.dead_letters = dead_letters or DeadLetterRecorder(session_factory)
        self._sleep = sleep

    def run_cycle(self, now: Optional[datetime] = None) -> ReportCycleResult:
        now = now or local_now()
        period = previous_month_period(now)
        result = ReportCycleResult()
        with self.session_factory() as session:
            user_ids = [user.id for user in LedgerStore(session).list_users()]

        for user_id in user_ids:
            result.users += 1
            try:
                if self.send_report(user_id, period) is not None:
                    result.sent += 1
            except Exception as exc:
                result.failed += 1
                self.dead_letters.record(
                    "monthly_report",
                    {"user_id": user_id, "month": period.slug},
                    exc,
                    getattr(exc, "attempts", 1),
                )
        logger.info(
            f"monthly_report: month={period.slug} users={result.users} "
            f"sent={result.sent} failed={result.failed}"
        )
        return result

    def send_report(
        self, user_id: int, period: Period
    ) -> Optional[MonthlyReportPayload]:
        with self.session_factory() as session:
            store = LedgerStore(session)
            user = store.get_user(user_id)
            if user is None:
                logger.info(f"monthly_report_skip: user={user_id} reason=not_found")
                return None
            stats = store.aggregate_monthly(user_id, period)

        insights = self.insights.generate(stats, period.label)
        payload = build_report_payload(stats, period, insights, user.name or "")
        subject = f"Your Monthly Financial Report - {period.label}"
        call_with_retry(
            lambda: self.notifier.send(user.email, subject, payload),
            self.retry_policy,
            label=f"monthly_report:{user_id}",
            sleep=self._sleep,
        )
        logger.info(f"monthly_report_sent: user={user_id} month={period.slug}")
        return payload
