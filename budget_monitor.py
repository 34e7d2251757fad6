import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Optional

from database import SessionFactory
from deadletters import DeadLetterRecorder
from errors import DataIntegrityError
from ledger import LedgerStore
from notifications import Notifier
from periods import is_earlier_month, month_period
from recurrence import local_now
from retry import RetryPolicy, call_with_retry
from schemas import BudgetAlertPayload, cents_to_decimal

logger = logging.getLogger(__name__)

ALERT_SUBJECT = "Budget Alert"


class AlertState(str, Enum):
    no_alert_this_month = "no_alert_this_month"
    alert_sent_this_month = "alert_sent_this_month"


def alert_state(last_alert_sent: Optional[datetime], now: datetime) -> AlertState:
    """Derive the suppression state; it resets when the calendar month turns."""
    if last_alert_sent is None or is_earlier_month(last_alert_sent, now):
        return AlertState.no_alert_this_month
    return AlertState.alert_sent_this_month


def percentage_used(spent_cents: int, budget_cents: Optional[int]) -> Decimal:
    """Unrounded share of the budget spent; round only for display."""
    if budget_cents is None:
        raise DataIntegrityError("Budget amount is missing")
    if budget_cents <= 0:
        raise DataIntegrityError(f"Budget amount must be positive, got {budget_cents}")
    return Decimal(spent_cents) * 100 / Decimal(budget_cents)


def display_percentage(pct: Decimal) -> Decimal:
    return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def should_alert(
    pct_used: Decimal,
    last_alert_sent: Optional[datetime],
    now: datetime,
    threshold_pct: int = 80,
) -> bool:
    return (
        pct_used >= threshold_pct
        and alert_state(last_alert_sent, now) == AlertState.no_alert_this_month
    )


@dataclass
class BudgetCycleResult:
    checked: int = 0
    alerted: int = 0
    failed: int = 0


class BudgetMonitor:
    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: Notifier,
        *,
        threshold_pct: int = 80,
        retry_policy: Optional[RetryPolicy] = None,
        dead_letters: Optional[DeadLetterRecorder] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.threshold_pct = threshold_pct
        self.retry_policy = retry_policy or RetryPolicy()
        self.dead_letters = dead_letters or DeadLetterRecorder(session_factory)
        self._sleep = sleep

    def run_cycle(self, now: Optional[datetime] = None) -> BudgetCycleResult:
        now = now or local_now()
        result = BudgetCycleResult()
        with self.session_factory() as session:
            budget_ids = [
                scope.budget.id
                for scope in LedgerStore(session).budgets_with_default_account()
            ]

        for budget_id in budget_ids:
            result.checked += 1
            try:
                if self.check_budget(budget_id, now):
                    result.alerted += 1
            except Exception as exc:
                result.failed += 1
                attempts = getattr(exc, "attempts", 1)
                self.dead_letters.record(
                    "budget_alert", {"budget_id": budget_id}, exc, attempts
                )
        logger.info(
            f"budget_check: checked={result.checked} alerted={result.alerted} "
            f"failed={result.failed}"
        )
        return result

    def check_budget(self, budget_id: int, now: datetime) -> bool:
        with self.session_factory() as session:
            store = LedgerStore(session)
            scopes = store.budgets_with_default_account(budget_id)
            if not scopes:
                return False
            scope = scopes[0]
            budget, account = scope.budget, scope.account

            spent = store.aggregate_expenses(account.id, month_period(now))
            pct = percentage_used(spent, budget.amount_cents)
            if not should_alert(pct, budget.last_alert_sent, now, self.threshold_pct):
                logger.debug(
                    f"budget_ok: budget={budget.id} pct={display_percentage(pct)} "
                    f"state={alert_state(budget.last_alert_sent, now).value}"
                )
                return False

            previous = budget.last_alert_sent
            # A lost claim means an overlapping cycle already owns this month.
            if not store.update_budget_alert_timestamp(budget.id, now):
                session.rollback()
                logger.info(f"budget_alert_skip: budget={budget.id} reason=claimed")
                return False
            session.commit()

            recipient = scope.user.email
            payload = BudgetAlertPayload(
                username=scope.user.name or "",
                percentage_used=display_percentage(pct),
                budget_amount=cents_to_decimal(budget.amount_cents),
                total_expenses=cents_to_decimal(spent),
                account_name=account.name,
            )
            try:
                call_with_retry(
                    lambda: self.notifier.send(recipient, ALERT_SUBJECT, payload),
                    self.retry_policy,
                    label=f"budget_alert:{budget_id}",
                    sleep=self._sleep,
                )
            except Exception:
                store.release_budget_alert(budget_id, now, previous)
                session.commit()
                raise
        logger.info(
            f"budget_alert_sent: budget={budget_id} pct={payload.percentage_used}"
        )
        return True
