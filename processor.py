import logging
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from database import SessionFactory
from errors import StaleOccurrence, TaskTimeout
from ledger import LedgerStore, is_active_recurring
from recurrence import is_due, local_now
from schemas import RecurringTask

logger = logging.getLogger(__name__)


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "unique" in message or "duplicate" in message


class OccurrenceOutcome(str, Enum):
    posted = "posted"
    not_found = "not_found"
    not_due = "not_due"
    duplicate = "duplicate"


class OccurrenceProcessor:
    """Materializes one occurrence of a recurring transaction.

    Safe under redelivery: due-ness is re-checked on load and again by the
    conditional schedule update inside the ledger transaction, so a task
    delivered twice posts at most one entry and one balance change.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        timeout_secs: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.timeout_secs = timeout_secs
        self._clock = clock

    def __call__(self, task: RecurringTask) -> OccurrenceOutcome:
        return self.process(task)

    def process(
        self, task: RecurringTask, now: Optional[datetime] = None
    ) -> OccurrenceOutcome:
        now = now or local_now()
        deadline = self._clock() + self.timeout_secs

        with self.session_factory() as session:
            store = LedgerStore(session)
            txn = store.get_transaction(task.transaction_id, task.user_id)
            if txn is None:
                logger.info(
                    f"occurrence_skip: txn={task.transaction_id} "
                    f"user={task.user_id} reason=not_found"
                )
                return OccurrenceOutcome.not_found
            if not is_active_recurring(txn):
                logger.info(
                    f"occurrence_skip: txn={txn.id} user={txn.user_id} "
                    f"reason=inactive status={txn.status.value} "
                    f"recurring={txn.is_recurring}"
                )
                return OccurrenceOutcome.not_found
            if not is_due(txn, now.date()):
                logger.info(
                    f"occurrence_skip: txn={txn.id} user={txn.user_id} "
                    f"reason=not_due next={txn.next_recurring_date}"
                )
                return OccurrenceOutcome.not_due

            try:
                occurrence = store.atomic_ledger_update(txn, now)
                self._check_deadline(deadline, task)
                session.commit()
            except (StaleOccurrence, IntegrityError) as exc:
                session.rollback()
                if isinstance(exc, IntegrityError) and not _is_unique_violation(exc):
                    raise
                logger.info(
                    f"occurrence_skip: txn={txn.id} user={txn.user_id} "
                    f"reason=duplicate detail={exc.__class__.__name__}"
                )
                return OccurrenceOutcome.duplicate
            except Exception:
                session.rollback()
                raise

        logger.info(
            f"occurrence_posted: txn={txn.id} user={txn.user_id} "
            f"entry={occurrence.id} amount_cents={occurrence.amount_cents} "
            f"next={txn.next_recurring_date}"
        )
        return OccurrenceOutcome.posted

    def _check_deadline(self, deadline: float, task: RecurringTask) -> None:
        if self._clock() > deadline:
            raise TaskTimeout(
                f"Processing transaction {task.transaction_id} exceeded "
                f"{self.timeout_secs:.0f}s"
            )
