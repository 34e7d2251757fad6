import logging
from datetime import datetime
from typing import Optional

from database import SessionFactory
from ledger import LedgerStore
from queue_transport import QueueTransport
from recurrence import local_now
from schemas import RecurringTask

logger = logging.getLogger(__name__)


class RecurringDispatcher:
    """Turns due recurring transactions into queue tasks.

    The cycle only enqueues; it neither waits for processing nor
    deduplicates, since the processor re-checks due-ness on every delivery.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        queue: QueueTransport,
        page_size: int = 500,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.page_size = page_size

    def run_cycle(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        count = 0
        with self.session_factory() as session:
            store = LedgerStore(session)
            for ref in store.find_due_recurring(now.date(), self.page_size):
                self.queue.enqueue(
                    RecurringTask(transaction_id=ref.transaction_id, user_id=ref.user_id)
                )
                count += 1
        logger.info(f"recurring_dispatch: due={count} as_of={now.date()}")
        return count
