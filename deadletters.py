import logging

from sqlalchemy.exc import SQLAlchemyError

from database import SessionFactory, session_scope
from ledger import LedgerStore
from schemas import RecurringTask

logger = logging.getLogger(__name__)


class DeadLetterRecorder:
    """Persists work that ran out of retries so an operator can inspect it."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    def record(
        self, source: str, payload: dict, error: BaseException, attempts: int
    ) -> None:
        try:
            with session_scope(self.session_factory) as session:
                LedgerStore(session).record_dead_letter(
                    source, payload, error, attempts
                )
        except SQLAlchemyError:
            # The store itself is down; the log line is the only record left.
            logger.exception(
                f"dead_letter_unpersisted: source={source} payload={payload} "
                f"attempts={attempts} error={error!r}"
            )

    def record_task(self, task: RecurringTask, error: BaseException) -> None:
        self.record("recurring", task.model_dump(), error, task.attempt)
