import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from errors import DataIntegrityError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    base_delay_secs: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given 1-based attempt failed."""
        return self.base_delay_secs * (2**attempt)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` until it succeeds or the policy is exhausted.

    The last exception is re-raised with ``attempts`` recorded on it.
    Data-integrity errors are raised on the first occurrence.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except DataIntegrityError as exc:
            exc.attempts = attempt
            raise
        except Exception as exc:
            if policy.exhausted(attempt):
                exc.attempts = attempt
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"retry: label={label} attempt={attempt} retry_in={delay:.1f}s "
                f"error={exc!r}"
            )
            sleep(delay)
            attempt += 1
