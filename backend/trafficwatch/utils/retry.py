import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError

log = logging.getLogger(__name__)

T = TypeVar("T")

# MySQL ER_LOCK_DEADLOCK / ER_LOCK_WAIT_TIMEOUT
TRANSIENT_MYSQL_CODES = {1213, 1205}
TRANSIENT_MESSAGES = ("deadlock", "lock wait timeout", "database is locked")


def is_transient_db_error(exc: BaseException) -> bool:
    """Lock and deadlock failures are worth retrying; everything else is not."""
    orig = getattr(exc, "orig", None)
    if isinstance(exc, DBAPIError) and orig is not None:
        args = getattr(orig, "args", ())
        if args and isinstance(args[0], int) and args[0] in TRANSIENT_MYSQL_CODES:
            return True
    message = str(orig if orig is not None else exc).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


@dataclass
class RetryPolicy:
    """Exponential backoff: base_delay * 2**attempt between tries."""
    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    is_retryable: Callable[[BaseException], bool] = is_transient_db_error
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def run(self, operation: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return operation()
            except Exception as exc:
                if attempt >= self.max_retries or not self.is_retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                log.info("Transient storage error (attempt %d), retrying in %.2fs: %s",
                         attempt + 1, delay, exc)
                self.sleep(delay)
                attempt += 1
