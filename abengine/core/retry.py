import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Bounded retry with linear backoff.

    Attempt ``n`` (1-based) that fails with one of ``retry_on`` sleeps for
    ``n * delay`` seconds before the next attempt. After ``max_attempts``
    failures a StoreUnavailableError is raised. ``sleep`` is injectable so
    tests can observe the backoff without waiting.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (ConnectionError,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.retry_on = retry_on
        self.sleep = sleep

    def _retrying(self, operation: str) -> Retrying:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Store call '%s' failed (attempt %d/%d), retrying in %.2fs: %s",
                operation,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.next_action.sleep,
                retry_state.outcome.exception(),
            )

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.delay, increment=self.delay),
            retry=retry_if_exception_type(self.retry_on),
            sleep=self.sleep,
            before_sleep=log_retry,
        )

    def call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return self._retrying(operation)(fn)
        except RetryError as e:
            logger.error("Store call '%s' gave up after %d attempts", operation, self.max_attempts)
            raise StoreUnavailableError(
                operation, self.max_attempts, e.last_attempt.exception()
            ) from e
