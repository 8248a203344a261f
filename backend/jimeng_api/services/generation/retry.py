"""
Whole-flow retry: re-run submit -> poll -> result from the start
"""

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from jimeng_api.core.config import settings
from jimeng_api.core.exceptions import (
    ContentFiltered,
    InsufficientCredit,
    NoRecordId,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retrying these burns quota without changing the outcome
NON_RETRYABLE = (ContentFiltered, InsufficientCredit, NoRecordId, ValidationError)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, Exception) and not isinstance(exc, NON_RETRYABLE)


def _log_retry(retry_state: RetryCallState):
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Generation attempt {retry_state.attempt_number} failed: {exc}; "
        f"retrying in {retry_state.next_action.sleep if retry_state.next_action else 0}s"
    )


async def run_with_retry(
    flow: Callable[[], Awaitable[T]],
    attempts: int = None,
    delay: float = None
) -> T:
    """Invoke `flow` up to `attempts` times; the last error propagates unchanged"""
    attempts = attempts or settings.FLOW_RETRY_ATTEMPTS
    delay = settings.FLOW_RETRY_DELAY if delay is None else delay

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        reraise=True
    )
    async for attempt in retrying:
        with attempt:
            return await flow()
