"""
Bounded retries for calls to external providers.

Transient failures are retried with exponential backoff; once the attempt
budget is spent the last error is surfaced as ProviderUnavailable (503,
retryable) so clients know to try again later.
"""
import logging
from typing import Callable, Optional, Tuple, Type, TypeVar

from tenacity import Retrying, RetryError, stop_after_attempt, wait_exponential, retry_if_exception_type

from streamvault.core.config import settings
from streamvault.core.errors import ProviderUnavailable

logger = logging.getLogger("streamvault")

T = TypeVar("T")


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "provider.retry",
        extra={
            "attempt": retry_state.attempt_number,
            "operation": getattr(retry_state.fn, "__name__", str(retry_state.fn)),
            "error_message": str(exc) if exc else None,
        },
    )


def call_with_retries(
    fn: Callable[..., T],
    *args,
    retry_on: Tuple[Type[BaseException], ...],
    max_attempts: Optional[int] = None,
    max_wait: Optional[float] = None,
    **kwargs,
) -> T:
    """Call fn, retrying on `retry_on` exceptions; raise ProviderUnavailable when exhausted."""
    attempts = max_attempts or settings.PROVIDER_MAX_ATTEMPTS
    wait_cap = settings.PROVIDER_RETRY_MAX_WAIT_SECONDS if max_wait is None else max_wait

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0, max=wait_cap),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=False,
    )
    try:
        return retrying(fn, *args, **kwargs)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise ProviderUnavailable(f"Payment provider unavailable: {last}") from last
