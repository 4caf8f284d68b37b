"""Backoff for transient CalDAV failures."""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential
)

from .errors import TransportError
from .models import SyncConfiguration

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_transient(exc: BaseException) -> bool:
    """Network errors, timeouts, 429 and 5xx responses."""
    return isinstance(exc, TransportError) and exc.retryable


def transient_retrying(config: SyncConfiguration) -> AsyncRetrying:
    return AsyncRetrying(
        stop=stop_after_attempt(config.retry_attempts),
        wait=wait_exponential(
            multiplier=config.retry_delay_seconds,
            max=config.retry_max_delay_seconds
        ),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def call_with_retries(
    config: Optional[SyncConfiguration],
    func: Callable[..., Awaitable[T]],
    *args,
    **kwargs
) -> T:
    """Await ``func(*args, **kwargs)``, retrying transient transport failures.

    With no ``config`` the call is made exactly once. The last exception is
    re-raised once attempts are exhausted.
    """
    if config is None:
        return await func(*args, **kwargs)

    async for attempt in transient_retrying(config):
        with attempt:
            result = await func(*args, **kwargs)
    return result
