"""Fixed-interval retry around a single HTTP attempt."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from llm_relay.config import RetryConfig
from llm_relay.errors import HttpStatusError, RequestCancelled, TransportError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(error: Exception, config: RetryConfig) -> bool:
    if not config.enabled:
        return False
    if isinstance(error, HttpStatusError):
        return error.status in config.retryable_status_codes
    return isinstance(error, TransportError)


async def sleep_or_cancel(seconds: float, cancel: asyncio.Event | None) -> None:
    """Sleep, raising ``RequestCancelled`` as soon as *cancel* is set."""
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    if cancel.is_set():
        raise RequestCancelled("cancelled before retry")
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise RequestCancelled("cancelled while waiting to retry")


async def execute_with_retry(
    attempt: Callable[[], Awaitable[T]],
    config: RetryConfig,
    cancel: asyncio.Event | None = None,
) -> T:
    """Run *attempt* until it succeeds or retries are exhausted.

    Only ``HttpStatusError`` with a retryable status and ``TransportError``
    are retried, and only when ``config.enabled``.  The last error is
    re-raised unchanged.
    """
    max_attempts = max(1, config.max_attempts) if config.enabled else 1
    interval = config.interval_ms / 1000

    for n in range(1, max_attempts + 1):
        try:
            return await attempt()
        except (HttpStatusError, TransportError) as e:
            if n >= max_attempts or not is_retryable(e, config):
                raise
            _logger.warning(
                "Request failed (attempt %d/%d): %s; retrying in %dms",
                n, max_attempts, e, config.interval_ms,
            )
            await sleep_or_cancel(interval, cancel)

    raise AssertionError("unreachable")
