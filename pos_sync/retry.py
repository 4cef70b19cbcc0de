"""Retry and deadline utilities for remote store calls.

Provides retry with exponentially doubling backoff for direct (non-queued)
remote calls, the retryable/terminal error classification, and a deadline
helper for handshake-style operations.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from .exceptions import (
    HandshakeTimeoutError,
    NetworkError,
    RemoteStoreError,
    ServerError,
    SyncStorageError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings that mark a transport failure when no status code is available
NETWORK_MESSAGE_MARKERS = (
    "network",
    "failed to fetch",
    "connection",
    "timed out",
    "timeout",
    "unreachable",
    "dns",
)


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff."""

    attempts: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 8.0  # cap
    attempt_timeout: float | None = 10.0


def extract_status_code(exc: BaseException) -> int | None:
    """Try to extract an HTTP status code from common SDK exceptions."""
    status = getattr(exc, "status_code", None)
    if status is not None:
        return int(status)
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if code is not None:
            return int(code)
    return None


def is_retryable(exc: BaseException) -> bool:
    """Classify an error as retryable (transport or 5xx) or terminal."""
    if isinstance(exc, (NetworkError, ServerError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True

    status_code = extract_status_code(exc)
    if status_code is not None:
        return status_code >= 500

    # Structured errors without a status are application decisions
    if isinstance(exc, SyncStorageError) and not isinstance(exc, RemoteStoreError):
        return False
    if isinstance(exc, OSError):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in NETWORK_MESSAGE_MARKERS)


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Execute an async function with retry and exponential backoff.

    Retryable errors are retried up to ``config.attempts`` total attempts
    with delays of base, 2*base, 4*base... capped at ``max_delay``.
    Terminal errors propagate immediately.

    Args:
        fn: Async callable to execute
        *args: Positional args for fn
        config: Retry configuration (uses defaults if None)
        context_msg: Extra context for log messages (e.g. table name)
        **kwargs: Keyword args for fn

    Returns:
        Result of fn

    Raises:
        Exception: Last exception after all retries exhausted, or the first
            terminal one
    """
    cfg = config or RetryConfig()
    attempts = max(1, cfg.attempts)
    ctx = f" [{context_msg}]" if context_msg else ""

    for attempt in range(attempts):
        try:
            if cfg.attempt_timeout is not None:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=cfg.attempt_timeout)
            else:
                result = await fn(*args, **kwargs)
        except Exception as exc:
            retryable = is_retryable(exc)
            if not retryable or attempt >= attempts - 1:
                logger.warning(
                    "RETRY_EXHAUSTED: attempt=%d/%d status=%s retryable=%s%s: %s",
                    attempt + 1,
                    attempts,
                    extract_status_code(exc),
                    retryable,
                    ctx,
                    exc,
                )
                raise

            delay = min(cfg.base_delay * (2**attempt), cfg.max_delay)
            logger.warning(
                "RETRYING: attempt=%d/%d status=%s delay=%.1fs%s: %s",
                attempt + 1,
                attempts,
                extract_status_code(exc),
                delay,
                ctx,
                exc,
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 0:
                logger.info(
                    "RETRY_RECOVERED: succeeded on attempt %d/%d%s",
                    attempt + 1,
                    attempts,
                    ctx,
                )
            return result

    raise RuntimeError("retry_with_backoff exhausted without raising")  # pragma: no cover


async def with_deadline(operation: Awaitable[T], timeout: float, name: str = "handshake") -> T:
    """Race ``operation`` against a wall-clock deadline.

    Raises:
        HandshakeTimeoutError: If the deadline passes first
    """
    try:
        return await asyncio.wait_for(operation, timeout=timeout)
    except TimeoutError as e:
        raise HandshakeTimeoutError(name, timeout) from e
