"""
repvote/retry.py - Bounded retries for read operations

Reads that fail with a TransportError are retried with exponential
backoff up to a bounded count. Writes (vote, approve, claim) are never
passed through here: an ambiguous write must be resolved by re-reading
ledger state, not by resubmitting.

Usage:
    from repvote.retry import RetryConfig, retry_read

    results = await retry_read("results", gateway.get_results, poll_id)
"""

import logging
import random
from typing import Any, Awaitable, Callable, Optional

import trio

from .config import DEFAULT_READ_RETRIES, DEFAULT_RETRY_BASE_DELAY, DEFAULT_RETRY_MAX_DELAY
from .errors import TransportError

logger = logging.getLogger("repvote.retry")


class RetryConfig:
    """Configuration for retry behavior."""
    def __init__(
        self,
        max_retries: int = DEFAULT_READ_RETRIES,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt."""
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random())
        return delay


async def retry_read(
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    config: Optional[RetryConfig] = None,
) -> Any:
    """
    Run a read, retrying TransportErrors with backoff.

    Args:
        operation: Name used in log messages
        func: Async read function
        *args: Arguments for func
        config: Retry settings (default RetryConfig())

    Returns:
        Result of func

    Raises:
        TransportError: the last failure once retries are exhausted
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return await func(*args)
        except TransportError as e:
            if attempt >= config.max_retries:
                logger.warning(f"Read {operation} failed after {attempt + 1} attempts: {e}")
                raise
            delay = config.get_delay(attempt)
            logger.debug(f"Read {operation} failed ({e}), retry {attempt + 1} in {delay:.2f}s")
            attempt += 1
            await trio.sleep(delay)
