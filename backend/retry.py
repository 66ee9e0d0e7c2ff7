"""
Retry Utilities with Exponential Backoff

Provides the retry decorator used for vision-service HTTP calls and the
bounded-retry writer used for sample persistence. Samples that still fail
after the last attempt are dropped and counted, never buffered.
"""

import asyncio
import functools
import logging
import random
from typing import Any, Callable, Optional
import aiohttp

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[tuple] = None,
        retryable_status_codes: Optional[set] = None,
    ):
        """
        Args:
            max_retries: Maximum number of retry attempts (0 = no retries)
            base_delay: Initial delay in seconds
            max_delay: Maximum delay cap in seconds
            exponential_base: Base for exponential backoff (2.0 = 1s, 2s, 4s, 8s...)
            jitter: Add random jitter to prevent thundering herd
            retryable_exceptions: Tuple of exception types to retry on
            retryable_status_codes: Set of HTTP status codes to retry on
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (
            aiohttp.ClientError,
            asyncio.TimeoutError,
            ConnectionError,
            OSError,
        )
        self.retryable_status_codes = retryable_status_codes or {
            408,  # Request Timeout
            429,  # Too Many Requests
            500,  # Internal Server Error
            502,  # Bad Gateway
            503,  # Service Unavailable
            504,  # Gateway Timeout
        }


HTTP_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=1.0,
    max_delay=30.0,
)

# Sample writes happen inside a tick, so keep the total wait well under a tick interval
SAMPLE_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=0.1,
    max_delay=0.5,
    retryable_exceptions=(Exception,),
)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for retry attempt with exponential backoff and jitter."""
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add up to 25% jitter
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.1, delay)


def async_retry(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for async functions with automatic retry on failure.

    Args:
        config: RetryConfig instance (defaults to HTTP_RETRY_CONFIG)
        on_retry: Optional callback(attempt, exception) called before each retry

    Example:
        @async_retry(config=SAMPLE_RETRY_CONFIG)
        async def store(sample):
            await asyncio.to_thread(db.store_sample, trade_id, sample)
    """
    if config is None:
        config = HTTP_RETRY_CONFIG

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_exception = None

            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except config.retryable_exceptions as e:
                    last_exception = e

                    if attempt < config.max_retries:
                        delay = calculate_delay(attempt, config)
                        logger.warning(
                            f"[Retry] {func.__name__} failed (attempt {attempt + 1}/{config.max_retries + 1}): "
                            f"{type(e).__name__}: {e}. Retrying in {delay:.1f}s..."
                        )

                        if on_retry:
                            on_retry(attempt, e)

                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            f"[Retry] {func.__name__} failed after {config.max_retries + 1} attempts: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

            if last_exception:
                raise last_exception

        return wrapper
    return decorator


async def retry_http_request(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    config: Optional[RetryConfig] = None,
    **kwargs,
) -> aiohttp.ClientResponse:
    """
    Execute HTTP request with automatic retry.

    Args:
        session: aiohttp ClientSession
        method: HTTP method (GET, POST, etc.)
        url: Request URL
        config: RetryConfig (defaults to HTTP_RETRY_CONFIG)
        **kwargs: Additional arguments passed to session.request()

    Returns:
        aiohttp.ClientResponse
    """
    if config is None:
        config = HTTP_RETRY_CONFIG

    last_exception = None

    for attempt in range(config.max_retries + 1):
        try:
            resp = await session.request(method, url, **kwargs)

            # Check if status code should be retried
            if resp.status in config.retryable_status_codes:
                if attempt < config.max_retries:
                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        f"[Retry] HTTP {method} {url} returned {resp.status} "
                        f"(attempt {attempt + 1}/{config.max_retries + 1}). Retrying in {delay:.1f}s..."
                    )
                    resp.release()
                    await asyncio.sleep(delay)
                    continue

            return resp

        except config.retryable_exceptions as e:
            last_exception = e

            if attempt < config.max_retries:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"[Retry] HTTP {method} {url} failed (attempt {attempt + 1}/{config.max_retries + 1}): "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"[Retry] HTTP {method} {url} failed after {config.max_retries + 1} attempts: "
                    f"{type(e).__name__}: {e}"
                )
                raise

    if last_exception:
        raise last_exception


class SampleWriter:
    """
    Persists color samples with bounded retry.

    Each write is awaited to completion (success or final failure) before the
    caller moves on. Final failures are dropped and counted so data loss shows
    up in the tracker status instead of disappearing silently.
    """

    def __init__(self, store: Any, config: Optional[RetryConfig] = None):
        self.store = store
        self.config = config or SAMPLE_RETRY_CONFIG
        self.written = 0
        self.retried = 0
        self.dropped = 0
        self.last_error: Optional[str] = None
        self._store_with_retry = async_retry(config=self.config, on_retry=self._on_retry)(self._store_once)

    def _on_retry(self, attempt: int, error: Exception):
        self.retried += 1

    async def _store_once(self, trade_id: str, sample: Any):
        await asyncio.to_thread(self.store.store_sample, trade_id, sample)

    async def write(self, trade_id: str, sample: Any) -> bool:
        """Store one sample. Returns False if it was dropped."""
        try:
            await self._store_with_retry(trade_id, sample)
            self.written += 1
            return True
        except Exception as e:
            self.dropped += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"[SampleWriter] Dropped sample for trade {trade_id}: {self.last_error}")
            return False

    def get_stats(self) -> dict:
        return {
            "written": self.written,
            "retried": self.retried,
            "dropped": self.dropped,
            "last_error": self.last_error,
        }
