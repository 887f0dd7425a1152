"""
Retry and connection health for calls to the Polymarket APIs.

Every request is bounded by the caller's timeout. Transient failures
(network errors, 408/429/5xx) are retried with exponential backoff; what
is retried, and how often, depends on what the call is for:

    HTTP_RETRY_CONFIG   public reads (listings, books, prices)
    AUTH_RETRY_CONFIG   signed reads that fall back to simulation
    ORDER_RETRY_CONFIG  order placement, never retried

connection_monitor records the outcome of each upstream for /health.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

TRANSIENT_EXCEPTIONS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)

TRANSIENT_STATUS_CODES = frozenset({
    408,  # Request Timeout
    429,  # Too Many Requests
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
})


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy for one kind of call.

    Attempt n waits base_delay * exponential_base**n, capped at max_delay,
    with up to 25% jitter either way so concurrent callers spread out.
    """
    max_retries: int = 3  # 0 = single attempt
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple = TRANSIENT_EXCEPTIONS
    retryable_status_codes: frozenset = field(default=TRANSIENT_STATUS_CODES)

    @property
    def attempts(self) -> int:
        return self.max_retries + 1


HTTP_RETRY_CONFIG = RetryConfig(max_retries=3, base_delay=1.0, max_delay=30.0)

# A sweep should not stall on one trader: one quick retry, then simulate
AUTH_RETRY_CONFIG = RetryConfig(max_retries=1, base_delay=0.5, max_delay=5.0)

# A retried POST can place the same order twice
ORDER_RETRY_CONFIG = RetryConfig(max_retries=0)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff before retry number attempt + 1 (attempt is 0-based)"""
    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)

    if config.jitter:
        delay += random.uniform(-0.25 * delay, 0.25 * delay)

    return max(0.1, delay)


async def retry_http_request(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    config: Optional[RetryConfig] = None,
    **kwargs,
) -> aiohttp.ClientResponse:
    """
    Send a request, retrying transient failures per config.

    A transient status on the final attempt is returned, not raised, so
    the caller decides what a non-2xx means; a transient exception on the
    final attempt propagates. Non-transient exceptions propagate at once.

    kwargs go to session.request() (params, headers, data, timeout).

    Example:
        resp = await retry_http_request(
            session, "GET", PolymarketAPI.MARKETS,
            params={"limit": "20"},
            timeout=aiohttp.ClientTimeout(total=10),
        )
        async with resp:
            data = await resp.json(content_type=None)
    """
    config = config or HTTP_RETRY_CONFIG

    for attempt in range(config.attempts):
        is_last = attempt == config.max_retries

        try:
            resp = await session.request(method, url, **kwargs)
        except config.retryable_exceptions as e:
            if is_last:
                logger.error(
                    f"[Retry] {method} {url} failed after {config.attempts} attempts: {type(e).__name__}: {e}"
                )
                raise
            reason = f"{type(e).__name__}: {e}"
        else:
            if is_last or resp.status not in config.retryable_status_codes:
                return resp
            resp.close()
            reason = f"HTTP {resp.status}"

        delay = calculate_delay(attempt, config)
        logger.warning(
            f"[Retry] {method} {url} attempt {attempt + 1}/{config.attempts} ({reason}), "
            f"retrying in {delay:.1f}s"
        )
        await asyncio.sleep(delay)

    # Not reached: the final attempt always returns or raises
    raise RuntimeError("unreachable")


# ============================================================================
# CONNECTION HEALTH
# ============================================================================

class ConnectionHealthMonitor:
    """
    Outcome of recent calls per upstream ("gamma_api", "clob_api",
    "clob_positions").

    Healthy means: succeeded within the stale threshold, and nothing has
    failed since.
    """

    def __init__(self, stale_threshold_sec: float = 300.0):
        self.stale_threshold = stale_threshold_sec
        self._last_success: dict[str, float] = {}
        self._errors_since_success: dict[str, int] = {}
        self._last_error_at: dict[str, float] = {}

    def mark_success(self, name: str):
        self._last_success[name] = time.time()
        self._errors_since_success[name] = 0

    def mark_error(self, name: str):
        self._errors_since_success[name] = self._errors_since_success.get(name, 0) + 1
        self._last_error_at[name] = time.time()

    def is_healthy(self, name: str) -> bool:
        last = self._last_success.get(name)
        if last is None:
            return False
        return time.time() - last < self.stale_threshold and not self._errors_since_success.get(name)

    def get_status(self) -> dict:
        now = time.time()
        names = set(self._last_success) | set(self._errors_since_success)

        def age(ts: Optional[float]) -> Optional[float]:
            return round(now - ts, 1) if ts else None

        return {
            name: {
                "is_healthy": self.is_healthy(name),
                "last_success_age_sec": age(self._last_success.get(name)),
                "last_error_age_sec": age(self._last_error_at.get(name)),
                "error_count": self._errors_since_success.get(name, 0),
            }
            for name in sorted(names)
        }


connection_monitor = ConnectionHealthMonitor()
