"""Outbound HTTP helpers: shared session, per-host rate limiting, error mapping."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Optional
from urllib.parse import urlparse

import requests

from holder_sync.errors import NetworkError, RateLimited

logger = logging.getLogger(__name__)

# Markers of explorer bot-protection / throttling pages (matched lower-cased)
BLOCK_PAGE_MARKERS = (
    "too many requests",
    "rate limit exceeded",
    "attention required! | cloudflare",
    "just a moment...",
    "g-recaptcha",
    "hcaptcha",
)


class TokenBucket:
    """
    Async token bucket. With capacity 1 it acts as a fixed-interval gate:
    consecutive acquires are spaced at least ``interval_seconds`` apart.
    """

    def __init__(self, capacity: int, refill_amount: int, interval_seconds: float) -> None:
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self.refill_amount = float(refill_amount)
        self.interval = float(interval_seconds)
        self._last = time.monotonic()
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    def penalize(self, seconds: float) -> None:
        """Hold every acquire until ``seconds`` from now."""
        self._blocked_until = max(self._blocked_until, time.monotonic() + seconds)

    async def acquire(self, amount: float = 1.0) -> None:
        amount = float(amount)
        while True:
            async with self._lock:
                now = time.monotonic()
                if now < self._blocked_until:
                    wait = self._blocked_until - now
                elif self.interval <= 0:
                    return
                else:
                    elapsed = max(0.0, now - self._last)
                    if elapsed >= self.interval:
                        intervals = int(elapsed // self.interval)
                        self.tokens = min(self.capacity, self.tokens + intervals * self.refill_amount)
                        self._last = now
                    if self.tokens >= amount:
                        self.tokens -= amount
                        return
                    needed = amount - self.tokens
                    rate_per_sec = self.refill_amount / self.interval
                    wait = max(0.01, needed / max(1e-6, rate_per_sec))
            await asyncio.sleep(wait)


class HostRateLimiter:
    """
    Host-aware limiters. Buckets are keyed by URL host; call
    ``await limit(url)`` before every request to that host.
    """

    def __init__(self, default_interval: float = 1.0) -> None:
        self.default_interval = default_interval
        self._buckets: Dict[str, TokenBucket] = {}

    @staticmethod
    def host_of(url: str) -> str:
        return urlparse(url).netloc.lower()

    def ensure_bucket(self, host: str, interval: float, capacity: int = 1) -> TokenBucket:
        if host not in self._buckets:
            self._buckets[host] = TokenBucket(capacity, capacity, interval)
        return self._buckets[host]

    async def limit(self, url: str) -> None:
        host = self.host_of(url)
        bucket = self._buckets.get(host) or self.ensure_bucket(host, self.default_interval)
        await bucket.acquire(1.0)

    def penalize(self, url: str, seconds: float) -> None:
        host = self.host_of(url)
        bucket = self._buckets.get(host) or self.ensure_bucket(host, self.default_interval)
        bucket.penalize(seconds)
        logger.warning(f"[{host}] Backing off for {seconds:.0f}s after rate limiting")


def build_session(user_agent: str) -> requests.Session:
    """Create the shared session with browser-like default headers."""
    session = requests.Session()
    session.headers.update({
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.8,*/*;q=0.7",
        "Accept-Language": "en-US,en;q=0.9",
    })
    return session


def _retry_after(response) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    value = response.headers.get("Retry-After") if response.headers else None
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def looks_blocked(body: str) -> bool:
    lowered = body.lower()
    return any(marker in lowered for marker in BLOCK_PAGE_MARKERS)


async def fetch(
    session: requests.Session,
    url: str,
    *,
    timeout: float,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    limiter: Optional[HostRateLimiter] = None,
    backoff_seconds: float = 60.0,
):
    """
    GET ``url`` off the event loop and return the response.

    Raises:
        RateLimited: on HTTP 429 or a non-2xx block page (the host is
            penalized on ``limiter``)
        NetworkError: on timeout, connection failure or any other non-2xx
    """
    if limiter is not None:
        await limiter.limit(url)

    try:
        response = await asyncio.to_thread(
            session.get, url, params=params, headers=headers, timeout=timeout
        )
    except requests.Timeout as e:
        raise NetworkError(f"Timeout after {timeout}s fetching {url}: {e}")
    except requests.RequestException as e:
        raise NetworkError(f"Request to {url} failed: {e}")

    if response.status_code == 429:
        retry_after = _retry_after(response)
        if limiter is not None:
            limiter.penalize(url, max(backoff_seconds, retry_after or 0.0))
        raise RateLimited(f"Rate limited by {HostRateLimiter.host_of(url)}", retry_after=retry_after)

    if not 200 <= response.status_code < 300 and looks_blocked(response.text or ""):
        if limiter is not None:
            limiter.penalize(url, backoff_seconds)
        raise RateLimited(
            f"HTTP {response.status_code} block page from {HostRateLimiter.host_of(url)}",
            status_code=response.status_code,
        )

    if not 200 <= response.status_code < 300:
        raise NetworkError(f"HTTP {response.status_code} from {url}", status_code=response.status_code)

    return response
