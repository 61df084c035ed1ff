"""HTTP client with retry/backoff, rate limiting and request budgeting."""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_KINDS = ("land", "urban", "ai")


class ProviderUnavailable(RuntimeError):
    pass


class RateLimitExceeded(ProviderUnavailable):
    pass


class BudgetExceededError(RuntimeError):
    pass


def _check_kind(kind: str) -> None:
    if kind not in REQUEST_KINDS:
        raise ValueError(f"Unknown request kind: {kind}")


@dataclass
class RequestMetrics:
    network: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    cache_hits: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    failures: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in REQUEST_KINDS})
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc_network(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            self.network[kind] += 1

    def inc_cache_hit(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            self.cache_hits[kind] += 1

    def inc_failure(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            self.failures[kind] += 1

    def cache_hit_rate(self, kind: str) -> float:
        _check_kind(kind)
        total = self.network[kind] + self.cache_hits[kind]
        return self.cache_hits[kind] / total if total else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "network": dict(self.network),
            "cache_hits": dict(self.cache_hits),
            "failures": dict(self.failures),
            "cache_hit_rate": {k: round(self.cache_hit_rate(k), 4) for k in REQUEST_KINDS},
        }


class RequestBudget:
    def __init__(
        self,
        limits: Optional[Dict[str, int]] = None,
        on_consume: Optional[Callable[[str, int], None]] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.limits = dict(limits or {})
        self.on_consume = on_consume
        self.metrics = metrics
        self._counts = {k: 0 for k in REQUEST_KINDS}
        self._lock = threading.Lock()

    def count(self, kind: str) -> int:
        if self.metrics is not None:
            return int(self.metrics.network[kind])
        return self._counts[kind]

    def consume(self, kind: str) -> None:
        _check_kind(kind)
        with self._lock:
            limit = self.limits.get(kind)
            used = self.count(kind)
            if limit is not None and used >= limit:
                raise BudgetExceededError(f"{kind} request budget exceeded: {used} >= {limit}")
            if self.metrics is not None:
                self.metrics.inc_network(kind)
            else:
                self._counts[kind] += 1
            used = self.count(kind)
        if self.on_consume:
            self.on_consume(kind, used)


class RateLimiter:
    """Token bucket per caller key.

    Each key holds at most `capacity` tokens and regains `per_minute` tokens a
    minute. acquire() blocks until a token is available.
    """

    def __init__(
        self,
        per_minute: float = 10.0,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if per_minute <= 0:
            raise ValueError("per_minute must be > 0")
        self.rate_per_second = float(per_minute) / 60.0
        self.capacity = float(capacity if capacity is not None else per_minute)
        self.clock = clock
        self.sleep = sleep
        self._buckets: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def _refill(self, key: str, now: float) -> Dict[str, float]:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = {"tokens": self.capacity, "updated": now}
            self._buckets[key] = bucket
            return bucket
        elapsed = max(0.0, now - bucket["updated"])
        bucket["tokens"] = min(self.capacity, bucket["tokens"] + elapsed * self.rate_per_second)
        bucket["updated"] = now
        return bucket

    def try_acquire(self, key: str = "default") -> float:
        """Take a token if one is available. Returns 0.0, or the seconds to wait."""
        with self._lock:
            bucket = self._refill(key, self.clock())
            if bucket["tokens"] >= 1.0:
                bucket["tokens"] -= 1.0
                return 0.0
            return (1.0 - bucket["tokens"]) / self.rate_per_second

    def acquire(self, key: str = "default") -> None:
        while True:
            wait = self.try_acquire(key)
            if wait <= 0.0:
                return
            logger.debug("Rate limit for %s reached, sleeping %.2fs", key, wait)
            self.sleep(wait)


class HttpClient:
    def __init__(
        self,
        timeout: int = 20,
        retry_max: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        rate_limiter: Optional[RateLimiter] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.timeout = timeout
        self.retry_max = max(1, int(retry_max))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.rate_limiter = rate_limiter
        self.rng = rng or random.Random()
        self.session = requests.Session()

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        limiter_key: str = "default",
    ) -> Dict[str, Any]:
        return self._request("GET", url, params=params, headers=headers, limiter_key=limiter_key)

    def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        limiter_key: str = "default",
    ) -> Dict[str, Any]:
        return self._request("POST", url, body=body, headers=headers, limiter_key=limiter_key)

    def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        limiter_key: str = "default",
    ) -> Dict[str, Any]:
        for attempt in range(1, self.retry_max + 1):
            if self.rate_limiter is not None:
                self.rate_limiter.acquire(limiter_key)
            try:
                if method == "GET":
                    resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
                else:
                    resp = self.session.post(url, json=body, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                if attempt >= self.retry_max:
                    raise ProviderUnavailable(f"Request to {_safe_url(url)} failed: {exc}") from exc
                self._sleep_backoff(attempt)
                continue

            status = resp.status_code
            if status == 200:
                try:
                    return resp.json()
                except ValueError as exc:
                    logger.error("Non-JSON response from %s", _safe_url(url))
                    raise ProviderUnavailable(f"Non-JSON response from {_safe_url(url)}") from exc

            if status in (429, 500, 502, 503, 504):
                logger.warning("HTTP %s from %s (attempt %s)", status, _safe_url(url), attempt)
                if attempt >= self.retry_max:
                    if status == 429:
                        raise RateLimitExceeded(f"Rate limited by {_safe_url(url)} after {attempt} attempts")
                    raise ProviderUnavailable(f"HTTP {status} from {_safe_url(url)}")
                if not self._sleep_retry_after(resp):
                    self._sleep_backoff(attempt)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, _safe_url(url))
            raise ProviderUnavailable(f"HTTP {status} from {_safe_url(url)}")

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = self.rng.uniform(0, self.backoff_base)
        time.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True


def _safe_url(url: str) -> str:
    return url.split("?", 1)[0]
