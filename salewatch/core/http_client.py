from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Union

import httpx

from salewatch.core.exceptions import (
    CircuitBreakerOpen,
    UpstreamBadResponse,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from salewatch.core.request_spec import JsonRpcSpec, RequestSpec

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class RateLimiter:
    """Token bucket shared by every request a client makes."""

    def __init__(self, per_second: float, burst: Optional[float] = None, clock: Clock = time.monotonic) -> None:
        self.per_second = max(per_second, 0.1)
        self.burst = burst or self.per_second
        self._clock = clock
        self._available = self.burst
        self._stamp = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._available = min(self.burst, self._available + (now - self._stamp) * self.per_second)
        self._stamp = now

    def _take(self) -> float:
        """Consume one token or return how long to wait for it."""
        self._refill()
        if self._available >= 1.0:
            self._available -= 1.0
            return 0.0
        return (1.0 - self._available) / self.per_second

    async def wait(self) -> None:
        while True:
            async with self._lock:
                delay = self._take()
            if delay <= 0:
                return
            await asyncio.sleep(delay)


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures and stays open for ``cooldown_sec``."""

    def __init__(self, threshold: int = 5, cooldown_sec: float = 30.0, clock: Clock = time.monotonic) -> None:
        self.threshold = max(1, threshold)
        self.cooldown_sec = max(1.0, cooldown_sec)
        self._clock = clock
        self._streak = 0
        self._reopen_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        if self._reopen_at is None:
            return False
        if self._clock() >= self._reopen_at:
            # half-open: let the next request through
            self._reopen_at = None
            return False
        return True

    def check(self, name: str) -> None:
        if self.is_open:
            raise CircuitBreakerOpen(f"{name} circuit breaker is open")

    def succeeded(self) -> None:
        self._streak = 0
        self._reopen_at = None

    def failed(self) -> None:
        self._streak += 1
        if self._streak >= self.threshold:
            self._reopen_at = self._clock() + self.cooldown_sec
            self._streak = 0


class HttpClient:
    """JSON over HTTP for every upstream provider.

    Requests are rate limited, retried on transport errors, 429 and 5xx, and
    guarded by a circuit breaker. Each failure surfaces as an ``UpstreamError``
    subclass so callers only need to handle the transient-failure family.
    """

    def __init__(
        self,
        name: str,
        timeout: float = 10.0,
        rps: float = 5.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        async_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.name = name
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.backoff_base = max(0.1, backoff_base)
        self.backoff_max = max(backoff_max, self.backoff_base)
        self.limiter = RateLimiter(rps)
        self.breaker = CircuitBreaker()
        self._client = async_client
        self._owns_client = async_client is None

    async def __aenter__(self) -> "HttpClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def request(self, spec: Union[RequestSpec, JsonRpcSpec]) -> Any:
        self.breaker.check(self.name)
        request = spec.to_request_spec() if isinstance(spec, JsonRpcSpec) else spec

        attempt = 0
        while True:
            await self.limiter.wait()
            try:
                response = await self._ensure_client().request(
                    request.method,
                    request.url,
                    params=request.params(),
                    headers=request.headers,
                    json=request.json,
                )
            except httpx.HTTPError as exc:
                error: UpstreamError = UpstreamUnavailable(f"{self.name} transport error: {exc.__class__.__name__}")
                error.__cause__ = exc
                retry_after = None
            else:
                if response.status_code < 400:
                    return self._decode(response)
                error = self._classify(response)
                retry_after = response.headers.get("Retry-After")

            if isinstance(error, UpstreamBadResponse) and error.status_code is not None and error.status_code < 500:
                raise error
            self.breaker.failed()
            if attempt >= self.max_retries:
                logger.debug("%s %s failed after %d attempts", self.name, request.fingerprint(), attempt + 1)
                raise error
            await asyncio.sleep(self._retry_delay(attempt, retry_after))
            attempt += 1

    def _decode(self, response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamBadResponse(f"{self.name} returned invalid JSON") from exc
        self.breaker.succeeded()
        return payload

    def _classify(self, response: httpx.Response) -> UpstreamError:
        status = response.status_code
        if status == 429:
            return UpstreamRateLimited(f"{self.name} rate limited", status_code=status)
        if status >= 500:
            return UpstreamBadResponse(f"{self.name} upstream error", status_code=status)
        return UpstreamBadResponse(f"{self.name} request rejected", status_code=status)

    def _retry_delay(self, attempt: int, retry_after: Optional[str]) -> float:
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                logger.debug("%s ignoring Retry-After %r", self.name, retry_after)
        return min(self.backoff_max, self.backoff_base * (2**attempt))


__all__ = ["CircuitBreaker", "HttpClient", "RateLimiter"]
