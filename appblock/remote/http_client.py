# appblock/remote/http_client.py
"""
Shared async HTTP transport for controller calls.

One pooled ``httpx.AsyncClient`` per process. On top of it:
retries of idempotent calls (GET/DELETE) with jittered backoff and Retry-After,
a breaker that stops hammering an unreachable controller, masked auth headers
in debug logs, and Prometheus counters per controller route.

Status handling stays with the caller: any HTTP answer, 4xx or 5xx, is
returned as a response once retries are spent. Only transport failures raise.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import httpx
from prometheus_client import Counter, Histogram

logger = logging.getLogger("appblock.remote.http")

CONTROLLER_CALLS = Counter(
    "appblock_controller_calls_total",
    "Calls sent to the network controller",
    ["method", "route", "result"],
)
CONTROLLER_LATENCY = Histogram(
    "appblock_controller_call_seconds",
    "Network controller call latency per attempt",
    ["method", "route"],
)

RETRYABLE_METHODS: FrozenSet[str] = frozenset({"GET", "HEAD", "DELETE"})
MASKED_HEADERS: FrozenSet[str] = frozenset({"authorization", "x-csrf-token", "cookie"})

# per-object paths collapse to one label
_OBJECT_PATH = re.compile(r"(/trafficrules)/[^/]+$")


def route_label(url: str) -> str:
    path = httpx.URL(url).path or "/"
    return _OBJECT_PATH.sub(r"\1/{id}", path)


def _retry_after_seconds(header: Optional[str]) -> Optional[float]:
    if not header:
        return None
    header = header.strip()
    if header.isdigit():
        return float(header)
    try:
        when = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


@dataclass
class HttpRetryPolicy:
    retries: int = 2
    backoff_base: float = 0.25
    backoff_max: float = 4.0
    jitter: float = 0.2
    retry_on_status: Tuple[int, ...] = (429, 502, 503, 504)

    def delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            return min(retry_after, self.backoff_max)
        d = min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))
        return max(0.0, d * (1 + random.uniform(-self.jitter, self.jitter)))


@dataclass
class HttpClientConfig:
    timeout: float = 15.0
    verify_ssl: bool = True
    max_connections: int = 10
    retries: HttpRetryPolicy = field(default_factory=HttpRetryPolicy)
    breaker_threshold: int = 5       # consecutive transport/5xx failures
    breaker_cooldown: float = 30.0   # seconds before one trial call


class CircuitOpenError(httpx.TransportError):
    """Raised without touching the network while the breaker is open."""


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    TRIAL = "trial"


class _Breaker:
    def __init__(self, threshold: int, cooldown: float) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self.state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    def check(self) -> None:
        if self.state is BreakerState.CLOSED:
            return
        if time.monotonic() - self._opened_at < self.cooldown:
            raise CircuitOpenError("controller unreachable, calls suspended")
        # cooldown over: one trial call goes through, the rest wait another cooldown
        self._opened_at = time.monotonic()
        self._move(BreakerState.TRIAL)

    def record(self, healthy: bool) -> None:
        if healthy:
            self._failures = 0
            self._move(BreakerState.CLOSED)
            return
        self._failures += 1
        if self.state is BreakerState.TRIAL or self._failures >= self.threshold:
            self._opened_at = time.monotonic()
            self._move(BreakerState.OPEN)

    def _move(self, state: BreakerState) -> None:
        if state is not self.state:
            logger.warning("Controller breaker %s -> %s", self.state.value, state.value)
            self.state = state


class AsyncHTTPClient:
    def __init__(
        self,
        config: Optional[HttpClientConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or HttpClientConfig()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout),
            verify=self.config.verify_ssl,
            follow_redirects=False,
            limits=httpx.Limits(max_connections=self.config.max_connections),
            transport=transport,
        )
        self._breaker = _Breaker(self.config.breaker_threshold, self.config.breaker_cooldown)

    @property
    def breaker_state(self) -> str:
        return self._breaker.state.value

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        json_body: Optional[Any] = None,
    ) -> httpx.Response:
        """
        Send one controller call.

        POST is never retried: the controller may already have created the
        rule, and a second attempt would leave a duplicate behind.
        """
        self._breaker.check()
        method = method.upper()
        route = route_label(url)
        policy = self.config.retries
        attempts = 1 + max(0, policy.retries) if method in RETRYABLE_METHODS else 1

        attempt = 0
        while True:
            attempt += 1
            last = attempt >= attempts
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("-> %s %s headers=%s (attempt %d/%d)", method, url, _masked(headers), attempt, attempts)
            started = time.monotonic()
            try:
                resp = await self._client.request(method, url, headers=headers, json=json_body)
            except httpx.TransportError as exc:
                CONTROLLER_LATENCY.labels(method=method, route=route).observe(time.monotonic() - started)
                if not last:
                    CONTROLLER_CALLS.labels(method=method, route=route, result="retry").inc()
                    await asyncio.sleep(policy.delay(attempt))
                    continue
                CONTROLLER_CALLS.labels(method=method, route=route, result="transport_error").inc()
                self._breaker.record(healthy=False)
                logger.warning("%s %s failed after %d attempt(s): %s", method, route, attempt, type(exc).__name__)
                raise

            CONTROLLER_LATENCY.labels(method=method, route=route).observe(time.monotonic() - started)
            if resp.status_code in policy.retry_on_status and not last:
                CONTROLLER_CALLS.labels(method=method, route=route, result="retry").inc()
                await asyncio.sleep(policy.delay(attempt, _retry_after_seconds(resp.headers.get("Retry-After"))))
                continue

            self._breaker.record(healthy=resp.status_code < 500)
            CONTROLLER_CALLS.labels(method=method, route=route, result=str(resp.status_code)).inc()
            logger.debug("<- %s %s %d", method, route, resp.status_code)
            return resp


def _masked(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {k: ("***" if k.lower() in MASKED_HEADERS else v) for k, v in (headers or {}).items()}
