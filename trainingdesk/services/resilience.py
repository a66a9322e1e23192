from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
from redis.asyncio import Redis

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import IntegrationUnavailableError
from trainingdesk.services.telemetry import increment_counter, record_external_call, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    # One client per event loop, shared by task leases and breakers.
    settings = get_settings()
    if not settings.redis_enabled:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    try:
        _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        _redis_loop = current_loop
    except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
        logger.warning("resilience_redis_unavailable", exc_info=exc)
        _redis_pool = None
        return None
    return _redis_pool


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def integration_retry_policy(budget_ms: int) -> RetryPolicy:
    """Split an integration's overall time budget across its attempts.

    Every attempt gets an equal share of ``budget_ms``, capped at
    ``ext_call_timeout_ms``. All retries of an activity fetch therefore fit
    inside ``activity_fetch_timeout_ms``, and a board ping never outlives
    ``notify_timeout_ms``.
    """
    settings = get_settings()
    attempts = max(1, settings.ext_retry_max_attempts)
    per_attempt_ms = max(1, min(settings.ext_call_timeout_ms, budget_ms // attempts))
    return RetryPolicy(
        timeout_ms=per_attempt_ms,
        max_attempts=attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def is_transient_http_error(exc: Exception) -> bool:
    # Network errors, timeouts and 5xx answers earn another attempt; 4xx never do.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] = is_transient_http_error,
) -> T:
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep((policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter)
            attempt += 1


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    """Per-integration breaker shared across processes through Redis.

    Without Redis the state lives on the instance, which is enough for a
    single scheduler process and for tests. Thresholds default to the
    ``cb_*`` settings.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        failure_threshold: int | None = None,
        open_seconds: int | None = None,
        half_open_trials: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._failure_threshold = failure_threshold or settings.cb_failure_threshold
        self._open_seconds = open_seconds or settings.cb_open_seconds
        self._half_open_trials = half_open_trials or settings.cb_half_open_trials
        self._time = time_source or time.time
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return self._local_state
        return CircuitBreakerState(
            raw.get("state", "closed"),
            int(raw.get("failures", 0)),
            float(raw["opened_at"]) if raw.get("opened_at") else None,
            int(raw.get("half_open_trials", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_trials": str(state.half_open_trials),
        }
        await self._redis.hset(self._key(), mapping=payload)
        await self._redis.expire(self._key(), max(self._open_seconds * 4, 60))

    def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(
                f"circuit_breaker_state.{self._name}",
                {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0),
            )
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def before_call(self) -> None:
        state = await self._load()
        if state.state == "open":
            if state.opened_at is None or (self._time() - state.opened_at) < self._open_seconds:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state = self._transition(state, "half_open")
        if state.state == "half_open":
            if state.half_open_trials >= self._half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
            await self._save(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = self._transition(state, "closed")
        else:
            state.failures = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        failures = state.failures + 1
        if state.state == "half_open" or failures >= self._failure_threshold:
            state = self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)


async def call_integration(
    func: Callable[[], Awaitable[httpx.Response]],
    *,
    breaker: CircuitBreaker,
    policy: RetryPolicy,
) -> httpx.Response:
    """Run one guarded HTTP exchange with an external integration.

    Refuses the call while the breaker is open, retries transient failures
    and records the outcome on the breaker and in telemetry. A 5xx answer
    counts as a failure. Any other answer is handed back for the caller to
    interpret.
    """
    await breaker.before_call()

    async def _attempt() -> httpx.Response:
        response = await func()
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    start = time.monotonic()
    try:
        response = await retry_async(_attempt, policy=policy)
    except (httpx.HTTPError, TimeoutError):
        await breaker.record_failure()
        record_external_call(
            integration=breaker.name,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        raise
    await breaker.record_success()
    record_external_call(
        integration=breaker.name,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=response.status_code < 400,
    )
    return response
