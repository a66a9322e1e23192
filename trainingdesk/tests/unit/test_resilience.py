from __future__ import annotations

import httpx
import pytest

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import IntegrationUnavailableError
from trainingdesk.services.resilience import (
    CircuitBreaker,
    RetryPolicy,
    call_integration,
    integration_retry_policy,
    retry_async,
)
from trainingdesk.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> str:
        calls["count"] += 1
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    def time_source() -> float:
        return now["t"]

    breaker = CircuitBreaker(
        "test.integration",
        redis=None,
        failure_threshold=2,
        open_seconds=10,
        half_open_trials=1,
        time_source=time_source,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    assert gauges_snapshot()["circuit_breaker_state.test.integration"] == 1.0

    now["t"] = 11.0
    await breaker.before_call()
    # Only one trial call is allowed while half-open.
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    await breaker.before_call()
    assert gauges_snapshot()["circuit_breaker_state.test.integration"] == 0.0


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        "test.reopen",
        redis=None,
        failure_threshold=1,
        open_seconds=5,
        half_open_trials=1,
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()


def test_integration_retry_policy_splits_budget(monkeypatch) -> None:
    monkeypatch.setenv("EXT_RETRY_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("EXT_CALL_TIMEOUT_MS", "8000")
    get_settings.cache_clear()

    assert integration_retry_policy(5000).timeout_ms == 2500
    # A generous budget is still capped per attempt.
    assert integration_retry_policy(60000).timeout_ms == 8000
    assert integration_retry_policy(60000).max_attempts == 2


@pytest.mark.asyncio
async def test_call_integration_retries_server_errors_and_opens_breaker() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, text="unavailable")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    breaker = CircuitBreaker("test.flaky", failure_threshold=1, open_seconds=60, half_open_trials=1)
    policy = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1)

    with pytest.raises(httpx.HTTPStatusError):
        await call_integration(lambda: client.get("https://upstream.test/"), breaker=breaker, policy=policy)
    assert calls["count"] == 3
    assert "test.flaky" in external_latency_by_integration(60)

    with pytest.raises(IntegrationUnavailableError):
        await call_integration(lambda: client.get("https://upstream.test/"), breaker=breaker, policy=policy)
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_call_integration_hands_back_client_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(404, json={"detail": "Not found."})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    breaker = CircuitBreaker("test.strict", failure_threshold=1, open_seconds=60, half_open_trials=1)

    response = await call_integration(
        lambda: client.get("https://upstream.test/"),
        breaker=breaker,
        policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1),
    )

    assert response.status_code == 404
    assert calls["count"] == 1
    # An answered request keeps the breaker closed.
    await breaker.before_call()
