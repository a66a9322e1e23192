from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

import httpx

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import ExternalFetchFailure
from trainingdesk.providers.activity.base import ActivityFigure
from trainingdesk.providers.activity.positions import summarize_sessions
from trainingdesk.services.resilience import (
    CircuitBreaker,
    RetryPolicy,
    call_integration,
    get_resilience_redis,
    integration_retry_policy,
)


logger = logging.getLogger(__name__)

_INTEGRATION = "activity.vatsim"


class VatsimActivitySource:
    """Reads controller sessions from the VATSIM ratings API."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker: CircuitBreaker | None = None

    def _retry_policy(self) -> RetryPolicy:
        # All attempts together stay inside the per-fetch ceiling enforced by the sync tick.
        return integration_retry_policy(self._settings.activity_fetch_timeout_ms)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._client = httpx.AsyncClient(timeout=self._retry_policy().timeout_ms / 1000.0)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        self._breaker = CircuitBreaker(_INTEGRATION, redis=await get_resilience_redis())
        return self._breaker

    async def fetch_sessions(self, *, controller_id: int, window_start: datetime) -> list[dict[str, Any]]:
        url = f"{self._settings.vatsim_api_base_url.rstrip('/')}/ratings/{controller_id}/atcsessions/"
        params = {"start": window_start.strftime("%Y-%m-%d")}
        client = self._get_client()

        # An open breaker surfaces as IntegrationUnavailableError, itself a fetch failure.
        try:
            response = await call_integration(
                lambda: client.get(url, params=params),
                breaker=await self._get_breaker(),
                policy=self._retry_policy(),
            )
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warning("vatsim_fetch_failed controller_id=%s error=%s", controller_id, type(exc).__name__)
            raise ExternalFetchFailure(f"VATSIM activity request failed for {controller_id}") from exc

        if response.status_code >= 400:
            logger.warning("vatsim_fetch_rejected controller_id=%s status=%s", controller_id, response.status_code)
            raise ExternalFetchFailure(f"VATSIM activity error {response.status_code} for {controller_id}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalFetchFailure("VATSIM activity response is not JSON") from exc
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise ExternalFetchFailure("VATSIM activity response has no results list")

        logger.debug("vatsim_fetch_ok controller_id=%s sessions=%s", controller_id, len(results))
        return [item for item in results if isinstance(item, dict)]

    async def fetch_activity(
        self,
        *,
        controller_id: int,
        position: str,
        window_start: datetime,
        window_end: datetime,
    ) -> ActivityFigure:
        sessions = await self.fetch_sessions(controller_id=controller_id, window_start=window_start)
        return summarize_sessions(position, sessions, window_start=window_start, window_end=window_end)
