from __future__ import annotations

import logging

import httpx

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import IntegrationUnavailableError, NotificationFailure
from trainingdesk.providers.notify.base import EndorsementNotice, render_notice
from trainingdesk.services.resilience import (
    CircuitBreaker,
    RetryPolicy,
    call_integration,
    get_resilience_redis,
    integration_retry_policy,
)


logger = logging.getLogger(__name__)

_INTEGRATION = "notify.vatger"


class VatgerNotificationDispatcher:
    """Sends board pings through the VATGER user notification endpoint."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker: CircuitBreaker | None = None

    def _retry_policy(self) -> RetryPolicy:
        return integration_retry_policy(self._settings.notify_timeout_ms)

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

    async def notify(self, notice: EndorsementNotice) -> None:
        api_key = self._settings.vatger_api_key
        if not api_key:
            logger.warning("vatger_api_key_missing endorsement_id=%s skipping notification", notice.endorsement_id)
            return

        title, message = render_notice(notice)
        payload = {
            "title": title,
            "message": message,
            "source_name": self._settings.notify_source_name,
            "via": "board.ping",
        }
        url = f"{self._settings.vatger_api_url.rstrip('/')}/user/{notice.controller_id}/send_notification"
        headers = {"Authorization": f"Token {api_key}"}
        client = self._get_client()

        try:
            response = await call_integration(
                lambda: client.post(url, json=payload, headers=headers),
                breaker=await self._get_breaker(),
                policy=self._retry_policy(),
            )
        except IntegrationUnavailableError as exc:
            raise NotificationFailure(str(exc)) from exc
        except (httpx.HTTPError, TimeoutError) as exc:
            raise NotificationFailure("VATGER notification request failed") from exc

        if response.status_code >= 400:
            raise NotificationFailure(f"VATGER notification error: {response.status_code}")
