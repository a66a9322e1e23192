from __future__ import annotations

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import ProviderConfigError
from trainingdesk.providers.notify.base import NotificationDispatcher
from trainingdesk.providers.notify.fake import FakeNotificationDispatcher
from trainingdesk.providers.notify.log import LogNotificationDispatcher
from trainingdesk.providers.notify.vatger import VatgerNotificationDispatcher


def get_notification_dispatcher() -> NotificationDispatcher | None:
    provider = (get_settings().notify_provider or "none").lower()
    if provider == "none":
        # Removal passes still run; transitions are simply not announced.
        return None
    if provider == "vatger":
        return VatgerNotificationDispatcher()
    if provider == "log":
        return LogNotificationDispatcher()
    if provider == "fake":
        return FakeNotificationDispatcher()
    raise ProviderConfigError(f"Unsupported notification provider: {provider}")
