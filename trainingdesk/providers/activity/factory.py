from __future__ import annotations

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import ProviderConfigError
from trainingdesk.providers.activity.base import ActivitySource
from trainingdesk.providers.activity.fake import FakeActivitySource
from trainingdesk.providers.activity.vatsim import VatsimActivitySource


def get_activity_source() -> ActivitySource:
    provider = (get_settings().activity_provider or "").lower()
    if provider == "vatsim":
        return VatsimActivitySource()
    if provider == "fake":
        return FakeActivitySource()
    raise ProviderConfigError(f"Unsupported activity provider: {provider}")
