from __future__ import annotations


class TrainingDeskError(Exception):
    """Base error for trainingdesk."""


class ProviderConfigError(TrainingDeskError):
    """Missing or invalid provider configuration."""


class ExternalFetchFailure(TrainingDeskError):
    """Activity source failed or timed out; retried on the next eligible tick."""


class IntegrationUnavailableError(ExternalFetchFailure):
    """Circuit breaker is open for an external integration."""


class NotificationFailure(TrainingDeskError):
    """Notification dispatch failed; logged, never blocks a transition."""


class StorageFailure(TrainingDeskError):
    """Durable store unavailable; aborts the current tick or operation."""


class NotFound(TrainingDeskError):
    """Referenced entity does not exist."""


class Conflict(TrainingDeskError):
    """Slot already occupied (already claimed, already on list, course full)."""

    def __init__(self, message: str, *, reason: str = "conflict") -> None:
        super().__init__(message)
        self.reason = reason


class InvalidTransition(TrainingDeskError):
    """Operation not permitted from the entity's current state or by this actor."""
