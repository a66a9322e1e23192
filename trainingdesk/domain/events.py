from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


SubjectKind = Literal["endorsement", "waiting_list_entry", "course"]
SUBJECT_KINDS: tuple[str, ...] = ("endorsement", "waiting_list_entry", "course")

# Closed action vocabulary. One canonical action per transition.
ACTION_ENDORSEMENT_TIER1_GRANTED = "endorsement.tier1.granted"
ACTION_ENDORSEMENT_TIER2_GRANTED = "endorsement.tier2.granted"
ACTION_ENDORSEMENT_UPDATED = "endorsement.updated"
ACTION_ENDORSEMENT_WARNED = "endorsement.warned"
ACTION_ENDORSEMENT_REMOVED = "endorsement.removed"
ACTION_WAITING_LIST_ENTRY_CREATED = "waitinglistentry.created"
ACTION_WAITING_LIST_LEFT = "waiting_list.left"
ACTION_TRAINEE_CLAIMED = "trainee.claimed"
ACTION_TRAINEE_UNCLAIMED = "trainee.unclaimed"
ACTION_TRAINING_STARTED = "training.started"
ACTION_REMARKS_UPDATED = "remarks.updated"

ACTION_LABELS: dict[str, str] = {
    ACTION_ENDORSEMENT_TIER1_GRANTED: "Tier 1 Endorsement Granted",
    ACTION_ENDORSEMENT_TIER2_GRANTED: "Tier 2 Endorsement Granted",
    ACTION_ENDORSEMENT_UPDATED: "Endorsement Updated",
    ACTION_ENDORSEMENT_WARNED: "Endorsement Removal Warning",
    ACTION_ENDORSEMENT_REMOVED: "Endorsement Removed",
    ACTION_WAITING_LIST_ENTRY_CREATED: "Joined Waiting List",
    ACTION_WAITING_LIST_LEFT: "Left Waiting List",
    ACTION_TRAINEE_CLAIMED: "Trainee Claimed",
    ACTION_TRAINEE_UNCLAIMED: "Trainee Unclaimed",
    ACTION_TRAINING_STARTED: "Training Started",
    ACTION_REMARKS_UPDATED: "Remarks Updated",
}
AUDIT_ACTIONS: frozenset[str] = frozenset(ACTION_LABELS)

# Notes attached to endorsement.updated payloads.
NOTE_ACTIVITY_SYNCED = "activity_synced"
NOTE_REACTIVATED = "reactivated"

TransitionKind = Literal["warning", "removal"]


@dataclass(frozen=True)
class Actor:
    # Explicit acting identity; id None means the system.
    id: str | None
    name: str | None = None
    capabilities: frozenset[str] = frozenset()

    @property
    def is_system(self) -> bool:
        return self.id is None

    @property
    def display_name(self) -> str:
        if self.is_system:
            return "System"
        return self.name or f"User {self.id}"

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


SYSTEM_ACTOR = Actor(id=None, name="System")


@dataclass(frozen=True)
class ClientContext:
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class SubjectRef:
    kind: SubjectKind
    id: str

    @classmethod
    def of(cls, kind: SubjectKind, value: int | str) -> SubjectRef:
        return cls(kind=kind, id=str(value))


@dataclass(frozen=True)
class DomainEvent:
    # Emitted by every lifecycle-mutating operation and consumed by the audit writer.
    action: str
    subject: SubjectRef
    actor: Actor
    payload: dict[str, Any] = field(default_factory=dict)
    description: str | None = None

    def __post_init__(self) -> None:
        if self.action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {self.action}")
