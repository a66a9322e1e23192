from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.core.errors import StorageFailure
from trainingdesk.domain.events import (
    ACTION_ENDORSEMENT_TIER1_GRANTED,
    ACTION_ENDORSEMENT_TIER2_GRANTED,
    Actor,
    ClientContext,
    DomainEvent,
    SubjectRef,
)
from trainingdesk.domain.models import (
    ENDORSEMENT_ACTIVE,
    ENDORSEMENT_TIER1,
    ENDORSEMENT_TIER2,
    ENDORSEMENT_WARNED,
    ActivityRecord,
    Endorsement,
)
from trainingdesk.persistence.repos import endorsements as endorsements_repo
from trainingdesk.services.audit import record_domain_event
from trainingdesk.services.policy import (
    ActivityStatus,
    PolicyThresholds,
    activity_progress,
    activity_status,
    is_age_eligible,
    removal_date,
    utc_now,
)


logger = logging.getLogger(__name__)

_GRANT_ACTIONS = {
    ENDORSEMENT_TIER1: ACTION_ENDORSEMENT_TIER1_GRANTED,
    ENDORSEMENT_TIER2: ACTION_ENDORSEMENT_TIER2_GRANTED,
}


async def grant_endorsement(
    session: AsyncSession,
    *,
    controller_id: int,
    position: str,
    actor: Actor,
    tier: str = ENDORSEMENT_TIER1,
    granted_at: datetime | None = None,
    context: ClientContext | None = None,
) -> Endorsement:
    # New endorsements start active with an unsynced activity record, so they sort first for the next tick.
    action = _GRANT_ACTIONS.get(tier)
    if action is None:
        raise ValueError(f"Unknown endorsement tier: {tier}")
    position = position.strip().upper()
    if not position:
        raise ValueError("position is required")

    now = utc_now()
    endorsement = Endorsement(
        controller_id=controller_id,
        position=position,
        tier=tier,
        granted_at=granted_at or now,
        state=ENDORSEMENT_ACTIVE,
        activity=ActivityRecord(total_minutes=0.0, last_synced_at=None, last_activity_at=None),
    )
    try:
        session.add(endorsement)
        await session.flush()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageFailure("Could not store endorsement") from exc

    await record_domain_event(
        DomainEvent(
            action=action,
            subject=SubjectRef.of("endorsement", endorsement.id),
            actor=actor,
            payload={"new": endorsements_repo.snapshot(endorsement)},
            description=f"{actor.display_name} granted {position} to {controller_id}",
        ),
        session=session,
        context=context,
        occurred_at=now,
        commit=True,
    )
    logger.info(
        "endorsement_granted endorsement_id=%s controller_id=%s position=%s tier=%s",
        endorsement.id,
        controller_id,
        position,
        tier,
    )
    return endorsement


@dataclass(frozen=True)
class EndorsementStanding:
    """An endorsement together with how it currently fares against the activity policy."""

    endorsement: Endorsement
    minutes: float
    status: ActivityStatus
    progress: float
    # False while the endorsement is younger than the minimum age.
    removal_eligible: bool
    # Planned removal for warned endorsements, otherwise None.
    removal_due_at: datetime | None


def endorsement_standing(
    endorsement: Endorsement,
    *,
    now: datetime,
    thresholds: PolicyThresholds | None = None,
) -> EndorsementStanding:
    thresholds = thresholds or PolicyThresholds.from_settings()
    minutes = endorsement.activity.total_minutes if endorsement.activity is not None else 0.0
    due = None
    if endorsement.state == ENDORSEMENT_WARNED and endorsement.last_warned_at is not None:
        due = removal_date(endorsement.last_warned_at, thresholds=thresholds)
    return EndorsementStanding(
        endorsement=endorsement,
        minutes=minutes,
        status=activity_status(minutes, thresholds=thresholds),
        progress=round(activity_progress(minutes, thresholds=thresholds), 1),
        removal_eligible=is_age_eligible(endorsement.granted_at, now, thresholds=thresholds),
        removal_due_at=due,
    )


async def list_standings(
    session: AsyncSession,
    *,
    controller_id: int | None = None,
    include_removed: bool = False,
    offset: int = 0,
    limit: int = 50,
    now: datetime | None = None,
) -> list[EndorsementStanding]:
    try:
        endorsements = await endorsements_repo.list_endorsements(
            session,
            controller_id=controller_id,
            include_removed=include_removed,
            offset=offset,
            limit=limit,
        )
    except SQLAlchemyError as exc:
        raise StorageFailure("Could not list endorsements") from exc
    thresholds = PolicyThresholds.from_settings()
    now = now or utc_now()
    return [endorsement_standing(endorsement, now=now, thresholds=thresholds) for endorsement in endorsements]
