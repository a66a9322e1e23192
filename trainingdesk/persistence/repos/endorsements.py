from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager

from trainingdesk.domain.models import (
    ENDORSEMENT_LIVE_STATES,
    ActivityRecord,
    Endorsement,
)


async def get_endorsement(session: AsyncSession, endorsement_id: int) -> Endorsement | None:
    result = await session.execute(select(Endorsement).where(Endorsement.id == endorsement_id))
    return result.unique().scalar_one_or_none()


async def select_due_for_sync(session: AsyncSession, *, limit: int) -> list[Endorsement]:
    # Oldest sync first, never-synced before everything, ties by id for deterministic rotation.
    stmt = (
        select(Endorsement)
        .join(Endorsement.activity)
        .options(contains_eager(Endorsement.activity))
        .where(Endorsement.state.in_(ENDORSEMENT_LIVE_STATES))
        .order_by(
            ActivityRecord.last_synced_at.asc().nulls_first(),
            Endorsement.id.asc(),
        )
        .limit(max(0, int(limit)))
    )
    result = await session.execute(stmt)
    return list(result.unique().scalars().all())


async def list_removal_candidate_ids(session: AsyncSession, *, granted_before: datetime) -> list[int]:
    # Only endorsements old enough to be eligible and with at least one real activity figure.
    stmt = (
        select(Endorsement.id)
        .join(Endorsement.activity)
        .where(
            Endorsement.state.in_(ENDORSEMENT_LIVE_STATES),
            Endorsement.granted_at <= granted_before,
            ActivityRecord.last_synced_at.is_not(None),
        )
        .order_by(Endorsement.id.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_live_ids_after(session: AsyncSession, *, after_id: int, limit: int) -> list[int]:
    # Keyset page over live endorsements; rows added mid-walk are picked up by id.
    stmt = (
        select(Endorsement.id)
        .where(Endorsement.state.in_(ENDORSEMENT_LIVE_STATES), Endorsement.id > after_id)
        .order_by(Endorsement.id.asc())
        .limit(max(1, int(limit)))
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def transition_state(
    session: AsyncSession,
    *,
    endorsement_id: int,
    expected_state: str,
    values: dict[str, Any],
) -> bool:
    # Compare-and-set on the lifecycle state so repeated or overlapping runs transition once.
    result = await session.execute(
        update(Endorsement)
        .where(Endorsement.id == endorsement_id, Endorsement.state == expected_state)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


def snapshot(endorsement: Endorsement) -> dict[str, Any]:
    # JSON-safe view used for audit pre/post images.
    activity = endorsement.activity
    return {
        "id": endorsement.id,
        "controller_id": endorsement.controller_id,
        "position": endorsement.position,
        "tier": endorsement.tier,
        "state": endorsement.state,
        "granted_at": _iso(endorsement.granted_at),
        "last_warned_at": _iso(endorsement.last_warned_at),
        "removed_at": _iso(endorsement.removed_at),
        "total_minutes": activity.total_minutes if activity is not None else None,
        "last_synced_at": _iso(activity.last_synced_at) if activity is not None else None,
        "last_activity_at": _iso(activity.last_activity_at) if activity is not None else None,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


async def list_endorsements(
    session: AsyncSession,
    *,
    controller_id: int | None = None,
    include_removed: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> list[Endorsement]:
    stmt = select(Endorsement)
    if controller_id is not None:
        stmt = stmt.where(Endorsement.controller_id == controller_id)
    if not include_removed:
        stmt = stmt.where(Endorsement.state.in_(ENDORSEMENT_LIVE_STATES))
    stmt = stmt.order_by(Endorsement.controller_id.asc(), Endorsement.position.asc(), Endorsement.id.asc())
    result = await session.execute(stmt.offset(max(0, offset)).limit(max(0, limit)))
    return list(result.unique().scalars().all())
