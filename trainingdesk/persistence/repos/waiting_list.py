from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.domain.models import (
    ENTRY_IN_TRAINING,
    ENTRY_OPEN_STATES,
    ENTRY_WAITING,
    Course,
    WaitingListEntry,
)


async def get_course(session: AsyncSession, course_id: int) -> Course | None:
    return await session.get(Course, course_id)


def course_capacity_lock(course_id: int) -> Select[tuple[Course]]:
    # Row lock on the course serializes capacity checks across processes (no-op on SQLite).
    return (
        select(Course)
        .where(Course.id == course_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


async def lock_course(session: AsyncSession, course_id: int) -> Course | None:
    result = await session.execute(course_capacity_lock(course_id))
    return result.scalar_one_or_none()


async def get_entry(session: AsyncSession, entry_id: int) -> WaitingListEntry | None:
    # Bypass the identity map so callers always see the committed row.
    result = await session.execute(
        select(WaitingListEntry)
        .where(WaitingListEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_open_entry(session: AsyncSession, *, trainee_id: int, course_id: int) -> WaitingListEntry | None:
    result = await session.execute(
        select(WaitingListEntry).where(
            WaitingListEntry.trainee_id == trainee_id,
            WaitingListEntry.course_id == course_id,
            WaitingListEntry.state.in_(ENTRY_OPEN_STATES),
        )
    )
    return result.scalar_one_or_none()


async def compare_and_set(
    session: AsyncSession,
    *,
    entry_id: int,
    expected_state: str | tuple[str, ...],
    expected_claimant_id: int | None,
    values: dict[str, Any],
    match_claimant: bool = True,
) -> bool:
    # Atomic transition on (state, claimant); a concurrent writer makes this match zero rows.
    states = (expected_state,) if isinstance(expected_state, str) else tuple(expected_state)
    stmt = update(WaitingListEntry).where(
        WaitingListEntry.id == entry_id,
        WaitingListEntry.state.in_(states),
    )
    if match_claimant:
        if expected_claimant_id is None:
            stmt = stmt.where(WaitingListEntry.claimant_id.is_(None))
        else:
            stmt = stmt.where(WaitingListEntry.claimant_id == expected_claimant_id)
    result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return (result.rowcount or 0) == 1


async def count_in_training(session: AsyncSession, *, course_id: int) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(WaitingListEntry)
        .where(WaitingListEntry.course_id == course_id, WaitingListEntry.state == ENTRY_IN_TRAINING)
    )
    return int(result.scalar() or 0)


async def queue_position(session: AsyncSession, entry: WaitingListEntry) -> int:
    # 1-based position among entries still waiting on the same course; ties by id, as in list_for_course.
    result = await session.execute(
        select(func.count())
        .select_from(WaitingListEntry)
        .where(
            WaitingListEntry.course_id == entry.course_id,
            WaitingListEntry.state == ENTRY_WAITING,
            or_(
                WaitingListEntry.joined_at < entry.joined_at,
                and_(WaitingListEntry.joined_at == entry.joined_at, WaitingListEntry.id < entry.id),
            ),
        )
    )
    return int(result.scalar() or 0) + 1


async def list_for_course(
    session: AsyncSession,
    *,
    course_id: int,
    include_left: bool = False,
) -> list[WaitingListEntry]:
    stmt = select(WaitingListEntry).where(WaitingListEntry.course_id == course_id)
    if not include_left:
        stmt = stmt.where(WaitingListEntry.state.in_(ENTRY_OPEN_STATES))
    stmt = stmt.order_by(WaitingListEntry.joined_at.asc(), WaitingListEntry.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


def snapshot(entry: WaitingListEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "trainee_id": entry.trainee_id,
        "course_id": entry.course_id,
        "state": entry.state,
        "claimant_id": entry.claimant_id,
        "remarks": entry.remarks,
        "joined_at": _iso(entry.joined_at),
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
