from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.domain.models import AuditLogEntry


async def list_events(
    session: AsyncSession,
    *,
    subject_kind: str | None = None,
    subject_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    newest_first: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLogEntry]:
    # Canonical order is occurred_at then id; admin views ask for newest first.
    stmt = select(AuditLogEntry)
    if subject_kind:
        stmt = stmt.where(AuditLogEntry.subject_kind == subject_kind)
    if subject_id:
        stmt = stmt.where(AuditLogEntry.subject_id == str(subject_id))
    if actor_id:
        stmt = stmt.where(AuditLogEntry.actor_id == actor_id)
    if action:
        stmt = stmt.where(AuditLogEntry.action == action)
    if occurred_from:
        stmt = stmt.where(AuditLogEntry.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLogEntry.occurred_at <= occurred_to)

    if newest_first:
        stmt = stmt.order_by(AuditLogEntry.occurred_at.desc(), AuditLogEntry.id.desc())
    else:
        stmt = stmt.order_by(AuditLogEntry.occurred_at.asc(), AuditLogEntry.id.asc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_for_subject(session: AsyncSession, *, subject_kind: str, subject_id: int | str) -> list[AuditLogEntry]:
    return await list_events(
        session,
        subject_kind=subject_kind,
        subject_id=str(subject_id),
        limit=10_000,
    )


async def count_events(session: AsyncSession, *, action: str | None = None) -> int:
    stmt = select(func.count()).select_from(AuditLogEntry)
    if action:
        stmt = stmt.where(AuditLogEntry.action == action)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def get_event_by_id(session: AsyncSession, *, event_id: int) -> AuditLogEntry | None:
    result = await session.execute(select(AuditLogEntry).where(AuditLogEntry.id == event_id))
    return result.scalar_one_or_none()
