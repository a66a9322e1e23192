from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.apps.api.deps import CAPABILITY_AUDIT_READ, get_db, require_capability
from trainingdesk.apps.api.response import Page, paginate, success_response
from trainingdesk.domain.events import ACTION_LABELS, SUBJECT_KINDS, Actor
from trainingdesk.domain.models import AuditLogEntry
from trainingdesk.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    actor_id: str | None
    actor_name: str | None
    action: str
    action_label: str
    subject_kind: str
    subject_id: str
    description: str
    payload: dict[str, Any] | None
    request_id: str | None
    ip_address: str | None
    user_agent: str | None


def _to_response(event: AuditLogEntry) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        actor_id=event.actor_id,
        actor_name=event.actor_name,
        action=event.action,
        action_label=ACTION_LABELS.get(event.action, event.action),
        subject_kind=event.subject_kind,
        subject_id=event.subject_id,
        description=event.description,
        payload=event.payload,
        request_id=event.request_id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
    )


@router.get("/events")
async def list_audit_events(
    request: Request,
    subject_kind: str | None = None,
    subject_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    newest_first: bool = False,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(require_capability(CAPABILITY_AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if subject_kind is not None and subject_kind not in SUBJECT_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown subject kind: {subject_kind}")
    if subject_id is not None and subject_kind is None:
        raise HTTPException(status_code=400, detail="subject_id requires subject_kind")
    try:
        events = await audit_repo.list_events(
            db,
            subject_kind=subject_kind,
            subject_id=subject_id,
            actor_id=actor_id,
            action=action,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            newest_first=newest_first,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc

    events, next_offset = paginate(events, offset=offset, limit=limit)
    page = Page[AuditEventResponse](items=[_to_response(event) for event in events], next_offset=next_offset)
    return success_response(request=request, data=page)


@router.get("/events/{event_id}")
async def get_audit_event(
    request: Request,
    event_id: int,
    actor: Actor = Depends(require_capability(CAPABILITY_AUDIT_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        event = await audit_repo.get_event_by_id(db, event_id=event_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit event") from exc
    if event is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return success_response(request=request, data=_to_response(event))
