from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.apps.api.deps import CAPABILITY_MENTOR, get_actor, get_db
from trainingdesk.apps.api.response import Page, paginate, success_response
from trainingdesk.domain.events import Actor
from trainingdesk.services import endorsements as endorsements_service
from trainingdesk.services.endorsements import EndorsementStanding


router = APIRouter(prefix="/endorsements", tags=["endorsements"])


class EndorsementResponse(BaseModel):
    id: int
    controller_id: int
    position: str
    tier: str
    state: str
    granted_at: str
    minutes: float
    activity_status: str
    progress: float
    removal_eligible: bool
    removal_due_at: str | None
    last_synced_at: str | None
    last_activity_at: str | None


def _to_response(standing: EndorsementStanding) -> EndorsementResponse:
    endorsement = standing.endorsement
    activity = endorsement.activity
    return EndorsementResponse(
        id=endorsement.id,
        controller_id=endorsement.controller_id,
        position=endorsement.position,
        tier=endorsement.tier,
        state=endorsement.state,
        granted_at=endorsement.granted_at.isoformat(),
        minutes=standing.minutes,
        activity_status=standing.status,
        progress=standing.progress,
        removal_eligible=standing.removal_eligible,
        removal_due_at=standing.removal_due_at.isoformat() if standing.removal_due_at else None,
        last_synced_at=activity.last_synced_at.isoformat() if activity and activity.last_synced_at else None,
        last_activity_at=activity.last_activity_at.isoformat() if activity and activity.last_activity_at else None,
    )


@router.get("")
async def list_endorsements(
    request: Request,
    controller_id: int | None = None,
    include_removed: bool = False,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Controllers may read their own standing; everything else is for mentors.
    is_self = controller_id is not None and actor.id == str(controller_id)
    if not is_self and not actor.can(CAPABILITY_MENTOR):
        raise HTTPException(
            status_code=403,
            detail={"code": "AUTH_FORBIDDEN", "message": f"Capability {CAPABILITY_MENTOR} is required"},
        )
    standings = await endorsements_service.list_standings(
        db,
        controller_id=controller_id,
        include_removed=include_removed,
        offset=offset,
        limit=limit + 1,
    )
    standings, next_offset = paginate(standings, offset=offset, limit=limit)
    page = Page[EndorsementResponse](items=[_to_response(item) for item in standings], next_offset=next_offset)
    return success_response(request=request, data=page)
