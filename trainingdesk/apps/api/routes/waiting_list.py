from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.apps.api.deps import (
    CAPABILITY_MENTOR,
    get_actor,
    get_client_context,
    get_db,
    require_capability,
)
from trainingdesk.apps.api.response import success_response
from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import NotFound
from trainingdesk.domain.events import Actor, ClientContext
from trainingdesk.persistence.repos import waiting_list as waiting_list_repo
from trainingdesk.services import waiting_list as waiting_list_service
from trainingdesk.services.waiting_list import EntryView


router = APIRouter(tags=["waiting-list"])


class JoinRequest(BaseModel):
    # Defaults to the acting user; mentors may enrol someone else.
    trainee_id: int | None = None


class RemarksRequest(BaseModel):
    remarks: str = Field(default="", max_length=get_settings().waiting_list_remarks_max_length)


class WaitingListEntryResponse(BaseModel):
    id: int
    trainee_id: int
    course_id: int
    state: str
    claimant_id: int | None
    remarks: str
    joined_at: str
    claimed_at: str | None
    training_started_at: str | None
    left_at: str | None
    queue_position: int | None
    waiting_time: str


def _to_response(view: EntryView) -> WaitingListEntryResponse:
    entry = view.entry
    return WaitingListEntryResponse(
        id=entry.id,
        trainee_id=entry.trainee_id,
        course_id=entry.course_id,
        state=entry.state,
        claimant_id=entry.claimant_id,
        remarks=entry.remarks or "",
        joined_at=entry.joined_at.isoformat(),
        claimed_at=entry.claimed_at.isoformat() if entry.claimed_at else None,
        training_started_at=entry.training_started_at.isoformat() if entry.training_started_at else None,
        left_at=entry.left_at.isoformat() if entry.left_at else None,
        queue_position=view.queue_position,
        waiting_time=view.waiting_time,
    )


def _is_self(actor: Actor, trainee_id: int) -> bool:
    return actor.id is not None and actor.id == str(trainee_id)


@router.get("/courses/{course_id}/waiting-list")
async def list_waiting_list(
    request: Request,
    course_id: int,
    include_left: bool = False,
    actor: Actor = Depends(require_capability(CAPABILITY_MENTOR)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    views = await waiting_list_service.list_course_queue(db, course_id=course_id, include_left=include_left)
    return success_response(request=request, data=[_to_response(view) for view in views])


@router.post("/courses/{course_id}/waiting-list", status_code=201)
async def join_waiting_list(
    request: Request,
    course_id: int,
    body: JoinRequest,
    actor: Actor = Depends(get_actor),
    context: ClientContext = Depends(get_client_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if body.trainee_id is None:
        if actor.id is None or not actor.id.isdigit():
            raise HTTPException(status_code=400, detail="trainee_id is required")
        trainee_id = int(actor.id)
    else:
        trainee_id = body.trainee_id
    if not _is_self(actor, trainee_id) and not actor.can(CAPABILITY_MENTOR):
        raise HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": "Cannot enrol another user"})
    entry = await waiting_list_service.join(
        db,
        trainee_id=trainee_id,
        course_id=course_id,
        actor=actor,
        context=context,
    )
    view = await waiting_list_service.entry_view(db, entry)
    return success_response(request=request, data=_to_response(view))


@router.post("/waiting-list-entries/{entry_id}/leave")
async def leave_waiting_list(
    request: Request,
    entry_id: int,
    actor: Actor = Depends(get_actor),
    context: ClientContext = Depends(get_client_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    current = await waiting_list_repo.get_entry(db, entry_id)
    if current is None:
        raise NotFound(f"Waiting list entry {entry_id} not found")
    if not _is_self(actor, current.trainee_id) and not actor.can(CAPABILITY_MENTOR):
        raise HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": "Cannot remove another user"})
    entry = await waiting_list_service.leave(db, entry_id=entry_id, actor=actor, context=context)
    view = await waiting_list_service.entry_view(db, entry)
    return success_response(request=request, data=_to_response(view))


@router.post("/waiting-list-entries/{entry_id}/claim")
async def claim_trainee(
    request: Request,
    entry_id: int,
    actor: Actor = Depends(require_capability(CAPABILITY_MENTOR)),
    context: ClientContext = Depends(get_client_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await waiting_list_service.claim(db, entry_id=entry_id, actor=actor, context=context)
    view = await waiting_list_service.entry_view(db, entry)
    return success_response(request=request, data=_to_response(view))


@router.post("/waiting-list-entries/{entry_id}/release")
async def release_trainee(
    request: Request,
    entry_id: int,
    actor: Actor = Depends(require_capability(CAPABILITY_MENTOR)),
    context: ClientContext = Depends(get_client_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await waiting_list_service.release(db, entry_id=entry_id, actor=actor, context=context)
    view = await waiting_list_service.entry_view(db, entry)
    return success_response(request=request, data=_to_response(view))


@router.post("/waiting-list-entries/{entry_id}/start-training")
async def start_training(
    request: Request,
    entry_id: int,
    actor: Actor = Depends(require_capability(CAPABILITY_MENTOR)),
    context: ClientContext = Depends(get_client_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await waiting_list_service.start_training(db, entry_id=entry_id, actor=actor, context=context)
    view = await waiting_list_service.entry_view(db, entry)
    return success_response(request=request, data=_to_response(view))


@router.put("/waiting-list-entries/{entry_id}/remarks")
async def update_remarks(
    request: Request,
    entry_id: int,
    body: RemarksRequest,
    actor: Actor = Depends(require_capability(CAPABILITY_MENTOR)),
    context: ClientContext = Depends(get_client_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await waiting_list_service.update_remarks(
        db,
        entry_id=entry_id,
        remarks=body.remarks,
        actor=actor,
        context=context,
    )
    view = await waiting_list_service.entry_view(db, entry)
    return success_response(request=request, data=_to_response(view))
