from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import Conflict, InvalidTransition, NotFound, StorageFailure
from trainingdesk.domain.events import (
    ACTION_REMARKS_UPDATED,
    ACTION_TRAINEE_CLAIMED,
    ACTION_TRAINEE_UNCLAIMED,
    ACTION_TRAINING_STARTED,
    ACTION_WAITING_LIST_ENTRY_CREATED,
    ACTION_WAITING_LIST_LEFT,
    Actor,
    ClientContext,
    DomainEvent,
    SubjectRef,
)
from trainingdesk.domain.models import (
    ENTRY_CLAIMED,
    ENTRY_IN_TRAINING,
    ENTRY_LEFT,
    ENTRY_WAITING,
    Course,
    WaitingListEntry,
)
from trainingdesk.persistence.repos import waiting_list as waiting_list_repo
from trainingdesk.services.audit import record_domain_event
from trainingdesk.services.locks import keyed_lock
from trainingdesk.services.policy import format_waiting_time, utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryView:
    entry: WaitingListEntry
    queue_position: int | None
    waiting_time: str


def _entry_lock_key(entry_id: int) -> str:
    return f"waiting_list_entry:{entry_id}"


def _actor_user_id(actor: Actor) -> int:
    # Claims are owned by a person; the system actor cannot hold one.
    if actor.is_system or not str(actor.id).isdigit():
        raise InvalidTransition("A user actor is required for this operation")
    return int(str(actor.id))


async def _require_course(session: AsyncSession, course_id: int) -> Course:
    course = await waiting_list_repo.get_course(session, course_id)
    if course is None:
        raise NotFound(f"Course {course_id} not found")
    return course


async def _require_entry(session: AsyncSession, entry_id: int) -> WaitingListEntry:
    entry = await waiting_list_repo.get_entry(session, entry_id)
    if entry is None:
        raise NotFound(f"Waiting list entry {entry_id} not found")
    return entry


async def _apply(
    session: AsyncSession,
    entry: WaitingListEntry,
    *,
    action: str,
    actor: Actor,
    context: ClientContext | None,
    now: datetime,
    expected_state: str | tuple[str, ...],
    expected_claimant_id: int | None,
    values: dict[str, Any],
    match_claimant: bool = True,
    description: str | None = None,
) -> WaitingListEntry:
    """Compare-and-set one transition and commit it with its audit entry."""
    old = waiting_list_repo.snapshot(entry)
    try:
        changed = await waiting_list_repo.compare_and_set(
            session,
            entry_id=entry.id,
            expected_state=expected_state,
            expected_claimant_id=expected_claimant_id,
            values={**values, "updated_at": now},
            match_claimant=match_claimant,
        )
        if not changed:
            await session.rollback()
            raise Conflict(f"Waiting list entry {entry.id} was changed concurrently", reason="stale")
        updated = await _require_entry(session, entry.id)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StorageFailure(f"Could not update waiting list entry {entry.id}") from exc

    await record_domain_event(
        DomainEvent(
            action=action,
            subject=SubjectRef.of("waiting_list_entry", updated.id),
            actor=actor,
            payload={"old": old, "new": waiting_list_repo.snapshot(updated)},
            description=description,
        ),
        session=session,
        context=context,
        occurred_at=now,
        commit=True,
    )
    logger.info(
        "waiting_list_transition action=%s entry_id=%s actor_id=%s state=%s",
        action,
        updated.id,
        actor.id,
        updated.state,
    )
    return updated


async def join(
    session: AsyncSession,
    *,
    trainee_id: int,
    course_id: int,
    actor: Actor,
    context: ClientContext | None = None,
    now: datetime | None = None,
) -> WaitingListEntry:
    now = now or utc_now()
    course = await _require_course(session, course_id)
    async with keyed_lock(f"waiting_list_join:{trainee_id}:{course_id}"):
        existing = await waiting_list_repo.find_open_entry(session, trainee_id=trainee_id, course_id=course_id)
        if existing is not None:
            raise Conflict(f"Trainee {trainee_id} is already on the waiting list", reason="already_on_list")
        entry = WaitingListEntry(
            trainee_id=trainee_id,
            course_id=course_id,
            state=ENTRY_WAITING,
            remarks="",
            joined_at=now,
            updated_at=now,
        )
        try:
            session.add(entry)
            await session.flush()
        except IntegrityError as exc:
            # Another process won the partial unique index.
            await session.rollback()
            raise Conflict(f"Trainee {trainee_id} is already on the waiting list", reason="already_on_list") from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StorageFailure("Could not store waiting list entry") from exc

        await record_domain_event(
            DomainEvent(
                action=ACTION_WAITING_LIST_ENTRY_CREATED,
                subject=SubjectRef.of("waiting_list_entry", entry.id),
                actor=actor,
                payload={"new": waiting_list_repo.snapshot(entry)},
                description=f"{actor.display_name} added trainee {trainee_id} to the {course.name} waiting list",
            ),
            session=session,
            context=context,
            occurred_at=now,
            commit=True,
        )
    logger.info("waiting_list_joined entry_id=%s trainee_id=%s course_id=%s", entry.id, trainee_id, course_id)
    return entry


async def leave(
    session: AsyncSession,
    *,
    entry_id: int,
    actor: Actor,
    context: ClientContext | None = None,
    now: datetime | None = None,
) -> WaitingListEntry:
    now = now or utc_now()
    async with keyed_lock(_entry_lock_key(entry_id)):
        entry = await _require_entry(session, entry_id)
        if entry.state == ENTRY_LEFT:
            # Repeated leave is a no-op and writes no audit entry.
            return entry
        return await _apply(
            session,
            entry,
            action=ACTION_WAITING_LIST_LEFT,
            actor=actor,
            context=context,
            now=now,
            expected_state=entry.state,
            expected_claimant_id=entry.claimant_id,
            values={"state": ENTRY_LEFT, "left_at": now},
        )


async def claim(
    session: AsyncSession,
    *,
    entry_id: int,
    actor: Actor,
    context: ClientContext | None = None,
    now: datetime | None = None,
) -> WaitingListEntry:
    now = now or utc_now()
    mentor_id = _actor_user_id(actor)
    async with keyed_lock(_entry_lock_key(entry_id)):
        entry = await _require_entry(session, entry_id)
        if entry.state == ENTRY_LEFT:
            raise InvalidTransition(f"Waiting list entry {entry_id} is closed")
        if entry.state != ENTRY_WAITING or entry.claimant_id is not None:
            raise Conflict(f"Trainee is already claimed by mentor {entry.claimant_id}", reason="already_claimed")
        try:
            return await _apply(
                session,
                entry,
                action=ACTION_TRAINEE_CLAIMED,
                actor=actor,
                context=context,
                now=now,
                expected_state=ENTRY_WAITING,
                expected_claimant_id=None,
                values={"state": ENTRY_CLAIMED, "claimant_id": mentor_id, "claimed_at": now},
                description=f"{actor.display_name} claimed trainee {entry.trainee_id}",
            )
        except Conflict as exc:
            raise Conflict("Trainee is already claimed", reason="already_claimed") from exc


async def release(
    session: AsyncSession,
    *,
    entry_id: int,
    actor: Actor,
    context: ClientContext | None = None,
    now: datetime | None = None,
) -> WaitingListEntry:
    now = now or utc_now()
    mentor_id = _actor_user_id(actor)
    async with keyed_lock(_entry_lock_key(entry_id)):
        entry = await _require_entry(session, entry_id)
        if entry.state != ENTRY_CLAIMED:
            raise InvalidTransition(f"Waiting list entry {entry_id} is not claimed")
        if entry.claimant_id != mentor_id:
            raise InvalidTransition("Only the claiming mentor can release this trainee")
        return await _apply(
            session,
            entry,
            action=ACTION_TRAINEE_UNCLAIMED,
            actor=actor,
            context=context,
            now=now,
            expected_state=ENTRY_CLAIMED,
            expected_claimant_id=mentor_id,
            values={"state": ENTRY_WAITING, "claimant_id": None, "claimed_at": None},
            description=f"{actor.display_name} released trainee {entry.trainee_id}",
        )


async def start_training(
    session: AsyncSession,
    *,
    entry_id: int,
    actor: Actor,
    context: ClientContext | None = None,
    now: datetime | None = None,
) -> WaitingListEntry:
    now = now or utc_now()
    mentor_id = _actor_user_id(actor)
    entry = await _require_entry(session, entry_id)
    # Course lock first, entry lock second; the course row lock covers other processes.
    async with keyed_lock(f"course_capacity:{entry.course_id}"):
        async with keyed_lock(_entry_lock_key(entry_id)):
            entry = await _require_entry(session, entry_id)
            if entry.state != ENTRY_CLAIMED:
                raise InvalidTransition(f"Waiting list entry {entry_id} is not claimed")
            if entry.claimant_id != mentor_id:
                raise InvalidTransition("Only the claiming mentor can start training")
            try:
                course = await waiting_list_repo.lock_course(session, entry.course_id)
                in_training = await waiting_list_repo.count_in_training(session, course_id=entry.course_id)
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageFailure(f"Could not check capacity of course {entry.course_id}") from exc
            if course is None:
                await session.rollback()
                raise NotFound(f"Course {entry.course_id} not found")
            course_name = course.name
            if course.max_trainees is not None and in_training >= course.max_trainees:
                # Release the row lock before reporting.
                await session.rollback()
                raise Conflict(f"Course {course_name} is full", reason="course_full")
            return await _apply(
                session,
                entry,
                action=ACTION_TRAINING_STARTED,
                actor=actor,
                context=context,
                now=now,
                expected_state=ENTRY_CLAIMED,
                expected_claimant_id=mentor_id,
                values={"state": ENTRY_IN_TRAINING, "training_started_at": now},
                description=f"{actor.display_name} started {course_name} training for trainee {entry.trainee_id}",
            )


async def update_remarks(
    session: AsyncSession,
    *,
    entry_id: int,
    remarks: str,
    actor: Actor,
    context: ClientContext | None = None,
    now: datetime | None = None,
) -> WaitingListEntry:
    now = now or utc_now()
    max_length = get_settings().waiting_list_remarks_max_length
    text = (remarks or "").strip()
    if len(text) > max_length:
        raise ValueError(f"Remarks must be at most {max_length} characters")
    async with keyed_lock(_entry_lock_key(entry_id)):
        entry = await _require_entry(session, entry_id)
        if entry.state == ENTRY_LEFT:
            raise InvalidTransition(f"Waiting list entry {entry_id} is closed")
        if entry.remarks == text:
            return entry
        return await _apply(
            session,
            entry,
            action=ACTION_REMARKS_UPDATED,
            actor=actor,
            context=context,
            now=now,
            expected_state=entry.state,
            expected_claimant_id=None,
            values={"remarks": text},
            match_claimant=False,
        )


async def entry_view(session: AsyncSession, entry: WaitingListEntry, *, now: datetime | None = None) -> EntryView:
    now = now or utc_now()
    position = await waiting_list_repo.queue_position(session, entry) if entry.state == ENTRY_WAITING else None
    return EntryView(entry=entry, queue_position=position, waiting_time=format_waiting_time(entry.joined_at, now))


async def list_course_queue(
    session: AsyncSession,
    *,
    course_id: int,
    include_left: bool = False,
    now: datetime | None = None,
) -> list[EntryView]:
    now = now or utc_now()
    await _require_course(session, course_id)
    entries = await waiting_list_repo.list_for_course(session, course_id=course_id, include_left=include_left)
    views: list[EntryView] = []
    position = 0
    for entry in entries:
        # Entries come back in join order, so waiting positions are a running count.
        queue_position = None
        if entry.state == ENTRY_WAITING:
            position += 1
            queue_position = position
        views.append(
            EntryView(entry=entry, queue_position=queue_position, waiting_time=format_waiting_time(entry.joined_at, now))
        )
    return views
