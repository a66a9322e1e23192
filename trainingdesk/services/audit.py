from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from trainingdesk.core.errors import StorageFailure
from trainingdesk.domain.events import (
    ACTION_ENDORSEMENT_REMOVED,
    ACTION_ENDORSEMENT_TIER1_GRANTED,
    ACTION_ENDORSEMENT_TIER2_GRANTED,
    ACTION_ENDORSEMENT_UPDATED,
    ACTION_ENDORSEMENT_WARNED,
    ACTION_REMARKS_UPDATED,
    ACTION_TRAINEE_CLAIMED,
    ACTION_TRAINEE_UNCLAIMED,
    ACTION_TRAINING_STARTED,
    ACTION_WAITING_LIST_ENTRY_CREATED,
    ACTION_WAITING_LIST_LEFT,
    AUDIT_ACTIONS,
    SYSTEM_ACTOR,
    Actor,
    ClientContext,
    DomainEvent,
    SubjectRef,
)
from trainingdesk.domain.models import AuditLogEntry
from trainingdesk.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

_SUBJECT_LABELS = {
    "endorsement": "Endorsement",
    "waiting_list_entry": "WaitingListEntry",
    "course": "Course",
}

_ACTION_VERBS = {
    ACTION_ENDORSEMENT_TIER1_GRANTED: "granted",
    ACTION_ENDORSEMENT_TIER2_GRANTED: "granted",
    ACTION_ENDORSEMENT_UPDATED: "updated",
    ACTION_ENDORSEMENT_WARNED: "warned",
    ACTION_ENDORSEMENT_REMOVED: "removed",
    ACTION_WAITING_LIST_ENTRY_CREATED: "created",
    ACTION_WAITING_LIST_LEFT: "closed",
    ACTION_TRAINEE_CLAIMED: "claimed",
    ACTION_TRAINEE_UNCLAIMED: "released",
    ACTION_TRAINING_STARTED: "started training for",
    ACTION_REMARKS_UPDATED: "updated remarks on",
}


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_payload(value: Any) -> Any:
    # Recursively scrub credential-like fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_payload(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item) for item in value]
    return value


def get_request_context(request: Request | None) -> ClientContext:
    # Client hints for the audit row, never credentials.
    if request is None:
        return ClientContext()
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return ClientContext(ip_address=ip_address, user_agent=user_agent, request_id=request_id)


def default_description(actor: Actor, action: str, subject: SubjectRef) -> str:
    verb = _ACTION_VERBS.get(action)
    label = _SUBJECT_LABELS.get(subject.kind, subject.kind)
    if verb is None:
        return f"{actor.display_name} performed {action} on {label} #{subject.id}"
    return f"{actor.display_name} {verb} {label} #{subject.id}"


async def record_event(
    *,
    session: AsyncSession | None = None,
    actor: Actor | None,
    action: str,
    subject: SubjectRef,
    payload: dict[str, Any] | None = None,
    description: str | None = None,
    context: ClientContext | None = None,
    occurred_at: datetime | None = None,
    commit: bool | None = None,
    best_effort: bool = False,
) -> AuditLogEntry:
    """Append one audit entry.

    With a caller session the row joins the caller's transaction and is only
    committed when ``commit`` is true, so a state change and its audit entry
    land atomically. Without a session the entry is written and committed on
    its own. Write failures raise ``StorageFailure`` unless ``best_effort``.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    resolved_actor = actor or SYSTEM_ACTOR
    ctx = context or ClientContext()
    entry = AuditLogEntry(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        actor_id=resolved_actor.id,
        actor_name=resolved_actor.display_name,
        action=action,
        subject_kind=subject.kind,
        subject_id=subject.id,
        payload=sanitize_payload(payload or {}),
        description=description or default_description(resolved_actor, action, subject),
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        request_id=ctx.request_id,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _handle_write_failure(exc, action=action, subject=subject, best_effort=best_effort)
        return entry

    resolved_commit = commit if commit is not None else False
    try:
        session.add(entry)
        if resolved_commit:
            await session.commit()
        else:
            await session.flush()
    except SQLAlchemyError as exc:
        await session.rollback()
        _handle_write_failure(exc, action=action, subject=subject, best_effort=best_effort)
    return entry


async def record_domain_event(
    event: DomainEvent,
    *,
    session: AsyncSession | None = None,
    context: ClientContext | None = None,
    occurred_at: datetime | None = None,
    commit: bool | None = None,
) -> AuditLogEntry:
    # Single consumer for domain events; nothing is audited implicitly.
    return await record_event(
        session=session,
        actor=event.actor,
        action=event.action,
        subject=event.subject,
        payload=event.payload,
        description=event.description,
        context=context,
        occurred_at=occurred_at,
        commit=commit,
    )


def _handle_write_failure(
    exc: SQLAlchemyError,
    *,
    action: str,
    subject: SubjectRef,
    best_effort: bool,
) -> None:
    if best_effort:
        logger.warning(
            "audit_write_failed action=%s subject=%s:%s",
            action,
            subject.kind,
            subject.id,
            exc_info=exc,
        )
        return
    logger.error("audit_write_failed action=%s subject=%s:%s", action, subject.kind, subject.id)
    raise StorageFailure(f"Audit store unavailable while recording {action}") from exc
