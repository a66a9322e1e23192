from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import NotificationFailure, StorageFailure
from trainingdesk.domain.events import (
    ACTION_ENDORSEMENT_REMOVED,
    ACTION_ENDORSEMENT_WARNED,
    SYSTEM_ACTOR,
    DomainEvent,
    SubjectRef,
)
from trainingdesk.domain.models import (
    ENDORSEMENT_ACTIVE,
    ENDORSEMENT_LIVE_STATES,
    ENDORSEMENT_REMOVED,
    ENDORSEMENT_WARNED,
    Endorsement,
)
from trainingdesk.persistence.db import SessionLocal, is_storage_unavailable
from trainingdesk.persistence.repos import endorsements as endorsements_repo
from trainingdesk.providers.notify.base import EndorsementNotice, NotificationDispatcher
from trainingdesk.providers.notify.factory import get_notification_dispatcher
from trainingdesk.services.audit import record_domain_event
from trainingdesk.services.locks import acquire_task_lease, release_task_lease
from trainingdesk.services.policy import (
    PolicyThresholds,
    grace_elapsed,
    is_age_eligible,
    meets_minimum,
    removal_date,
    removal_eligibility_cutoff,
    utc_now,
)
from trainingdesk.services.telemetry import increment_counter, record_job_run


logger = logging.getLogger(__name__)

ENDORSEMENT_REMOVAL_LEASE = "endorsement_removal"

EvaluationOutcome = Literal["warned", "removed", "unchanged"]


@dataclass(frozen=True)
class RemovalPassResult:
    status: str
    evaluated: int = 0
    warned: int = 0
    removed: int = 0
    unchanged: int = 0
    failed: int = 0
    notified: int = 0
    notify_failed: int = 0


@dataclass(frozen=True)
class Evaluation:
    outcome: EvaluationOutcome
    notice: EndorsementNotice | None = None


def _notice_for(endorsement: Endorsement, transition: str, effective_at: datetime) -> EndorsementNotice:
    return EndorsementNotice(
        endorsement_id=endorsement.id,
        controller_id=endorsement.controller_id,
        position=endorsement.position,
        transition=transition,  # type: ignore[arg-type]
        effective_at=effective_at,
    )


async def evaluate_endorsement(
    endorsement_id: int,
    *,
    now: datetime,
    thresholds: PolicyThresholds,
) -> Evaluation:
    """Apply one step of the warn/remove policy to a single endorsement.

    Each transition is a compare-and-set on the current state committed
    together with its audit entry, so a rerun on the same data changes
    nothing and writes nothing.
    """
    async with SessionLocal() as session:
        try:
            endorsement = await endorsements_repo.get_endorsement(session, endorsement_id)
            if endorsement is None or endorsement.state not in ENDORSEMENT_LIVE_STATES:
                return Evaluation("unchanged")
            if not is_age_eligible(endorsement.granted_at, now, thresholds=thresholds):
                return Evaluation("unchanged")
            activity = endorsement.activity
            # Never judge an endorsement on a figure that was never fetched.
            if activity is None or activity.last_synced_at is None:
                return Evaluation("unchanged")
            # Restored minutes leave a warned endorsement alone; only a sync reactivates it.
            if meets_minimum(activity.total_minutes, thresholds=thresholds):
                return Evaluation("unchanged")

            old = endorsements_repo.snapshot(endorsement)
            if endorsement.state == ENDORSEMENT_ACTIVE:
                changed = await endorsements_repo.transition_state(
                    session,
                    endorsement_id=endorsement.id,
                    expected_state=ENDORSEMENT_ACTIVE,
                    values={"state": ENDORSEMENT_WARNED, "last_warned_at": now},
                )
                if not changed:
                    await session.rollback()
                    return Evaluation("unchanged")
                set_committed_value(endorsement, "state", ENDORSEMENT_WARNED)
                set_committed_value(endorsement, "last_warned_at", now)
                action = ACTION_ENDORSEMENT_WARNED
                outcome: EvaluationOutcome = "warned"
                notice = _notice_for(endorsement, "warning", removal_date(now, thresholds=thresholds))
                description = (
                    f"System warned {endorsement.controller_id} about removal of {endorsement.position} "
                    f"({activity.total_minutes:.0f} of {thresholds.min_activity_minutes} minutes)"
                )
            else:
                if not grace_elapsed(endorsement.last_warned_at, now, thresholds=thresholds):
                    return Evaluation("unchanged")
                changed = await endorsements_repo.transition_state(
                    session,
                    endorsement_id=endorsement.id,
                    expected_state=ENDORSEMENT_WARNED,
                    values={"state": ENDORSEMENT_REMOVED, "removed_at": now},
                )
                if not changed:
                    await session.rollback()
                    return Evaluation("unchanged")
                set_committed_value(endorsement, "state", ENDORSEMENT_REMOVED)
                set_committed_value(endorsement, "removed_at", now)
                action = ACTION_ENDORSEMENT_REMOVED
                outcome = "removed"
                notice = _notice_for(endorsement, "removal", now)
                description = f"System removed {endorsement.position} endorsement from {endorsement.controller_id}"
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StorageFailure(f"Could not evaluate endorsement {endorsement_id}") from exc

        await record_domain_event(
            DomainEvent(
                action=action,
                subject=SubjectRef.of("endorsement", endorsement.id),
                actor=SYSTEM_ACTOR,
                payload={"old": old, "new": endorsements_repo.snapshot(endorsement)},
                description=description,
            ),
            session=session,
            occurred_at=now,
            commit=True,
        )

    logger.info(
        "endorsement_%s endorsement_id=%s controller_id=%s position=%s",
        outcome,
        endorsement_id,
        notice.controller_id,
        notice.position,
    )
    return Evaluation(outcome, notice)


async def _dispatch(dispatcher: NotificationDispatcher, notice: EndorsementNotice) -> bool:
    # Transitions are already committed; a failed notice is logged and never reverses them.
    try:
        await dispatcher.notify(notice)
    except NotificationFailure as exc:
        increment_counter("endorsement_notify_failed_total")
        logger.warning(
            "endorsement_notify_failed endorsement_id=%s transition=%s error=%s",
            notice.endorsement_id,
            notice.transition,
            exc,
        )
        return False
    except Exception:  # noqa: BLE001 - notification is best-effort after commit.
        increment_counter("endorsement_notify_failed_total")
        logger.exception(
            "endorsement_notify_failed endorsement_id=%s transition=%s",
            notice.endorsement_id,
            notice.transition,
        )
        return False
    return True


async def run_removal_pass(
    *,
    notify: bool = False,
    notifier: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> RemovalPassResult:
    """Evaluate every live, age-eligible endorsement against the removal policy."""
    settings = get_settings()
    lease = await acquire_task_lease(ENDORSEMENT_REMOVAL_LEASE, ttl_s=settings.removal_lock_ttl_s)
    if lease is None:
        logger.info("removal_pass_skipped reason=lease_held")
        record_job_run(job=ENDORSEMENT_REMOVAL_LEASE, status="skipped_lock", duration_ms=0.0)
        return RemovalPassResult(status="skipped_lock")

    started = time.monotonic()
    status = "failed"
    try:
        run_at = now or utc_now()
        thresholds = PolicyThresholds.from_settings()
        dispatcher = (notifier or get_notification_dispatcher()) if notify else None
        try:
            async with SessionLocal() as session:
                candidate_ids = await endorsements_repo.list_removal_candidate_ids(
                    session,
                    granted_before=removal_eligibility_cutoff(run_at, thresholds=thresholds),
                )
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not list removal candidates") from exc

        counts = {"warned": 0, "removed": 0, "unchanged": 0}
        failed = notified = notify_failed = 0
        for endorsement_id in candidate_ids:
            try:
                evaluation = await evaluate_endorsement(endorsement_id, now=run_at, thresholds=thresholds)
            except StorageFailure as exc:
                if is_storage_unavailable(exc.__cause__ or exc):
                    raise
                failed += 1
                logger.error("removal_evaluation_failed endorsement_id=%s error=%s", endorsement_id, exc)
                continue
            except Exception:  # noqa: BLE001 - one bad endorsement must not stop the pass.
                failed += 1
                logger.exception("removal_evaluation_failed endorsement_id=%s", endorsement_id)
                continue
            counts[evaluation.outcome] += 1
            if dispatcher is not None and evaluation.notice is not None:
                if await _dispatch(dispatcher, evaluation.notice):
                    notified += 1
                else:
                    notify_failed += 1

        status = "ok"
        logger.info(
            "removal_pass evaluated=%s warned=%s removed=%s failed=%s notified=%s notify_failed=%s",
            len(candidate_ids),
            counts["warned"],
            counts["removed"],
            failed,
            notified,
            notify_failed,
        )
        return RemovalPassResult(
            status=status,
            evaluated=len(candidate_ids),
            warned=counts["warned"],
            removed=counts["removed"],
            unchanged=counts["unchanged"],
            failed=failed,
            notified=notified,
            notify_failed=notify_failed,
        )
    finally:
        record_job_run(
            job=ENDORSEMENT_REMOVAL_LEASE,
            status=status,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )
        await release_task_lease(lease)
