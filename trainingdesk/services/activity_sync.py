from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import ExternalFetchFailure, StorageFailure
from trainingdesk.domain.events import (
    ACTION_ENDORSEMENT_UPDATED,
    NOTE_ACTIVITY_SYNCED,
    NOTE_REACTIVATED,
    SYSTEM_ACTOR,
    DomainEvent,
    SubjectRef,
)
from trainingdesk.domain.models import (
    ENDORSEMENT_ACTIVE,
    ENDORSEMENT_LIVE_STATES,
    ENDORSEMENT_WARNED,
    ActivityRecord,
)
from trainingdesk.persistence.db import SessionLocal, is_storage_unavailable
from trainingdesk.persistence.repos import endorsements as endorsements_repo
from trainingdesk.providers.activity.base import ActivityFigure, ActivitySource
from trainingdesk.providers.activity.factory import get_activity_source
from trainingdesk.services.audit import record_domain_event
from trainingdesk.services.locks import acquire_task_lease, release_task_lease
from trainingdesk.services.policy import PolicyThresholds, lookback_window, meets_minimum, utc_now
from trainingdesk.services.telemetry import increment_counter, record_job_run


logger = logging.getLogger(__name__)

ACTIVITY_SYNC_LEASE = "activity_sync"
ACTIVITY_RESYNC_JOB = "activity_resync"

SyncOutcome = Literal["synced", "reactivated", "failed", "skipped"]


@dataclass(frozen=True)
class SyncTickResult:
    status: str
    selected: int = 0
    synced: int = 0
    failed: int = 0
    reactivated: int = 0


async def _fetch_with_ceiling(
    source: ActivitySource,
    *,
    controller_id: int,
    position: str,
    window_start: datetime,
    window_end: datetime,
) -> ActivityFigure:
    # A hung source must not hold the lease; timeouts count as fetch failures.
    timeout_s = max(1, get_settings().activity_fetch_timeout_ms) / 1000.0
    try:
        return await asyncio.wait_for(
            source.fetch_activity(
                controller_id=controller_id,
                position=position,
                window_start=window_start,
                window_end=window_end,
            ),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError as exc:
        raise ExternalFetchFailure(f"activity fetch timed out for {controller_id}") from exc


async def sync_endorsement(
    endorsement_id: int,
    *,
    source: ActivitySource,
    now: datetime,
    thresholds: PolicyThresholds,
) -> SyncOutcome:
    """Refresh one endorsement's activity figure and commit it with its audit entry.

    A failed fetch leaves the record untouched so the endorsement keeps its
    place at the front of the rotation.
    """
    async with SessionLocal() as session:
        try:
            endorsement = await endorsements_repo.get_endorsement(session, endorsement_id)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Could not load endorsement {endorsement_id}") from exc
        if endorsement is None or endorsement.state not in ENDORSEMENT_LIVE_STATES:
            return "skipped"

        window_start, window_end = lookback_window(now, thresholds=thresholds)
        try:
            figure = await _fetch_with_ceiling(
                source,
                controller_id=endorsement.controller_id,
                position=endorsement.position,
                window_start=window_start,
                window_end=window_end,
            )
        except ExternalFetchFailure as exc:
            increment_counter("activity_sync_fetch_failed_total")
            logger.warning(
                "activity_sync_fetch_failed endorsement_id=%s controller_id=%s error=%s",
                endorsement.id,
                endorsement.controller_id,
                exc,
            )
            return "failed"

        old = endorsements_repo.snapshot(endorsement)
        activity = endorsement.activity
        if activity is None:
            activity = ActivityRecord(endorsement_id=endorsement.id)
            endorsement.activity = activity
        activity.total_minutes = float(figure.minutes)
        activity.last_synced_at = now
        if figure.last_activity_at is not None and (
            activity.last_activity_at is None or figure.last_activity_at > activity.last_activity_at
        ):
            activity.last_activity_at = figure.last_activity_at

        reactivated = False
        try:
            if endorsement.state == ENDORSEMENT_WARNED and meets_minimum(figure.minutes, thresholds=thresholds):
                # Conditional on warned so a concurrent removal is never undone.
                reactivated = await endorsements_repo.transition_state(
                    session,
                    endorsement_id=endorsement.id,
                    expected_state=ENDORSEMENT_WARNED,
                    values={"state": ENDORSEMENT_ACTIVE},
                )
                if reactivated:
                    set_committed_value(endorsement, "state", ENDORSEMENT_ACTIVE)
            await session.flush()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StorageFailure(f"Could not store activity for endorsement {endorsement_id}") from exc

        note = NOTE_REACTIVATED if reactivated else NOTE_ACTIVITY_SYNCED
        await record_domain_event(
            DomainEvent(
                action=ACTION_ENDORSEMENT_UPDATED,
                subject=SubjectRef.of("endorsement", endorsement.id),
                actor=SYSTEM_ACTOR,
                payload={"old": old, "new": endorsements_repo.snapshot(endorsement), "note": note},
            ),
            session=session,
            occurred_at=now,
            commit=True,
        )

    if reactivated:
        increment_counter("endorsements_reactivated_total")
        logger.info(
            "endorsement_reactivated endorsement_id=%s minutes=%.1f",
            endorsement_id,
            figure.minutes,
        )
    logger.debug("activity_synced endorsement_id=%s minutes=%.1f", endorsement_id, figure.minutes)
    return "reactivated" if reactivated else "synced"


async def _sync_isolated(
    endorsement_id: int,
    *,
    source: ActivitySource,
    now: datetime,
    thresholds: PolicyThresholds,
) -> SyncOutcome:
    # Failures stay with their endorsement; only an unavailable store escapes.
    try:
        return await sync_endorsement(endorsement_id, source=source, now=now, thresholds=thresholds)
    except StorageFailure as exc:
        if is_storage_unavailable(exc.__cause__ or exc):
            raise
        logger.error("activity_sync_failed endorsement_id=%s error=%s", endorsement_id, exc)
    except Exception:  # noqa: BLE001 - one bad endorsement must not stop the batch.
        increment_counter("activity_sync_item_errors_total")
        logger.exception("activity_sync_failed endorsement_id=%s", endorsement_id)
    return "failed"


@dataclass
class _Tally:
    selected: int = 0
    synced: int = 0
    failed: int = 0
    reactivated: int = 0

    def add(self, outcome: SyncOutcome) -> None:
        self.selected += 1
        if outcome == "failed":
            self.failed += 1
        elif outcome in ("synced", "reactivated"):
            self.synced += 1
            if outcome == "reactivated":
                self.reactivated += 1

    def result(self, status: str) -> SyncTickResult:
        return SyncTickResult(
            status=status,
            selected=self.selected,
            synced=self.synced,
            failed=self.failed,
            reactivated=self.reactivated,
        )


async def run_activity_sync_tick(
    *,
    limit: int | None = None,
    source: ActivitySource | None = None,
    now: datetime | None = None,
) -> SyncTickResult:
    """Refresh the least recently synced endorsements, one bounded batch per tick.

    Skips the whole tick when another run holds the lease. Failures for a
    single endorsement are counted and logged; only an unavailable store
    aborts the tick.
    """
    settings = get_settings()
    limit = settings.activity_sync_limit if limit is None else max(0, int(limit))
    lease = await acquire_task_lease(ACTIVITY_SYNC_LEASE, ttl_s=settings.activity_sync_lock_ttl_s)
    if lease is None:
        logger.info("activity_sync_skipped reason=lease_held")
        record_job_run(job=ACTIVITY_SYNC_LEASE, status="skipped_lock", duration_ms=0.0)
        return SyncTickResult(status="skipped_lock")

    started = time.monotonic()
    status = "failed"
    try:
        source = source or get_activity_source()
        thresholds = PolicyThresholds.from_settings()
        try:
            async with SessionLocal() as session:
                due = await endorsements_repo.select_due_for_sync(session, limit=limit)
                endorsement_ids = [endorsement.id for endorsement in due]
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not select endorsements due for sync") from exc

        tally = _Tally()
        for endorsement_id in endorsement_ids:
            tally.add(
                await _sync_isolated(endorsement_id, source=source, now=now or utc_now(), thresholds=thresholds)
            )

        status = "ok"
        logger.info(
            "activity_sync_tick selected=%s synced=%s failed=%s reactivated=%s",
            tally.selected,
            tally.synced,
            tally.failed,
            tally.reactivated,
        )
        return tally.result(status)
    finally:
        record_job_run(
            job=ACTIVITY_SYNC_LEASE,
            status=status,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )
        await release_task_lease(lease)


async def run_full_resync(
    *,
    batch_size: int = 50,
    source: ActivitySource | None = None,
    now: datetime | None = None,
) -> SyncTickResult:
    """Refresh every live endorsement in id order, ``batch_size`` at a time.

    Meant for backfilling after an activity API outage. It shares the tick's
    lease so the two never overlap, and pauses between batches for
    ``activity_resync_batch_pause_ms`` to keep the request rate polite.
    """
    settings = get_settings()
    batch_size = max(1, int(batch_size))
    lease = await acquire_task_lease(ACTIVITY_SYNC_LEASE, ttl_s=settings.activity_resync_lock_ttl_s)
    if lease is None:
        logger.info("activity_resync_skipped reason=lease_held")
        record_job_run(job=ACTIVITY_RESYNC_JOB, status="skipped_lock", duration_ms=0.0)
        return SyncTickResult(status="skipped_lock")

    started = time.monotonic()
    status = "failed"
    try:
        source = source or get_activity_source()
        thresholds = PolicyThresholds.from_settings()
        tally = _Tally()
        after_id = 0
        while True:
            try:
                async with SessionLocal() as session:
                    batch = await endorsements_repo.list_live_ids_after(session, after_id=after_id, limit=batch_size)
            except SQLAlchemyError as exc:
                raise StorageFailure("Could not list endorsements for resync") from exc
            if not batch:
                break
            if after_id:
                await asyncio.sleep(settings.activity_resync_batch_pause_ms / 1000.0)
            for endorsement_id in batch:
                tally.add(
                    await _sync_isolated(endorsement_id, source=source, now=now or utc_now(), thresholds=thresholds)
                )
            after_id = batch[-1]
            logger.info("activity_resync_progress processed=%s failed=%s", tally.selected, tally.failed)

        status = "ok"
        logger.info(
            "activity_resync selected=%s synced=%s failed=%s reactivated=%s",
            tally.selected,
            tally.synced,
            tally.failed,
            tally.reactivated,
        )
        return tally.result(status)
    finally:
        record_job_run(
            job=ACTIVITY_RESYNC_JOB,
            status=status,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )
        await release_task_lease(lease)
