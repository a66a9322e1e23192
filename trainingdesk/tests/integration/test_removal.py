from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from trainingdesk.core.errors import StorageFailure
from trainingdesk.domain.events import ACTION_ENDORSEMENT_REMOVED, ACTION_ENDORSEMENT_WARNED
from trainingdesk.domain.models import ENDORSEMENT_ACTIVE, ENDORSEMENT_REMOVED, ENDORSEMENT_WARNED
from trainingdesk.providers.activity.fake import FakeActivitySource
from trainingdesk.providers.notify.fake import FakeNotificationDispatcher
from trainingdesk.services.activity_sync import run_activity_sync_tick
from trainingdesk.services import removal as removal_module
from trainingdesk.services.locks import acquire_task_lease, release_task_lease
from trainingdesk.services.removal import ENDORSEMENT_REMOVAL_LEASE, run_removal_pass
from trainingdesk.services.telemetry import last_job_run
from trainingdesk.tests.utils.factories import (
    NOW,
    audit_count,
    audit_trail,
    load_endorsement,
    make_endorsement,
)


pytestmark = pytest.mark.usefixtures("fresh_schema")

SYNCED = NOW - timedelta(hours=6)


@pytest.mark.asyncio
async def test_inactive_endorsement_is_warned_once() -> None:
    endorsement_id = await make_endorsement(minutes=30.0, last_synced_at=SYNCED)

    first = await run_removal_pass(now=NOW)
    second = await run_removal_pass(now=NOW + timedelta(hours=1))

    assert (first.evaluated, first.warned, first.removed) == (1, 1, 0)
    assert (second.warned, second.removed, second.unchanged) == (0, 0, 1)
    endorsement = await load_endorsement(endorsement_id)
    assert endorsement.state == ENDORSEMENT_WARNED
    assert endorsement.last_warned_at == NOW
    trail = await audit_trail("endorsement", endorsement_id)
    assert [entry.action for entry in trail] == [ACTION_ENDORSEMENT_WARNED]
    assert trail[0].actor_id is None
    assert trail[0].payload["old"]["state"] == ENDORSEMENT_ACTIVE
    assert trail[0].payload["new"]["state"] == ENDORSEMENT_WARNED


@pytest.mark.asyncio
async def test_grace_period_boundary() -> None:
    almost = await make_endorsement(
        controller_id=1400001,
        state=ENDORSEMENT_WARNED,
        minutes=10.0,
        last_synced_at=SYNCED,
        last_warned_at=NOW - timedelta(days=30),
    )
    due = await make_endorsement(
        controller_id=1400002,
        state=ENDORSEMENT_WARNED,
        minutes=10.0,
        last_synced_at=SYNCED,
        last_warned_at=NOW - timedelta(days=31),
    )

    result = await run_removal_pass(now=NOW)

    assert (result.evaluated, result.removed, result.unchanged) == (2, 1, 1)
    assert (await load_endorsement(almost)).state == ENDORSEMENT_WARNED
    removed = await load_endorsement(due)
    assert removed.state == ENDORSEMENT_REMOVED
    assert removed.removed_at == NOW
    assert [entry.action for entry in await audit_trail("endorsement", due)] == [ACTION_ENDORSEMENT_REMOVED]
    assert await audit_trail("endorsement", almost) == []


@pytest.mark.asyncio
async def test_removal_is_idempotent() -> None:
    endorsement_id = await make_endorsement(
        state=ENDORSEMENT_WARNED,
        minutes=0.0,
        last_synced_at=SYNCED,
        last_warned_at=NOW - timedelta(days=45),
    )

    await run_removal_pass(now=NOW)
    rerun = await run_removal_pass(now=NOW + timedelta(days=1))

    # Removed endorsements are no longer candidates at all.
    assert rerun.evaluated == 0
    assert (await load_endorsement(endorsement_id)).state == ENDORSEMENT_REMOVED
    assert await audit_count(ACTION_ENDORSEMENT_REMOVED) == 1


@pytest.mark.asyncio
async def test_young_and_never_synced_endorsements_are_protected() -> None:
    young = await make_endorsement(controller_id=1400001, granted_days_ago=100, last_synced_at=SYNCED)
    unsynced = await make_endorsement(controller_id=1400002, last_synced_at=None)

    result = await run_removal_pass(now=NOW)

    assert result.evaluated == 0
    assert (await load_endorsement(young)).state == ENDORSEMENT_ACTIVE
    assert (await load_endorsement(unsynced)).state == ENDORSEMENT_ACTIVE
    assert await audit_count() == 0


@pytest.mark.asyncio
async def test_sufficient_minutes_leave_endorsements_alone() -> None:
    active = await make_endorsement(controller_id=1400001, minutes=180.0, last_synced_at=SYNCED)
    warned = await make_endorsement(
        controller_id=1400002,
        state=ENDORSEMENT_WARNED,
        minutes=400.0,
        last_synced_at=SYNCED,
        last_warned_at=NOW - timedelta(days=60),
    )

    result = await run_removal_pass(now=NOW)

    assert (result.warned, result.removed, result.unchanged) == (0, 0, 2)
    assert (await load_endorsement(active)).state == ENDORSEMENT_ACTIVE
    # Only a sync reactivates; the removal pass simply does not remove it.
    assert (await load_endorsement(warned)).state == ENDORSEMENT_WARNED


@pytest.mark.asyncio
async def test_notifications_follow_committed_transitions() -> None:
    await make_endorsement(controller_id=1400001, position="EDDF_TWR", minutes=5.0, last_synced_at=SYNCED)
    await make_endorsement(
        controller_id=1400002,
        position="EDDM_APP",
        state=ENDORSEMENT_WARNED,
        minutes=5.0,
        last_synced_at=SYNCED,
        last_warned_at=NOW - timedelta(days=31),
    )
    dispatcher = FakeNotificationDispatcher()

    result = await run_removal_pass(notify=True, notifier=dispatcher, now=NOW)

    assert (result.notified, result.notify_failed) == (2, 0)
    by_position = {notice.position: notice for notice in dispatcher.sent}
    assert by_position["EDDF_TWR"].transition == "warning"
    assert by_position["EDDF_TWR"].effective_at == NOW + timedelta(days=31)
    assert by_position["EDDM_APP"].transition == "removal"
    assert by_position["EDDM_APP"].effective_at == NOW


@pytest.mark.asyncio
async def test_notification_failure_never_reverts_transition() -> None:
    endorsement_id = await make_endorsement(minutes=5.0, last_synced_at=SYNCED)

    result = await run_removal_pass(notify=True, notifier=FakeNotificationDispatcher(fail=True), now=NOW)

    assert result.status == "ok"
    assert (result.warned, result.notified, result.notify_failed) == (1, 0, 1)
    assert (await load_endorsement(endorsement_id)).state == ENDORSEMENT_WARNED
    assert await audit_count(ACTION_ENDORSEMENT_WARNED) == 1


@pytest.mark.asyncio
async def test_notify_disabled_sends_nothing() -> None:
    await make_endorsement(minutes=5.0, last_synced_at=SYNCED)
    dispatcher = FakeNotificationDispatcher()

    result = await run_removal_pass(notify=False, notifier=dispatcher, now=NOW)

    assert result.warned == 1
    assert dispatcher.sent == []


@pytest.mark.asyncio
async def test_pass_is_skipped_while_lease_is_held() -> None:
    endorsement_id = await make_endorsement(minutes=5.0, last_synced_at=SYNCED)
    lease = await acquire_task_lease(ENDORSEMENT_REMOVAL_LEASE, ttl_s=60)
    assert lease is not None
    try:
        result = await run_removal_pass(now=NOW)
    finally:
        await release_task_lease(lease)

    assert result.status == "skipped_lock"
    assert (await load_endorsement(endorsement_id)).state == ENDORSEMENT_ACTIVE
    assert last_job_run(ENDORSEMENT_REMOVAL_LEASE).status == "skipped_lock"


@pytest.mark.asyncio
async def test_one_bad_endorsement_does_not_stop_the_pass(monkeypatch) -> None:
    broken = await make_endorsement(controller_id=1400001, minutes=5.0, last_synced_at=SYNCED)
    healthy = await make_endorsement(controller_id=1400002, minutes=5.0, last_synced_at=SYNCED)
    original = removal_module.evaluate_endorsement

    async def _evaluate(endorsement_id, **kwargs):  # noqa: ANN001, ANN003
        if endorsement_id == broken:
            raise StorageFailure("row could not be written")
        return await original(endorsement_id, **kwargs)

    monkeypatch.setattr(removal_module, "evaluate_endorsement", _evaluate)

    result = await run_removal_pass(now=NOW)

    assert (result.evaluated, result.warned, result.failed) == (2, 1, 1)
    assert (await load_endorsement(broken)).state == ENDORSEMENT_ACTIVE
    assert (await load_endorsement(healthy)).state == ENDORSEMENT_WARNED


@pytest.mark.asyncio
async def test_unavailable_store_aborts_the_pass(monkeypatch) -> None:
    await make_endorsement(controller_id=1400001, minutes=5.0, last_synced_at=SYNCED)

    async def _evaluate(endorsement_id, **kwargs):  # noqa: ANN001, ANN003
        cause = OperationalError("UPDATE endorsements", {}, Exception("connection lost"))
        raise StorageFailure("store is gone") from cause

    monkeypatch.setattr(removal_module, "evaluate_endorsement", _evaluate)

    with pytest.raises(StorageFailure):
        await run_removal_pass(now=NOW)

    assert last_job_run(ENDORSEMENT_REMOVAL_LEASE).status == "failed"
    lease = await acquire_task_lease(ENDORSEMENT_REMOVAL_LEASE, ttl_s=60)
    assert lease is not None
    await release_task_lease(lease)


@pytest.mark.asyncio
async def test_recently_granted_endorsement_with_no_activity_is_never_warned() -> None:
    endorsement_id = await make_endorsement(granted_days_ago=10, minutes=0.0, last_synced_at=SYNCED)

    for day in range(0, 60, 15):
        await run_removal_pass(now=NOW + timedelta(days=day))

    assert (await load_endorsement(endorsement_id)).state == ENDORSEMENT_ACTIVE
    assert await audit_count() == 0


@pytest.mark.asyncio
async def test_reactivated_endorsement_survives_later_passes() -> None:
    endorsement_id = await make_endorsement(controller_id=1400001, minutes=5.0, last_synced_at=SYNCED)
    await run_removal_pass(now=NOW)
    assert (await load_endorsement(endorsement_id)).state == ENDORSEMENT_WARNED

    source = FakeActivitySource()
    source.set_minutes(1400001, 181.0)
    await run_activity_sync_tick(limit=1, source=source, now=NOW + timedelta(days=3))
    result = await run_removal_pass(now=NOW + timedelta(days=40))

    assert (result.warned, result.removed) == (0, 0)
    assert (await load_endorsement(endorsement_id)).state == ENDORSEMENT_ACTIVE
