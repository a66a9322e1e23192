from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from trainingdesk.core.config import get_settings
from trainingdesk.core.errors import StorageFailure
from trainingdesk.domain.events import ACTION_ENDORSEMENT_UPDATED
from trainingdesk.domain.models import ENDORSEMENT_ACTIVE, ENDORSEMENT_REMOVED, ENDORSEMENT_WARNED
from trainingdesk.providers.activity.base import ActivityFigure
from trainingdesk.providers.activity.fake import FakeActivitySource
from trainingdesk.services import activity_sync as activity_sync_module
from trainingdesk.services.activity_sync import (
    ACTIVITY_RESYNC_JOB,
    ACTIVITY_SYNC_LEASE,
    run_activity_sync_tick,
    run_full_resync,
)
from trainingdesk.services.locks import acquire_task_lease, release_task_lease
from trainingdesk.services.telemetry import counters_snapshot, last_job_run
from trainingdesk.tests.utils.factories import (
    NOW,
    audit_count,
    audit_trail,
    load_endorsement,
    make_endorsement,
)


pytestmark = pytest.mark.usefixtures("fresh_schema")


class _HangingSource:
    async def fetch_activity(self, **kwargs) -> ActivityFigure:  # noqa: ANN003
        await asyncio.sleep(5)
        return ActivityFigure(minutes=999.0)


@pytest.mark.asyncio
async def test_tick_rotates_through_least_recently_synced() -> None:
    fresh = await make_endorsement(controller_id=1400001, last_synced_at=None)
    oldest = await make_endorsement(controller_id=1400002, last_synced_at=NOW - timedelta(days=2))
    newer = await make_endorsement(controller_id=1400003, last_synced_at=NOW - timedelta(days=1))
    source = FakeActivitySource()
    source.set_minutes(1400001, 30.0)
    source.set_minutes(1400002, 200.0)
    source.set_minutes(1400003, 45.0)

    for minute in range(3):
        result = await run_activity_sync_tick(limit=1, source=source, now=NOW + timedelta(minutes=minute))
        assert result.status == "ok"
        assert result.selected == 1
        assert result.synced == 1

    assert [call[0] for call in source.calls] == [1400001, 1400002, 1400003]
    assert (await load_endorsement(fresh)).activity.total_minutes == 30.0
    assert (await load_endorsement(oldest)).activity.total_minutes == 200.0
    refreshed = await load_endorsement(newer)
    assert refreshed.activity.total_minutes == 45.0
    assert refreshed.activity.last_synced_at == NOW + timedelta(minutes=2)
    assert await audit_count(ACTION_ENDORSEMENT_UPDATED) == 3


@pytest.mark.asyncio
async def test_tick_passes_lookback_window_to_source() -> None:
    await make_endorsement(controller_id=1400001, position="EDDF_TWR")
    source = FakeActivitySource()

    await run_activity_sync_tick(limit=1, source=source, now=NOW)

    controller_id, position, window_start, window_end = source.calls[0]
    assert (controller_id, position) == (1400001, "EDDF_TWR")
    assert window_end == NOW
    assert window_start == NOW - timedelta(days=get_settings().activity_lookback_days)


@pytest.mark.asyncio
async def test_fetch_failure_leaves_record_untouched_and_first_in_line() -> None:
    failing = await make_endorsement(controller_id=1400001, minutes=75.0, last_synced_at=None)
    await make_endorsement(controller_id=1400002, last_synced_at=NOW - timedelta(days=3))
    source = FakeActivitySource()
    source.fail_for(1400001)

    result = await run_activity_sync_tick(limit=1, source=source, now=NOW)
    assert result.status == "ok"
    assert result.failed == 1
    assert result.synced == 0

    endorsement = await load_endorsement(failing)
    assert endorsement.activity.total_minutes == 75.0
    assert endorsement.activity.last_synced_at is None
    assert await audit_count(ACTION_ENDORSEMENT_UPDATED) == 0
    assert counters_snapshot()["activity_sync_fetch_failed_total"] == 1

    # The failed endorsement is retried first on the next tick.
    await run_activity_sync_tick(limit=1, source=source, now=NOW + timedelta(minutes=1))
    assert [call[0] for call in source.calls] == [1400001, 1400001]


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_batch() -> None:
    await make_endorsement(controller_id=1400001, last_synced_at=NOW - timedelta(days=5))
    healthy = await make_endorsement(controller_id=1400002, last_synced_at=NOW - timedelta(days=4))
    source = FakeActivitySource()
    source.fail_for(1400001)
    source.set_minutes(1400002, 120.0)

    result = await run_activity_sync_tick(limit=2, source=source, now=NOW)

    assert (result.selected, result.synced, result.failed) == (2, 1, 1)
    assert (await load_endorsement(healthy)).activity.total_minutes == 120.0


@pytest.mark.asyncio
async def test_sync_reactivates_warned_endorsement_once_minimum_is_met() -> None:
    warned_at = NOW - timedelta(days=10)
    endorsement_id = await make_endorsement(
        controller_id=1400001,
        state=ENDORSEMENT_WARNED,
        minutes=20.0,
        last_synced_at=NOW - timedelta(days=1),
        last_warned_at=warned_at,
    )
    source = FakeActivitySource()
    source.set_minutes(1400001, 240.0, last_activity_at=NOW - timedelta(hours=3))

    result = await run_activity_sync_tick(limit=1, source=source, now=NOW)

    assert result.reactivated == 1
    endorsement = await load_endorsement(endorsement_id)
    assert endorsement.state == ENDORSEMENT_ACTIVE
    assert endorsement.last_warned_at == warned_at
    assert endorsement.activity.last_activity_at == NOW - timedelta(hours=3)
    trail = await audit_trail("endorsement", endorsement_id)
    assert len(trail) == 1
    assert trail[0].action == ACTION_ENDORSEMENT_UPDATED
    assert trail[0].actor_id is None
    assert trail[0].payload["note"] == "reactivated"
    assert trail[0].payload["old"]["state"] == ENDORSEMENT_WARNED
    assert trail[0].payload["new"]["state"] == ENDORSEMENT_ACTIVE
    assert trail[0].payload["new"]["total_minutes"] == 240.0


@pytest.mark.asyncio
async def test_warned_endorsement_below_minimum_stays_warned() -> None:
    endorsement_id = await make_endorsement(
        controller_id=1400001,
        state=ENDORSEMENT_WARNED,
        last_synced_at=NOW - timedelta(days=1),
        last_warned_at=NOW - timedelta(days=5),
    )
    source = FakeActivitySource()
    source.set_minutes(1400001, 100.0)

    result = await run_activity_sync_tick(limit=1, source=source, now=NOW)

    assert result.reactivated == 0
    endorsement = await load_endorsement(endorsement_id)
    assert endorsement.state == ENDORSEMENT_WARNED
    assert endorsement.activity.total_minutes == 100.0
    trail = await audit_trail("endorsement", endorsement_id)
    assert trail[0].payload["note"] == "activity_synced"


@pytest.mark.asyncio
async def test_removed_endorsements_are_never_selected() -> None:
    await make_endorsement(controller_id=1400001, state=ENDORSEMENT_REMOVED, last_synced_at=None)
    live = await make_endorsement(controller_id=1400002, last_synced_at=NOW - timedelta(days=1))
    source = FakeActivitySource()

    result = await run_activity_sync_tick(limit=5, source=source, now=NOW)

    assert result.selected == 1
    assert [call[0] for call in source.calls] == [1400002]
    assert (await load_endorsement(live)).activity.last_synced_at == NOW


@pytest.mark.asyncio
async def test_last_activity_never_moves_backwards() -> None:
    latest = NOW - timedelta(days=1)
    endorsement_id = await make_endorsement(
        controller_id=1400001,
        minutes=300.0,
        last_synced_at=NOW - timedelta(days=2),
        last_activity_at=latest,
    )
    source = FakeActivitySource()
    source.set_minutes(1400001, 0.0, last_activity_at=NOW - timedelta(days=40))

    await run_activity_sync_tick(limit=1, source=source, now=NOW)

    endorsement = await load_endorsement(endorsement_id)
    # Minutes are a fresh figure for the window; the latest session timestamp only advances.
    assert endorsement.activity.total_minutes == 0.0
    assert endorsement.activity.last_activity_at == latest


@pytest.mark.asyncio
async def test_tick_is_skipped_while_another_run_holds_the_lease() -> None:
    await make_endorsement(controller_id=1400001)
    source = FakeActivitySource()
    lease = await acquire_task_lease(ACTIVITY_SYNC_LEASE, ttl_s=60)
    assert lease is not None
    try:
        result = await run_activity_sync_tick(limit=1, source=source, now=NOW)
    finally:
        await release_task_lease(lease)

    assert result.status == "skipped_lock"
    assert source.calls == []
    assert last_job_run(ACTIVITY_SYNC_LEASE).status == "skipped_lock"

    result = await run_activity_sync_tick(limit=1, source=source, now=NOW)
    assert result.status == "ok"
    assert last_job_run(ACTIVITY_SYNC_LEASE).status == "ok"


@pytest.mark.asyncio
async def test_hung_source_times_out_as_fetch_failure(monkeypatch) -> None:
    monkeypatch.setenv("ACTIVITY_FETCH_TIMEOUT_MS", "50")
    get_settings.cache_clear()
    endorsement_id = await make_endorsement(controller_id=1400001, minutes=12.0)

    started = datetime.now()
    result = await run_activity_sync_tick(limit=1, source=_HangingSource(), now=NOW)

    assert (datetime.now() - started).total_seconds() < 4
    assert result.failed == 1
    endorsement = await load_endorsement(endorsement_id)
    assert endorsement.activity.total_minutes == 12.0
    assert endorsement.activity.last_synced_at is None


@pytest.mark.asyncio
async def test_unexpected_source_error_does_not_stop_the_tick() -> None:
    broken = await make_endorsement(controller_id=1400001)
    healthy = await make_endorsement(controller_id=1400002)

    class _PartlyBrokenSource(FakeActivitySource):
        async def fetch_activity(self, **kwargs) -> ActivityFigure:  # noqa: ANN003
            if kwargs["controller_id"] == 1400001:
                self.calls.append((1400001, kwargs["position"], kwargs["window_start"], kwargs["window_end"]))
                raise ValueError("unexpected payload shape")
            return await super().fetch_activity(**kwargs)

    source = _PartlyBrokenSource()
    source.set_minutes(1400002, 75.0)
    results = []
    for hour in range(3):
        results.append(await run_activity_sync_tick(limit=2, source=source, now=NOW + timedelta(hours=hour)))

    assert [(r.status, r.selected, r.synced, r.failed) for r in results] == [("ok", 2, 1, 1)] * 3
    assert [call[0] for call in source.calls] == [1400001, 1400002] * 3
    assert (await load_endorsement(broken)).activity.last_synced_at is None
    synced = await load_endorsement(healthy)
    assert synced.activity.last_synced_at == NOW + timedelta(hours=2)
    assert synced.activity.total_minutes == 75.0
    assert counters_snapshot()["activity_sync_item_errors_total"] == 3
    assert last_job_run(ACTIVITY_SYNC_LEASE).status == "ok"


@pytest.mark.asyncio
async def test_unavailable_store_aborts_the_tick(monkeypatch) -> None:
    await make_endorsement(controller_id=1400001)

    async def _sync(endorsement_id, **kwargs):  # noqa: ANN001, ANN003
        cause = OperationalError("UPDATE activity_records", {}, Exception("connection lost"))
        raise StorageFailure("store is gone") from cause

    monkeypatch.setattr(activity_sync_module, "sync_endorsement", _sync)

    with pytest.raises(StorageFailure):
        await run_activity_sync_tick(limit=1, source=FakeActivitySource(), now=NOW)

    assert last_job_run(ACTIVITY_SYNC_LEASE).status == "failed"
    lease = await acquire_task_lease(ACTIVITY_SYNC_LEASE, ttl_s=60)
    assert lease is not None
    await release_task_lease(lease)


@pytest.mark.asyncio
async def test_full_resync_walks_every_live_endorsement_in_batches() -> None:
    first = await make_endorsement(controller_id=1400001, last_synced_at=NOW - timedelta(minutes=1))
    await make_endorsement(controller_id=1400002)
    await make_endorsement(controller_id=1400003, state=ENDORSEMENT_REMOVED)
    await make_endorsement(controller_id=1400004, state=ENDORSEMENT_WARNED, last_warned_at=NOW)
    failing = await make_endorsement(controller_id=1400005, minutes=20.0)
    source = FakeActivitySource()
    source.set_minutes(1400001, 240.0)
    source.fail_for(1400005)

    result = await run_full_resync(batch_size=2, source=source, now=NOW + timedelta(hours=1))

    # Recently synced endorsements are refreshed too; removed ones are never fetched.
    assert [call[0] for call in source.calls] == [1400001, 1400002, 1400004, 1400005]
    assert (result.status, result.selected, result.synced, result.failed) == ("ok", 4, 3, 1)
    refreshed = await load_endorsement(first)
    assert refreshed.activity.total_minutes == 240.0
    assert refreshed.activity.last_synced_at == NOW + timedelta(hours=1)
    assert (await load_endorsement(failing)).activity.total_minutes == 20.0
    assert last_job_run(ACTIVITY_RESYNC_JOB).status == "ok"


@pytest.mark.asyncio
async def test_full_resync_does_not_overlap_a_running_tick() -> None:
    await make_endorsement(controller_id=1400001)
    source = FakeActivitySource()
    lease = await acquire_task_lease(ACTIVITY_SYNC_LEASE, ttl_s=60)
    assert lease is not None
    try:
        result = await run_full_resync(batch_size=10, source=source, now=NOW)
    finally:
        await release_task_lease(lease)

    assert result.status == "skipped_lock"
    assert source.calls == []
    assert last_job_run(ACTIVITY_RESYNC_JOB).status == "skipped_lock"
