from __future__ import annotations

from datetime import timedelta

import pytest

from trainingdesk.apps import cli
from trainingdesk.apps.cli import build_remove_parser, build_sync_parser
from trainingdesk.core.errors import StorageFailure
from trainingdesk.domain.models import ENDORSEMENT_WARNED
from trainingdesk.services.policy import utc_now
from trainingdesk.tests.utils.factories import load_endorsement, make_endorsement


pytestmark = pytest.mark.usefixtures("fresh_schema")


@pytest.mark.asyncio
async def test_sync_command_runs_one_tick(capsys) -> None:
    endorsement_id = await make_endorsement(controller_id=1400001)

    code = await cli.run_sync_activities(build_sync_parser().parse_args(["--limit", "1"]))

    assert code == 0
    assert "status=ok selected=1 synced=1" in capsys.readouterr().out
    # The fake source reports zero minutes for unknown controllers.
    assert (await load_endorsement(endorsement_id)).activity.last_synced_at is not None


@pytest.mark.asyncio
async def test_sync_command_force_refreshes_everything(capsys) -> None:
    recent = await make_endorsement(controller_id=1400001, last_synced_at=utc_now())
    await make_endorsement(controller_id=1400002)
    await make_endorsement(controller_id=1400003)

    code = await cli.run_sync_activities(build_sync_parser().parse_args(["--force", "--batch-size", "2"]))

    assert code == 0
    assert "status=ok selected=3 synced=3 failed=0" in capsys.readouterr().out
    assert (await load_endorsement(recent)).activity.last_synced_at is not None


@pytest.mark.asyncio
async def test_remove_command_warns_inactive_endorsement(capsys) -> None:
    endorsement_id = await make_endorsement(
        controller_id=1400001,
        minutes=0.0,
        last_synced_at=utc_now() - timedelta(hours=1),
        now=utc_now(),
    )

    code = await cli.run_remove_endorsements(build_remove_parser().parse_args(["--notify"]))

    assert code == 0
    assert "warned=1" in capsys.readouterr().out
    assert (await load_endorsement(endorsement_id)).state == ENDORSEMENT_WARNED


@pytest.mark.asyncio
async def test_commands_exit_non_zero_on_infrastructure_failure(monkeypatch, capsys) -> None:
    async def _broken_tick(**kwargs):  # noqa: ANN003
        raise StorageFailure("database unavailable")

    async def _broken_pass(**kwargs):  # noqa: ANN003
        raise StorageFailure("database unavailable")

    monkeypatch.setattr(cli, "run_activity_sync_tick", _broken_tick)
    monkeypatch.setattr(cli, "run_removal_pass", _broken_pass)

    assert await cli.run_sync_activities(build_sync_parser().parse_args([])) == 1
    assert await cli.run_remove_endorsements(build_remove_parser().parse_args([])) == 1
    assert "database unavailable" in capsys.readouterr().err
