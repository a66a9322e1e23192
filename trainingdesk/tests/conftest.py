from __future__ import annotations

import os
import tempfile

# Point settings at an isolated SQLite file before any trainingdesk module builds the engine.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="trainingdesk-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TRAININGDESK_TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'trainingdesk.db')}",
)
os.environ["REDIS_ENABLED"] = "false"
os.environ["ACTIVITY_PROVIDER"] = "fake"
os.environ["NOTIFY_PROVIDER"] = "none"
os.environ["EXT_RETRY_BACKOFF_MS"] = "1"
os.environ["ACTIVITY_RESYNC_BATCH_PAUSE_MS"] = "1"

import pytest  # noqa: E402

from trainingdesk.core.config import get_settings  # noqa: E402
from trainingdesk.persistence.db import create_all, drop_all, engine  # noqa: E402
from trainingdesk.services.locks import reset_local_leases  # noqa: E402
from trainingdesk.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings, in-process leases and counters are module-level; isolate them per test.
    get_settings.cache_clear()
    reset_local_leases()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_local_leases()


@pytest.fixture
async def fresh_schema() -> None:
    # Integration tests start from empty tables; unit tests never touch the database.
    await drop_all()
    await create_all()
    yield
    await engine.dispose()
