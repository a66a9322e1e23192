from __future__ import annotations

from dataclasses import asdict
import logging

from arq import cron
from arq.connections import RedisSettings

from trainingdesk.core.config import get_settings
from trainingdesk.core.logging import configure_logging
from trainingdesk.services.activity_sync import run_activity_sync_tick
from trainingdesk.services.removal import run_removal_pass


logger = logging.getLogger(__name__)


async def sync_activities(ctx) -> dict:
    # One bounded batch per minute keeps request volume against the activity API flat.
    result = await run_activity_sync_tick()
    return asdict(result)


async def remove_endorsements(ctx) -> dict:
    result = await run_removal_pass(notify=get_settings().removal_notify)
    return asdict(result)


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("scheduler_worker_started")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scheduler_queue_name
    functions = [sync_activities, remove_endorsements]
    # unique=True stops arq from queueing a second copy while one is still running.
    cron_jobs = [
        cron(
            sync_activities,
            minute=set(range(60)),
            unique=True,
            max_tries=1,
            timeout=settings.activity_sync_lock_ttl_s,
        ),
        cron(
            remove_endorsements,
            hour={settings.removal_run_hour},
            minute={settings.removal_run_minute},
            unique=True,
            max_tries=1,
            timeout=settings.removal_lock_ttl_s,
        ),
    ]
    on_startup = _startup
