from __future__ import annotations

from arq import run_worker

from trainingdesk.core.logging import configure_logging
from trainingdesk.workers.scheduler_worker import WorkerSettings


if __name__ == "__main__":
    # Boot the cron scheduler so sync ticks and removal passes run without an external crontab.
    configure_logging()
    run_worker(WorkerSettings)
