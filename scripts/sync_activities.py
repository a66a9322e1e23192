from __future__ import annotations

from trainingdesk.apps.cli import sync_activities_main


if __name__ == "__main__":
    raise SystemExit(sync_activities_main())
