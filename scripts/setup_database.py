from __future__ import annotations

from trainingdesk.apps.cli import setup_database_main


if __name__ == "__main__":
    raise SystemExit(setup_database_main())
