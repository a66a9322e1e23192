from __future__ import annotations

from trainingdesk.apps.cli import remove_endorsements_main


if __name__ == "__main__":
    raise SystemExit(remove_endorsements_main())
