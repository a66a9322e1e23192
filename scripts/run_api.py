from __future__ import annotations

import uvicorn

from trainingdesk.apps.api.main import create_app
from trainingdesk.core.config import get_settings


def main() -> None:
    # Serve the waiting-list and audit API with env-driven bind settings.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
