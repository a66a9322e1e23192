from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class ActivityFigure:
    # Qualifying minutes inside the requested window and the newest matching session start.
    minutes: float
    last_activity_at: datetime | None = None


class ActivitySource(Protocol):
    async def fetch_activity(
        self,
        *,
        controller_id: int,
        position: str,
        window_start: datetime,
        window_end: datetime,
    ) -> ActivityFigure:
        ...
