from __future__ import annotations

from datetime import datetime

from trainingdesk.core.errors import ExternalFetchFailure
from trainingdesk.providers.activity.base import ActivityFigure


class FakeActivitySource:
    def __init__(self, figures: dict[int, ActivityFigure] | None = None) -> None:
        # Keyed by controller id; unknown controllers report no activity.
        self.figures: dict[int, ActivityFigure] = dict(figures or {})
        self.failing: set[int] = set()
        self.calls: list[tuple[int, str, datetime, datetime]] = []

    def set_minutes(self, controller_id: int, minutes: float, last_activity_at: datetime | None = None) -> None:
        self.figures[controller_id] = ActivityFigure(minutes=minutes, last_activity_at=last_activity_at)

    def fail_for(self, controller_id: int) -> None:
        self.failing.add(controller_id)

    async def fetch_activity(
        self,
        *,
        controller_id: int,
        position: str,
        window_start: datetime,
        window_end: datetime,
    ) -> ActivityFigure:
        self.calls.append((controller_id, position, window_start, window_end))
        if controller_id in self.failing:
            raise ExternalFetchFailure(f"fake activity source failure for {controller_id}")
        return self.figures.get(controller_id, ActivityFigure(minutes=0.0))
