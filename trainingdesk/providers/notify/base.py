from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from trainingdesk.domain.events import TransitionKind


@dataclass(frozen=True)
class EndorsementNotice:
    endorsement_id: int
    controller_id: int
    position: str
    transition: TransitionKind
    # Planned removal date for warnings, actual removal time for removals.
    effective_at: datetime


class NotificationDispatcher(Protocol):
    async def notify(self, notice: EndorsementNotice) -> None:
        ...


def render_notice(notice: EndorsementNotice) -> tuple[str, str]:
    """Return (title, message) for a controller-facing notification."""
    date_text = notice.effective_at.strftime("%d.%m.%Y")
    if notice.transition == "warning":
        return (
            "Endorsement Removal",
            f"Your endorsement for {notice.position} will be removed on {date_text}. "
            "If you wish to keep it, please ensure you meet the minimum activity requirements by then.",
        )
    return (
        "Endorsement Removed",
        f"Your endorsement for {notice.position} was removed on {date_text} "
        "because the minimum activity requirements were not met.",
    )
