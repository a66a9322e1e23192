from __future__ import annotations

from trainingdesk.core.errors import NotificationFailure
from trainingdesk.providers.notify.base import EndorsementNotice


class FakeNotificationDispatcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[EndorsementNotice] = []

    async def notify(self, notice: EndorsementNotice) -> None:
        if self.fail:
            raise NotificationFailure(f"fake dispatcher refused notice for {notice.endorsement_id}")
        self.sent.append(notice)
