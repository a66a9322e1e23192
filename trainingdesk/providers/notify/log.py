from __future__ import annotations

import logging

from trainingdesk.providers.notify.base import EndorsementNotice, render_notice


logger = logging.getLogger(__name__)


class LogNotificationDispatcher:
    # Development dispatcher: writes the rendered notice to the log instead of sending it.
    async def notify(self, notice: EndorsementNotice) -> None:
        title, message = render_notice(notice)
        logger.info(
            "endorsement_notice controller_id=%s endorsement_id=%s transition=%s title=%s message=%s",
            notice.controller_id,
            notice.endorsement_id,
            notice.transition,
            title,
            message,
        )
