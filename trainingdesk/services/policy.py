from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

from trainingdesk.core.config import get_settings


ActivityStatus = Literal["active", "warning", "removal"]


def utc_now() -> datetime:
    # Keep policy timestamps in UTC so the scheduler and API agree on day boundaries.
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PolicyThresholds:
    min_activity_minutes: int
    removal_warning_days: int
    min_endorsement_age_days: int
    activity_lookback_days: int

    @classmethod
    def from_settings(cls) -> PolicyThresholds:
        # Read on every run so operators can retune without a deploy.
        settings = get_settings()
        return cls(
            min_activity_minutes=settings.min_activity_minutes,
            removal_warning_days=settings.removal_warning_days,
            min_endorsement_age_days=settings.min_endorsement_age_days,
            activity_lookback_days=settings.activity_lookback_days,
        )


def lookback_window(now: datetime, *, thresholds: PolicyThresholds | None = None) -> tuple[datetime, datetime]:
    thresholds = thresholds or PolicyThresholds.from_settings()
    return now - timedelta(days=thresholds.activity_lookback_days), now


def removal_eligibility_cutoff(now: datetime, *, thresholds: PolicyThresholds | None = None) -> datetime:
    # Endorsements granted after this instant are protected from warnings and removal.
    thresholds = thresholds or PolicyThresholds.from_settings()
    return now - timedelta(days=thresholds.min_endorsement_age_days)


def is_age_eligible(granted_at: datetime, now: datetime, *, thresholds: PolicyThresholds | None = None) -> bool:
    return granted_at <= removal_eligibility_cutoff(now, thresholds=thresholds)


def meets_minimum(minutes: float, *, thresholds: PolicyThresholds | None = None) -> bool:
    thresholds = thresholds or PolicyThresholds.from_settings()
    return minutes >= thresholds.min_activity_minutes


def grace_elapsed(
    last_warned_at: datetime | None,
    now: datetime,
    *,
    thresholds: PolicyThresholds | None = None,
) -> bool:
    """Whether a warned endorsement has exhausted its grace period.

    The countdown starts at the warning timestamp. Exactly
    ``removal_warning_days`` after the warning counts as elapsed; one day
    less does not.
    """
    if last_warned_at is None:
        return False
    thresholds = thresholds or PolicyThresholds.from_settings()
    return now - last_warned_at >= timedelta(days=thresholds.removal_warning_days)


def removal_date(last_warned_at: datetime, *, thresholds: PolicyThresholds | None = None) -> datetime:
    thresholds = thresholds or PolicyThresholds.from_settings()
    return last_warned_at + timedelta(days=thresholds.removal_warning_days)


def activity_status(minutes: float, *, thresholds: PolicyThresholds | None = None) -> ActivityStatus:
    # Half the minimum is the early-warning band shown to controllers.
    thresholds = thresholds or PolicyThresholds.from_settings()
    if minutes >= thresholds.min_activity_minutes:
        return "active"
    if minutes >= thresholds.min_activity_minutes * 0.5:
        return "warning"
    return "removal"


def activity_progress(minutes: float, *, thresholds: PolicyThresholds | None = None) -> float:
    thresholds = thresholds or PolicyThresholds.from_settings()
    if thresholds.min_activity_minutes <= 0:
        return 100.0
    return min(100.0, (minutes / thresholds.min_activity_minutes) * 100.0)


def format_waiting_time(joined_at: datetime, now: datetime) -> str:
    days = max(0, (now - joined_at).days)
    if days == 0:
        return "Today"
    if days == 1:
        return "1 day"
    if days < 7:
        return f"{days} days"
    weeks, remaining = divmod(days, 7)
    text = "1 week" if weeks == 1 else f"{weeks} weeks"
    if remaining > 0:
        text += f", {remaining}d"
    return text
