"""Rules deciding which controller sessions count towards an endorsement.

Centre endorsements count any session on a callsign sharing the sector
prefix. Airport endorsements count sessions on the same airport at the
endorsed station or above, plus the enroute sectors that cover the airport
top-down.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from trainingdesk.providers.activity.base import ActivityFigure


# Station suffixes that count for each endorsed airport station.
VIABLE_SUFFIXES: dict[str, tuple[str, ...]] = {
    "APP": ("APP", "DEP"),
    "TWR": ("APP", "DEP", "TWR"),
    "GNDDEL": ("APP", "DEP", "TWR", "GND", "DEL"),
}

# Enroute sectors providing top-down service for the major airports.
CTR_TOPDOWN: dict[str, tuple[str, ...]] = {
    "EDDB": ("EDWW_F", "EDWW_B", "EDWW_K", "EDWW_M", "EDWW_C"),
    "EDDH": ("EDWW_H", "EDWW_A", "EDWW_W", "EDWW_C"),
    "EDDF": ("EDGG_G", "EDGG_R", "EDGG_D", "EDGG_B", "EDGG_K"),
    "EDDK": ("EDGG_P",),
    "EDDL": ("EDGG_P",),
    "EDDM": ("EDMM_N", "EDMM_Z", "EDMM_R"),
}

# Centre endorsements whose sector also staffs under the bare FIR callsign.
CTR_ALIASES: dict[str, tuple[str, ...]] = {
    "EDWW_W_CTR": ("EDWW_CTR",),
}

_SESSION_DATE_FIELDS = ("start", "end", "created_at", "date")


def _suffix_matches(airport: str, station: str, callsign: str) -> bool:
    parts = callsign.split("_")
    if len(parts) < 2:
        return False
    # EDDL_GND, EDDL_M_GND and EDDL__GND all carry the station in the last part.
    return parts[0] == airport and parts[-1] in VIABLE_SUFFIXES.get(station, ())


def callsign_counts_for(position: str, callsign: str) -> bool:
    if not callsign:
        return False
    if position.endswith("_CTR"):
        if callsign.startswith(position[:6]):
            return True
        return callsign in CTR_ALIASES.get(position, ())

    parts = position.split("_")
    if len(parts) < 2:
        return False
    airport, station = parts[0], parts[-1]
    if any(callsign.startswith(sector) for sector in CTR_TOPDOWN.get(airport, ())):
        return True
    return _suffix_matches(airport, station, callsign)


def parse_session_time(session: dict[str, Any]) -> datetime | None:
    # Session start is preferred; older payloads only carry one of the fallbacks.
    for field in _SESSION_DATE_FIELDS:
        raw = session.get(field)
        if not raw:
            continue
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def summarize_sessions(
    position: str,
    sessions: Iterable[dict[str, Any]],
    *,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> ActivityFigure:
    minutes = 0.0
    last_activity_at: datetime | None = None
    for session in sessions:
        if not callsign_counts_for(position, str(session.get("callsign") or "")):
            continue
        started_at = parse_session_time(session)
        if started_at is not None:
            if window_start is not None and started_at < window_start:
                continue
            if window_end is not None and started_at > window_end:
                continue
        try:
            minutes += float(session.get("minutes_on_callsign") or 0)
        except (TypeError, ValueError):
            continue
        if started_at is not None and (last_activity_at is None or started_at > last_activity_at):
            last_activity_at = started_at
    return ActivityFigure(minutes=minutes, last_activity_at=last_activity_at)
