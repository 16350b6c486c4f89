"""
Departure-time window matching across the European clock change.

Upstream providers report departures as absolute instants; the schedules we
track are defined in Italian wall-clock time (07:00 out, 16:55-17:05 back).
The summer/winter offset is computed with plain calendar arithmetic:

  - summer (UTC+2) runs from 01:00 UTC on the last Sunday of March
    (inclusive) to 01:00 UTC on the last Sunday of October (exclusive)
  - winter (UTC+1) is everything else

No timezone database is consulted, so results do not depend on the host's
tzdata or local clock.
"""
import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional

from config import (
    MATCH_MODE,
    OUTBOUND,
    RETURN,
    SCHEDULES,
    SUMMER_UTC_OFFSET_H,
    TOLERANT_WINDOWS,
    WINTER_UTC_OFFSET_H,
)

log = logging.getLogger(__name__)

Matcher = Callable[[datetime], bool]


# ---------------------------------------------------------------------------
# DST boundaries
# ---------------------------------------------------------------------------
def last_sunday(year: int, month: int) -> date:
    """Return the last Sunday of the given month."""
    last_day = date(year, month, calendar.monthrange(year, month)[1])
    # weekday(): Monday=0 .. Sunday=6  ->  days since the previous Sunday
    return last_day - timedelta(days=(last_day.weekday() + 1) % 7)


def dst_bounds(year: int) -> tuple[datetime, datetime]:
    """Return the (start, end) UTC instants of summer time for `year`."""
    start = last_sunday(year, 3)
    end = last_sunday(year, 10)
    return (
        datetime(start.year, start.month, start.day, 1, 0, tzinfo=timezone.utc),
        datetime(end.year, end.month, end.day, 1, 0, tzinfo=timezone.utc),
    )


def _as_utc(ts: datetime) -> datetime:
    # Naive values are taken as UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def is_summer_time(ts: datetime) -> bool:
    ts = _as_utc(ts)
    start, end = dst_bounds(ts.year)
    return start <= ts < end


def utc_offset(ts: datetime) -> timedelta:
    """Local offset from UTC in effect at `ts`."""
    hours = SUMMER_UTC_OFFSET_H if is_summer_time(ts) else WINTER_UTC_OFFSET_H
    return timedelta(hours=hours)


def to_local(ts: datetime) -> datetime:
    """Return the naive local wall-clock time for a UTC instant."""
    ts = _as_utc(ts)
    return (ts + utc_offset(ts)).replace(tzinfo=None)


def to_utc(value: datetime) -> datetime:
    """
    Normalise an upstream timestamp to an aware UTC datetime.

    Aware values are converted directly. Naive values are Italian wall-clock
    times: try the summer offset first and keep it only if the resulting
    instant really falls inside summer time.
    """
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    as_summer = (value - timedelta(hours=SUMMER_UTC_OFFSET_H)).replace(tzinfo=timezone.utc)
    if is_summer_time(as_summer):
        return as_summer
    return (value - timedelta(hours=WINTER_UTC_OFFSET_H)).replace(tzinfo=timezone.utc)


def anchor_instant(day: date, anchor: time) -> datetime:
    """Combine a departure date and a UTC anchor time into an aware instant."""
    return datetime(day.year, day.month, day.day, anchor.hour, anchor.minute, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Exact matchers
# ---------------------------------------------------------------------------
def _matches_local_times(ts: datetime, local_times: list[time]) -> bool:
    local = to_local(ts)
    return any(local.hour == t.hour and local.minute == t.minute for t in local_times)


def matches_outbound(ts: datetime) -> bool:
    """07:00 local: 05:00 UTC in summer, 06:00 UTC in winter."""
    return _matches_local_times(ts, SCHEDULES[OUTBOUND]["local_times"])


def matches_return(ts: datetime) -> bool:
    """16:55, 17:00 or 17:05 local."""
    return _matches_local_times(ts, SCHEDULES[RETURN]["local_times"])


# ---------------------------------------------------------------------------
# Tolerant matchers (deprecated)
# ---------------------------------------------------------------------------
# The first scraper versions accepted anything near the target hour. They
# disagree with the exact band on the return leg (±15 min vs 16:55-17:05)
# and are only reachable through MATCH_MODE=tolerant.
def _within_tolerance(ts: datetime, target: time, tolerance_min: int) -> bool:
    local = to_local(ts)
    local_min = local.hour * 60 + local.minute
    target_min = target.hour * 60 + target.minute
    return abs(local_min - target_min) <= tolerance_min


def matches_outbound_tolerant(ts: datetime) -> bool:
    w = TOLERANT_WINDOWS[OUTBOUND]
    return _within_tolerance(ts, w["target"], w["tolerance_min"])


def matches_return_tolerant(ts: datetime) -> bool:
    w = TOLERANT_WINDOWS[RETURN]
    return _within_tolerance(ts, w["target"], w["tolerance_min"])


_MATCHERS: dict[tuple[str, str], Matcher] = {
    (OUTBOUND, "exact"):    matches_outbound,
    (RETURN, "exact"):      matches_return,
    (OUTBOUND, "tolerant"): matches_outbound_tolerant,
    (RETURN, "tolerant"):   matches_return_tolerant,
}


def get_matcher(direction: str, mode: Optional[str] = None) -> Matcher:
    """Return the matcher for a direction; `mode` defaults to MATCH_MODE."""
    mode = (mode or MATCH_MODE).lower()
    try:
        matcher = _MATCHERS[(direction, mode)]
    except KeyError:
        raise ValueError(f"Unknown direction/mode: {direction!r}/{mode!r}") from None
    if mode == "tolerant":
        log.warning("Using deprecated tolerant time window for %s", direction)
    return matcher
