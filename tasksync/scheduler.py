"""
Focus-block scheduling.

Finds the next free block of a fixed length inside working hours, given the
busy periods already on the calendar. The search walks forward one calendar
day at a time, computes the free gaps inside that day's working window and
takes the first gap the block fits into.

All times are timezone-aware datetimes. Busy periods may arrive in any zone;
comparisons are done on absolute instants, while day boundaries and the
15-minute alignment follow the wall clock of the work-hours timezone.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidConfiguration, InvalidTimestamp, NoSlotAvailable

logger = logging.getLogger(__name__)

SLOT_GRANULARITY = timedelta(minutes=15)
DEFAULT_HORIZON_DAYS = 7

# Graph and some CalDAV servers send 7 fractional digits
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


# =============================================================================
# Data model
# =============================================================================

@dataclass(frozen=True)
class BusyInterval:
    """A period already occupied on the calendar."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if not self.start < self.end:
            raise ValueError(f"Busy interval must end after it starts: {self.start} >= {self.end}")


@dataclass(frozen=True)
class SearchWindow:
    """The part of one day in which a block may be placed."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Search window starts after it ends: {self.start} > {self.end}")


@dataclass(frozen=True)
class Slot:
    """The block chosen by find_next_slot."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return _elapsed(self.start, self.end)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_minutes": int(self.duration.total_seconds() // 60),
        }


def _elapsed(start: datetime, end: datetime) -> timedelta:
    """Real time between two instants, correct across DST changes."""
    return end.astimezone(timezone.utc) - start.astimezone(timezone.utc)


def _parse_wall_clock(field: str, value: str) -> time:
    """Parse a 24-hour "HH:MM" string."""
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise InvalidConfiguration(field, value, "expected HH:MM (24-hour)")
    hour, minute = int(parts[0]), int(parts[1])
    if not 0 <= hour <= 23:
        raise InvalidConfiguration(field, value, "hour must be between 00 and 23")
    if not 0 <= minute <= 59:
        raise InvalidConfiguration(field, value, "minute must be between 00 and 59")
    return time(hour, minute)


def _zone(name: str | None) -> tzinfo:
    """Resolve an IANA zone name; empty or "UTC" means UTC."""
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


@dataclass(frozen=True)
class WorkHours:
    """Daily wall-clock window in which new blocks may be placed."""

    day_start: time
    day_end: time
    zone: tzinfo

    @classmethod
    def parse(cls, start: str, end: str, tz_name: str = "UTC") -> "WorkHours":
        """Build work hours from configuration strings.

        Args:
            start: Day start, "HH:MM"
            end: Day end, "HH:MM"; must be later than start
            tz_name: IANA timezone name, e.g. "Europe/Berlin"

        Raises:
            InvalidConfiguration: On malformed times, an unknown zone, or an
                empty/inverted window.
        """
        day_start = _parse_wall_clock("work_hours_start", start)
        day_end = _parse_wall_clock("work_hours_end", end)
        if day_start >= day_end:
            raise InvalidConfiguration(
                "work_hours_end", end, f"must be later than work_hours_start ({start})"
            )
        try:
            zone = _zone(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise InvalidConfiguration("work_hours_timezone", tz_name, "unknown IANA timezone")
        return cls(day_start=day_start, day_end=day_end, zone=zone)


# =============================================================================
# Calendar input
# =============================================================================

def parse_event_time(value: str, time_zone: str | None = None) -> datetime:
    """Normalize a calendar timestamp to an aware datetime.

    Accepts either an RFC 3339 string with an offset or "Z"
    ("2026-01-08T09:00:00+01:00"), or a naive "2026-01-08T09:00:00" together
    with a separate IANA zone name, as calendar APIs return them in
    {"dateTime": ..., "timeZone": ...} pairs. A naive value with no zone is
    taken as UTC.

    Raises:
        InvalidTimestamp: If the value or its zone cannot be understood.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _EXCESS_FRACTION.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidTimestamp(value, time_zone)

    if parsed.tzinfo is None:
        try:
            parsed = parsed.replace(tzinfo=_zone(time_zone))
        except (ZoneInfoNotFoundError, ValueError):
            raise InvalidTimestamp(value, time_zone)
    return parsed


def _event_bound(bound: Any) -> datetime:
    if isinstance(bound, dict):
        raw = bound.get("dateTime") or bound.get("date")
        if not raw:
            raise InvalidTimestamp(str(bound))
        return parse_event_time(raw, bound.get("timeZone"))
    return parse_event_time(str(bound))


def busy_from_events(events: Iterable[dict[str, Any]]) -> list[BusyInterval]:
    """Convert calendar events or freebusy periods into busy intervals.

    Each item needs "start" and "end", given either as plain timestamp strings
    (freebusy responses) or as {"dateTime", "timeZone"} objects (event
    listings). Zero-length entries are dropped.
    """
    intervals = []
    for event in events:
        start = _event_bound(event.get("start"))
        end = _event_bound(event.get("end"))
        if end <= start:
            logger.debug("Skipping zero-length calendar entry %s-%s", start, end)
            continue
        intervals.append(BusyInterval(start, end))
    return intervals


# =============================================================================
# Gap finding
# =============================================================================

def is_aligned(moment: datetime) -> bool:
    """True when the time sits exactly on a :00/:15/:30/:45 boundary."""
    return moment.minute % 15 == 0 and moment.second == 0 and moment.microsecond == 0


def round_to_next_interval(moment: datetime) -> datetime:
    """Round up to the next 15-minute boundary.

    Times already on a boundary are returned unchanged; 09:07 becomes 09:15
    and 09:47 becomes 10:00.
    """
    floored = moment.replace(minute=moment.minute - moment.minute % 15, second=0, microsecond=0)
    if floored == moment:
        return moment
    return floored + SLOT_GRANULARITY


def find_gaps(
    busy: Iterable[BusyInterval],
    window_start: datetime,
    window_end: datetime,
) -> list[tuple[datetime, datetime]]:
    """Return the free periods of a window, ordered by start.

    Busy intervals entirely outside the window are ignored; ones that stick
    out of it are clipped by the sweep. Overlapping and duplicate intervals
    are fine.

    Args:
        busy: Occupied periods, in any order
        window_start: Start of the window to search
        window_end: End of the window to search

    Returns:
        List of (start, end) pairs. Together with the clipped busy intervals
        they cover the window exactly, without overlap.
    """
    relevant = sorted(
        (b for b in busy if b.end > window_start and b.start < window_end),
        key=lambda b: b.start,
    )

    gaps: list[tuple[datetime, datetime]] = []
    cursor = window_start
    for interval in relevant:
        if cursor < interval.start:
            gaps.append((cursor, interval.start))
        cursor = max(cursor, interval.end)

    if cursor < window_end:
        gaps.append((cursor, window_end))
    return gaps


# =============================================================================
# Slot search
# =============================================================================

def window_for_day(day: date, work_hours: WorkHours) -> SearchWindow:
    """Working window of one calendar day in the work-hours timezone."""
    return SearchWindow(
        start=datetime.combine(day, work_hours.day_start, tzinfo=work_hours.zone),
        end=datetime.combine(day, work_hours.day_end, tzinfo=work_hours.zone),
    )


def _first_fit(
    gaps: list[tuple[datetime, datetime]],
    duration: timedelta,
    day_end: datetime,
) -> Slot | None:
    zone = day_end.tzinfo
    for gap_start, gap_end in gaps:
        if _elapsed(gap_start, gap_end) < duration:
            continue
        # Gap bounds may come from busy intervals in another zone
        gap_start = gap_start.astimezone(zone)
        slot_start = gap_start if is_aligned(gap_start) else round_to_next_interval(gap_start)
        # Block length is real elapsed time, also across DST changes
        slot_end = (slot_start.astimezone(timezone.utc) + duration).astimezone(zone)
        limit = min(gap_end.astimezone(timezone.utc), day_end.astimezone(timezone.utc))
        if slot_end.astimezone(timezone.utc) <= limit:
            return Slot(slot_start, slot_end)
    return None


def find_next_slot(
    busy: Iterable[BusyInterval],
    now: datetime,
    duration_minutes: int,
    work_hours: WorkHours,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> Slot:
    """Find the earliest free block of the given length.

    Starts at `now` rounded up to the next quarter hour and checks at most
    `horizon_days` consecutive days. On each day the first gap that can hold
    the whole block wins; later, possibly better, gaps are not considered.

    Args:
        busy: Calendar commitments (any order, may overlap)
        now: Current time; a naive value is taken as UTC
        duration_minutes: Block length, must be positive
        work_hours: Daily working window and its timezone
        horizon_days: Number of days to search, today included

    Returns:
        The chosen Slot, expressed in the work-hours timezone.

    Raises:
        InvalidConfiguration: If duration_minutes or horizon_days is not positive.
        NoSlotAvailable: If no day in the horizon has room for the block.
    """
    if duration_minutes <= 0:
        raise InvalidConfiguration("duration_minutes", duration_minutes, "must be greater than 0")
    if horizon_days <= 0:
        raise InvalidConfiguration("horizon_days", horizon_days, "must be greater than 0")

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    aligned_now = round_to_next_interval(now.astimezone(work_hours.zone))
    duration = timedelta(minutes=duration_minutes)
    busy = list(busy)

    day = aligned_now.date()
    for offset in range(horizon_days):
        window = window_for_day(day, work_hours)
        if offset == 0 and aligned_now > window.start:
            if aligned_now >= window.end:
                logger.debug("Work hours on %s already over", day)
                day += timedelta(days=1)
                continue
            window = SearchWindow(aligned_now, window.end)

        gaps = find_gaps(busy, window.start, window.end)
        slot = _first_fit(gaps, duration, window.end)
        if slot is not None:
            logger.debug("Found %d-minute slot %s-%s", duration_minutes, slot.start, slot.end)
            return slot

        logger.debug("No %d-minute gap on %s (%d gaps checked)", duration_minutes, day, len(gaps))
        day += timedelta(days=1)

    raise NoSlotAvailable(duration_minutes, horizon_days)
