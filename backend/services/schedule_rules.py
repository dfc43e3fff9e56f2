"""
Schedule Rules

Pure trigger-time computation for schedules: parsing rule text, resolving
IANA timezones, and finding occurrences of a wall-clock time in a zone.

All functions take and return timezone-aware UTC datetimes; conversion to the
naive-UTC storage convention happens at the edges (to_storage/from_storage).

DST policy:
- A wall-clock time that does not exist (spring-forward gap) resolves to the
  first valid instant after the gap.
- A wall-clock time that occurs twice (fall-back fold) resolves to its first
  occurrence; the repeat is never produced.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from domain.value_objects.schedule_state import ScheduleKind, ScheduleState
from exceptions import ScheduleValidationError, TimezoneError

_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


# ---------------------------------------------------------------------------
# Storage conversion
# ---------------------------------------------------------------------------

def to_storage(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC for DateTime columns"""
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC from a DateTime column -> aware UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def resolve_timezone(name: str) -> ZoneInfo:
    """
    Resolve an IANA zone id.

    Raises:
        TimezoneError: If the id is empty or unknown
    """
    if not name or not name.strip():
        raise TimezoneError(name or "")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, IsADirectoryError):
        raise TimezoneError(name)


def parse_time_of_day(spec: str) -> time:
    """
    Parse 'HH:MM' or 'HH:MM:SS'.

    Raises:
        ScheduleValidationError: If the text is not a valid time of day
    """
    match = _TIME_OF_DAY.match(spec.strip()) if spec else None
    if not match:
        raise ScheduleValidationError(f"Daily time must be HH:MM or HH:MM:SS, got '{spec}'", field="time_spec")
    hour, minute, second = int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        raise ScheduleValidationError(f"Daily time out of range: '{spec}'", field="time_spec")
    return time(hour, minute, second)


def parse_instant(spec: str, tz: ZoneInfo) -> datetime:
    """
    Parse an ISO-8601 instant. Values without an offset are read in ``tz``.

    Returns:
        Aware UTC datetime

    Raises:
        ScheduleValidationError: If the text is not ISO-8601
    """
    try:
        parsed = datetime.fromisoformat(spec.strip())
    except (AttributeError, ValueError):
        raise ScheduleValidationError(f"One-time schedule needs an ISO-8601 instant, got '{spec}'", field="time_spec")
    if parsed.tzinfo is None:
        return localize(parsed, tz)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Wall clock <-> UTC
# ---------------------------------------------------------------------------

def _wall_time(instant: datetime, tz: ZoneInfo) -> datetime:
    return instant.astimezone(tz).replace(tzinfo=None)


def localize(naive_local: datetime, tz: ZoneInfo) -> datetime:
    """
    Map a wall-clock time in ``tz`` to a UTC instant following the DST policy.

    Returns:
        Aware UTC datetime
    """
    first = naive_local.replace(tzinfo=tz, fold=0).astimezone(timezone.utc)
    if _wall_time(first, tz) == naive_local:
        return first

    # Nonexistent local time. fold=0 and fold=1 use the offsets on either side
    # of the gap; the first instant whose wall time reaches naive_local lies
    # between them.
    second = naive_local.replace(tzinfo=tz, fold=1).astimezone(timezone.utc)
    lo, hi = sorted((first, second))
    lo_ts, hi_ts = int(lo.timestamp()), int(hi.timestamp()) + 1
    while hi_ts - lo_ts > 1:
        mid_ts = (lo_ts + hi_ts) // 2
        mid = datetime.fromtimestamp(mid_ts, tz=timezone.utc)
        if _wall_time(mid, tz) >= naive_local:
            hi_ts = mid_ts
        else:
            lo_ts = mid_ts
    return datetime.fromtimestamp(hi_ts, tz=timezone.utc)


def _occurrence_on(day: date, at: time, tz: ZoneInfo) -> datetime:
    return localize(datetime.combine(day, at), tz)


def next_daily_occurrence(at: time, tz: ZoneInfo, after: datetime) -> datetime:
    """
    First occurrence of wall-clock ``at`` in ``tz`` strictly after ``after``.

    Example:
        21:00 in Asia/Bangkok after 2024-01-01T10:00Z -> 2024-01-01T14:00Z
    """
    start_day = after.astimezone(tz).date() - timedelta(days=1)
    for offset in range(4):
        candidate = _occurrence_on(start_day + timedelta(days=offset), at, tz)
        if candidate > after:
            return candidate
    raise ScheduleValidationError(f"No occurrence of {at} in {tz.key} after {after.isoformat()}")  # pragma: no cover


def latest_daily_occurrence(at: time, tz: ZoneInfo, now: datetime) -> datetime:
    """Most recent occurrence of wall-clock ``at`` in ``tz`` at or before ``now``"""
    start_day = now.astimezone(tz).date() + timedelta(days=1)
    for offset in range(4):
        candidate = _occurrence_on(start_day - timedelta(days=offset), at, tz)
        if candidate <= now:
            return candidate
    raise ScheduleValidationError(f"No occurrence of {at} in {tz.key} before {now.isoformat()}")  # pragma: no cover


# ---------------------------------------------------------------------------
# Compiled rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompiledRule:
    """A validated rule ready for trigger-time computation"""
    kind: ScheduleKind
    tz: ZoneInfo
    time_of_day: Optional[time] = None
    instant: Optional[datetime] = None

    def first_fire(self, now: datetime, after: Optional[datetime] = None) -> datetime:
        """
        Trigger time for a newly created or updated rule.

        Args:
            now: Current time
            after: last_fired_at of the schedule, if it has fired before

        Raises:
            ScheduleValidationError: For a one-time instant that is not in the future
        """
        if self.kind == ScheduleKind.ONE_TIME:
            if self.instant <= now:
                raise ScheduleValidationError(
                    f"One-time instant {self.instant.isoformat()} is in the past",
                    field="time_spec",
                )
            return self.instant
        reference = max(now, after) if after else now
        return next_daily_occurrence(self.time_of_day, self.tz, reference)

    def plan_fire(self, due_at: datetime, now: datetime) -> Tuple[datetime, Optional[datetime], ScheduleState]:
        """
        Decide what a due schedule fires and what comes next.

        Missed daily occurrences collapse into one: only the most recent
        occurrence at or before ``now`` fires, and the next trigger is the
        first occurrence after it (which is in the future).

        Args:
            due_at: The schedule's stored next_fire_at (<= now)
            now: Current time

        Returns:
            (fired occurrence, next trigger or None, resulting schedule state)
        """
        if self.kind == ScheduleKind.ONE_TIME:
            return due_at, None, ScheduleState.COMPLETED
        fired = max(due_at, latest_daily_occurrence(self.time_of_day, self.tz, now))
        return fired, next_daily_occurrence(self.time_of_day, self.tz, fired), ScheduleState.ACTIVE


def compile_rule(kind: str, time_spec: str, tz_name: str) -> CompiledRule:
    """
    Validate rule text and build a CompiledRule.

    Raises:
        ScheduleValidationError: Unknown kind or malformed time_spec
        TimezoneError: Unknown timezone
    """
    try:
        rule_kind = ScheduleKind(kind)
    except ValueError:
        raise ScheduleValidationError(f"Unknown schedule kind '{kind}'", field="kind")

    tz = resolve_timezone(tz_name)
    if rule_kind == ScheduleKind.DAILY:
        return CompiledRule(rule_kind, tz, time_of_day=parse_time_of_day(time_spec))
    return CompiledRule(rule_kind, tz, instant=parse_instant(time_spec, tz))
