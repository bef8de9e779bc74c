"""
Phase Clock

Pure classification of a moment in time into one of the four phases of a
tournament week, plus the weekly schedule generator.

A week passes through:
1. UPCOMING: before registration opens
2. REGISTRATION: players buy tickets to join
3. POINT_COLLECTION: 1v1 results count towards the weekly standings
4. ENDED: standings are final and settle on-chain

Boundaries are half-open on the start side: the instant equal to a boundary
already belongs to the new phase.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Dict, List, Union

import pytz

from tournament_sync.config import Config
from tournament_sync.constants import ScheduleConstants
from tournament_sync.utils.sync_exceptions import InvalidScheduleError

Moment = Union[datetime, int, float]


class Phase(Enum):
    UPCOMING = "upcoming"
    REGISTRATION = "registration"
    POINT_COLLECTION = "point_collection"
    ENDED = "ended"


def utc_now() -> datetime:
    """The engine's single time source."""
    return datetime.now(timezone.utc)


def ensure_utc(moment: Moment) -> datetime:
    """Normalize a datetime or POSIX timestamp to an aware UTC datetime.

    Naive datetimes are interpreted as UTC (SQLite drops tzinfo on read).
    """
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc)
    return datetime.fromtimestamp(float(moment), tz=timezone.utc)


@dataclass(frozen=True)
class WeekSchedule:
    week: int
    registration_start: datetime
    registration_end: datetime
    point_collection_start: datetime
    point_collection_end: datetime

    @classmethod
    def from_model(cls, row) -> 'WeekSchedule':
        return cls(
            week=row.week,
            registration_start=ensure_utc(row.registration_start),
            registration_end=ensure_utc(row.registration_end),
            point_collection_start=ensure_utc(row.point_collection_start),
            point_collection_end=ensure_utc(row.point_collection_end),
        )

    def validate(self) -> 'WeekSchedule':
        """Reject mis-ordered boundaries. Returns self for chaining."""
        if not isinstance(self.week, int) or self.week <= 0:
            raise InvalidScheduleError(self.week, "week must be a positive integer")
        rs, re_ = ensure_utc(self.registration_start), ensure_utc(self.registration_end)
        ps, pe = ensure_utc(self.point_collection_start), ensure_utc(self.point_collection_end)
        if not rs < re_:
            raise InvalidScheduleError(self.week, "registration must start before it ends")
        if not re_ <= ps:
            raise InvalidScheduleError(self.week, "point collection cannot start before registration ends")
        if not ps < pe:
            raise InvalidScheduleError(self.week, "point collection must start before it ends")
        return self

    def to_dict(self) -> Dict[str, str]:
        return {
            'registrationStart': ensure_utc(self.registration_start).isoformat(),
            'registrationEnd': ensure_utc(self.registration_end).isoformat(),
            'pointCollectionStart': ensure_utc(self.point_collection_start).isoformat(),
            'pointCollectionEnd': ensure_utc(self.point_collection_end).isoformat(),
        }


def phase_of(week: WeekSchedule, now: Moment) -> Phase:
    """
    Classify `now` for `week`. Pure and total; never raises for valid weeks.

    Numeric moments are compared against the boundaries as POSIX seconds and
    never converted to datetimes, so values outside the datetime range
    (including +/-inf) still classify. NaN is unordered and classifies as
    UPCOMING: no results count and no sync is triggered.
    """
    boundaries = (week.registration_start, week.registration_end, week.point_collection_end)
    if isinstance(now, datetime):
        t = ensure_utc(now)
        boundaries = tuple(ensure_utc(b) for b in boundaries)
    else:
        t = float(now)
        if math.isnan(t):
            return Phase.UPCOMING
        boundaries = tuple(ensure_utc(b).timestamp() for b in boundaries)

    registration_start, registration_end, point_collection_end = boundaries
    if t < registration_start:
        return Phase.UPCOMING
    if t < registration_end:
        return Phase.REGISTRATION
    if t < point_collection_end:
        return Phase.POINT_COLLECTION
    return Phase.ENDED


_NEXT_BOUNDARY = {
    Phase.UPCOMING: ('registration_start', 'Registration Opens'),
    Phase.REGISTRATION: ('registration_end', 'Registration Closes'),
    Phase.POINT_COLLECTION: ('point_collection_end', 'Tournament Ends'),
    Phase.ENDED: (None, 'Next Week'),
}


def tournament_status(week: WeekSchedule, now: Moment) -> Dict:
    """Detailed status for display: phase, countdown to the next boundary, schedule."""
    now = ensure_utc(now)
    phase = phase_of(week, now)
    attr, next_phase_name = _NEXT_BOUNDARY[phase]

    countdown = 0
    if attr:
        boundary = ensure_utc(getattr(week, attr))
        countdown = max(0, int((boundary - now).total_seconds()))

    return {
        'week': week.week,
        'phase': phase.value,
        'countdown': countdown,
        'nextPhaseName': next_phase_name,
        'schedule': week.to_dict(),
        'serverTime': now.isoformat(),
    }


def generate_week_schedule(week: int, day: date, tz_name: str = None,
                           registration_start_hour: int = ScheduleConstants.REGISTRATION_START_HOUR,
                           registration_hours: int = ScheduleConstants.REGISTRATION_HOURS,
                           gap_minutes: int = ScheduleConstants.POINT_COLLECTION_GAP_MINUTES,
                           point_collection_end_hour: int = ScheduleConstants.POINT_COLLECTION_END_HOUR
                           ) -> WeekSchedule:
    """
    Build a week's boundaries from a local calendar day.

    With the defaults in Asia/Jakarta: registration 16:00-21:00, point
    collection 21:01 until 12:00 the next day.

    Args:
        week: Week number
        day: Local calendar day registration opens
        tz_name: Olson timezone name, defaults to Config.TOURNAMENT_TIMEZONE

    Returns:
        Validated WeekSchedule with UTC boundaries
    """
    tz = pytz.timezone(tz_name or Config.TOURNAMENT_TIMEZONE)

    registration_start = tz.localize(datetime.combine(day, time(hour=registration_start_hour)))
    registration_end = registration_start + timedelta(hours=registration_hours)
    point_collection_start = registration_end + timedelta(minutes=gap_minutes)
    point_collection_end = tz.localize(
        datetime.combine(day + timedelta(days=1), time(hour=point_collection_end_hour))
    )

    return WeekSchedule(
        week=week,
        registration_start=registration_start.astimezone(timezone.utc),
        registration_end=registration_end.astimezone(timezone.utc),
        point_collection_start=point_collection_start.astimezone(timezone.utc),
        point_collection_end=point_collection_end.astimezone(timezone.utc),
    ).validate()


def generate_schedule(first_week: int, first_day: date, count: int,
                      cadence_days: int = ScheduleConstants.CADENCE_DAYS,
                      tz_name: str = None) -> List[WeekSchedule]:
    """Generate `count` consecutive weeks, one every `cadence_days`."""
    if count <= 0:
        return []
    return [
        generate_week_schedule(first_week + i, first_day + timedelta(days=i * cadence_days), tz_name)
        for i in range(count)
    ]
