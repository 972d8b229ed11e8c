"""
Range bucketing for report requests.

Handles:
- Parsing and formatting report instants (ISO-8601, UTC)
- Splitting a requested UTC range into local-calendar-day buckets

Day boundaries are computed in one fixed UTC offset (no DST rules):
- Local day window: 00:00:00.000 - 23:59:59.999
- First and last buckets are clamped to the requested range

Example (offset +5h, from 2024-03-01 10:00Z, to 2024-03-03 08:00Z):

    2024-03-01 10:00:00.000Z -> 2024-03-01 18:59:59.999Z
    2024-03-01 19:00:00.000Z -> 2024-03-02 18:59:59.999Z
    2024-03-02 19:00:00.000Z -> 2024-03-03 08:00:00.000Z
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import List, Union
import logging

logger = logging.getLogger('reports.buckets')


# Last representable instant of a local day is midnight minus this
DAY_END_RESOLUTION = timedelta(milliseconds=1)
ONE_DAY = timedelta(days=1)


class InvalidRange(ValueError):
    """Raised when a range starts after it ends."""

    def __init__(self, start: datetime, end: datetime):
        self.start = start
        self.end = end
        super().__init__(f"Invalid range: {format_instant(start)} is after {format_instant(end)}")


def to_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def truncate_to_ms(dt: datetime) -> datetime:
    """Drop sub-millisecond precision; report instants go over the wire in ms."""
    return dt.replace(microsecond=dt.microsecond // 1000 * 1000)


def parse_instant(value: Union[str, datetime]) -> datetime:
    """
    Parse an ISO-8601 instant.

    Accepts a trailing 'Z' as well as numeric offsets.

    Args:
        value: ISO string like "2024-03-01T10:00:00.000Z" or a datetime

    Returns:
        Aware datetime in UTC

    Raises:
        ValueError: if the string is not ISO-8601
    """
    if isinstance(value, datetime):
        return to_utc(value)

    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    return to_utc(datetime.fromisoformat(text))


def format_instant(dt: datetime) -> str:
    """Format an instant as UTC ISO-8601 with milliseconds: 2024-03-01T10:00:00.000Z."""
    dt = to_utc(dt)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def local_date(dt: datetime, offset: timedelta) -> date:
    """Calendar day of an instant in the fixed local offset."""
    return (to_utc(dt) + offset).date()


@dataclass(frozen=True)
class TimeInterval:
    """Absolute UTC interval, start <= end."""
    start: datetime
    end: datetime

    def __post_init__(self):
        start = to_utc(self.start)
        end = to_utc(self.end)
        if start > end:
            raise InvalidRange(start, end)
        object.__setattr__(self, 'start', start)
        object.__setattr__(self, 'end', end)


@dataclass(frozen=True)
class Bucket:
    """One clamped, local-day-aligned part of a requested range."""
    start: datetime
    end: datetime

    @property
    def query_from(self) -> str:
        return format_instant(self.start)

    @property
    def query_to(self) -> str:
        return format_instant(self.end)

    def __str__(self) -> str:
        return f"{self.query_from} - {self.query_to}"


def split_range(from_dt: datetime, to_dt: datetime, offset: timedelta) -> List[Bucket]:
    """
    Split a UTC range into buckets aligned to local calendar days.

    Args:
        from_dt: Range start (instant)
        to_dt: Range end (instant)
        offset: Fixed UTC offset defining local days (e.g. +5h)

    Both bounds are truncated to whole milliseconds first, the resolution
    of the day windows and of the query strings.

    Returns:
        Buckets in chronological order. Together they cover [from_dt, to_dt];
        none extends beyond it.

    Raises:
        InvalidRange: if from_dt is after to_dt
    """
    from_dt = truncate_to_ms(to_utc(from_dt))
    to_dt = truncate_to_ms(to_utc(to_dt))
    if from_dt > to_dt:
        raise InvalidRange(from_dt, to_dt)

    # Local wall-clock values, kept as UTC-tagged datetimes for arithmetic
    from_local = from_dt + offset
    to_local = to_dt + offset

    buckets = []
    cursor = from_local.replace(hour=0, minute=0, second=0, microsecond=0)

    while cursor <= to_local:
        day_start = cursor - offset
        day_end = cursor + ONE_DAY - DAY_END_RESOLUTION - offset

        # Clip to requested range
        bucket_start = max(day_start, from_dt)
        bucket_end = min(day_end, to_dt)

        if bucket_start <= bucket_end:
            buckets.append(Bucket(bucket_start, bucket_end))

        if bucket_end >= to_dt:
            break

        cursor += ONE_DAY

    logger.debug(f"Split {format_instant(from_dt)} - {format_instant(to_dt)} into {len(buckets)} bucket(s)")
    return buckets


def split_interval(interval: TimeInterval, offset: timedelta) -> List[Bucket]:
    """Split a TimeInterval into local-day buckets."""
    return split_range(interval.start, interval.end, offset)
