"""
Report type catalogue.

Each report kind supplies only what differs between report pages:
- endpoint path on the backend
- record shape (pydantic model)
- column catalogue for tabular output

Splitting and concurrent fetching are shared (see api/fetcher.py).
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, ConfigDict

from fleet_reports.reports.buckets import Bucket


# ============================================================
# Record models
# ============================================================

class ReportRecord(BaseModel):
    """Base for backend report records. Unknown fields are kept."""
    model_config = ConfigDict(extra='allow')

    deviceId: int
    deviceName: Optional[str] = None


class StopRecord(ReportRecord):
    """One stop: the device stood still between startTime and endTime."""
    positionId: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    startOdometer: Optional[float] = None  # meters
    endOdometer: Optional[float] = None
    duration: Optional[int] = None  # ms
    engineHours: Optional[int] = None  # ms
    spentFuel: Optional[float] = None  # liters


class TripRecord(ReportRecord):
    """One trip between two stops."""
    startPositionId: Optional[int] = None
    endPositionId: Optional[int] = None
    startLat: Optional[float] = None
    startLon: Optional[float] = None
    endLat: Optional[float] = None
    endLon: Optional[float] = None
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    startOdometer: Optional[float] = None
    endOdometer: Optional[float] = None
    startAddress: Optional[str] = None
    endAddress: Optional[str] = None
    distance: Optional[float] = None  # meters
    averageSpeed: Optional[float] = None  # knots
    maxSpeed: Optional[float] = None
    duration: Optional[int] = None  # ms
    spentFuel: Optional[float] = None
    driverName: Optional[str] = None


class RoutePosition(BaseModel):
    """Position of a device, as returned by reports/route."""
    model_config = ConfigDict(extra='allow')

    id: Optional[int] = None
    deviceId: int
    fixTime: Optional[datetime] = None
    latitude: float
    longitude: float
    speed: Optional[float] = None
    course: Optional[float] = None
    address: Optional[str] = None
    attributes: Dict[str, Any] = {}


# Capability consumed by fetch_all: bucket -> request -> decoded records
BucketFetch = Callable[[Bucket, Sequence[int], Sequence[int]], Awaitable[List[Any]]]


@dataclass(frozen=True)
class ReportKind:
    """A bucketed report type."""
    name: str
    path: str
    record_model: Type[ReportRecord]
    columns: Tuple[Tuple[str, str], ...]
    default_columns: Tuple[str, ...]

    @property
    def export_path(self) -> str:
        return f"{self.path}/xlsx"

    @property
    def column_titles(self) -> Dict[str, str]:
        return dict(self.columns)

    def decode(self, raw_records: List[Dict[str, Any]]) -> List[ReportRecord]:
        """Validate raw backend records into this kind's model."""
        return [self.record_model.model_validate(raw) for raw in raw_records]

    def bucket_fetcher(self, client) -> BucketFetch:
        """
        Build the per-bucket fetch function for this report kind.

        The blocking HTTP call runs in a worker thread so buckets can be
        awaited concurrently on one event loop. All threads go through the
        client's one requests.Session, whose adapter pool is sized to the
        concurrency cap (see ReportClient).
        """
        async def fetch_bucket(bucket: Bucket, device_ids: Sequence[int], group_ids: Sequence[int]) -> List[ReportRecord]:
            raw = await asyncio.to_thread(
                client.get_report,
                self.path,
                bucket.start,
                bucket.end,
                device_ids,
                group_ids,
            )
            return self.decode(raw)

        return fetch_bucket

    def validate_columns(self, columns: Sequence[str]) -> List[str]:
        """Return columns unchanged, or raise ValueError naming unknown ones."""
        known = self.column_titles
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise ValueError(f"Unknown {self.name} column(s): {', '.join(unknown)}. Known: {', '.join(known)}")
        return list(columns)


STOPS = ReportKind(
    name='stops',
    path='reports/stops',
    record_model=StopRecord,
    columns=(
        ('startTime', 'Start Time'),
        ('startOdometer', 'Odometer'),
        ('address', 'Address'),
        ('endTime', 'End Time'),
        ('duration', 'Duration'),
        ('engineHours', 'Engine Hours'),
        ('spentFuel', 'Spent Fuel'),
    ),
    default_columns=('startTime', 'endTime', 'startOdometer', 'address'),
)

TRIPS = ReportKind(
    name='trips',
    path='reports/trips',
    record_model=TripRecord,
    columns=(
        ('startTime', 'Start Time'),
        ('startOdometer', 'Odometer Start'),
        ('startAddress', 'Start Address'),
        ('endTime', 'End Time'),
        ('endOdometer', 'Odometer End'),
        ('endAddress', 'End Address'),
        ('distance', 'Distance'),
        ('averageSpeed', 'Average Speed'),
        ('maxSpeed', 'Maximum Speed'),
        ('duration', 'Duration'),
        ('spentFuel', 'Spent Fuel'),
        ('driverName', 'Driver'),
    ),
    default_columns=('startTime', 'endTime', 'distance', 'averageSpeed'),
)

REPORT_KINDS: Dict[str, ReportKind] = {kind.name: kind for kind in (STOPS, TRIPS)}


def get_report_kind(name: str) -> ReportKind:
    """Look up a report kind by name."""
    try:
        return REPORT_KINDS[name]
    except KeyError:
        raise KeyError(f"Unknown report '{name}'. Known: {', '.join(REPORT_KINDS)}") from None
