"""
Tabular output of report records.

Converts records to a pandas DataFrame with one row per record and
human units, then writes CSV, XLSX or plain text.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from fleet_reports.config import DEFAULT_LOCAL_DAY_OFFSET
from fleet_reports.reports.buckets import to_utc
from fleet_reports.reports.kinds import ReportKind

logger = logging.getLogger('output.table')

KNOTS_TO_KMH = 1.852

DISTANCE_FIELDS = {'startOdometer', 'endOdometer', 'distance'}
SPEED_FIELDS = {'averageSpeed', 'maxSpeed'}
TIME_FIELDS = {'startTime', 'endTime', 'fixTime'}
# Zero means "not reported" for these
POSITIVE_ONLY_FIELDS = {'engineHours', 'spentFuel', 'averageSpeed', 'maxSpeed'}


def format_time(value: Optional[datetime], offset: timedelta = DEFAULT_LOCAL_DAY_OFFSET) -> Optional[str]:
    """Format instant as local YYYY-MM-DD HH:MM."""
    if value is None:
        return None
    return (to_utc(value) + offset).strftime('%Y-%m-%d %H:%M')


def format_hours(ms: Optional[float]) -> Optional[str]:
    """Format milliseconds as '2h 05m'."""
    if ms is None:
        return None
    total_minutes = int(ms // 60000)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes:02d}m"


def format_value(key: str, value: Any, offset: timedelta = DEFAULT_LOCAL_DAY_OFFSET) -> Any:
    """Convert one record field to its display value."""
    if value is None:
        return None
    if key in POSITIVE_ONLY_FIELDS and not value > 0:
        return None
    if key in TIME_FIELDS:
        return format_time(value, offset)
    if key in DISTANCE_FIELDS:
        return round(value / 1000, 2)
    if key in SPEED_FIELDS:
        return round(value * KNOTS_TO_KMH, 1)
    if key in ('duration', 'engineHours'):
        return format_hours(value)
    if key == 'spentFuel':
        return round(value, 2)
    return value


def _column_header(kind: ReportKind, key: str) -> str:
    title = kind.column_titles.get(key, key)
    if key in DISTANCE_FIELDS:
        return f"{title} (km)"
    if key in SPEED_FIELDS:
        return f"{title} (km/h)"
    if key == 'spentFuel':
        return f"{title} (l)"
    return title


def records_to_frame(
    records: Sequence[Any],
    kind: ReportKind,
    columns: Optional[Sequence[str]] = None,
    offset: timedelta = DEFAULT_LOCAL_DAY_OFFSET,
) -> pd.DataFrame:
    """
    Build display table for report records.

    Args:
        records: Records (pydantic models or dicts) in display order
        kind: Report kind the records belong to
        columns: Column keys, defaults to kind.default_columns
        offset: Local offset for time columns

    Returns:
        DataFrame with a 'Device' column followed by the chosen columns
    """
    columns = kind.validate_columns(columns or kind.default_columns)

    rows: List[Dict[str, Any]] = []
    for record in records:
        data = record.model_dump() if hasattr(record, 'model_dump') else dict(record)
        row = {'Device': data.get('deviceName') or data.get('deviceId')}
        for key in columns:
            row[_column_header(kind, key)] = format_value(key, data.get(key), offset)
        rows.append(row)

    headers = ['Device'] + [_column_header(kind, key) for key in columns]
    return pd.DataFrame(rows, columns=headers)


def write_table(frame: pd.DataFrame, path: str) -> Path:
    """Write table as CSV or XLSX depending on file suffix."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    suffix = out_path.suffix.lower()
    if suffix == '.xlsx':
        frame.to_excel(out_path, index=False, engine='openpyxl')
    elif suffix == '.csv':
        frame.to_csv(out_path, index=False, encoding='utf-8')
    else:
        raise ValueError(f"Unsupported output format '{suffix}', use .csv or .xlsx")

    logger.info(f"Saved {len(frame)} row(s): {out_path}")
    return out_path


def render_text(frame: pd.DataFrame) -> str:
    if frame.empty:
        return "(no records)"
    return frame.to_string(index=False, na_rep='')
