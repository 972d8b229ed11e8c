"""
FastAPI Web Server for Fleet Reports.

Provides:
- Bucketed stops/trips reports (split on local days, fetched concurrently)
- Bucket plan preview
- Trip route and XLSX export passthrough
- Remote engine stop/resume command
"""

import asyncio
import logging
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import FileResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from fleet_reports.api.client import CommandError, ReportRequestError
from fleet_reports.api.fetcher import BucketFetchFailed, ConcurrentRangeFetcher
from fleet_reports.reports.buckets import InvalidRange, format_instant, local_date, parse_instant
from fleet_reports.reports.kinds import ReportKind, RoutePosition, get_report_kind

# Configure logging
logger = logging.getLogger('web_server')

# FastAPI app
app = FastAPI(
    title="Fleet Reports",
    description="Local-day bucketed report gateway for the fleet backend",
    version="1.0.0"
)


# ============================================================
# Pydantic models for API
# ============================================================

class EngineCommandRequest(BaseModel):
    """Request to stop or resume a device engine."""
    deviceId: int
    ignitionOn: bool  # True -> engineStop, False -> engineResume


class BucketOut(BaseModel):
    start: str
    end: str
    localDate: str


# ============================================================
# Global state
# ============================================================

_fetcher: Optional[ConcurrentRangeFetcher] = None

fetch_status = {
    'running': False,
    'report': None,
    'buckets': 0,
    'records': 0,
    'error': None,
    'completed_at': None,
}
fetch_lock = threading.Lock()


def configure(fetcher: ConcurrentRangeFetcher) -> None:
    """Attach the fetcher used by all report endpoints."""
    global _fetcher
    _fetcher = fetcher


def get_fetcher() -> ConcurrentRangeFetcher:
    if _fetcher is None:
        raise HTTPException(status_code=503, detail="Report backend not configured")
    return _fetcher


def _kind_or_404(name: str) -> ReportKind:
    try:
        return get_report_kind(name)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]))


def _range_or_400(from_: str, to: str):
    try:
        from_dt = parse_instant(from_)
        to_dt = parse_instant(to)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid instant: {from_!r} / {to!r}")
    if from_dt > to_dt:
        raise HTTPException(status_code=400, detail=str(InvalidRange(from_dt, to_dt)))
    return from_dt, to_dt


def _update_status(**values) -> None:
    with fetch_lock:
        fetch_status.update(values)


# ============================================================
# API endpoints
# ============================================================

@app.get("/api/status")
async def get_status():
    """Get status of the last report fetch."""
    with fetch_lock:
        return dict(fetch_status)


@app.get("/api/reports/route")
async def get_route(
    device_id: int = Query(..., alias='deviceId'),
    from_: str = Query(..., alias='from'),
    to: str = Query(...),
    fetcher: ConcurrentRangeFetcher = Depends(get_fetcher),
):
    """Positions of one device for a range (used for the selected trip)."""
    from_dt, to_dt = _range_or_400(from_, to)
    try:
        raw = await asyncio.to_thread(fetcher.client.get_route, device_id, from_dt, to_dt)
    except ReportRequestError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [RoutePosition.model_validate(p).model_dump(mode='json') for p in raw]


@app.get("/api/reports/{kind_name}/buckets", response_model=List[BucketOut])
async def get_bucket_plan(
    kind_name: str,
    from_: str = Query(..., alias='from'),
    to: str = Query(...),
    fetcher: ConcurrentRangeFetcher = Depends(get_fetcher),
):
    """Buckets a report over this range would request. No backend calls."""
    _kind_or_404(kind_name)
    from_dt, to_dt = _range_or_400(from_, to)
    return [
        BucketOut(
            start=b.query_from,
            end=b.query_to,
            localDate=local_date(b.start, fetcher.offset).isoformat(),
        )
        for b in fetcher.plan(from_dt, to_dt)
    ]


@app.get("/api/reports/{kind_name}/xlsx")
async def export_report(
    kind_name: str,
    from_: str = Query(..., alias='from'),
    to: str = Query(...),
    device_ids: List[int] = Query([], alias='deviceId'),
    group_ids: List[int] = Query([], alias='groupId'),
    fetcher: ConcurrentRangeFetcher = Depends(get_fetcher),
):
    """Proxy the backend XLSX export for the full range (not split)."""
    kind = _kind_or_404(kind_name)
    from_dt, to_dt = _range_or_400(from_, to)

    tmp_dir = Path(tempfile.mkdtemp(prefix='fleet_export_'))
    target = tmp_dir / f"{kind.name}.xlsx"
    try:
        await asyncio.to_thread(
            fetcher.client.download_export,
            kind.export_path, from_dt, to_dt, device_ids, group_ids, str(target),
        )
    except ReportRequestError as e:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise HTTPException(status_code=502, detail=str(e))
    except Exception:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise

    def cleanup():
        shutil.rmtree(tmp_dir, ignore_errors=True)

    return FileResponse(
        target,
        media_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        filename=f"{kind.name}.xlsx",
        background=BackgroundTask(cleanup),
    )


@app.get("/api/reports/{kind_name}")
async def get_report(
    kind_name: str,
    from_: str = Query(..., alias='from'),
    to: str = Query(...),
    device_ids: List[int] = Query([], alias='deviceId'),
    group_ids: List[int] = Query([], alias='groupId'),
    fetcher: ConcurrentRangeFetcher = Depends(get_fetcher),
):
    """Fetch a report split on local days; records in chronological bucket order."""
    kind = _kind_or_404(kind_name)
    from_dt, to_dt = _range_or_400(from_, to)

    buckets = fetcher.plan(from_dt, to_dt)
    _update_status(running=True, report=kind.name, buckets=len(buckets), records=0, error=None)

    try:
        records = await fetcher.fetch_report(kind, device_ids, group_ids, from_dt, to_dt)
    except BucketFetchFailed as e:
        _update_status(running=False, error=str(e))
        raise HTTPException(status_code=502, detail={
            'error': str(e.cause),
            'from': format_instant(e.bucket.start),
            'to': format_instant(e.bucket.end),
        })
    except Exception as e:
        logger.exception("Report fetch error")
        _update_status(running=False, error=str(e))
        raise

    _update_status(running=False, records=len(records), completed_at=datetime.now().isoformat())
    return [record.model_dump(mode='json') for record in records]


@app.post("/api/commands/engine")
async def send_engine_command(
    request: EngineCommandRequest,
    fetcher: ConcurrentRangeFetcher = Depends(get_fetcher),
):
    """Send engineStop (ignition on) or engineResume (ignition off)."""
    try:
        result = await asyncio.to_thread(
            fetcher.client.send_engine_command, request.deviceId, request.ignitionOn
        )
    except CommandError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "sent", "command": result}


# ============================================================
# Run server
# ============================================================

def run_server(fetcher: ConcurrentRangeFetcher, host: str = "0.0.0.0", port: int = 8000):
    """Run the FastAPI server."""
    import uvicorn
    configure(fetcher)
    uvicorn.run(app, host=host, port=port)
