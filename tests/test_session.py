"""
Tests for ReportSession: stale-response guard, loading flag and selection.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from fleet_reports.api.client import ReportRequestError
from fleet_reports.reports.kinds import STOPS, TRIPS, StopRecord, TripRecord
from fleet_reports.reports.session import ReportSession

UTC = timezone.utc
FROM = datetime(2024, 3, 1, tzinfo=UTC)
TO = datetime(2024, 3, 2, tzinfo=UTC)


class GatedFetcher:
    """Fetcher whose calls complete only when their gate is opened."""

    def __init__(self):
        self.pending = []
        self.client = None

    def add(self, gate, result):
        self.pending.append((gate, result))

    async def fetch_report(self, kind, device_ids, group_ids, from_dt, to_dt):
        gate, result = self.pending.pop(0)
        await gate.wait()
        if isinstance(result, Exception):
            raise result
        return result


def test_latest_results_applied():
    async def scenario():
        fetcher = GatedFetcher()
        gate = asyncio.Event()
        gate.set()
        fetcher.add(gate, ['a', 'b'])
        session = ReportSession(fetcher, STOPS)

        applied = await session.show([1], [], FROM, TO)

        assert applied is True
        assert session.items == ['a', 'b']
        assert session.loading is False
        assert session.generation == 1

    asyncio.run(scenario())


def test_stale_fetch_does_not_overwrite_newer_one():
    """First fetch completes after the second; its result is discarded."""
    async def scenario():
        fetcher = GatedFetcher()
        slow, fast = asyncio.Event(), asyncio.Event()
        fetcher.add(slow, ['old'])
        fetcher.add(fast, ['new'])
        session = ReportSession(fetcher, STOPS)

        first = asyncio.create_task(session.show([1], [], FROM, TO))
        await asyncio.sleep(0)
        second = asyncio.create_task(session.show([2], [], FROM, TO))
        await asyncio.sleep(0)
        assert session.loading is True

        fast.set()
        assert await second is True
        assert session.items == ['new']
        assert session.loading is False

        slow.set()
        assert await first is False
        assert session.items == ['new']
        assert session.generation == 2

    asyncio.run(scenario())


def test_loading_stays_while_latest_in_flight():
    async def scenario():
        fetcher = GatedFetcher()
        old, latest = asyncio.Event(), asyncio.Event()
        fetcher.add(old, ['old'])
        fetcher.add(latest, ['latest'])
        session = ReportSession(fetcher, STOPS)

        first = asyncio.create_task(session.show([1], [], FROM, TO))
        await asyncio.sleep(0)
        second = asyncio.create_task(session.show([1], [], FROM, TO))
        await asyncio.sleep(0)

        old.set()
        assert await first is False
        assert session.loading is True
        assert session.items == []

        latest.set()
        await second
        assert session.loading is False
        assert session.items == ['latest']

    asyncio.run(scenario())


def test_latest_failure_is_raised_and_recorded():
    async def scenario():
        fetcher = GatedFetcher()
        gate = asyncio.Event()
        gate.set()
        error = ReportRequestError("backend down", status_code=503)
        fetcher.add(gate, error)
        session = ReportSession(fetcher, STOPS)
        session.items = ['previous']

        with pytest.raises(ReportRequestError):
            await session.show([1], [], FROM, TO)

        assert session.error is error
        assert session.loading is False
        assert session.items == ['previous']

    asyncio.run(scenario())


def test_stale_failure_is_discarded():
    async def scenario():
        fetcher = GatedFetcher()
        old, latest = asyncio.Event(), asyncio.Event()
        fetcher.add(old, ReportRequestError("late failure"))
        fetcher.add(latest, ['fresh'])
        session = ReportSession(fetcher, STOPS)

        first = asyncio.create_task(session.show([1], [], FROM, TO))
        await asyncio.sleep(0)
        second = asyncio.create_task(session.show([1], [], FROM, TO))
        await asyncio.sleep(0)

        latest.set()
        await second
        old.set()
        assert await first is False
        assert session.error is None
        assert session.items == ['fresh']

    asyncio.run(scenario())


class RouteClient:
    def __init__(self):
        self.calls = []

    def get_route(self, device_id, from_dt, to_dt):
        self.calls.append((device_id, from_dt, to_dt))
        return [
            {'id': 1, 'deviceId': device_id, 'latitude': 24.86, 'longitude': 67.0},
            {'id': 2, 'deviceId': device_id, 'latitude': 24.87, 'longitude': 67.1},
        ]


def test_selecting_trip_loads_route():
    async def scenario():
        fetcher = GatedFetcher()
        fetcher.client = RouteClient()
        session = ReportSession(fetcher, TRIPS)
        trip = TripRecord(deviceId=4, startTime=FROM, endTime=TO)

        await session.select(trip)

        assert session.selected is trip
        assert fetcher.client.calls == [(4, FROM, TO)]
        assert [p.id for p in session.route] == [1, 2]

        session.clear_selection()
        assert session.selected is None and session.route is None

    asyncio.run(scenario())


def test_selecting_stop_loads_no_route():
    async def scenario():
        fetcher = GatedFetcher()
        fetcher.client = RouteClient()
        session = ReportSession(fetcher, STOPS)
        stop = StopRecord(deviceId=4, latitude=24.86, longitude=67.0)

        await session.select(stop)

        assert session.selected is stop
        assert session.route is None
        assert fetcher.client.calls == []

    asyncio.run(scenario())
