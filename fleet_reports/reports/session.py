"""
Report session: the state one report page owns.

Each show() call gets a generation number. When it completes, results are
applied only if no newer show() was issued in the meantime, so a slow
earlier fetch never overwrites a newer one.
"""

import asyncio
import itertools
import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from fleet_reports.api.fetcher import ConcurrentRangeFetcher
from fleet_reports.reports.kinds import ReportKind, RoutePosition, TripRecord

logger = logging.getLogger('reports.session')


class ReportSession:
    """Latest items, loading flag and selection for one report kind."""

    def __init__(self, fetcher: ConcurrentRangeFetcher, kind: ReportKind):
        self.fetcher = fetcher
        self.kind = kind
        self.items: List[Any] = []
        self.loading = False
        self.error: Optional[BaseException] = None
        self.selected: Optional[Any] = None
        self.route: Optional[List[RoutePosition]] = None
        self._generations = itertools.count(1)
        self._latest = 0

    @property
    def generation(self) -> int:
        """Generation of the most recently issued show()."""
        return self._latest

    def _is_latest(self, generation: int) -> bool:
        return generation == self._latest

    async def show(
        self,
        device_ids: Sequence[int],
        group_ids: Sequence[int],
        from_dt: datetime,
        to_dt: datetime,
    ) -> bool:
        """
        Fetch the report and apply it if still current.

        Returns:
            True if results were applied, False if a newer show() superseded this one

        Raises:
            InvalidRange, AggregateFetchFailed: only for the latest generation
        """
        generation = next(self._generations)
        self._latest = generation
        self.loading = True
        self.error = None

        try:
            records = await self.fetcher.fetch_report(self.kind, device_ids, group_ids, from_dt, to_dt)
        except Exception as e:
            if not self._is_latest(generation):
                logger.debug(f"Discarding failure of stale {self.kind.name} fetch #{generation}: {e}")
                return False
            self.error = e
            self.loading = False
            raise

        if not self._is_latest(generation):
            logger.debug(f"Discarding stale {self.kind.name} fetch #{generation} (latest #{self._latest})")
            return False

        self.items = records
        self.selected = None
        self.route = None
        self.loading = False
        return True

    def show_sync(self, device_ids, group_ids, from_dt, to_dt) -> bool:
        return asyncio.run(self.show(device_ids, group_ids, from_dt, to_dt))

    async def select(self, item: Any) -> None:
        """Select an item. For trips, the route of the trip is loaded."""
        self.selected = item
        self.route = None
        if isinstance(item, TripRecord) and item.startTime and item.endTime:
            raw = await asyncio.to_thread(
                self.fetcher.client.get_route,
                item.deviceId,
                item.startTime,
                item.endTime,
            )
            # Selection may have changed while the route was loading
            if self.selected is item:
                self.route = [RoutePosition.model_validate(p) for p in raw]

    def clear_selection(self) -> None:
        self.selected = None
        self.route = None
