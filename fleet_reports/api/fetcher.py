"""
Data Fetcher - splits report ranges into local-day buckets and fetches them concurrently.

Workflow:
1. Split requested range into buckets (reports/buckets.py)
2. Issue one request per bucket, all on one event loop
3. Wait for all of them; first failure fails the whole batch
4. Concatenate results in bucket order

In-flight requests are bounded by max_concurrency (None = unbounded).
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Sequence

from fleet_reports.api.client import ReportClient
from fleet_reports.config import Config, DEFAULT_LOCAL_DAY_OFFSET, DEFAULT_MAX_CONCURRENCY
from fleet_reports.reports.buckets import Bucket, split_range
from fleet_reports.reports.kinds import BucketFetch, ReportKind

logger = logging.getLogger('api.fetcher')


class BucketFetchFailed(Exception):
    """Raised when the request for one bucket fails."""

    def __init__(self, bucket: Bucket, cause: BaseException):
        self.bucket = bucket
        self.cause = cause
        super().__init__(f"Fetch failed for {bucket}: {cause}")


class AggregateFetchFailed(BucketFetchFailed):
    """Raised by fetch_all when any bucket fails. No partial results are kept."""

    def __init__(self, bucket: Bucket, cause: BaseException, bucket_count: int):
        super().__init__(bucket, cause)
        self.bucket_count = bucket_count


async def fetch_all(
    buckets: Iterable[Bucket],
    device_ids: Iterable[int],
    group_ids: Iterable[int],
    fetch_bucket: BucketFetch,
    max_concurrency: Optional[int] = None,
) -> List[Any]:
    """
    Fetch every bucket concurrently and merge results.

    Args:
        buckets: Buckets in chronological order
        device_ids: Devices passed to every request
        group_ids: Groups passed to every request
        fetch_bucket: Coroutine function (bucket, device_ids, group_ids) -> records
        max_concurrency: Max requests in flight, None for no limit

    Returns:
        Records of all buckets, concatenated in bucket order

    Raises:
        AggregateFetchFailed: if any bucket request fails
    """
    buckets = list(buckets)
    device_ids = list(device_ids)
    group_ids = list(group_ids)
    if not buckets:
        return []

    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def run(bucket: Bucket) -> List[Any]:
        try:
            if semaphore is None:
                return await fetch_bucket(bucket, device_ids, group_ids)
            async with semaphore:
                return await fetch_bucket(bucket, device_ids, group_ids)
        except Exception as e:
            logger.warning(f"Bucket {bucket} failed: {e}")
            raise BucketFetchFailed(bucket, e) from e

    tasks = [asyncio.create_task(run(bucket)) for bucket in buckets]

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise

    # Earliest bucket among the failures seen so far
    failures = [task.exception() for task in tasks if task in done and task.exception() is not None]
    if failures:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        first = failures[0]
        raise AggregateFetchFailed(first.bucket, first.cause, len(buckets)) from first.cause

    results = []
    for task in tasks:
        results.extend(task.result())
    return results


class ConcurrentRangeFetcher:
    """
    Runs bucketed reports against a ReportClient.

    Holds the local-day offset and concurrency cap so callers only pass
    the report kind, filters and range.
    """

    def __init__(
        self,
        client: ReportClient,
        offset: timedelta = DEFAULT_LOCAL_DAY_OFFSET,
        max_concurrency: Optional[int] = DEFAULT_MAX_CONCURRENCY,
    ):
        self.client = client
        self.offset = offset
        self.max_concurrency = max_concurrency

    @classmethod
    def from_config(cls, config: Config, client: Optional[ReportClient] = None) -> 'ConcurrentRangeFetcher':
        """Create fetcher (and client, if not given) from configuration."""
        return cls(
            client or ReportClient(config),
            offset=config.local_day_offset,
            max_concurrency=config.reports.max_concurrency,
        )

    def plan(self, from_dt: datetime, to_dt: datetime) -> List[Bucket]:
        """Buckets that a report over this range would request."""
        return split_range(from_dt, to_dt, self.offset)

    async def fetch_report(
        self,
        kind: ReportKind,
        device_ids: Sequence[int],
        group_ids: Sequence[int],
        from_dt: datetime,
        to_dt: datetime,
    ) -> List[Any]:
        """
        Fetch a bucketed report.

        Raises:
            InvalidRange: if from_dt is after to_dt (before any request is made)
            AggregateFetchFailed: if any bucket request fails
        """
        buckets = self.plan(from_dt, to_dt)
        logger.info(f"Fetching {kind.name}: {len(buckets)} bucket(s), "
                    f"{len(device_ids)} device(s), {len(group_ids)} group(s)")

        records = await fetch_all(
            buckets,
            device_ids,
            group_ids,
            kind.bucket_fetcher(self.client),
            max_concurrency=self.max_concurrency,
        )

        logger.info(f"Fetched {len(records)} {kind.name} record(s)")
        return records

    def run_report(
        self,
        kind: ReportKind,
        device_ids: Sequence[int],
        group_ids: Sequence[int],
        from_dt: datetime,
        to_dt: datetime,
    ) -> List[Any]:
        """Synchronous wrapper around fetch_report for scripts and the CLI."""
        return asyncio.run(self.fetch_report(kind, device_ids, group_ids, from_dt, to_dt))
