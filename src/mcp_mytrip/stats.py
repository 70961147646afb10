import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, List, Optional, Sequence

from mcp_mytrip.api_client import TourApiClient
from mcp_mytrip.models import (
    CONTENT_TYPE_ID_MAP,
    AreaCode,
    RegionStat,
    StatsSummary,
    TypeStat,
)

logger = logging.getLogger(__name__)

# Area code lookups fit on a single page
AREA_CODE_PAGE_SIZE = 100
TOP_N = 3


class TourStatsAggregator:
    """
    Count tourist sites per region and per content type.

    Every count is the totalCount of a one-row list query. Sub-queries run
    concurrently; a failed or timed-out sub-query counts as 0 instead of
    failing the whole report.
    """

    def __init__(self, client: TourApiClient, batch_timeout: Optional[float] = None):
        """
        Args:
            client: Tourism API client used for the count queries.
            batch_timeout: Deadline in seconds for one fan-out. Sub-queries
                still pending at the deadline are cancelled and count as 0.
                None waits for all of them.
        """
        self.client = client
        self.batch_timeout = batch_timeout

    async def _count(
        self, area_code: Optional[str] = None, content_type_id: Optional[str] = None
    ) -> int:
        page = await self.client.get_area_based_list(
            area_code=area_code, content_type_id=content_type_id, rows=1, page=1
        )
        return page.total_count

    async def _gather_counts(
        self, labels: Sequence[str], calls: Sequence[Awaitable[int]]
    ) -> List[int]:
        """Run count queries concurrently, turning failures into 0."""
        tasks = [asyncio.ensure_future(call) for call in calls]
        if not tasks:
            return []

        try:
            _, pending = await asyncio.wait(tasks, timeout=self.batch_timeout)
        finally:
            # Also runs when the caller is cancelled; no task outlives the batch
            unfinished = [task for task in tasks if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.wait(unfinished)

        counts = []
        for label, task in zip(labels, tasks):
            if task in pending:
                logger.warning(f"Count for {label} did not finish in time, using 0")
                counts.append(0)
            elif task.exception() is not None:
                logger.error(f"Count for {label} failed: {task.exception()}")
                counts.append(0)
            else:
                counts.append(task.result())
        return counts

    async def _area_codes(self) -> List[AreaCode]:
        page = await self.client.get_area_codes(rows=AREA_CODE_PAGE_SIZE)
        return page.items

    async def get_region_stats(self) -> List[RegionStat]:
        """Tourist-site count per province/metropolitan city, largest first."""
        try:
            areas = await self._area_codes()
        except Exception as e:
            logger.error(f"Failed to load area codes for region statistics: {e}")
            return []

        counts = await self._gather_counts(
            [f"area {area.code}" for area in areas],
            [self._count(area_code=area.code) for area in areas],
        )
        stats = [
            RegionStat(area_code=area.code, area_name=area.name, count=count)
            for area, count in zip(areas, counts)
        ]
        # sorted() is stable; equal counts keep area-code order
        return sorted(stats, key=lambda stat: stat.count, reverse=True)

    async def get_type_stats(self) -> List[TypeStat]:
        """Tourist-site count per content type, largest first."""
        types = list(CONTENT_TYPE_ID_MAP.items())
        counts = await self._gather_counts(
            [f"content type {type_id}" for type_id, _ in types],
            [self._count(content_type_id=type_id) for type_id, _ in types],
        )
        stats = [
            TypeStat(content_type_id=type_id, type_name=name, count=count)
            for (type_id, name), count in zip(types, counts)
        ]
        return sorted(stats, key=lambda stat: stat.count, reverse=True)

    async def _total_count(self) -> Optional[int]:
        try:
            return await self._count()
        except Exception as e:
            logger.error(f"Failed to load total count: {e}")
            return None

    async def get_stats_summary(self) -> StatsSummary:
        """
        Overall count with the top regions and content types.

        The total falls back to the sum of region counts when its own query
        fails.
        """
        region_stats, type_stats, total = await asyncio.gather(
            self.get_region_stats(), self.get_type_stats(), self._total_count()
        )
        if total is None:
            total = sum(stat.count for stat in region_stats)

        return StatsSummary(
            total_count=total,
            top_regions=_top(region_stats),
            top_types=_top(type_stats),
            generated_at=datetime.now(timezone.utc),
        )


def _top(stats: list, limit: int = TOP_N) -> list:
    return [stat for stat in stats if stat.count > 0][:limit]


__all__ = ["TourStatsAggregator"]
