import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock
from mcp_mytrip.api_client import TourApiClient
from mcp_mytrip.errors import TourApiConnectionError, TourApiTimeoutError
from mcp_mytrip.models import AreaCode, PagedResult
from mcp_mytrip.stats import TourStatsAggregator

AREAS = [
    AreaCode(code="1", name="서울", ordinal=1),
    AreaCode(code="2", name="인천", ordinal=2),
    AreaCode(code="6", name="부산", ordinal=3),
    AreaCode(code="39", name="제주도", ordinal=4),
]

REGION_COUNTS = {"1": 500, "2": 120, "6": 300, "39": 300}
TYPE_COUNTS = {"12": 900, "14": 80, "15": 40, "25": 10, "28": 0, "32": 70, "38": 5, "39": 600}


def page_of(total: int) -> PagedResult:
    return PagedResult(items=[], total_count=total, page_no=1, num_of_rows=1)


@pytest.fixture
def mock_api_client():
    """Create a mock API client answering count queries from tables."""
    mock_client = MagicMock(spec=TourApiClient)
    mock_client.get_area_codes = AsyncMock(
        return_value=PagedResult(items=AREAS, total_count=4, page_no=1, num_of_rows=100)
    )

    async def area_based_list(area_code=None, content_type_id=None, rows=10, page=1, **kwargs):
        if area_code:
            return page_of(REGION_COUNTS[area_code])
        if content_type_id:
            return page_of(TYPE_COUNTS[content_type_id])
        return page_of(2000)

    mock_client.get_area_based_list = AsyncMock(side_effect=area_based_list)
    return mock_client


@pytest.mark.asyncio
async def test_region_stats_sorted_by_count(mock_api_client):
    stats = await TourStatsAggregator(mock_api_client).get_region_stats()

    assert [(s.area_code, s.count) for s in stats] == [
        ("1", 500),
        # Equal counts keep area-code order
        ("6", 300),
        ("39", 300),
        ("2", 120),
    ]
    mock_api_client.get_area_codes.assert_awaited_once_with(rows=100)
    for call in mock_api_client.get_area_based_list.await_args_list:
        assert call.kwargs["rows"] == 1


@pytest.mark.asyncio
async def test_region_stats_failed_region_counts_zero(mock_api_client):
    original = mock_api_client.get_area_based_list.side_effect

    async def failing_for_incheon(area_code=None, **kwargs):
        if area_code == "2":
            raise TourApiConnectionError("Network request failed after 4 attempts.")
        return await original(area_code=area_code, **kwargs)

    mock_api_client.get_area_based_list.side_effect = failing_for_incheon

    stats = await TourStatsAggregator(mock_api_client).get_region_stats()

    assert len(stats) == len(AREAS)
    assert stats[-1].area_code == "2"
    assert stats[-1].count == 0
    assert [s.count for s in stats] == sorted((s.count for s in stats), reverse=True)


@pytest.mark.asyncio
async def test_region_stats_area_code_failure_returns_empty(mock_api_client):
    mock_api_client.get_area_codes.side_effect = TourApiTimeoutError("timed out")

    stats = await TourStatsAggregator(mock_api_client).get_region_stats()

    assert stats == []
    mock_api_client.get_area_based_list.assert_not_called()


@pytest.mark.asyncio
async def test_type_stats_cover_all_content_types(mock_api_client):
    stats = await TourStatsAggregator(mock_api_client).get_type_stats()

    assert len(stats) == 8
    assert stats[0].content_type_id == "12"
    assert stats[0].type_name == "Tourist Spot"
    assert stats[1].content_type_id == "39"
    assert stats[-1].count == 0


@pytest.mark.asyncio
async def test_stats_summary(mock_api_client):
    summary = await TourStatsAggregator(mock_api_client).get_stats_summary()

    assert summary.total_count == 2000
    assert [s.area_code for s in summary.top_regions] == ["1", "6", "39"]
    assert [s.content_type_id for s in summary.top_types] == ["12", "39", "14"]
    assert summary.generated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_stats_summary_total_falls_back_to_region_sum(mock_api_client):
    original = mock_api_client.get_area_based_list.side_effect

    async def failing_total(area_code=None, content_type_id=None, **kwargs):
        if area_code is None and content_type_id is None:
            raise TourApiConnectionError("Network request failed after 4 attempts.")
        return await original(area_code=area_code, content_type_id=content_type_id, **kwargs)

    mock_api_client.get_area_based_list.side_effect = failing_total

    summary = await TourStatsAggregator(mock_api_client).get_stats_summary()

    assert summary.total_count == sum(REGION_COUNTS.values())


@pytest.mark.asyncio
async def test_stats_summary_top_lists_skip_zero_counts(mock_api_client):
    async def mostly_empty(area_code=None, content_type_id=None, **kwargs):
        if area_code == "39" or content_type_id == "12":
            return page_of(7)
        return page_of(0)

    mock_api_client.get_area_based_list.side_effect = mostly_empty

    summary = await TourStatsAggregator(mock_api_client).get_stats_summary()

    assert [s.area_code for s in summary.top_regions] == ["39"]
    assert [s.content_type_id for s in summary.top_types] == ["12"]


@pytest.mark.asyncio
async def test_batch_timeout_cancels_slow_queries(mock_api_client):
    """Queries still running at the batch deadline count as 0."""
    original = mock_api_client.get_area_based_list.side_effect
    cancelled = []

    async def slow_for_jeju(area_code=None, **kwargs):
        if area_code == "39":
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(area_code)
                raise
        return await original(area_code=area_code, **kwargs)

    mock_api_client.get_area_based_list.side_effect = slow_for_jeju

    aggregator = TourStatsAggregator(mock_api_client, batch_timeout=0.05)
    stats = await aggregator.get_region_stats()

    counts = {s.area_code: s.count for s in stats}
    assert counts == {"1": 500, "2": 120, "6": 300, "39": 0}
    assert cancelled == ["39"]


@pytest.mark.asyncio
async def test_cancelling_the_caller_cancels_count_queries(mock_api_client):
    """No count query keeps running after the statistics call is cancelled."""
    started = set()
    cancelled = set()

    async def hanging_count(area_code=None, **kwargs):
        started.add(area_code)
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.add(area_code)
            raise
        return page_of(1)

    mock_api_client.get_area_based_list = AsyncMock(side_effect=hanging_count)
    aggregator = TourStatsAggregator(mock_api_client)

    outer = asyncio.ensure_future(aggregator.get_region_stats())
    while len(started) < len(AREAS):
        await asyncio.sleep(0)

    outer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await outer

    assert cancelled == {area.code for area in AREAS}
