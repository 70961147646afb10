from mcp_mytrip.api_client import TourApiClient
from mcp_mytrip.errors import TourApiError
from mcp_mytrip.stats import TourStatsAggregator

__all__ = ["TourApiClient", "TourApiError", "TourStatsAggregator"]
