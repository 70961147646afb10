from typing import List

import pytest
import pytest_asyncio
from mcp_mytrip.api_client import TourApiClient


class RecordingSleep:
    """Stands in for asyncio.sleep and records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def client(recording_sleep):
    """Provides a TourApiClient instance for testing."""
    # Use a dummy API key and a generous rate limit for testing
    api_client = TourApiClient(
        api_key="TEST_API_KEY",
        rate_limit_calls=1000,
        sleep=recording_sleep,
    )
    yield api_client
    # Clean up the shared client after tests
    await TourApiClient.close_all_connections()


def make_envelope(items=None, total_count=None, page_no=1, num_of_rows=10):
    """Wrap items in the tourism API success envelope."""
    body = {
        "items": {"item": items} if items is not None else "",
        "numOfRows": num_of_rows,
        "pageNo": page_no,
    }
    if total_count is not None:
        body["totalCount"] = total_count
    return {
        "response": {
            "header": {"resultCode": "0000", "resultMsg": "OK"},
            "body": body,
        }
    }
