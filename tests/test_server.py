import pytest
from unittest.mock import patch, MagicMock, AsyncMock
from fastmcp import Client
from mcp_mytrip import server
from mcp_mytrip.server import (
    mcp,
    get_api_client,
    get_stats_aggregator,
    cleanup_resources,
    resolve_arrange,
    resolve_content_type,
)
from mcp_mytrip.api_client import TourApiClient


# Reset the lazily created singletons before each test
@pytest.fixture(autouse=True)
def reset_global_client(monkeypatch):
    monkeypatch.setattr(server, "_api_client", None)
    monkeypatch.setattr(server, "_stats_aggregator", None)


# Fixture to provide a mocked API client instance
@pytest.fixture
def mock_api_client():
    mock_client = MagicMock(spec=TourApiClient)
    mock_client._ensure_full_initialization = MagicMock()
    return mock_client


@pytest.mark.asyncio
@patch("mcp_mytrip.server.get_api_client")
async def test_search_tourism_invalid_content_type(
    mock_get_api_client, mock_api_client, monkeypatch
):
    """
    Test that search_tourism_by_keyword raises for an unknown content_type.
    """
    monkeypatch.setenv("TOUR_API_KEY", "test-api-key-12345")
    mock_get_api_client.return_value = mock_api_client

    invalid_type = "InvalidContentType"

    client = Client(mcp)

    async with client:
        with pytest.raises(Exception) as excinfo:
            await client.call_tool(
                "search_tourism_by_keyword",
                {"keyword": "Test", "content_type": invalid_type},
            )

        assert invalid_type in str(excinfo.value)
        assert "Valid types are:" in str(excinfo.value)
        # Ensure the underlying client method was NOT called
        mock_api_client.search_keyword.assert_not_called()


@pytest.mark.parametrize(
    "content_type, expected",
    [
        (None, None),
        ("", None),
        ("12", "12"),
        ("Restaurant", "39"),
        ("festival event", "15"),
    ],
)
def test_resolve_content_type(content_type, expected):
    assert resolve_content_type(content_type) == expected


def test_resolve_content_type_unknown():
    with pytest.raises(ValueError) as excinfo:
        resolve_content_type("76")

    assert "Valid types are: Tourist Spot" in str(excinfo.value)


@pytest.mark.parametrize(
    "arrange, expected",
    [(None, None), ("", None), ("A", "A"), ("q", "Q"), ("R", "R")],
)
def test_resolve_arrange(arrange, expected):
    assert resolve_arrange(arrange) == expected


def test_resolve_arrange_unknown():
    with pytest.raises(ValueError) as excinfo:
        resolve_arrange("B")

    assert "Valid values are: A, C, D, O, Q, R" in str(excinfo.value)


@pytest.mark.asyncio
@patch("mcp_mytrip.server.get_api_client")
async def test_search_tourism_invalid_arrange(
    mock_get_api_client, mock_api_client, monkeypatch
):
    monkeypatch.setenv("TOUR_API_KEY", "test-api-key-12345")
    mock_get_api_client.return_value = mock_api_client

    client = Client(mcp)

    async with client:
        with pytest.raises(Exception) as excinfo:
            await client.call_tool(
                "search_tourism_by_keyword", {"keyword": "Test", "arrange": "Z"}
            )

        assert "Invalid arrange" in str(excinfo.value)
        mock_api_client.search_keyword.assert_not_called()


def test_cleanup_resources_closes_shared_client(monkeypatch):
    close = AsyncMock()
    monkeypatch.setattr(TourApiClient, "close_all_connections", close)

    cleanup_resources()

    close.assert_awaited_once()


def test_cleanup_resources_logs_failure(monkeypatch, caplog):
    monkeypatch.setattr(
        TourApiClient, "close_all_connections", AsyncMock(side_effect=RuntimeError("boom"))
    )

    cleanup_resources()

    assert "Resource cleanup failed: boom" in caplog.text


@pytest.mark.parametrize(
    "env_var, invalid_value",
    [
        ("MYTRIP_CACHE_TTL", "not-an-int"),
        ("MYTRIP_RATE_LIMIT_CALLS", "five"),
        ("MYTRIP_RATE_LIMIT_PERIOD", "one_sec"),
        ("MYTRIP_CONCURRENCY_LIMIT", "10.5"),
        ("MYTRIP_MAX_RETRIES", "three"),
        ("MYTRIP_TIMEOUT", "ten seconds"),
    ],
)
def test_get_api_client_invalid_env_var(monkeypatch, env_var, invalid_value):
    """
    Test that get_api_client raises ValueError if numeric env vars are invalid.
    """
    monkeypatch.setenv("TOUR_API_KEY", "valid-key-for-test")
    monkeypatch.setenv(env_var, invalid_value)

    with pytest.raises(ValueError) as excinfo:
        get_api_client()

    assert invalid_value in str(excinfo.value)


def test_get_api_client_reads_settings(monkeypatch):
    monkeypatch.setenv("MYTRIP_MAX_RETRIES", "5")
    monkeypatch.setenv("MYTRIP_TIMEOUT", "2.5")

    api_client = get_api_client()

    assert api_client.max_retries == 5
    assert api_client.timeout == 2.5
    # Created once and reused
    assert get_api_client() is api_client


def test_get_api_client_without_key_defers_error(monkeypatch):
    """A missing key does not prevent the client from being created."""
    monkeypatch.delenv("TOUR_API_KEY", raising=False)
    monkeypatch.delenv("NEXT_PUBLIC_TOUR_API_KEY", raising=False)

    assert isinstance(get_api_client(), TourApiClient)


def test_get_stats_aggregator_batch_timeout(monkeypatch):
    monkeypatch.setenv("MYTRIP_STATS_BATCH_TIMEOUT", "15")

    aggregator = get_stats_aggregator()

    assert aggregator.batch_timeout == 15.0
    assert aggregator.client is get_api_client()


def test_get_stats_aggregator_batch_timeout_disabled(monkeypatch):
    monkeypatch.setenv("MYTRIP_STATS_BATCH_TIMEOUT", "")

    assert get_stats_aggregator().batch_timeout is None
