# server.py
import os
import atexit
import signal
import asyncio
import argparse
import sys
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from fastmcp import FastMCP
from mcp_mytrip.api_client import TourApiClient
from mcp_mytrip.config import load_settings
from mcp_mytrip.models import ARRANGE_OPTIONS, CONTENT_TYPE_ID_MAP
from mcp_mytrip.stats import TourStatsAggregator
import logging
from starlette.requests import Request
from starlette.responses import JSONResponse


# Create an MCP server
mcp = FastMCP(name="My Trip Tourism API")

# Configure basic logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Lazy initialization of the API client and the aggregator
_api_client: Optional[TourApiClient] = None
_stats_aggregator: Optional[TourStatsAggregator] = None


def get_api_client() -> TourApiClient:
    """
    Lazily initialize the API client only when needed.
    Reads configuration from environment variables.

    The service key itself is resolved on the first request, so a missing key
    surfaces as MISSING_API_KEY from the tool call rather than here.
    """
    global _api_client
    if _api_client is None:
        try:
            settings = load_settings()
        except ValueError as e:
            logger.error(f"Failed to initialize TourApiClient: {e}")
            # Propagate the error so the MCP tool call fails clearly
            raise

        logger.info("Initializing TourApiClient with:")
        logger.info(f"  Cache TTL: {settings.cache_ttl}s")
        logger.info(
            f"  Rate Limit: {settings.rate_limit_calls} calls / {settings.rate_limit_period}s"
        )
        logger.info(f"  Concurrency Limit: {settings.concurrency_limit}")
        logger.info(f"  Retries: {settings.max_retries}, Timeout: {settings.timeout}s")

        _api_client = TourApiClient(
            cache_ttl=settings.cache_ttl,
            rate_limit_calls=settings.rate_limit_calls,
            rate_limit_period=settings.rate_limit_period,
            concurrency_limit=settings.concurrency_limit,
            max_retries=settings.max_retries,
            timeout=settings.timeout,
        )
        _api_client._ensure_full_initialization()
        logger.info("TourApiClient initialized successfully.")
    return _api_client


def get_stats_aggregator() -> TourStatsAggregator:
    """Lazily create the statistics aggregator on top of the shared API client."""
    global _stats_aggregator
    if _stats_aggregator is None:
        client = get_api_client()
        batch_timeout = load_settings().stats_batch_timeout
        logger.info(f"Initializing TourStatsAggregator (batch timeout: {batch_timeout})")
        _stats_aggregator = TourStatsAggregator(client, batch_timeout=batch_timeout)
    return _stats_aggregator


# Resource cleanup functions
def cleanup_resources():
    """Close the shared HTTP client; called by atexit and signal handlers."""
    logger.info("Cleaning up resources...")
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None:
        # Can't block inside a running loop
        loop.create_task(TourApiClient.close_all_connections())
        return

    try:
        asyncio.run(TourApiClient.close_all_connections())
        logger.info("Resources cleaned up successfully.")
    except Exception as e:
        logger.warning(f"Resource cleanup failed: {e}")


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    cleanup_resources()
    os._exit(0)


# Register cleanup handlers
atexit.register(cleanup_resources)
signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def resolve_content_type(content_type: str | None) -> str | None:
    """
    Map a content type given as an id ("12") or an English name
    ("Tourist Spot", case-insensitive) to its content type id.

    Raises:
        ValueError: if the content type is unknown.
    """
    if not content_type:
        return None
    if content_type in CONTENT_TYPE_ID_MAP:
        return content_type
    content_type_id = next(
        (
            k
            for k, v in CONTENT_TYPE_ID_MAP.items()
            if v.lower() == content_type.lower()
        ),
        None,
    )
    if content_type_id is None:
        valid_types = ", ".join(CONTENT_TYPE_ID_MAP.values())
        raise ValueError(
            f"Invalid content_type: '{content_type}'. Valid types are: {valid_types}"
        )
    return content_type_id


def resolve_arrange(arrange: str | None) -> str | None:
    """Validate a sort order; accepts lower case. Raises ValueError if unknown."""
    if not arrange:
        return None
    normalized = arrange.upper()
    if normalized not in ARRANGE_OPTIONS:
        raise ValueError(
            f"Invalid arrange: '{arrange}'. Valid values are: {', '.join(ARRANGE_OPTIONS)}"
        )
    return normalized


def _filter_items(result: Dict[str, Any], keys: List[str] | None) -> Dict[str, Any]:
    # Whitelist of item keys; None or [] keeps everything
    if keys:
        result["items"] = [
            {k: v for k, v in item.items() if k in keys} for item in result["items"]
        ]
    return result


# MCP Tools for the Korea Tourism API
@mcp.tool
async def search_tourism_by_keyword(
    keyword: str,
    content_type: str | None = None,
    area_code: str | None = None,
    page: int = 1,
    rows: int = 10,
    arrange: str | None = None,
    filter: List[str] | None = None,
) -> dict:
    """
    Search for tourist sites in Korea by keyword.

    Args:
        keyword (str): Search keyword (e.g., "경복궁", "한옥", "비빔밥"). Must not be blank.
        content_type (str, optional): Content type id or name. Valid values:
            - "12" / "Tourist Spot"
            - "14" / "Cultural Facility"
            - "15" / "Festival Event"
            - "25" / "Travel Course"
            - "28" / "Leisure Sports"
            - "32" / "Accommodation"
            - "38" / "Shopping"
            - "39" / "Restaurant"
        area_code (str, optional): Area code, e.g. "1" (Seoul), "6" (Busan), "39" (Jeju).
            Use get_area_codes for the full list.
        page (int, optional): Page number for pagination (default: 1)
        rows (int, optional): Number of items per page (default: 10)
        arrange (str, optional): Sort order. "A" title, "C" modified, "D" created;
            "O", "Q", "R" are the same orders restricted to items with images.
        filter (list[str], optional): Keys to keep in each item. None or [] keeps all.

    Returns:
        dict: {"total_count", "page_no", "num_of_rows", "items": [tour item, ...]}
        where each item has content_id, content_type_id, title, address,
        address_detail, area_code, map_x, map_y, first_image, first_image2,
        tel, cat1, cat2, cat3 and modified_time.
    """
    client = get_api_client()
    content_type_id = resolve_content_type(content_type)
    arrange = resolve_arrange(arrange)

    result = await client.search_keyword(
        keyword=keyword,
        area_code=area_code,
        content_type_id=content_type_id,
        rows=rows,
        page=page,
        arrange=arrange,
    )
    return _filter_items(result.to_dict(), filter)


@mcp.tool
async def get_tourism_by_area(
    area_code: str | None = None,
    sigungu_code: str | None = None,
    content_type: str | None = None,
    page: int = 1,
    rows: int = 10,
    arrange: str | None = None,
    filter: List[str] | None = None,
) -> dict:
    """
    Browse tourist sites by area and content type.

    Args:
        area_code (str, optional): Area code, e.g. "1" (Seoul), "6" (Busan), "39" (Jeju)
        sigungu_code (str, optional): District code within the area; ignored without area_code
        content_type (str, optional): Content type id or name (see search_tourism_by_keyword)
        page (int, optional): Page number for pagination (default: 1)
        rows (int, optional): Number of items per page (default: 10)
        arrange (str, optional): Sort order ("A", "C", "D", "O", "Q", "R")
        filter (list[str], optional): Keys to keep in each item. None or [] keeps all.

    Returns:
        dict: Same structure as search_tourism_by_keyword.
    """
    content_type_id = resolve_content_type(content_type)
    arrange = resolve_arrange(arrange)

    result = await get_api_client().get_area_based_list(
        area_code=area_code,
        content_type_id=content_type_id,
        sigungu_code=sigungu_code,
        rows=rows,
        page=page,
        arrange=arrange,
    )
    return _filter_items(result.to_dict(), filter)


@mcp.tool
async def get_area_codes(
    parent_area_code: str | None = None,
    page: int = 1,
    rows: int = 100,
) -> dict:
    """
    Get area codes for regions in Korea.

    Without parent_area_code this lists provinces and metropolitan cities;
    with it, the districts (sigungu) of that area.

    Returns:
        dict: {"total_count", "page_no", "num_of_rows", "items": [{"code", "name", "ordinal"}, ...]}
    """
    result = await get_api_client().get_area_codes(
        area_code=parent_area_code, rows=rows, page=page
    )
    return result.to_dict()


@mcp.tool
async def get_place_details(content_id: str) -> dict:
    """
    Get everything known about one tourist site.

    Combines the common detail (overview, homepage, address, coordinates) with
    the operating information (hours, closed days, fees, parking), the images
    and the pet travel information. Parts that cannot be loaded are returned
    empty.

    Args:
        content_id (str): Numeric content ID (e.g., "126508")

    Returns:
        dict: {"found": bool, "detail": {...} | None, "intro": {...} | None,
               "images": [...], "pet_info": {...} | None}
    """
    details = await get_api_client().get_place_details(content_id)
    if details is None:
        return {"found": False, "detail": None, "intro": None, "images": [], "pet_info": None}
    return {"found": True, **details.to_dict()}


@mcp.tool
async def get_related_places(
    content_id: str,
    area_code: str | None = None,
    content_type: str | None = None,
    limit: int = 6,
) -> dict:
    """
    Get places related to a tourist site, sorted by title.

    Related places share the area and/or the content type of the site. The
    site itself is never included. With neither area_code nor content_type
    the result is empty.

    Args:
        content_id (str): Content ID of the current site
        area_code (str, optional): Area code of the current site
        content_type (str, optional): Content type id or name of the current site
        limit (int, optional): Maximum number of places (default: 6)

    Returns:
        dict: {"items": [tour item, ...]}
    """
    content_type_id = resolve_content_type(content_type)
    items = await get_api_client().get_recommendations(
        content_id,
        area_code=area_code,
        content_type_id=content_type_id,
        limit=limit,
    )
    return {"items": [item.to_dict() for item in items]}


@mcp.tool
async def get_tourism_images(content_id: str) -> dict:
    """
    Get images of a tourist site.

    Args:
        content_id (str): Numeric content ID

    Returns:
        dict: {"content_id", "total_count", "items": [{"original_url",
               "thumbnail_url", "caption", "ordinal"}, ...]}
    """
    images = await get_api_client().get_detail_images(content_id)
    return {
        "content_id": content_id,
        "total_count": len(images),
        "items": [image.to_dict() for image in images],
    }


@mcp.tool
async def get_pet_tour_info(content_id: str) -> dict:
    """
    Get pet travel information for a tourist site (leash, size, places, fees).

    Returns:
        dict: {"found": bool, "info": {...} | None}
    """
    info = await get_api_client().get_detail_pet_tour(content_id)
    return {"found": info is not None, "info": info.to_dict() if info else None}


@mcp.tool
async def get_region_statistics() -> dict:
    """
    Count tourist sites per province/metropolitan city, largest first.

    Regions whose count could not be loaded are reported with count 0.
    """
    stats = await get_stats_aggregator().get_region_stats()
    return {"items": [stat.to_dict() for stat in stats]}


@mcp.tool
async def get_type_statistics() -> dict:
    """Count tourist sites per content type, largest first."""
    stats = await get_stats_aggregator().get_type_stats()
    return {"items": [stat.to_dict() for stat in stats]}


@mcp.tool
async def get_statistics_summary() -> dict:
    """
    Overall tourist-site count with the top 3 regions and content types.

    Returns:
        dict: {"total_count", "top_regions", "top_types", "generated_at"}
    """
    summary = await get_stats_aggregator().get_stats_summary()
    return summary.to_dict()


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    """
    Health check endpoint for HTTP transports.

    Reports healthy when the client can be built and a service key is
    configured.
    """
    try:
        client = get_api_client()
        client.build_query_params({})
        return JSONResponse(
            {
                "status": "healthy",
                "service": "My Trip Tourism API MCP Server",
                "transport": os.environ.get("MCP_TRANSPORT", "stdio"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
    except Exception as e:
        return JSONResponse(
            {
                "status": "unhealthy",
                "service": "My Trip Tourism API MCP Server",
                "error": str(e),
                "transport": os.environ.get("MCP_TRANSPORT", "stdio"),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            status_code=503,
        )


def parse_server_config(args: list[str] | None = None) -> tuple[str, dict[str, Any]]:
    """
    Parse server configuration from command line arguments and environment variables.

    Args:
        args: Command line arguments list. If None, uses sys.argv.

    Returns:
        Tuple of (transport, http_config) where:
        - transport: The selected transport protocol
        - http_config: Dictionary of HTTP configuration options (empty for stdio)
    """
    parser = argparse.ArgumentParser(description="My Trip Tourism API MCP Server")
    parser.add_argument(
        "--transport",
        choices=["stdio", "streamable-http", "sse"],
        default=None,
        help="Transport protocol to use (default: from environment or stdio)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host address for HTTP transports (default: from environment or 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for HTTP transports (default: from environment or 8000)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level for the server (default: from environment or INFO)",
    )
    parser.add_argument(
        "--path",
        type=str,
        default=None,
        help="Path for HTTP endpoints (default: from environment or /mcp)",
    )

    parsed_args = parser.parse_args(args)

    transport = parsed_args.transport or os.environ.get("MCP_TRANSPORT", "stdio")

    # Configuration for HTTP transports
    http_config = {}
    if transport in ["streamable-http", "sse"]:
        http_config.update(
            {
                "host": parsed_args.host or os.environ.get("MCP_HOST", "127.0.0.1"),
                "port": parsed_args.port
                if parsed_args.port is not None
                else int(os.environ.get("MCP_PORT", "8000")),
                "log_level": parsed_args.log_level
                or os.environ.get("MCP_LOG_LEVEL", "INFO"),
                "path": parsed_args.path or os.environ.get("MCP_PATH", "/mcp"),
            }
        )

    return transport, http_config


def run_server(transport: str, http_config: dict[str, Any]) -> None:
    """
    Run the MCP server with the given configuration.

    Args:
        transport: Transport protocol to use
        http_config: HTTP configuration dictionary
    """
    logger.info(f"Starting My Trip Tourism API MCP Server with transport: {transport}")
    if http_config:
        logger.info(f"HTTP Configuration: {http_config}")

    try:
        if transport == "stdio":
            logger.info("Using stdio transport - connect via MCP client")
            mcp.run(transport="stdio")
        elif transport in ["streamable-http", "sse"]:
            logger.info(
                f"Using {transport} transport on http://{http_config['host']}:{http_config['port']}{http_config['path']}"
            )
            mcp.run(transport=transport, **http_config)
        else:
            logger.error(f"Unknown transport: {transport}")
            sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        sys.exit(1)


def main() -> None:
    transport, http_config = parse_server_config()
    run_server(transport, http_config)


if __name__ == "__main__":
    main()
