import httpx
import logging
import asyncio
import re
import urllib.parse
import json
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    TypeVar,
    Union,
)
from cachetools import TTLCache
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from ratelimit import limits, RateLimitException

from mcp_mytrip.config import ApiKeyProvider, env_api_key, static_api_key
from mcp_mytrip.errors import (
    TourApiClientError,
    TourApiConnectionError,
    TourApiError,
    TourApiHttpError,
    TourApiResponseError,
    TourApiServerError,
    TourApiTimeoutError,
    TourApiValidationError,
)
from mcp_mytrip.models import (
    ARRANGE_TITLE,
    AreaCode,
    PagedResult,
    PetTourInfo,
    PlaceDetails,
    TourDetail,
    TourImage,
    TourIntro,
    TourItem,
)

logger = logging.getLogger(__name__)

SUCCESS_RESULT_CODE = "0000"

# Body preview length for diagnostics when a response cannot be parsed
RESPONSE_PREVIEW_LENGTH = 500

# User-facing messages for well-known upstream result codes
FRIENDLY_RESULT_MESSAGES = {
    "SERVICE_KEY_IS_NOT_REGISTERED": "The API key is not registered. Check the environment variables.",
    "SERVICE_KEY_IS_NOT_VALID": "The API key is not valid. Check the API key.",
    "NO_DATA": "No data found. Try different search conditions.",
}

# Upstream ids are ASCII digits only
_CONTENT_ID_RE = re.compile(r"[0-9]+")

T = TypeVar("T")


# --- Response envelopes ---


@dataclass(frozen=True)
class SuccessEnvelope:
    """Wrapped response whose header carries the success result code."""

    result_code: str
    result_msg: str
    body: Dict[str, Any]


@dataclass(frozen=True)
class WrapperErrorEnvelope:
    """Wrapped response (response.header) with a non-success result code."""

    result_code: str
    result_msg: str


@dataclass(frozen=True)
class FlatErrorEnvelope:
    """Unwrapped error: resultCode/resultMsg at the top level."""

    result_code: str
    result_msg: str


Envelope = Union[SuccessEnvelope, WrapperErrorEnvelope, FlatErrorEnvelope]


def _preview(text: str) -> str:
    if len(text) > RESPONSE_PREVIEW_LENGTH:
        return text[:RESPONSE_PREVIEW_LENGTH] + "..."
    return text


def decode_envelope(data: Dict[str, Any]) -> Envelope:
    """
    Classify a decoded JSON object into one of the envelope shapes.

    Raises:
        TourApiResponseError: INVALID_RESPONSE_STRUCTURE when the object matches
            neither the wrapped shape nor the flat error shape.
    """
    wrapper = data.get("response")
    if isinstance(wrapper, dict):
        header = wrapper.get("header")
        header = header if isinstance(header, dict) else {}
        result_code = str(header.get("resultCode") or "UNKNOWN")
        result_msg = str(header.get("resultMsg") or "Unknown error")
        if result_code != SUCCESS_RESULT_CODE:
            return WrapperErrorEnvelope(result_code, result_msg)
        body = wrapper.get("body")
        return SuccessEnvelope(
            result_code, result_msg, body if isinstance(body, dict) else {}
        )

    if "resultCode" in data or "resultMsg" in data:
        return FlatErrorEnvelope(
            str(data.get("resultCode") or "UNKNOWN"),
            str(data.get("resultMsg") or "Unknown error"),
        )

    keys = ", ".join(data.keys()) or "none"
    raise TourApiResponseError(
        f"Unexpected API response structure (fields: {keys}). Check the API service status.",
        code="INVALID_RESPONSE_STRUCTURE",
    )


def parse_api_response(response: httpx.Response) -> SuccessEnvelope:
    """
    Parse the tourism API envelope and raise typed errors for failures.

    The returned envelope still holds the raw body; item cardinality is
    handled by the endpoint methods.
    """
    status = response.status_code
    text = response.text

    if not text or not text.strip():
        raise TourApiResponseError(
            "Empty response received from tourism API. Check the API key.",
            code="EMPTY_RESPONSE",
            status_code=status,
        )

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error(
            f"Failed to parse tourism API response (status {status}): {_preview(text)}"
        )
        raise TourApiResponseError(
            "Invalid response format from tourism API. Check the API key and service status.",
            code="INVALID_JSON",
            status_code=status,
            original_error=e,
        ) from e

    if data is None:
        raise TourApiResponseError(
            "Empty response received from tourism API. Check the API key.",
            code="EMPTY_RESPONSE",
            status_code=status,
        )

    if not isinstance(data, dict):
        logger.error(
            f"Tourism API response is not an object ({type(data).__name__}): {_preview(text)}"
        )
        raise TourApiResponseError(
            "Invalid response format from tourism API. Check the API key and service status.",
            code="INVALID_RESPONSE_STRUCTURE",
            status_code=status,
        )

    try:
        envelope = decode_envelope(data)
    except TourApiResponseError as e:
        logger.error(f"{e.message} Body: {_preview(text)}")
        e.status_code = status
        raise

    if isinstance(envelope, SuccessEnvelope):
        return envelope

    message = FRIENDLY_RESULT_MESSAGES.get(envelope.result_code, envelope.result_msg)
    logger.error(
        f"Tourism API error response ({type(envelope).__name__}): "
        f"{envelope.result_code} {envelope.result_msg}"
    )
    raise TourApiResponseError(message, code=envelope.result_code, status_code=status)


def coerce_item_list(body: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Return body.items.item as a list: wraps a single object, [] when absent."""
    items = body.get("items")
    # An empty result arrives as items == ""
    if not isinstance(items, dict):
        return []
    item = items.get("item")
    if isinstance(item, list):
        entries = [entry for entry in item if isinstance(entry, dict)]
        if len(entries) != len(item):
            logger.warning(
                f"Skipping {len(item) - len(entries)} non-object entries in items.item"
            )
        return entries
    if isinstance(item, dict):
        return [item]
    return []


def coerce_single_item(body: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    items = coerce_item_list(body)
    return items[0] if items else None


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _validate_content_id(content_id: str) -> None:
    if not content_id or not _CONTENT_ID_RE.fullmatch(str(content_id)):
        raise TourApiValidationError(
            "A valid numeric content ID is required.", "INVALID_CONTENT_ID"
        )


class TourApiClient:
    """
    Client for the Korea Tourism Organization API (KorService2).

    Features:
    - Response caching with TTL
    - Rate limiting and a concurrency limit to respect API quotas
    - Per-attempt timeout and retries with exponential backoff
    - Typed results and a single error family
    - Connection pooling
    """

    # Base URL for the Korean service
    BASE_URL = "https://apis.data.go.kr/B551011/KorService2"

    # --- Constants for API Parameters ---
    MOBILE_OS = "ETC"
    MOBILE_APP = "MyTrip"
    RESPONSE_FORMAT = "json"
    DEFAULT_NUM_OF_ROWS = 10
    DEFAULT_PAGE_NO = 1
    DEFAULT_RECOMMENDATION_LIMIT = 6
    DEFAULT_TIMEOUT = 10.0
    MAX_RETRIES = 3
    # --- End Constants ---

    AREA_CODE_ENDPOINT = "/areaCode2"
    AREA_BASED_LIST_ENDPOINT = "/areaBasedList2"
    SEARCH_KEYWORD_ENDPOINT = "/searchKeyword2"
    DETAIL_COMMON_ENDPOINT = "/detailCommon2"
    DETAIL_INTRO_ENDPOINT = "/detailIntro2"
    DETAIL_IMAGE_ENDPOINT = "/detailImage2"
    DETAIL_PET_TOUR_ENDPOINT = "/detailPetTour2"

    # Fixed parameters left out of cache keys
    _UNCACHED_PARAMS = ("MobileOS", "MobileApp", "serviceKey", "_type")

    # Class-level connection pool shared by all instances
    _shared_client: ClassVar[Optional[httpx.AsyncClient]] = None
    _client_lock: ClassVar[asyncio.Lock] = asyncio.Lock()

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_key_provider: Optional[ApiKeyProvider] = None,
        cache_ttl: int = 3600,
        rate_limit_calls: int = 10,
        rate_limit_period: int = 1,
        concurrency_limit: int = 10,
        max_retries: int = MAX_RETRIES,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the client. The service key is resolved lazily.

        Args:
            api_key: Static service key. Takes precedence over api_key_provider.
            api_key_provider: Callable returning the service key; defaults to
                reading TOUR_API_KEY / NEXT_PUBLIC_TOUR_API_KEY.
            cache_ttl: Time-to-live for cached responses in seconds (0 disables).
            rate_limit_calls: Maximum number of API calls per period.
            rate_limit_period: Rate limit period in seconds.
            concurrency_limit: Maximum number of concurrent API requests.
            max_retries: Retries after the first failed attempt.
            timeout: Per-attempt timeout in seconds.
            http_client: Optional httpx client; the shared pool is used otherwise.
            sleep: Coroutine used for backoff delays.
        """
        if api_key is not None:
            self._api_key_provider = static_api_key(api_key)
        else:
            self._api_key_provider = api_key_provider or env_api_key

        self._cache_ttl = cache_ttl
        self._rate_limit_calls = rate_limit_calls
        self._rate_limit_period = rate_limit_period
        self._concurrency_limit = concurrency_limit
        self.max_retries = max_retries
        self.timeout = timeout
        self._http_client = http_client
        self._sleep = sleep

        # Lazy initialization flags/placeholders
        self._is_fully_initialized = False
        self._cache: Optional[TTLCache] = None
        self._request_semaphore: Optional[asyncio.Semaphore] = None
        self._check_rate_limit: Optional[Callable[[], None]] = None

    def _ensure_full_initialization(self):
        """Ensure all initialization tasks are completed before first API request"""
        if self._is_fully_initialized:
            return

        if self._cache_ttl > 0:
            self._cache = TTLCache(maxsize=1000, ttl=self._cache_ttl)

        self._request_semaphore = asyncio.Semaphore(self._concurrency_limit)

        @limits(calls=self._rate_limit_calls, period=self._rate_limit_period)
        def check_rate_limit() -> None:
            return None

        self._check_rate_limit = check_rate_limit
        self._is_fully_initialized = True

    @classmethod
    async def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client with connection pooling"""
        async with cls._client_lock:
            if cls._shared_client is None:
                cls._shared_client = httpx.AsyncClient(
                    limits=httpx.Limits(
                        max_connections=100, max_keepalive_connections=20
                    ),
                    timeout=httpx.Timeout(30.0),
                )
            return cls._shared_client

    @classmethod
    async def close_all_connections(cls):
        """Close the shared client connection - call this when your application is shutting down"""
        async with cls._client_lock:
            if cls._shared_client is not None:
                await cls._shared_client.aclose()
                cls._shared_client = None

    # --- Request building ---

    def build_query_params(self, params: Mapping[str, Any]) -> Dict[str, str]:
        """
        Build the full query for a request.

        Injects the service key and the fixed MobileOS/MobileApp/_type fields,
        then copies every caller value that is neither None nor "".

        Raises:
            TourApiConfigError: if no service key is configured.
        """
        query = {
            "serviceKey": self._api_key_provider(),
            "MobileOS": self.MOBILE_OS,
            "MobileApp": self.MOBILE_APP,
            "_type": self.RESPONSE_FORMAT,
        }
        for key, value in params.items():
            if value is None or value == "":
                continue
            query[key] = str(value)
        return query

    def _build_url(self, endpoint: str, query: Mapping[str, str]) -> str:
        params = dict(query)
        service_key = params.pop("serviceKey")
        # Portal keys are often issued pre-encoded; only encode what is not
        encoded_key = urllib.parse.quote(service_key, safe="%")
        encoded_params = urllib.parse.urlencode(params)
        return f"{self.BASE_URL}{endpoint}?serviceKey={encoded_key}&{encoded_params}"

    def _get_cache_key(self, endpoint: str, query: Mapping[str, str]) -> str:
        """Generate a unique cache key for an API request."""
        sorted_params = sorted(
            (k, v) for k, v in query.items() if k not in self._UNCACHED_PARAMS
        )
        return f"{endpoint}?" + "&".join(f"{k}={v}" for k, v in sorted_params)

    # --- Transport ---

    async def _wait_for_rate_limit(self) -> None:
        assert self._check_rate_limit is not None
        while True:
            try:
                self._check_rate_limit()
                return
            except RateLimitException as e:
                await asyncio.sleep(e.period_remaining)

    async def _send_once(self, url: str, timeout: float) -> httpx.Response:
        """Perform a single GET attempt bounded by timeout."""
        self._ensure_full_initialization()
        semaphore = self._request_semaphore
        assert semaphore is not None, "Semaphore should be initialized"

        client = self._http_client or await self.get_shared_client()
        async with semaphore:
            await self._wait_for_rate_limit()
            try:
                response = await asyncio.wait_for(client.get(url), timeout=timeout)
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise TourApiTimeoutError(
                    "The request timed out. Please try again later.",
                    original_error=e,
                ) from e

        if not response.is_success:
            status_code = response.status_code
            message = f"HTTP {status_code}: {response.reason_phrase}"
            if 400 <= status_code < 500:
                raise TourApiClientError(message, status_code)
            if status_code >= 500:
                raise TourApiServerError(message, status_code)
            raise TourApiHttpError(message, status_code)

        return response

    async def fetch_with_retry(
        self,
        url: str,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        GET url with a per-attempt timeout and exponential backoff.

        Timeouts are raised immediately as TIMEOUT_ERROR. Other failures are
        retried up to max_retries times, waiting 1s, 2s, 4s, ... between
        attempts, then surfaced as NETWORK_ERROR.
        """
        if max_retries is None:
            max_retries = self.max_retries
        if timeout is None:
            timeout = self.timeout

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(multiplier=1, exp_base=2),
            retry=retry_if_exception_type((httpx.HTTPError, TourApiHttpError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send_once(url, timeout)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise TourApiConnectionError(
                f"Network request failed after {max_retries + 1} attempts.",
                original_error=last_error,
            ) from last_error
        return response

    async def _request(
        self, endpoint: str, params: Mapping[str, Any], use_cache: bool = True
    ) -> SuccessEnvelope:
        """Build, send and parse one API call, consulting the response cache."""
        self._ensure_full_initialization()
        query = self.build_query_params(params)

        cache_key = self._get_cache_key(endpoint, query)
        if use_cache and self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        response = await self.fetch_with_retry(self._build_url(endpoint, query))
        envelope = parse_api_response(response)

        if use_cache and self._cache is not None:
            self._cache[cache_key] = envelope
        return envelope

    @staticmethod
    def _build_page(
        envelope: SuccessEnvelope,
        factory: Callable[[Mapping[str, Any]], T],
        page: int,
        rows: int,
    ) -> PagedResult[T]:
        body = envelope.body
        items: List[T] = []
        for raw in coerce_item_list(body):
            try:
                items.append(factory(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed item: {e}")

        return PagedResult(
            items=items,
            total_count=_to_int(body.get("totalCount")) or len(items),
            page_no=_to_int(body.get("pageNo")) or page,
            num_of_rows=_to_int(body.get("numOfRows")) or rows,
        )

    # --- Endpoints ---

    async def get_area_codes(
        self,
        area_code: Optional[str] = None,
        rows: int = DEFAULT_NUM_OF_ROWS,
        page: int = DEFAULT_PAGE_NO,
    ) -> PagedResult[AreaCode]:
        """
        Get the list of area codes (areaCode2).

        Without area_code this returns the provinces/metropolitan cities;
        with it, the sigungu codes of that area.
        """
        envelope = await self._request(
            self.AREA_CODE_ENDPOINT,
            {"numOfRows": rows, "pageNo": page, "areaCode": area_code},
        )
        return self._build_page(envelope, AreaCode.from_api, page, rows)

    async def get_area_based_list(
        self,
        area_code: Optional[str] = None,
        content_type_id: Optional[str] = None,
        sigungu_code: Optional[str] = None,
        rows: int = DEFAULT_NUM_OF_ROWS,
        page: int = DEFAULT_PAGE_NO,
        arrange: Optional[str] = None,
    ) -> PagedResult[TourItem]:
        """
        Get a list of tourist sites filtered by area and content type.

        Args:
            area_code: Area code to filter results
            content_type_id: Content type ID to filter results
            sigungu_code: Sigungu code, only sent together with area_code
            rows: Number of items per page
            page: Page number for pagination
            arrange: Sort order (A, C, D, O, Q, R)
        """
        params: Dict[str, Any] = {
            "areaCode": area_code,
            "contentTypeId": content_type_id,
            "numOfRows": rows,
            "pageNo": page,
            "arrange": arrange,
        }
        if area_code and sigungu_code:
            params["sigunguCode"] = sigungu_code

        envelope = await self._request(self.AREA_BASED_LIST_ENDPOINT, params)
        return self._build_page(envelope, TourItem.from_api, page, rows)

    async def search_keyword(
        self,
        keyword: str,
        area_code: Optional[str] = None,
        content_type_id: Optional[str] = None,
        rows: int = DEFAULT_NUM_OF_ROWS,
        page: int = DEFAULT_PAGE_NO,
        arrange: Optional[str] = None,
    ) -> PagedResult[TourItem]:
        """
        Search tourist sites by keyword (searchKeyword2).

        Raises:
            TourApiValidationError: INVALID_KEYWORD for an empty or blank keyword.
        """
        if not keyword or not keyword.strip():
            raise TourApiValidationError(
                "Please enter a search keyword.", "INVALID_KEYWORD"
            )

        envelope = await self._request(
            self.SEARCH_KEYWORD_ENDPOINT,
            {
                "keyword": keyword.strip(),
                "areaCode": area_code,
                "contentTypeId": content_type_id,
                "numOfRows": rows,
                "pageNo": page,
                "arrange": arrange,
            },
        )
        return self._build_page(envelope, TourItem.from_api, page, rows)

    async def get_detail_common(
        self,
        content_id: str,
        content_type_id: Optional[str] = None,
        overview_yn: Literal["Y", "N"] = "Y",
    ) -> Optional[TourDetail]:
        """Get common details of a tourist site, or None when there is no data."""
        _validate_content_id(content_id)

        envelope = await self._request(
            self.DETAIL_COMMON_ENDPOINT,
            {
                "contentId": content_id,
                "contentTypeId": content_type_id,
                "overviewYN": overview_yn,
            },
        )
        item = coerce_single_item(envelope.body)
        return TourDetail.from_api(item) if item else None

    async def get_detail_intro(
        self, content_id: str, content_type_id: str
    ) -> Optional[TourIntro]:
        """
        Get operating information (hours, closed days, fees, parking).

        Raises:
            TourApiValidationError: MISSING_CONTENT_TYPE_ID or INVALID_CONTENT_ID.
        """
        if not content_type_id:
            raise TourApiValidationError(
                "A content type ID is required.", "MISSING_CONTENT_TYPE_ID"
            )
        _validate_content_id(content_id)

        envelope = await self._request(
            self.DETAIL_INTRO_ENDPOINT,
            {"contentId": content_id, "contentTypeId": content_type_id},
        )
        item = coerce_single_item(envelope.body)
        return TourIntro.from_api(item, content_type_id=content_type_id) if item else None

    async def get_detail_images(
        self,
        content_id: str,
        image_yn: Literal["Y", "N"] = "Y",
        sub_image_yn: Literal["Y", "N"] = "Y",
    ) -> List[TourImage]:
        """Get images of a tourist site; entries without an absolute URL are dropped."""
        _validate_content_id(content_id)

        envelope = await self._request(
            self.DETAIL_IMAGE_ENDPOINT,
            {"contentId": content_id, "imageYN": image_yn, "subImageYN": sub_image_yn},
        )
        images = [TourImage.from_api(item) for item in coerce_item_list(envelope.body)]
        return [image for image in images if image.is_absolute]

    async def get_detail_pet_tour(self, content_id: str) -> Optional[PetTourInfo]:
        """Get pet travel information, or None when there is no data."""
        _validate_content_id(content_id)

        envelope = await self._request(
            self.DETAIL_PET_TOUR_ENDPOINT, {"contentId": content_id}
        )
        item = coerce_single_item(envelope.body)
        return PetTourInfo.from_api(item) if item else None

    async def get_place_details(self, content_id: str) -> Optional[PlaceDetails]:
        """
        Fetch everything shown on a place page.

        The common detail is required and its errors propagate. Intro, images
        and pet information are fetched concurrently; a failure in any of them
        yields an empty value.
        """
        detail = await self.get_detail_common(content_id)
        if detail is None:
            return None

        intro, images, pet_info = await asyncio.gather(
            self.get_detail_intro(content_id, detail.content_type_id),
            self.get_detail_images(content_id),
            self.get_detail_pet_tour(content_id),
            return_exceptions=True,
        )

        for label, result in (("intro", intro), ("images", images), ("pet info", pet_info)):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Failed to load {label} for {content_id}: {result}")

        return PlaceDetails(
            detail=detail,
            intro=None if isinstance(intro, BaseException) else intro,
            images=[] if isinstance(images, BaseException) else images,
            pet_info=None if isinstance(pet_info, BaseException) else pet_info,
        )

    async def get_recommendations(
        self,
        content_id: str,
        area_code: Optional[str] = None,
        content_type_id: Optional[str] = None,
        limit: int = DEFAULT_RECOMMENDATION_LIMIT,
    ) -> List[TourItem]:
        """
        Get places related to a given place: same area and/or same content type.

        Returns an empty list without a request when neither filter is given.
        The place itself is excluded from the result.
        """
        if not area_code and not content_type_id:
            return []

        # Over-fetch so removing the place itself still leaves `limit` items
        page = await self.get_area_based_list(
            area_code=area_code,
            content_type_id=content_type_id,
            rows=limit + 5,
            arrange=ARRANGE_TITLE,
        )
        related = [item for item in page.items if item.content_id != content_id]
        return related[:limit]


__all__ = [
    "TourApiClient",
    "TourApiError",
    "SuccessEnvelope",
    "WrapperErrorEnvelope",
    "FlatErrorEnvelope",
    "decode_envelope",
    "parse_api_response",
    "coerce_item_list",
    "coerce_single_item",
]
