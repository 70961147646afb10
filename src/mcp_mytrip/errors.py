from typing import Optional


class TourApiError(Exception):
    """Base exception for Tourism API errors"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.original_error = original_error

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class TourApiConfigError(TourApiError):
    """Client is missing required configuration (e.g. the service key)"""

    def __init__(self, message: str, code: str = "MISSING_API_KEY"):
        super().__init__(message, code=code, status_code=500)


class TourApiValidationError(TourApiError, ValueError):
    """Caller input rejected before any network call"""

    def __init__(self, message: str, code: str):
        super().__init__(message, code=code, status_code=400)


class TourApiTimeoutError(TourApiError):
    """A single attempt exceeded its deadline; never retried"""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(
            message, code="TIMEOUT_ERROR", status_code=408, original_error=original_error
        )


class TourApiConnectionError(TourApiError):
    """All retry attempts failed"""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(
            message, code="NETWORK_ERROR", status_code=500, original_error=original_error
        )


class TourApiHttpError(TourApiError):
    """Non-2xx HTTP status from the tourism API"""

    def __init__(self, message: str, status_code: int):
        super().__init__(message, code=f"HTTP_{status_code}", status_code=status_code)


class TourApiClientError(TourApiHttpError):
    """Client-side error with Tourism API requests (4xx)"""

    pass


class TourApiServerError(TourApiHttpError):
    """Server-side error with Tourism API operations (5xx)"""

    pass


class TourApiResponseError(TourApiError):
    """Malformed body or a non-success result code inside the envelope"""

    pass
