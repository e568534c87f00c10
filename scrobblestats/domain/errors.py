from typing import Optional


class ScrobbleStatsError(Exception):
    """Base class for all errors raised by scrobblestats."""


class FetchError(ScrobbleStatsError):
    """Failure while fetching a page from the remote API.

    Carries the method and page being fetched when known so callers can decide
    between retrying and aborting.
    """

    def __init__(self, message: str, method: Optional[str] = None, page: Optional[int] = None) -> None:
        super().__init__(message)
        self.method = method
        self.page = page

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.method:
            context.append(f"method={self.method}")
        if self.page is not None:
            context.append(f"page={self.page}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class NetworkError(FetchError):
    """Transport failure: connection refused, timeout, DNS, non-success status."""


class DecodeError(FetchError):
    """Response body could not be decoded into the expected schema."""


class RateLimited(FetchError):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited",
                 method: Optional[str] = None, page: Optional[int] = None) -> None:
        super().__init__(message, method=method, page=page)
        self.retry_after_ms = retry_after_ms


class ApiError(FetchError):
    """Structured error payload returned by the API (invalid key, unknown user, ...)."""

    def __init__(self, code: int, message: str,
                 method: Optional[str] = None, page: Optional[int] = None) -> None:
        super().__init__(f"Last.fm API error {code}: {message}", method=method, page=page)
        self.code = code
        self.api_message = message


class ValidationError(ScrobbleStatsError, ValueError):
    """Invalid caller input, raised before any network activity."""


class StorageError(ScrobbleStatsError):
    """File write or read failure during export or re-load."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path
