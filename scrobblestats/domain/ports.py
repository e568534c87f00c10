from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .entities import FetchMethod, PageDescriptor


class TrackSource(Protocol):
    """Port defining the minimal contract for a paginated listening-history source.

    Implementations are stateless with respect to prior calls and map
    source-specific payloads into domain records.
    """

    max_page_size: int

    def fetch_page(self, method: FetchMethod, page: int, limit: int,
                   params: Optional[Dict[str, str]] = None) -> Tuple[Sequence[Any], PageDescriptor]:
        """Return the records of one 1-based page together with its pagination metadata.

        Raises NetworkError, DecodeError, ApiError or RateLimited; never retries.
        """


@runtime_checkable
class Analyzable(Protocol):
    """Anything exposing artist, track and timestamp presence can be aggregated."""

    @property
    def artist_name(self) -> str:
        ...

    @property
    def track_name(self) -> str:
        ...

    @property
    def has_timestamp(self) -> bool:
        ...
