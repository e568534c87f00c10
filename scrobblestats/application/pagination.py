import asyncio
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from scrobblestats.crosscutting.logging import (
    CorrelationContext, log_error, log_fetch_complete, log_fetch_start, log_page_fetched
)
from scrobblestats.crosscutting.metrics import MetricsCollector
from scrobblestats.domain.entities import FetchMethod, PageDescriptor, TrackLimit
from scrobblestats.domain.errors import FetchError, RateLimited
from scrobblestats.domain.ports import TrackSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_MIN_BACKOFF_MS = 1000
DEFAULT_MAX_BACKOFF_MS = 60000


class PaginationEngine:
    """Walks a paginated, rate-limited source into one ordered record sequence.

    Pages are requested strictly one after another: the total page count is only
    known after the first response and backoff applies to the whole sequence.
    Independent ``fetch_all`` calls may run concurrently on the same engine; all
    per-fetch state lives in the coroutine.
    """

    def __init__(self,
                 source: TrackSource,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 min_backoff_ms: int = DEFAULT_MIN_BACKOFF_MS,
                 max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS,
                 page_size: Optional[int] = None,
                 metrics: Optional[MetricsCollector] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """Initialize pagination engine.

        Args:
            source: Remote client returning one page per call
            max_retries: Rate-limit retries allowed per page before giving up
            min_backoff_ms: Lower bound for the wait after a rate-limit signal
            max_backoff_ms: Upper bound for the wait after a rate-limit signal
            page_size: Override for the page size; defaults to the source maximum
            metrics: Optional collector for per-fetch metrics
            sleep: Awaitable sleep used for backoff
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if min_backoff_ms < 0 or max_backoff_ms < min_backoff_ms:
            raise ValueError("Backoff bounds must satisfy 0 <= min_backoff_ms <= max_backoff_ms")
        self.source = source
        self.max_retries = max_retries
        self.min_backoff_ms = min_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.page_size = page_size or getattr(source, 'max_page_size', 200)
        self.metrics = metrics
        self._sleep = sleep

    def _page_size_for(self, limit: TrackLimit) -> int:
        if limit.is_unlimited:
            return self.page_size
        return min(limit.count, self.page_size)

    def _backoff_ms(self, error: RateLimited) -> int:
        suggested = error.retry_after_ms if error.retry_after_ms is not None else self.min_backoff_ms
        return max(self.min_backoff_ms, min(suggested, self.max_backoff_ms))

    async def _call_source(self, method: FetchMethod, page: int, page_size: int,
                           params: Optional[Dict[str, str]]) -> Tuple[Sequence[Any], PageDescriptor]:
        if inspect.iscoroutinefunction(self.source.fetch_page):
            return await self.source.fetch_page(method, page, page_size, params)
        # Blocking HTTP call runs off the event loop so the task suspends while waiting
        return await asyncio.to_thread(self.source.fetch_page, method, page, page_size, params)

    async def _fetch_page(self, fetch_id: str, method: FetchMethod, page: int, page_size: int,
                          params: Optional[Dict[str, str]]) -> Tuple[Sequence[Any], PageDescriptor]:
        """Fetch one page, retrying the same page on rate-limit signals."""
        retries = 0
        while True:
            try:
                return await self._call_source(method, page, page_size, params)
            except RateLimited as e:
                if retries >= self.max_retries:
                    logger.error(f"Rate limited on {method.value} page {page}, "
                                 f"giving up after {self.max_retries} retries")
                    raise RateLimited(
                        e.retry_after_ms,
                        f"Rate limit retries exhausted after {self.max_retries} retries",
                        method=method.value,
                        page=page,
                    ) from e

                retries += 1
                wait_ms = self._backoff_ms(e)
                logger.warning(f"Rate limited on {method.value} page {page}, "
                               f"waiting {wait_ms}ms (retry {retries}/{self.max_retries})")
                if self.metrics:
                    self.metrics.record_retry(fetch_id, wait_ms)
                await self._sleep(wait_ms / 1000.0)
            except FetchError as e:
                if e.method is None:
                    e.method = method.value
                if e.page is None:
                    e.page = page
                raise

    async def fetch_all(self,
                        method: FetchMethod,
                        limit: Union[TrackLimit, int, None] = None,
                        params: Optional[Dict[str, str]] = None) -> List[Any]:
        """Fetch every record for ``method`` up to ``limit``.

        Args:
            method: Feed to walk
            limit: TrackLimit, positive int, or None for unlimited
            params: Extra query parameters passed to every page request

        Returns:
            Records in source order, de-duplicated across page boundaries, with
            exactly ``min(limit, available)`` entries

        Raises:
            ValidationError: Invalid limit; raised before any request
            NetworkError, DecodeError, ApiError: First failing page aborts the fetch
            RateLimited: Retries exhausted on some page
        """
        limit = TrackLimit.from_value(limit)
        limit.validate()

        page_size = self._page_size_for(limit)
        fetch_id = uuid.uuid4().hex[:12]
        buffer: List[Any] = []
        seen = set()
        page = 1
        total_pages: Optional[int] = None

        if self.metrics:
            self.metrics.start_fetch(fetch_id, method.value)
        log_fetch_start(logger, fetch_id, method.value,
                        getattr(getattr(self.source, 'handler', None), 'username', ''),
                        str(limit), page_size=page_size)

        try:
            with CorrelationContext(fetch_id=fetch_id, method=method.value):
                while True:
                    with CorrelationContext(page=page):
                        records, descriptor = await self._fetch_page(fetch_id, method, page, page_size, params)
                    if total_pages is None:
                        total_pages = descriptor.total_pages

                    for record in records:
                        key = getattr(record, 'dedupe_key', None)
                        if key is not None:
                            if key in seen:
                                continue
                            seen.add(key)
                        buffer.append(record)
                        if limit.reached(len(buffer)):
                            break

                    if self.metrics:
                        self.metrics.record_page(fetch_id, len(records))
                    log_page_fetched(logger, page, total_pages, len(records), buffered=len(buffer))

                    if limit.reached(len(buffer)):
                        break
                    if not records or page >= total_pages:
                        break
                    page += 1
        except BaseException as e:
            # Includes CancelledError; the partial buffer is dropped with the frame
            if self.metrics:
                self.metrics.end_fetch(fetch_id, 0, error=e)
            if isinstance(e, Exception):
                log_error(logger, f"Fetch {method.value} failed", e, fetch_id=fetch_id, page=page)
            else:
                logger.warning(f"Fetch {method.value} cancelled at page {page}")
            raise

        if self.metrics:
            self.metrics.end_fetch(fetch_id, len(buffer))
        log_fetch_complete(logger, fetch_id, method.value, len(buffer), page)
        return buffer
