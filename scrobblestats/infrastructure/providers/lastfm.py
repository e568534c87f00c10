import logging
import threading
from typing import Any, Dict, List, Optional, Tuple, Union

import requests

from scrobblestats.domain.entities import FetchMethod, Handler, PageDescriptor, TopTrack, TrackRecord
from scrobblestats.domain.errors import ApiError, DecodeError, NetworkError, RateLimited, ValidationError

logger = logging.getLogger(__name__)

# Documented maximum for the user.get* methods
API_MAX_LIMIT = 200
RATE_LIMIT_ERROR_CODE = 29
DEFAULT_RETRY_AFTER_MS = 1000
DEFAULT_TIMEOUT_SEC = 15.0
_IMAGE_SIZES = ("extralarge", "large", "medium", "small")


def _to_int(value: Any) -> int:
    # Numeric fields arrive as strings ("totalPages": "12")
    if isinstance(value, bool):
        raise ValueError(f"Expected integer, got {value!r}")
    return int(value)


def _text(value: Any) -> Optional[str]:
    """Extract text from either a plain string or a {'#text': ...} / {'name': ...} object."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("#text", value.get("name"))
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected string, got {type(value).__name__}")
    return value or None


def _pick_image(images: Any) -> Optional[str]:
    if not isinstance(images, list):
        return None
    by_size = {}
    for image in images:
        if isinstance(image, dict) and image.get("#text"):
            by_size[image.get("size", "")] = image["#text"]
    for size in _IMAGE_SIZES:
        if size in by_size:
            return by_size[size]
    return next(iter(by_size.values()), None)


class LastFmClient:
    """Remote client for the Last.fm REST API.

    Issues one request per call and maps the payload into domain records. It
    never retries: rate limiting is surfaced as RateLimited so the caller owns
    the retry policy.
    """

    def __init__(self,
                 handler: Handler,
                 timeout: float = DEFAULT_TIMEOUT_SEC,
                 max_page_size: int = API_MAX_LIMIT,
                 session: Optional[requests.Session] = None):
        """Initialize the client.

        Args:
            handler: Base URL, API key and username used for every request
            timeout: Per-request transport timeout in seconds
            max_page_size: Largest page size requested from the source
            session: Optional pre-configured session used from every thread.
                Without one, each worker thread gets its own session, so
                concurrent fetches never share a connection pool.
        """
        self.handler = handler
        self.timeout = timeout
        self.max_page_size = max(1, min(max_page_size, API_MAX_LIMIT))
        self._shared_session = self._prepare(session) if session is not None else None
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    def __enter__(self) -> "LastFmClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._shared_session is not None:
            self._shared_session.close()
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
            self._local = threading.local()
        for session in sessions:
            session.close()

    @staticmethod
    def _prepare(session: requests.Session) -> requests.Session:
        session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'scrobblestats',
        })
        return session

    def _session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self._prepare(requests.Session())
            with self._sessions_lock:
                self._local.session = session
                self._sessions.append(session)
        return session

    def _build_params(self, method: FetchMethod, page: int, limit: int,
                      params: Optional[Dict[str, str]]) -> Dict[str, str]:
        query = {
            'method': method.value,
            'user': self.handler.username,
            'api_key': self.handler.api_key,
            'format': 'json',
            'limit': str(limit),
            'page': str(page),
        }
        if params:
            query.update(params)
        return query

    def fetch_page(self, method: FetchMethod, page: int, limit: int,
                   params: Optional[Dict[str, str]] = None) -> Tuple[List[Union[TrackRecord, TopTrack]], PageDescriptor]:
        """Fetch a single page.

        Args:
            method: Which feed to read
            page: 1-based page number
            limit: Page size, clamped to the source maximum
            params: Extra query parameters (e.g. ``period`` for top tracks)

        Returns:
            The page's records in source order and its PageDescriptor

        Raises:
            NetworkError: transport failure or non-success status without an API error body
            RateLimited: HTTP 429 or API error code 29
            ApiError: any other structured API error
            DecodeError: body is not JSON or does not match the expected shape
        """
        if page < 1:
            raise ValidationError(f"Page number must be >= 1, got {page}")
        limit = max(1, min(limit, self.max_page_size))
        query = self._build_params(method, page, limit, params)

        logger.debug(f"Requesting {method.value} page {page} (limit={limit}) for {self.handler.username}")
        try:
            response = self._session().get(self.handler.base_url, params=query, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request failed: {e}", method=method.value, page=page) from e

        if response.status_code == 429:
            raise RateLimited(self._retry_after_ms(response), "Rate limited (HTTP 429)",
                              method=method.value, page=page)

        try:
            payload = response.json()
        except ValueError as e:
            if not response.ok:
                raise NetworkError(f"HTTP {response.status_code}", method=method.value, page=page) from e
            raise DecodeError(f"Response is not valid JSON: {e}", method=method.value, page=page) from e

        if isinstance(payload, dict) and 'error' in payload:
            self._raise_api_error(payload, response, method, page)

        if not response.ok:
            raise NetworkError(f"HTTP {response.status_code}", method=method.value, page=page)

        return self._parse_page(method, payload, page)

    def _raise_api_error(self, payload: Dict[str, Any], response: requests.Response,
                         method: FetchMethod, page: int) -> None:
        try:
            code = _to_int(payload['error'])
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Malformed error payload: {payload!r}", method=method.value, page=page) from e
        message = str(payload.get('message', ''))
        if code == RATE_LIMIT_ERROR_CODE:
            raise RateLimited(self._retry_after_ms(response), f"Rate limited: {message}",
                              method=method.value, page=page)
        raise ApiError(code, message, method=method.value, page=page)

    @staticmethod
    def _retry_after_ms(response: requests.Response) -> int:
        retry_after = response.headers.get('Retry-After')
        if retry_after is None:
            return DEFAULT_RETRY_AFTER_MS
        try:
            return max(0, int(float(retry_after) * 1000))
        except ValueError:
            return DEFAULT_RETRY_AFTER_MS

    def _parse_page(self, method: FetchMethod, payload: Any,
                    page: int) -> Tuple[List[Union[TrackRecord, TopTrack]], PageDescriptor]:
        try:
            root = payload[method.root_key]
            attr = root['@attr']
            descriptor = PageDescriptor(
                page=_to_int(attr['page']),
                total_pages=_to_int(attr['totalPages']),
                total=_to_int(attr['total']),
                per_page=_to_int(attr['perPage']),
            )
            items = root.get('track', [])
            # A single result is returned as an object instead of a list
            if isinstance(items, dict):
                items = [items]
            if not isinstance(items, list):
                raise TypeError(f"'track' must be a list, got {type(items).__name__}")

            if method is FetchMethod.TOP_TRACKS:
                records = [self._to_top_track(item) for item in items]
            else:
                records = [self._to_track_record(item) for item in items]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Unexpected {method.root_key} payload: {e!r}",
                              method=method.value, page=page) from e

        return records, descriptor

    @staticmethod
    def _to_track_record(item: Dict[str, Any]) -> TrackRecord:
        attr = item.get('@attr') or {}
        now_playing = str(attr.get('nowplaying', '')).lower() == 'true'
        date = item.get('date')
        timestamp = None
        if date and not now_playing:
            timestamp = _to_int(date['uts'])

        return TrackRecord(
            artist=_text(item['artist']) or '',
            track=_text(item['name']) or '',
            album=_text(item.get('album')),
            timestamp=timestamp,
            mbid=_text(item.get('mbid')),
            url=_text(item.get('url')),
            image_url=_pick_image(item.get('image')),
        )

    @staticmethod
    def _to_top_track(item: Dict[str, Any]) -> TopTrack:
        attr = item.get('@attr') or {}
        return TopTrack(
            artist=_text(item['artist']) or '',
            track=_text(item['name']) or '',
            play_count=_to_int(item.get('playcount', 0)),
            rank=_to_int(attr['rank']),
            mbid=_text(item.get('mbid')),
            url=_text(item.get('url')),
        )
