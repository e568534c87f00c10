from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import ValidationError


DEFAULT_BASE_URL = "https://ws.audioscrobbler.com/2.0/"


class FetchMethod(str, Enum):
    """Remote API method selector, valued by the API method name."""

    RECENT_TRACKS = "user.getrecenttracks"
    LOVED_TRACKS = "user.getlovedtracks"
    TOP_TRACKS = "user.gettoptracks"

    @property
    def root_key(self) -> str:
        """Top-level key of the response payload for this method."""
        return {
            FetchMethod.RECENT_TRACKS: "recenttracks",
            FetchMethod.LOVED_TRACKS: "lovedtracks",
            FetchMethod.TOP_TRACKS: "toptracks",
        }[self]


class Period(str, Enum):
    """Time range filter for top tracks."""

    OVERALL = "overall"
    WEEK = "7day"
    MONTH = "1month"
    THREE_MONTHS = "3month"
    SIX_MONTHS = "6month"
    TWELVE_MONTHS = "12month"


@dataclass(frozen=True)
class Handler:
    """Binding of base URL, API credential and target user shared by all fetches."""

    username: str
    api_key: str = field(repr=False)
    base_url: str = DEFAULT_BASE_URL

    def __post_init__(self):
        if not self.username:
            raise ValidationError("username must not be empty")
        if not self.api_key:
            raise ValidationError("api_key must not be empty")
        if not self.base_url:
            raise ValidationError("base_url must not be empty")


@dataclass(frozen=True)
class TrackLimit:
    """Request-scoped cap on the number of records to fetch.

    ``count=None`` means unlimited: fetch every page until exhaustion.
    """

    count: Optional[int] = None

    @classmethod
    def limited(cls, count: int) -> "TrackLimit":
        return cls(count=count)

    @classmethod
    def unlimited(cls) -> "TrackLimit":
        return cls(count=None)

    @classmethod
    def from_value(cls, value: "Optional[int | TrackLimit]") -> "TrackLimit":
        """Build a limit from an optional integer; ``None`` means unlimited."""
        if isinstance(value, TrackLimit):
            return value
        if value is None:
            return cls.unlimited()
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"Track limit must be an integer or None, got {value!r}")
        return cls.limited(value)

    @property
    def is_unlimited(self) -> bool:
        return self.count is None

    def validate(self) -> None:
        if self.count is not None and self.count <= 0:
            raise ValidationError(f"Track limit must be a positive integer, got {self.count}")

    def reached(self, fetched: int) -> bool:
        return self.count is not None and fetched >= self.count

    def __str__(self) -> str:
        return "unlimited" if self.count is None else str(self.count)


@dataclass(frozen=True)
class PageDescriptor:
    """Pagination metadata reported by the source alongside each page."""

    page: int
    total_pages: int
    total: int
    per_page: int

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True)
class TrackRecord:
    """One scrobble or loved-track entry.

    A record without a timestamp is a now-playing entry.
    """

    artist: str
    track: str
    album: Optional[str] = None
    timestamp: Optional[int] = None
    mbid: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None

    def __post_init__(self):
        if not self.artist or not self.track:
            raise ValidationError(
                f"Track record requires artist and track, got artist={self.artist!r} track={self.track!r}"
            )

    @property
    def artist_name(self) -> str:
        return self.artist

    @property
    def track_name(self) -> str:
        return self.track

    @property
    def has_timestamp(self) -> bool:
        return self.timestamp is not None

    @property
    def is_now_playing(self) -> bool:
        return self.timestamp is None

    @property
    def identifier(self) -> str:
        return f"{self.artist} - {self.track}"

    @property
    def played_at(self) -> Optional[datetime]:
        if self.timestamp is None:
            return None
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def dedupe_key(self) -> Tuple[Any, ...]:
        if self.timestamp is None:
            return ("now_playing",)
        return (self.artist, self.track, self.timestamp)

    def to_json(self) -> Dict[str, Any]:
        """Serialize record to JSON."""
        return {
            "artist": self.artist,
            "track": self.track,
            "album": self.album,
            "timestamp": self.timestamp,
            "mbid": self.mbid,
            "url": self.url,
            "image_url": self.image_url,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TrackRecord":
        """Deserialize record from JSON."""
        timestamp = data.get("timestamp")
        return cls(
            artist=data["artist"],
            track=data["track"],
            album=data.get("album"),
            timestamp=int(timestamp) if timestamp is not None else None,
            mbid=data.get("mbid"),
            url=data.get("url"),
            image_url=data.get("image_url"),
        )


@dataclass(frozen=True)
class TopTrack:
    """Ranked entry from the user's top tracks. Never carries a play timestamp."""

    artist: str
    track: str
    play_count: int
    rank: int
    mbid: Optional[str] = None
    url: Optional[str] = None

    @property
    def artist_name(self) -> str:
        return self.artist

    @property
    def track_name(self) -> str:
        return self.track

    @property
    def has_timestamp(self) -> bool:
        return False

    @property
    def dedupe_key(self) -> Tuple[Any, ...]:
        return ("rank", self.rank)

    def to_json(self) -> Dict[str, Any]:
        """Serialize top track to JSON."""
        return {
            "artist": self.artist,
            "track": self.track,
            "play_count": self.play_count,
            "rank": self.rank,
            "mbid": self.mbid,
            "url": self.url,
        }


@dataclass(frozen=True)
class TrackPlayInfo:
    """Play-count summary row for one (artist, track) pair."""

    track: str
    artist: str
    play_count: int
    album: Optional[str] = None
    image_url: Optional[str] = None
    currently_playing: bool = False
    date: Optional[int] = None
    url: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """Serialize play info to JSON."""
        return {
            "name": self.track,
            "artist": self.artist,
            "play_count": self.play_count,
            "album": self.album,
            "image_url": self.image_url,
            "currently_playing": self.currently_playing,
            "date": self.date,
            "url": self.url,
        }
