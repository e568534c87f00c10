import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from scrobblestats.application.pagination import PaginationEngine
from scrobblestats.application.statistics import DEFAULT_TOP_N, TrackStats, analyze, play_count_summary
from scrobblestats.crosscutting.config import Settings
from scrobblestats.crosscutting.metrics import MetricsCollector
from scrobblestats.domain.entities import FetchMethod, Period, TopTrack, TrackLimit, TrackRecord
from scrobblestats.domain.ports import TrackSource
from scrobblestats.infrastructure.providers.lastfm import LastFmClient
from scrobblestats.infrastructure.storage import FileFormat, TrackFileStore

logger = logging.getLogger(__name__)

LimitArg = Union[TrackLimit, int, None]


class ListeningHistoryService:
    """User-facing operations over one user's listening history.

    Binds a track source, the pagination engine, the file store and the
    aggregator. All fetch operations share the source's immutable Handler and
    may run concurrently.
    """

    def __init__(self,
                 source: TrackSource,
                 engine: Optional[PaginationEngine] = None,
                 store: Optional[TrackFileStore] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.source = source
        self.engine = engine or PaginationEngine(source, metrics=metrics)
        self.store = store or TrackFileStore()

    @classmethod
    def from_settings(cls, settings: Settings, username: Optional[str] = None,
                      metrics: Optional[MetricsCollector] = None) -> "ListeningHistoryService":
        """Build the service wired to the Last.fm API."""
        client = LastFmClient(
            settings.handler(username),
            timeout=settings.timeout,
            max_page_size=settings.page_size,
        )
        engine = PaginationEngine(client, max_retries=settings.max_retries, metrics=metrics)
        return cls(client, engine=engine, store=TrackFileStore(settings.data_dir))

    def close(self) -> None:
        close = getattr(self.source, 'close', None)
        if callable(close):
            close()

    async def get_recent_tracks(self, limit: LimitArg = None) -> List[TrackRecord]:
        """Recent scrobbles, newest first. A now-playing entry may lead the list."""
        return await self.engine.fetch_all(FetchMethod.RECENT_TRACKS, limit)

    async def get_loved_tracks(self, limit: LimitArg = None) -> List[TrackRecord]:
        return await self.engine.fetch_all(FetchMethod.LOVED_TRACKS, limit)

    async def get_top_tracks(self, limit: LimitArg = None, period: Optional[Period] = None) -> List[TopTrack]:
        params = {'period': Period(period).value} if period else None
        return await self.engine.fetch_all(FetchMethod.TOP_TRACKS, limit, params)

    async def get_recent_and_loved(self, limit: LimitArg = None) -> Tuple[List[TrackRecord], List[TrackRecord]]:
        """Fetch recent and loved tracks concurrently."""
        recent, loved = await asyncio.gather(
            self.get_recent_tracks(limit),
            self.get_loved_tracks(limit),
        )
        return recent, loved

    async def current_track(self) -> Optional[TrackRecord]:
        """The currently playing track, if any."""
        tracks = await self.get_recent_tracks(1)
        if tracks and tracks[0].is_now_playing:
            return tracks[0]
        return None

    async def get_and_save_recent_tracks(self, limit: LimitArg = None,
                                         fmt: Union[FileFormat, str] = FileFormat.JSON,
                                         prefix: str = "recent_tracks") -> Path:
        tracks = await self.get_recent_tracks(limit)
        logger.info(f"Saving {len(tracks)} tracks to file")
        return self.store.save(tracks, fmt, prefix)

    async def get_and_save_loved_tracks(self, limit: LimitArg = None,
                                        fmt: Union[FileFormat, str] = FileFormat.JSON) -> Path:
        tracks = await self.get_loved_tracks(limit)
        return self.store.save(tracks, fmt, "loved_tracks")

    async def export_recent_play_counts(self, limit: LimitArg = None) -> Path:
        """Save per-track play counts for the last ``limit`` scrobbles."""
        tracks = await self.get_recent_tracks(limit)
        return self.store.save_play_counts(play_count_summary(tracks))

    async def update_currently_listening(self, path: Union[str, Path]) -> Optional[TrackRecord]:
        """Overwrite ``path`` with the currently playing track (``{}`` if none)."""
        track = await self.current_track()
        self.store.write_now_playing(path, track)
        return track

    async def analyze_recent(self, limit: LimitArg = None, top_n: int = DEFAULT_TOP_N,
                             threshold: int = 0) -> TrackStats:
        return analyze(await self.get_recent_tracks(limit), top_n=top_n, threshold=threshold)

    def analyze_file(self, path: Union[str, Path], top_n: int = DEFAULT_TOP_N,
                     threshold: int = 0) -> TrackStats:
        """Analyze a previously exported file without fetching."""
        return analyze(self.store.load(path), top_n=top_n, threshold=threshold)
