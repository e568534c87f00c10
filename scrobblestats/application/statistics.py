"""Listening statistics computed from an ordered sequence of track records.

Records only need to satisfy the ``Analyzable`` capability (``artist_name``,
``track_name``, ``has_timestamp``), so loved tracks and records re-loaded from
an export go through the same code path as freshly fetched scrobbles.

Now-playing entries (no timestamp) are excluded from every count. They are
reported separately as ``now_playing_count``.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

from scrobblestats.domain.entities import TrackPlayInfo
from scrobblestats.domain.errors import ValidationError
from scrobblestats.domain.ports import Analyzable

TrackKey = Tuple[str, str]
K = TypeVar('K')

DEFAULT_TOP_N = 10


def _rank(counts: Mapping[K, int], top_n: int) -> Tuple[Tuple[K, int], ...]:
    # sorted() is stable: equal counts keep first-seen (insertion) order
    if top_n <= 0:
        return ()
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return tuple(ranked[:top_n])


def _at_or_above(counts: Mapping[K, int], minimum: int) -> Mapping[K, int]:
    if minimum <= 0:
        return MappingProxyType(dict(counts))
    return MappingProxyType({key: count for key, count in counts.items() if count >= minimum})


def _below(counts: Mapping[K, int], threshold: int) -> Mapping[K, int]:
    return MappingProxyType({key: count for key, count in counts.items() if count < threshold})


def format_track_key(key: TrackKey) -> str:
    artist, track = key
    return f"{artist} - {track}"


@dataclass(frozen=True)
class TrackStats:
    """Read-only statistics over a record sequence.

    Mappings iterate in first-seen order of the input sequence.
    """

    total_tracks: int
    now_playing_count: int
    artist_play_counts: Mapping[str, int]
    track_play_counts: Mapping[TrackKey, int]
    top_n: int
    top_artists: Tuple[Tuple[str, int], ...]
    top_tracks: Tuple[Tuple[TrackKey, int], ...]
    threshold: int
    artists_at_or_above_threshold: Mapping[str, int]
    tracks_at_or_above_threshold: Mapping[TrackKey, int]
    tracks_below_threshold: Mapping[TrackKey, int]

    @property
    def most_played_artist(self) -> Optional[Tuple[str, int]]:
        ranked = _rank(self.artist_play_counts, 1)
        return ranked[0] if ranked else None

    @property
    def most_played_track(self) -> Optional[Tuple[TrackKey, int]]:
        ranked = _rank(self.track_play_counts, 1)
        return ranked[0] if ranked else None

    @property
    def distinct_artists(self) -> int:
        return len(self.artist_play_counts)

    @property
    def distinct_tracks(self) -> int:
        return len(self.track_play_counts)

    def rank_artists(self, top_n: int) -> Tuple[Tuple[str, int], ...]:
        return _rank(self.artist_play_counts, top_n)

    def rank_tracks(self, top_n: int) -> Tuple[Tuple[TrackKey, int], ...]:
        return _rank(self.track_play_counts, top_n)

    def artists_at_or_above(self, minimum: int) -> Mapping[str, int]:
        return _at_or_above(self.artist_play_counts, minimum)

    def tracks_at_or_above(self, minimum: int) -> Mapping[TrackKey, int]:
        return _at_or_above(self.track_play_counts, minimum)

    def to_json(self) -> Dict[str, Any]:
        """Serialize statistics to JSON-compatible data with a stable layout."""
        def artists(items):
            return [{"artist": artist, "plays": count} for artist, count in items]

        def tracks(items):
            return [{"artist": key[0], "track": key[1], "plays": count} for key, count in items]

        most_artist = self.most_played_artist
        most_track = self.most_played_track
        return {
            "totalTracks": self.total_tracks,
            "nowPlayingCount": self.now_playing_count,
            "distinctArtists": self.distinct_artists,
            "distinctTracks": self.distinct_tracks,
            "mostPlayedArtist": artists([most_artist])[0] if most_artist else None,
            "mostPlayedTrack": tracks([most_track])[0] if most_track else None,
            "topN": self.top_n,
            "topArtists": artists(self.top_artists),
            "topTracks": tracks(self.top_tracks),
            "threshold": self.threshold,
            "artistPlayCounts": artists(self.artist_play_counts.items()),
            "trackPlayCounts": tracks(self.track_play_counts.items()),
            "artistsAtOrAboveThreshold": artists(self.artists_at_or_above_threshold.items()),
            "tracksAtOrAboveThreshold": tracks(self.tracks_at_or_above_threshold.items()),
            "tracksBelowThreshold": tracks(self.tracks_below_threshold.items()),
        }


def analyze(records: Iterable[Analyzable], top_n: int = DEFAULT_TOP_N, threshold: int = 0) -> TrackStats:
    """Aggregate play counts over ``records``.

    Args:
        records: Ordered records exposing artist_name, track_name and has_timestamp
        top_n: Length of the ranked lists; 0 yields empty rankings
        threshold: Minimum play count for the threshold views; <= 0 keeps everything

    Returns:
        Immutable TrackStats

    Raises:
        ValidationError: negative top_n or a record lacking the required attributes
    """
    if top_n < 0:
        raise ValidationError(f"top_n must be >= 0, got {top_n}")

    artist_counts: Dict[str, int] = {}
    track_counts: Dict[TrackKey, int] = {}
    total = 0
    now_playing = 0

    for index, record in enumerate(records):
        if not isinstance(record, Analyzable):
            raise ValidationError(
                f"Record {index} ({type(record).__name__}) does not expose artist_name, track_name and has_timestamp"
            )
        if not record.has_timestamp:
            now_playing += 1
            continue

        total += 1
        artist = record.artist_name
        key = (artist, record.track_name)
        artist_counts[artist] = artist_counts.get(artist, 0) + 1
        track_counts[key] = track_counts.get(key, 0) + 1

    return TrackStats(
        total_tracks=total,
        now_playing_count=now_playing,
        artist_play_counts=MappingProxyType(artist_counts),
        track_play_counts=MappingProxyType(track_counts),
        top_n=top_n,
        top_artists=_rank(artist_counts, top_n),
        top_tracks=_rank(track_counts, top_n),
        threshold=threshold,
        artists_at_or_above_threshold=_at_or_above(artist_counts, threshold),
        tracks_at_or_above_threshold=_at_or_above(track_counts, threshold),
        tracks_below_threshold=_below(track_counts, threshold),
    )


def play_count_summary(records: Iterable[Any]) -> List[TrackPlayInfo]:
    """Build one play-count row per (artist, track), in first-seen order.

    Track details (album, artwork, url) come from the first record seen for the
    pair. ``date`` is the newest timestamp; a now-playing entry only sets
    ``currently_playing``.
    """
    rows: Dict[TrackKey, Dict[str, Any]] = {}
    for record in records:
        key = (record.artist_name, record.track_name)
        row = rows.get(key)
        if row is None:
            row = rows[key] = {
                'track': record.track_name,
                'artist': record.artist_name,
                'play_count': 0,
                'album': getattr(record, 'album', None),
                'image_url': getattr(record, 'image_url', None),
                'currently_playing': False,
                'date': None,
                'url': getattr(record, 'url', None),
            }
        if not record.has_timestamp:
            row['currently_playing'] = True
            continue
        row['play_count'] += 1
        timestamp = getattr(record, 'timestamp', None)
        if timestamp is not None and (row['date'] is None or timestamp > row['date']):
            row['date'] = timestamp
    return [TrackPlayInfo(**row) for row in rows.values()]


def most_recent_timestamp(records: Iterable[Any]) -> Optional[int]:
    """Newest timestamp among ``records``, ignoring now-playing entries."""
    timestamps = [r.timestamp for r in records if getattr(r, 'timestamp', None) is not None]
    return max(timestamps) if timestamps else None
