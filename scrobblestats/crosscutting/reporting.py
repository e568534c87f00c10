from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from scrobblestats.application.statistics import TrackStats, format_track_key


@dataclass
class ReportHeader:
    """Header information for an analysis report."""

    username: str
    source: str
    generated_at: datetime
    record_count: int = 0

    def to_json(self) -> Dict[str, Any]:
        """Serialize header to JSON."""
        return {
            "username": self.username,
            "source": self.source,
            "generatedAt": self.generated_at.isoformat(),
            "recordCount": self.record_count,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ReportHeader":
        """Deserialize header from JSON."""
        return cls(
            username=data.get("username", ""),
            source=data.get("source", ""),
            generated_at=datetime.fromisoformat(data["generatedAt"]),
            record_count=data.get("recordCount", 0),
        )


@dataclass
class AnalysisReport:
    """Analysis report: header plus the structured statistics."""

    header: ReportHeader
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        """Serialize report to JSON."""
        return {
            "header": self.header.to_json(),
            "stats": self.stats,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "AnalysisReport":
        """Deserialize report from JSON."""
        return cls(
            header=ReportHeader.from_json(data["header"]),
            stats=dict(data.get("stats", {})),
        )


def create_report(stats: TrackStats, username: str, source: str,
                  record_count: Optional[int] = None,
                  generated_at: Optional[datetime] = None) -> AnalysisReport:
    """Create a new analysis report."""
    header = ReportHeader(
        username=username,
        source=source,
        generated_at=generated_at or datetime.now(timezone.utc),
        record_count=record_count if record_count is not None else stats.total_tracks + stats.now_playing_count,
    )
    return AnalysisReport(header=header, stats=stats.to_json())


def render_text(stats: TrackStats) -> str:
    """Render the human-readable summary."""
    lines: List[str] = ["=== Track Analysis ===", f"Total tracks: {stats.total_tracks}"]
    if stats.now_playing_count:
        lines.append(f"Now playing (not counted): {stats.now_playing_count}")
    lines.append(f"Distinct artists: {stats.distinct_artists}")
    lines.append(f"Distinct tracks: {stats.distinct_tracks}")

    if stats.most_played_artist:
        artist, count = stats.most_played_artist
        lines.append("")
        lines.append(f"Most played artist: {artist} ({count} plays)")
    if stats.most_played_track:
        key, count = stats.most_played_track
        lines.append(f"Most played track: {format_track_key(key)} ({count} plays)")

    lines.append("")
    lines.append(f"Top {stats.top_n} Artists:")
    for position, (artist, count) in enumerate(stats.top_artists, start=1):
        lines.append(f"  {position}. {artist} - {count} plays")

    lines.append("")
    lines.append(f"Top {stats.top_n} Tracks:")
    for position, (key, count) in enumerate(stats.top_tracks, start=1):
        lines.append(f"  {position}. {format_track_key(key)} - {count} plays")

    if stats.threshold > 0:
        lines.append("")
        lines.append(f"Tracks with at least {stats.threshold} plays: {len(stats.tracks_at_or_above_threshold)}")
        lines.append(f"Tracks below {stats.threshold} plays: {len(stats.tracks_below_threshold)}")
        lines.append(f"Artists with at least {stats.threshold} plays: {len(stats.artists_at_or_above_threshold)}")

    return "\n".join(lines)
