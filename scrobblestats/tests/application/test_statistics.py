import json
from types import SimpleNamespace

import pytest

from scrobblestats.application.statistics import (
    analyze, format_track_key, most_recent_timestamp, play_count_summary
)
from scrobblestats.domain.entities import TrackRecord
from scrobblestats.domain.errors import ValidationError
from scrobblestats.tests.fakes import make_history


def scrobble(artist, track, ts, album=None):
    return TrackRecord(artist=artist, track=track, album=album, timestamp=ts)


class TestAnalyze:
    """Tests for the statistics aggregator."""

    def setup_method(self):
        self.records = [
            scrobble("A", "X", 3),
            scrobble("B", "Y", 2),
            scrobble("A", "X", 1),
        ]

    def test_basic_counts(self):
        stats = analyze(self.records, top_n=5)

        assert stats.total_tracks == 3
        assert dict(stats.artist_play_counts) == {"A": 2, "B": 1}
        assert dict(stats.track_play_counts) == {("A", "X"): 2, ("B", "Y"): 1}
        assert stats.most_played_artist == ("A", 2)
        assert stats.most_played_track == (("A", "X"), 2)
        assert stats.top_artists == (("A", 2), ("B", 1))
        assert stats.distinct_artists == 2
        assert stats.distinct_tracks == 2

    def test_first_seen_track_wins_a_tie(self):
        records = [scrobble("ArtistA", "Track1", 1), scrobble("ArtistA", "Track2", 2),
                   scrobble("ArtistB", "Track1", 3)]
        stats = analyze(records, top_n=1)

        assert stats.total_tracks == 3
        assert stats.top_artists == (("ArtistA", 2),)
        assert stats.top_tracks == ((("ArtistA", "Track1"), 1),)

    def test_same_title_different_artists_are_distinct_tracks(self):
        stats = analyze([scrobble("A", "Intro", 2), scrobble("B", "Intro", 1)])
        assert dict(stats.track_play_counts) == {("A", "Intro"): 1, ("B", "Intro"): 1}

    def test_counts_sum_to_total(self):
        stats = analyze(make_history(500))
        assert sum(stats.artist_play_counts.values()) == stats.total_tracks
        assert sum(stats.track_play_counts.values()) == stats.total_tracks

    def test_analyze_is_pure(self):
        first = json.dumps(analyze(self.records, top_n=2, threshold=2).to_json())
        second = json.dumps(analyze(list(self.records), top_n=2, threshold=2).to_json())
        assert first == second

    def test_accepts_any_iterable(self):
        stats = analyze(iter(self.records))
        assert stats.total_tracks == 3

    def test_top_n_zero_yields_empty_rankings(self):
        stats = analyze(self.records, top_n=0)
        assert stats.top_artists == ()
        assert stats.top_tracks == ()
        assert stats.total_tracks == 3

    def test_top_n_larger_than_distinct_lists_all(self):
        stats = analyze(self.records, top_n=100)
        assert len(stats.top_artists) == 2
        assert len(stats.top_tracks) == 2

    def test_negative_top_n_rejected(self):
        with pytest.raises(ValidationError):
            analyze(self.records, top_n=-1)

    def test_ties_keep_first_seen_order(self):
        records = [scrobble("C", "1", 6), scrobble("A", "2", 5), scrobble("B", "3", 4),
                   scrobble("A", "4", 3), scrobble("B", "5", 2), scrobble("C", "6", 1)]
        stats = analyze(records, top_n=3)
        assert [artist for artist, _ in stats.top_artists] == ["C", "A", "B"]
        assert stats.rank_artists(2) == (("C", 2), ("A", 2))

    def test_ranking_is_descending(self):
        stats = analyze(make_history(200), top_n=20)
        counts = [count for _, count in stats.top_tracks]
        assert counts == sorted(counts, reverse=True)

    def test_threshold_views(self):
        stats = analyze(self.records, threshold=2)
        assert dict(stats.artists_at_or_above_threshold) == {"A": 2}
        assert dict(stats.tracks_at_or_above_threshold) == {("A", "X"): 2}
        assert dict(stats.tracks_below_threshold) == {("B", "Y"): 1}
        assert dict(stats.tracks_at_or_above(1)) == dict(stats.track_play_counts)

    def test_zero_threshold_keeps_everything(self):
        stats = analyze(self.records)
        assert dict(stats.artists_at_or_above_threshold) == dict(stats.artist_play_counts)
        assert dict(stats.tracks_below_threshold) == {}

    def test_empty_input(self):
        stats = analyze([])
        assert stats.total_tracks == 0
        assert stats.most_played_artist is None
        assert stats.most_played_track is None
        assert stats.to_json()["mostPlayedArtist"] is None

    def test_now_playing_excluded_from_counts(self):
        records = [TrackRecord(artist="A", track="X")] + self.records
        stats = analyze(records)
        assert stats.total_tracks == 3
        assert stats.now_playing_count == 1
        assert stats.artist_play_counts["A"] == 2

    def test_stats_are_read_only(self):
        stats = analyze(self.records)
        with pytest.raises(TypeError):
            stats.artist_play_counts["Z"] = 1

    def test_custom_analyzable_records(self):
        records = [
            SimpleNamespace(artist_name="Loved", track_name="Song", has_timestamp=True),
            SimpleNamespace(artist_name="Loved", track_name="Song", has_timestamp=True),
        ]
        stats = analyze(records)
        assert stats.most_played_track == (("Loved", "Song"), 2)

    def test_record_without_required_attributes_rejected(self):
        with pytest.raises(ValidationError):
            analyze([SimpleNamespace(artist_name="A")])

    def test_to_json_layout(self):
        data = analyze(self.records, top_n=1).to_json()
        assert data["totalTracks"] == 3
        assert data["topArtists"] == [{"artist": "A", "plays": 2}]
        assert data["topTracks"] == [{"artist": "A", "track": "X", "plays": 2}]
        assert data["mostPlayedTrack"] == {"artist": "A", "track": "X", "plays": 2}

    def test_format_track_key(self):
        assert format_track_key(("A", "X")) == "A - X"


class TestPlayCountSummary:
    """Tests for per-track play-count rows."""

    def test_rows_in_first_seen_order(self):
        records = [
            TrackRecord(artist="A", track="X", album="Alb", image_url="img"),
            scrobble("A", "X", 30, album="Alb"),
            scrobble("B", "Y", 20),
            scrobble("A", "X", 10, album="Alb"),
        ]
        rows = play_count_summary(records)

        assert [(r.artist, r.track) for r in rows] == [("A", "X"), ("B", "Y")]
        assert rows[0].play_count == 2
        assert rows[0].currently_playing
        assert rows[0].date == 30
        assert rows[0].image_url == "img"
        assert rows[1].play_count == 1
        assert not rows[1].currently_playing

    def test_empty(self):
        assert play_count_summary([]) == []


class TestMostRecentTimestamp:
    def test_ignores_now_playing(self):
        records = [TrackRecord(artist="A", track="X"), scrobble("A", "X", 5), scrobble("B", "Y", 9)]
        assert most_recent_timestamp(records) == 9

    def test_none_when_no_timestamps(self):
        assert most_recent_timestamp([TrackRecord(artist="A", track="X")]) is None
