import threading
from unittest.mock import Mock, patch

import pytest
import requests

from scrobblestats.domain.entities import FetchMethod, Handler, TopTrack
from scrobblestats.domain.errors import (
    ApiError, DecodeError, NetworkError, RateLimited, ValidationError
)
from scrobblestats.infrastructure.providers.lastfm import API_MAX_LIMIT, LastFmClient


def make_response(payload=None, status_code=200, headers=None, json_error=None):
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.headers = headers or {}
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = payload
    return response


def recent_payload(tracks, page=1, total_pages=1, total=None, per_page=50):
    return {
        "recenttracks": {
            "track": tracks,
            "@attr": {
                "user": "rj",
                "page": str(page),
                "perPage": str(per_page),
                "totalPages": str(total_pages),
                "total": str(total if total is not None else len(tracks)),
            },
        }
    }


def scrobble_item(artist="Radiohead", name="Airbag", uts="1700000000", album="OK Computer"):
    return {
        "artist": {"mbid": "", "#text": artist},
        "name": name,
        "album": {"mbid": "", "#text": album},
        "mbid": "",
        "url": f"https://www.last.fm/music/{artist}/_/{name}",
        "image": [
            {"size": "small", "#text": "https://img/small.png"},
            {"size": "extralarge", "#text": "https://img/xl.png"},
        ],
        "date": {"uts": uts, "#text": "14 Nov 2023, 22:13"},
    }


class TestLastFmClient:
    """Tests for LastFmClient."""

    def setup_method(self):
        """Set up test fixtures."""
        self.session = Mock()
        self.session.headers = {}
        self.handler = Handler(username="rj", api_key="test_api_key")
        self.client = LastFmClient(self.handler, session=self.session)

    def test_request_parameters(self):
        """Test query string built for a page request."""
        self.session.get.return_value = make_response(recent_payload([]))

        self.client.fetch_page(FetchMethod.RECENT_TRACKS, 3, 50)

        args, kwargs = self.session.get.call_args
        assert args[0] == self.handler.base_url
        assert kwargs["params"] == {
            "method": "user.getrecenttracks",
            "user": "rj",
            "api_key": "test_api_key",
            "format": "json",
            "limit": "50",
            "page": "3",
        }
        assert kwargs["timeout"] == self.client.timeout

    def test_limit_clamped_to_maximum(self):
        """Test page size never exceeds the API maximum."""
        self.session.get.return_value = make_response(recent_payload([]))

        self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 1000)

        assert self.session.get.call_args[1]["params"]["limit"] == str(API_MAX_LIMIT)

    def test_extra_params_merged(self):
        """Test period parameter for top tracks."""
        self.session.get.return_value = make_response(
            {"toptracks": {"track": [], "@attr": {"page": "1", "perPage": "50", "totalPages": "0", "total": "0"}}}
        )

        self.client.fetch_page(FetchMethod.TOP_TRACKS, 1, 50, {"period": "7day"})

        assert self.session.get.call_args[1]["params"]["period"] == "7day"

    def test_parse_recent_tracks(self):
        """Test mapping of a recent-tracks page."""
        payload = recent_payload([scrobble_item(), scrobble_item(name="Paranoid Android", uts="1699990000")],
                                 page=1, total_pages=7, total=14, per_page=2)
        self.session.get.return_value = make_response(payload)

        records, descriptor = self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 2)

        assert descriptor.page == 1
        assert descriptor.total_pages == 7
        assert descriptor.total == 14
        assert descriptor.per_page == 2
        assert [r.track for r in records] == ["Airbag", "Paranoid Android"]
        first = records[0]
        assert first.artist == "Radiohead"
        assert first.album == "OK Computer"
        assert first.timestamp == 1700000000
        assert first.mbid is None
        assert first.image_url == "https://img/xl.png"

    def test_now_playing_has_no_timestamp(self):
        """Test now-playing entry mapping."""
        item = scrobble_item()
        del item["date"]
        item["@attr"] = {"nowplaying": "true"}
        self.session.get.return_value = make_response(recent_payload([item, scrobble_item()]))

        records, _ = self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

        assert records[0].is_now_playing
        assert records[1].timestamp == 1700000000

    def test_single_track_object_is_wrapped(self):
        """Test a lone track returned as an object."""
        payload = recent_payload([])
        payload["recenttracks"]["track"] = scrobble_item()
        self.session.get.return_value = make_response(payload)

        records, _ = self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 1)

        assert len(records) == 1

    def test_loved_tracks(self):
        """Test loved-tracks payload."""
        item = scrobble_item()
        item["artist"] = {"name": "Portishead", "mbid": "", "url": "https://www.last.fm/music/Portishead"}
        del item["album"]
        payload = {"lovedtracks": {"track": [item],
                                   "@attr": {"page": "1", "perPage": "50", "totalPages": "1", "total": "1"}}}
        self.session.get.return_value = make_response(payload)

        records, descriptor = self.client.fetch_page(FetchMethod.LOVED_TRACKS, 1, 50)

        assert records[0].artist == "Portishead"
        assert records[0].album is None
        assert descriptor.total == 1

    def test_top_tracks(self):
        """Test top-tracks payload."""
        item = {"name": "Karma Police", "playcount": "87", "mbid": "",
                "url": "https://www.last.fm/music/Radiohead/_/Karma+Police",
                "artist": {"name": "Radiohead", "mbid": ""}, "@attr": {"rank": "1"}}
        payload = {"toptracks": {"track": [item],
                                 "@attr": {"page": "1", "perPage": "50", "totalPages": "1", "total": "1"}}}
        self.session.get.return_value = make_response(payload)

        records, _ = self.client.fetch_page(FetchMethod.TOP_TRACKS, 1, 50)

        assert records == [TopTrack(artist="Radiohead", track="Karma Police", play_count=87, rank=1,
                                    url="https://www.last.fm/music/Radiohead/_/Karma+Police")]

    def test_http_429_is_rate_limited(self):
        """Test HTTP 429 with Retry-After."""
        self.session.get.return_value = make_response({}, status_code=429, headers={"Retry-After": "2"})

        with pytest.raises(RateLimited) as exc_info:
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 4, 50)

        assert exc_info.value.retry_after_ms == 2000
        assert exc_info.value.page == 4

    def test_api_error_29_is_rate_limited(self):
        """Test rate-limit error code in the body."""
        self.session.get.return_value = make_response(
            {"error": 29, "message": "Rate limit exceeded"}, status_code=200
        )

        with pytest.raises(RateLimited):
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

    def test_api_error(self):
        """Test structured API error."""
        self.session.get.return_value = make_response(
            {"error": 6, "message": "User not found"}, status_code=404
        )

        with pytest.raises(ApiError) as exc_info:
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

        assert exc_info.value.code == 6
        assert exc_info.value.api_message == "User not found"
        assert "User not found" in str(exc_info.value)

    def test_transport_failure(self):
        """Test connection errors map to NetworkError."""
        self.session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(NetworkError):
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

    def test_timeout(self):
        """Test timeouts map to NetworkError."""
        self.session.get.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(NetworkError):
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

    def test_server_error_without_body(self):
        """Test 5xx with non-JSON body."""
        self.session.get.return_value = make_response(status_code=503, json_error=ValueError("no json"))

        with pytest.raises(NetworkError):
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

    def test_invalid_json(self):
        """Test 200 with a non-JSON body."""
        self.session.get.return_value = make_response(status_code=200, json_error=ValueError("no json"))

        with pytest.raises(DecodeError):
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

    @pytest.mark.parametrize("payload", [
        {},
        {"recenttracks": {"track": []}},
        {"recenttracks": {"track": [], "@attr": {"page": "x", "perPage": "1", "totalPages": "1", "total": "1"}}},
        {"recenttracks": {"track": [{"name": "No artist"}],
                          "@attr": {"page": "1", "perPage": "1", "totalPages": "1", "total": "1"}}},
    ])
    def test_schema_mismatch(self, payload):
        """Test unexpected payload shapes."""
        self.session.get.return_value = make_response(payload)

        with pytest.raises(DecodeError):
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 1, 50)

    def test_invalid_page_number(self):
        """Test page numbers start at 1."""
        with pytest.raises(ValidationError):
            self.client.fetch_page(FetchMethod.RECENT_TRACKS, 0, 50)
        self.session.get.assert_not_called()

    def test_context_manager_closes_session(self):
        """Test session is closed on exit."""
        with self.client:
            pass
        self.session.close.assert_called_once()


class TestLastFmClientSessions:
    """Tests for session ownership across worker threads."""

    def setup_method(self):
        """Set up test fixtures."""
        self.handler = Handler(username="rj", api_key="test_api_key")

    @patch('scrobblestats.infrastructure.providers.lastfm.requests.Session')
    def test_each_thread_gets_its_own_session(self, mock_session_class):
        """Test concurrent worker threads never share a session."""
        mock_session_class.side_effect = lambda: Mock(headers={})
        client = LastFmClient(self.handler)
        seen = {}

        def worker(name):
            seen[name] = (client._session(), client._session())

        threads = [threading.Thread(target=worker, args=(name,)) for name in ("recent", "loved")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        recent_first, recent_again = seen["recent"]
        loved_first, _ = seen["loved"]
        assert recent_first is recent_again
        assert recent_first is not loved_first
        assert mock_session_class.call_count == 2
        assert recent_first.headers["User-Agent"] == "scrobblestats"

        client.close()
        recent_first.close.assert_called_once()
        loved_first.close.assert_called_once()

    @patch('scrobblestats.infrastructure.providers.lastfm.requests.Session')
    def test_no_session_created_until_first_request(self, mock_session_class):
        client = LastFmClient(self.handler)
        client.close()
        mock_session_class.assert_not_called()
