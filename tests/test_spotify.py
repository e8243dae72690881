"""Tests for the Spotify Web API client."""
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from spotistats.modules.helperClasses import EntityType, Timeframe
from spotistats.modules.spotify import (
    SPOTIFY_TOKEN_URL,
    SpotifyClient,
    UpstreamRequestError,
    UpstreamResponseError,
    get_top_entities_url,
)

SAMPLE_ARTIST = {
    "id": "4Z8W4fKeB5YxbusRsdQVPb",
    "name": "Radiohead",
    "genres": ["alternative rock", "art rock"],
    "popularity": 79,
    "uri": "spotify:artist:4Z8W4fKeB5YxbusRsdQVPb",
    "images": [{"url": "https://i.scdn.co/image/abc", "height": 640, "width": 640}],
}

SAMPLE_TRACK = {
    "id": "3n3Ppam7vgaVa1iaRUc9Lp",
    "name": "Paranoid Android",
    "artists": [{"id": "4Z8W4fKeB5YxbusRsdQVPb", "name": "Radiohead"}],
    "album": {"id": "6dVIqQ8qmQ5GBnJ9shOYGE", "name": "OK Computer", "images": []},
    "popularity": 72,
    "preview_url": None,
    "uri": "spotify:track:3n3Ppam7vgaVa1iaRUc9Lp",
}


@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response with async context manager support."""
    def _create_response(status: int, json_data=None, json_error=None):
        mock_response = MagicMock()
        mock_response.status = status
        if json_error is not None:
            mock_response.json = AsyncMock(side_effect=json_error)
        else:
            mock_response.json = AsyncMock(return_value=json_data)

        async_cm = MagicMock()
        async_cm.__aenter__ = AsyncMock(return_value=mock_response)
        async_cm.__aexit__ = AsyncMock(return_value=None)
        return async_cm
    return _create_response


def _session_returning(async_cm):
    mock_session = MagicMock()
    mock_session.request = MagicMock(return_value=async_cm)
    return mock_session


class TestTopEntities:
    def test_top_entities_url(self):
        assert get_top_entities_url(EntityType.ARTISTS) == "https://api.spotify.com/v1/me/top/artists"
        assert get_top_entities_url(EntityType.TRACKS) == "https://api.spotify.com/v1/me/top/tracks"

    async def test_get_top_artists(self, mock_aiohttp_response):
        client = SpotifyClient()
        async_cm = mock_aiohttp_response(200, json_data={"items": [SAMPLE_ARTIST]})

        with patch.object(client, "_get_session") as mock_get_session:
            mock_session = _session_returning(async_cm)
            mock_get_session.return_value = mock_session

            artists = await client.get_top_entities(EntityType.ARTISTS, Timeframe.MEDIUM, "user-token")

        assert [a.name for a in artists] == ["Radiohead"]
        assert artists[0].genres == ["alternative rock", "art rock"]
        _, kwargs = mock_session.request.call_args
        assert kwargs["params"] == {"limit": 50, "time_range": "medium_term"}
        assert kwargs["headers"]["Authorization"] == "Bearer user-token"

    async def test_get_top_tracks_keeps_ranking_order(self, mock_aiohttp_response):
        client = SpotifyClient()
        second = dict(SAMPLE_TRACK, id="t2", name="Karma Police")
        async_cm = mock_aiohttp_response(200, json_data={"items": [SAMPLE_TRACK, second]})

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = _session_returning(async_cm)

            tracks = await client.get_top_entities(EntityType.TRACKS, Timeframe.SHORT, "user-token")

        assert [t.id for t in tracks] == ["3n3Ppam7vgaVa1iaRUc9Lp", "t2"]
        assert tracks[0].artists[0].genres is None

    async def test_missing_items_is_a_response_error(self, mock_aiohttp_response):
        client = SpotifyClient()
        async_cm = mock_aiohttp_response(200, json_data={"total": 0})

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = _session_returning(async_cm)

            with pytest.raises(UpstreamResponseError):
                await client.get_top_entities(EntityType.TRACKS, Timeframe.SHORT, "user-token")


class TestBatchLookup:
    async def test_get_artists_keyed_by_id(self, mock_aiohttp_response):
        client = SpotifyClient()
        other = dict(SAMPLE_ARTIST, id="a2", name="Portishead")
        async_cm = mock_aiohttp_response(200, json_data={"artists": [SAMPLE_ARTIST, None, other]})

        with patch.object(client, "_get_session") as mock_get_session:
            mock_session = _session_returning(async_cm)
            mock_get_session.return_value = mock_session

            artists = await client.get_artists(["4Z8W4fKeB5YxbusRsdQVPb", "bogus", "a2"], "token")

        assert set(artists) == {"4Z8W4fKeB5YxbusRsdQVPb", "a2"}
        assert artists["a2"].name == "Portishead"
        _, kwargs = mock_session.request.call_args
        assert kwargs["params"] == {"ids": "4Z8W4fKeB5YxbusRsdQVPb,bogus,a2"}

    async def test_get_tracks_keyed_by_id(self, mock_aiohttp_response):
        client = SpotifyClient()
        async_cm = mock_aiohttp_response(200, json_data={"tracks": [SAMPLE_TRACK]})

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = _session_returning(async_cm)

            tracks = await client.get_tracks(["3n3Ppam7vgaVa1iaRUc9Lp"], "token")

        assert tracks["3n3Ppam7vgaVa1iaRUc9Lp"].album.name == "OK Computer"

    async def test_more_than_fifty_ids_rejected(self):
        client = SpotifyClient()

        with pytest.raises(ValueError):
            await client.get_artists([f"a{i}" for i in range(51)], "token")


class TestErrorHandling:
    async def test_error_envelope_raises_response_error(self, mock_aiohttp_response):
        client = SpotifyClient()
        async_cm = mock_aiohttp_response(
            401, json_data={"error": {"status": 401, "message": "The access token expired"}}
        )

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = _session_returning(async_cm)

            with pytest.raises(UpstreamResponseError) as exc_info:
                await client.get_top_entities(EntityType.ARTISTS, Timeframe.LONG, "expired")

        assert exc_info.value.status == 401
        assert "access token expired" in str(exc_info.value)

    async def test_error_status_without_envelope(self, mock_aiohttp_response):
        client = SpotifyClient()
        async_cm = mock_aiohttp_response(502, json_data=None)

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = _session_returning(async_cm)

            with pytest.raises(UpstreamResponseError) as exc_info:
                await client.get_user_profile("token")

        assert exc_info.value.status == 502

    async def test_undecodable_body_raises_response_error(self, mock_aiohttp_response):
        client = SpotifyClient()
        async_cm = mock_aiohttp_response(200, json_error=ValueError("Expecting value"))

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = _session_returning(async_cm)

            with pytest.raises(UpstreamResponseError):
                await client.get_user_profile("token")

    async def test_transport_failure_raises_request_error(self):
        client = SpotifyClient()
        mock_session = MagicMock()
        mock_session.request = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = mock_session

            with pytest.raises(UpstreamRequestError):
                await client.get_tracks(["t1"], "token")


class TestTokenGrants:
    async def test_refresh_user_token(self, mock_aiohttp_response):
        client = SpotifyClient(client_id="id", client_secret="secret")
        async_cm = mock_aiohttp_response(200, json_data={"access_token": "fresh", "token_type": "Bearer"})

        with patch.object(client, "_get_session") as mock_get_session:
            mock_session = _session_returning(async_cm)
            mock_get_session.return_value = mock_session

            tokens = await client.refresh_user_token("refresh-me")

        assert tokens["access_token"] == "fresh"
        assert "refresh_token" not in tokens
        args, kwargs = mock_session.request.call_args
        assert args == ("POST", SPOTIFY_TOKEN_URL)
        assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "refresh-me"}
        # base64 of "id:secret"
        assert kwargs["headers"]["Authorization"] == "Basic aWQ6c2VjcmV0"
        assert "auth" not in kwargs

    async def test_token_grant_requires_credentials(self):
        client = SpotifyClient()

        with pytest.raises(ValueError):
            await client.fetch_auth_token()

    async def test_oauth_error_body(self, mock_aiohttp_response):
        client = SpotifyClient(client_id="id", client_secret="secret")
        async_cm = mock_aiohttp_response(
            400, json_data={"error": "invalid_grant", "error_description": "Invalid refresh token"}
        )

        with patch.object(client, "_get_session") as mock_get_session:
            mock_get_session.return_value = _session_returning(async_cm)

            with pytest.raises(UpstreamResponseError) as exc_info:
                await client.refresh_user_token("revoked")

        assert "Invalid refresh token" in str(exc_info.value)

    async def test_code_exchange_requires_redirect_uri(self):
        client = SpotifyClient(client_id="id", client_secret="secret")

        with pytest.raises(ValueError):
            await client.exchange_code_for_token("code")
