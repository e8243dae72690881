"""Async client for the Spotify Web API.

Covers the endpoints the stats sync needs:
- top artists/tracks for the current user per timeframe
- batch lookup of artists/tracks by id (at most 50 ids per call)
- the current user's profile
- token endpoint grants (client credentials, refresh token, authorization code)

Requests are rate limited client-side and bounded by a total timeout. There
are no retries here; a failed request surfaces to the caller.
"""
import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional, Union

import aiohttp
from aiolimiter import AsyncLimiter

from .helperClasses import Artist, EntityType, SpotistatsError, Timeframe, Track


SPOTIFY_API_BASE = "https://api.spotify.com/v1"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
ENTITY_FETCH_COUNT = 50
MAX_BATCH_ENTITY_COUNT = 50


class UpstreamRequestError(SpotistatsError):
    """The request never produced a response (network, DNS, timeout)."""
    pass


class UpstreamResponseError(SpotistatsError):
    """Spotify answered with an error status, an error body or unparseable JSON."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


def _unwrap_response(status: int, payload: Any) -> Any:
    """Turn a decoded response envelope into its payload or raise."""
    if isinstance(payload, dict) and "error" in payload:
        error = payload["error"]
        if isinstance(error, dict):
            message = error.get("message") or "Unknown error"
            status = error.get("status", status)
        else:
            message = payload.get("error_description") or str(error)
        raise UpstreamResponseError(f"Spotify API error ({status}): {message}", status)
    if status >= 400:
        raise UpstreamResponseError(f"Got bad status code of {status} from Spotify API", status)
    return payload


def get_top_entities_url(entity_type: EntityType) -> str:
    return f"{SPOTIFY_API_BASE}/me/top/{entity_type.value}"


class SpotifyClient:
    """Thin async wrapper over the handful of Spotify endpoints we use."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        request_timeout_seconds: Optional[int] = 10,
        max_requests_per_second: float = 10.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.request_timeout_seconds = request_timeout_seconds
        self._limiter = AsyncLimiter(max_requests_per_second, 1)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        url: str,
        token: Optional[str] = None,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        authorization: Optional[str] = None,
    ) -> Any:
        session = await self._get_session()
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif authorization:
            headers["Authorization"] = authorization

        async with self._limiter:
            try:
                async with session.request(
                    method, url, headers=headers, params=params, data=data
                ) as response:
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError as e:
                        logging.error("Error decoding response from Spotify API at %s: %s", url, e)
                        raise UpstreamResponseError(
                            "Error decoding response from Spotify API", response.status
                        ) from e
                    return _unwrap_response(response.status, payload)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logging.error("Error communicating with Spotify API at %s: %s", url, e)
                raise UpstreamRequestError("Error communicating with the Spotify API") from e

    async def get_top_entities(
        self, entity_type: EntityType, timeframe: Timeframe, token: str
    ) -> Union[List[Artist], List[Track]]:
        """Fetch the user's top artists or tracks for one timeframe, in ranking order."""
        payload = await self._request(
            "GET",
            get_top_entities_url(entity_type),
            token=token,
            params={"limit": ENTITY_FETCH_COUNT, "time_range": timeframe.api_value},
        )
        items = _require_list(payload, "items")
        if entity_type is EntityType.ARTISTS:
            return [Artist.from_dict(item) for item in items]
        return [Track.from_dict(item) for item in items]

    async def _get_batch(self, entity_type: EntityType, ids: List[str], token: str) -> List[dict]:
        if len(ids) > MAX_BATCH_ENTITY_COUNT:
            raise ValueError(
                f"Cannot fetch more than {MAX_BATCH_ENTITY_COUNT} {entity_type.value} per request"
            )
        payload = await self._request(
            "GET",
            f"{SPOTIFY_API_BASE}/{entity_type.value}",
            token=token,
            params={"ids": ",".join(ids)},
        )
        # Unknown ids come back as null entries
        return [item for item in _require_list(payload, entity_type.value) if item]

    async def get_artists(self, ids: List[str], token: str) -> Dict[str, Artist]:
        """Batch artist lookup keyed by Spotify id."""
        artists = [Artist.from_dict(item) for item in await self._get_batch(EntityType.ARTISTS, ids, token)]
        return {artist.id: artist for artist in artists}

    async def get_tracks(self, ids: List[str], token: str) -> Dict[str, Track]:
        """Batch track lookup keyed by Spotify id."""
        tracks = [Track.from_dict(item) for item in await self._get_batch(EntityType.TRACKS, ids, token)]
        return {track.id: track for track in tracks}

    async def get_user_profile(self, token: str) -> dict:
        return await self._request("GET", f"{SPOTIFY_API_BASE}/me", token=token)

    def _client_auth(self) -> str:
        """HTTP Basic credentials for the token endpoint."""
        if not self.client_id or not self.client_secret:
            raise ValueError("SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET must be set")
        credentials = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        return "Basic " + base64.b64encode(credentials).decode("ascii")

    async def _token_request(self, params: Dict[str, str]) -> dict:
        logging.info("Hitting Spotify token endpoint with grant_type=%s", params.get("grant_type"))
        payload = await self._request(
            "POST", SPOTIFY_TOKEN_URL, data=params, authorization=self._client_auth()
        )
        if not isinstance(payload, dict) or "access_token" not in payload:
            raise UpstreamResponseError("Token response did not contain an access token")
        return payload

    async def fetch_auth_token(self) -> dict:
        """Application-level token via the client credentials grant."""
        return await self._token_request({"grant_type": "client_credentials"})

    async def refresh_user_token(self, refresh_token: str) -> dict:
        """
        Trade a refresh token for a new access token.

        Args:
            refresh_token: The user's stored refresh token

        Returns:
            The token payload; ``refresh_token`` is only present when Spotify
            rotated it
        """
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def exchange_code_for_token(self, code: str) -> dict:
        """Trade an OAuth authorization code for access and refresh tokens."""
        if not self.redirect_uri:
            raise ValueError("SPOTIFY_REDIRECT_URI must be set to exchange authorization codes")
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )


def _require_list(payload: Any, key: str) -> list:
    items = payload.get(key) if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise UpstreamResponseError(f"Malformed Spotify API response: missing '{key}' list")
    return items
