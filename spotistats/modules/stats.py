"""Read the latest stored stats for a user and hydrate them with full metadata."""
import logging
from typing import Dict, List, Optional, Sequence

import aiosqlite

from .db import (
    ARTIST_RANK_TABLE,
    TRACK_RANK_TABLE,
    get_artist_genres,
    get_latest_rankings,
    retrieve_mapped_spotify_ids,
    retrieve_spotify_ids,
)
from .helperClasses import StatsSnapshot, Timeframe, User
from .resolver import BatchResolver, fetch_artists, fetch_tracks
from .spotify import SpotifyClient


def _ordered_ids(
    rankings: Dict[Timeframe, List[int]], spotify_ids: Dict[int, str]
) -> Dict[Timeframe, List[str]]:
    return {
        timeframe: [spotify_ids[mapped_id] for mapped_id in rankings.get(timeframe, [])]
        for timeframe in Timeframe
    }


async def load_user_stats(
    conn: aiosqlite.Connection,
    client: SpotifyClient,
    resolver: BatchResolver,
    user: User,
    token: str,
    artists_namespace: str = "artists",
    tracks_namespace: str = "tracks",
) -> Optional[StatsSnapshot]:
    """
    Load the most recent stored top artists and tracks for a user.

    Entity metadata comes from the cache, falling back to Spotify for misses.

    Args:
        conn: Open stats database connection
        client: Spotify client used for cache misses
        resolver: Batch resolver over the metadata cache
        user: The user whose stats to load
        token: Access token for Spotify lookups (an app token is enough)
        artists_namespace: Cache hash holding artist metadata
        tracks_namespace: Cache hash holding track metadata

    Returns:
        Snapshot of full entities per timeframe, or None if the user has
        never been synced
    """
    artists_time, artist_rankings = await get_latest_rankings(conn, ARTIST_RANK_TABLE, user.id)
    tracks_time, track_rankings = await get_latest_rankings(conn, TRACK_RANK_TABLE, user.id)
    if artists_time is None and tracks_time is None:
        logging.info("No stored stats for user %s", user.spotify_id)
        return None

    spotify_ids = await retrieve_spotify_ids(
        conn,
        [
            mapped_id
            for rankings in (artist_rankings, track_rankings)
            for mapped_ids in rankings.values()
            for mapped_id in mapped_ids
        ],
    )
    artist_ids = _ordered_ids(artist_rankings, spotify_ids)
    track_ids = _ordered_ids(track_rankings, spotify_ids)

    all_artist_ids = list(dict.fromkeys(i for ids in artist_ids.values() for i in ids))
    all_track_ids = list(dict.fromkeys(i for ids in track_ids.values() for i in ids))
    artists = await fetch_artists(client, resolver, token, all_artist_ids, artists_namespace)
    tracks = await fetch_tracks(client, resolver, token, all_track_ids, tracks_namespace)
    artists_by_id = {artist.id: artist for artist in artists}
    tracks_by_id = {track.id: track for track in tracks}

    snapshot = StatsSnapshot(last_update_time=max(t for t in (artists_time, tracks_time) if t))
    for timeframe in Timeframe:
        snapshot.artists.set_items(timeframe, [artists_by_id[i] for i in artist_ids[timeframe]])
        snapshot.tracks.set_items(timeframe, [tracks_by_id[i] for i in track_ids[timeframe]])
    return snapshot


async def load_artist_genres(
    conn: aiosqlite.Connection, spotify_ids: Sequence[str]
) -> Dict[str, List[str]]:
    """
    Read the stored genre tags for artists.

    Args:
        conn: Open stats database connection
        spotify_ids: Spotify artist ids, typically from a loaded snapshot

    Returns:
        Sorted genres per Spotify id; artists without stored genres map to []
    """
    mapped_ids = await retrieve_mapped_spotify_ids(conn, spotify_ids)
    genres = await get_artist_genres(conn, mapped_ids.values())
    return {spotify_id: genres.get(mapped_id, []) for spotify_id, mapped_id in mapped_ids.items()}
