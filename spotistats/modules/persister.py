"""Translate a stats snapshot into relational rows.

The steps run in a fixed order and each one commits on its own; only the
artist genre replacement is a multi-statement transaction. A failure part
way through leaves the earlier steps committed, so a failed sync is simply
retried later by the scheduler.
"""
import logging
from typing import Dict, List, Mapping, Optional

import aiosqlite

from .db import (
    ARTIST_RANK_TABLE,
    TRACK_RANK_TABLE,
    insert_rank_entries,
    insert_track_artist_pairs,
    replace_artist_genres,
    retrieve_mapped_spotify_ids,
    update_user_last_updated,
)
from .helperClasses import (
    ArtistGenrePair,
    RankedEntry,
    StatsSnapshot,
    TimeFrames,
    TrackArtistPair,
    User,
)


def collect_artist_genres(snapshot: StatsSnapshot) -> Dict[str, Optional[List[str]]]:
    """Every artist id referenced by the snapshot, with its deduplicated genres.

    Top artist lists are read first, then the artists embedded in tracks; the
    last reported genre list for an id wins. Embedded artist references carry
    no genre data (``None``) and never overwrite a reported list.
    """
    genres_by_artist_id: Dict[str, Optional[List[str]]] = {}
    artists = list(snapshot.artists.all())
    artists.extend(artist for track in snapshot.tracks.all() for artist in track.artists)

    for artist in artists:
        if artist.genres is not None:
            genres_by_artist_id[artist.id] = list(dict.fromkeys(artist.genres))
        else:
            genres_by_artist_id.setdefault(artist.id, None)
    return genres_by_artist_id


def build_rank_entries(
    user: User,
    snapshot: StatsSnapshot,
    timeframes: TimeFrames,
    mapped_ids: Mapping[str, int],
) -> List[RankedEntry]:
    return [
        RankedEntry(
            user_id=user.id,
            mapped_spotify_id=mapped_ids[entity.id],
            update_time=snapshot.last_update_time,
            timeframe=timeframe.code,
            ranking=ranking,
        )
        for timeframe, entities in timeframes.items()
        for ranking, entity in enumerate(entities)
    ]


def build_track_artist_pairs(
    snapshot: StatsSnapshot,
    mapped_track_ids: Mapping[str, int],
    mapped_artist_ids: Mapping[str, int],
) -> List[TrackArtistPair]:
    pairs = (
        TrackArtistPair(track_id=mapped_track_ids[track.id], artist_id=mapped_artist_ids[artist.id])
        for track in snapshot.tracks.all()
        for artist in track.artists
    )
    return list(dict.fromkeys(pairs))


def build_artist_genre_pairs(
    genres_by_artist_id: Mapping[str, Optional[List[str]]],
    mapped_artist_ids: Mapping[str, int],
) -> List[ArtistGenrePair]:
    return [
        ArtistGenrePair(artist_id=mapped_artist_ids[artist_id], genre=genre)
        for artist_id, genres in genres_by_artist_id.items()
        for genre in genres or []
    ]


async def store_stats_snapshot(
    conn: aiosqlite.Connection, user: User, snapshot: StatsSnapshot
) -> None:
    """
    Write rank history, track/artist links and artist genres for one snapshot.

    Rank rows are an append-only history: storing the same snapshot twice
    stores its rows twice.

    Args:
        conn: Open stats database connection
        user: Owner of the snapshot
        snapshot: Snapshot returned by fetch_snapshot

    Raises:
        PersistenceError: A step failed; earlier steps stay committed
    """
    update_time = snapshot.last_update_time

    genres_by_artist_id = collect_artist_genres(snapshot)
    mapped_artist_ids = await retrieve_mapped_spotify_ids(conn, genres_by_artist_id.keys())
    mapped_track_ids = await retrieve_mapped_spotify_ids(
        conn, (track.id for track in snapshot.tracks.all())
    )

    artist_entries = build_rank_entries(user, snapshot, snapshot.artists, mapped_artist_ids)
    await insert_rank_entries(conn, ARTIST_RANK_TABLE, artist_entries)

    track_artist_pairs = build_track_artist_pairs(snapshot, mapped_track_ids, mapped_artist_ids)
    await insert_track_artist_pairs(conn, track_artist_pairs)

    # Artists seen only as embedded track references keep their stored genres
    genre_artist_ids = [
        mapped_artist_ids[artist_id]
        for artist_id, genres in genres_by_artist_id.items()
        if genres is not None
    ]
    artist_genre_pairs = build_artist_genre_pairs(genres_by_artist_id, mapped_artist_ids)
    await replace_artist_genres(conn, genre_artist_ids, artist_genre_pairs)

    track_entries = build_rank_entries(user, snapshot, snapshot.tracks, mapped_track_ids)
    await insert_rank_entries(conn, TRACK_RANK_TABLE, track_entries)

    updated_row_count = await update_user_last_updated(conn, user.id, update_time)
    if updated_row_count != 1:
        logging.error(
            "Updated %d rows when setting last update time for user %s, but should have updated 1.",
            updated_row_count, user.id,
        )

    logging.info(
        "Stored stats snapshot for user %s: %d artist rows, %d track rows, "
        "%d track/artist pairs, %d genre rows",
        user.id, len(artist_entries), len(track_entries),
        len(track_artist_pairs), len(artist_genre_pairs),
    )
