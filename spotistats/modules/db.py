"""
SQLite persistence for users, Spotify id mappings and stats history.

Tables:
- spotify_items: Spotify id -> internal integer id (append-only, unique)
- users: account, tokens and the time of the last stored snapshot
- artist_rank_snapshots / track_rank_snapshots: append-only ranking history
- tracks_artists: which artists appear on which track (deduplicated)
- artists_genres: current genre tags per artist (replaced on every sync)

Connections are opened in autocommit mode; every write helper wraps its own
statements in an explicit transaction so each bulk write is all-or-nothing.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .helperClasses import (
    ArtistGenrePair,
    RankedEntry,
    SpotistatsError,
    Timeframe,
    TrackArtistPair,
    User,
)

# Keeps every IN (...) list under SQLite's bound-parameter limit
SQL_PARAM_CHUNK_SIZE = 500

NEVER_UPDATED = datetime(1970, 1, 1)

ARTIST_RANK_TABLE = "artist_rank_snapshots"
TRACK_RANK_TABLE = "track_rank_snapshots"
_RANK_TABLES = (ARTIST_RANK_TABLE, TRACK_RANK_TABLE)

_USER_COLUMNS = "id, spotify_id, username, token, refresh_token, creation_time, last_update_time"


class PersistenceError(SpotistatsError):
    """A statement against the stats database failed."""
    pass


def connect_db(db_path: str):
    """Open a connection in autocommit mode; use as ``async with connect_db(path) as conn``."""
    return aiosqlite.connect(db_path, isolation_level=None)


def _to_db_time(value: datetime) -> str:
    return value.isoformat(sep=" ")


def _from_db_time(value) -> Optional[datetime]:
    if value is None:
        return None
    return value if isinstance(value, datetime) else datetime.fromisoformat(value)


def _chunked(items: Sequence, size: int = SQL_PARAM_CHUNK_SIZE) -> Iterable[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _placeholders(count: int) -> str:
    return ",".join("?" for _ in range(count))


@asynccontextmanager
async def _transaction(conn: aiosqlite.Connection, mode: str = "DEFERRED") -> AsyncIterator[None]:
    await conn.execute(f"BEGIN {mode}")
    try:
        yield
    except BaseException:
        await conn.execute("ROLLBACK")
        raise
    await conn.execute("COMMIT")


async def initialize_db(conn: aiosqlite.Connection) -> None:
    try:
        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS spotify_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                spotify_id TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                creation_time TIMESTAMP NOT NULL,
                last_update_time TIMESTAMP NOT NULL,
                spotify_id TEXT NOT NULL UNIQUE,
                username TEXT NOT NULL,
                token TEXT NOT NULL,
                refresh_token TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS artist_rank_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id),
                update_time TIMESTAMP NOT NULL,
                mapped_spotify_id INTEGER NOT NULL REFERENCES spotify_items(id),
                timeframe INTEGER NOT NULL,
                ranking INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_artist_rank_user_time
            ON artist_rank_snapshots(user_id, update_time);

            CREATE TABLE IF NOT EXISTS track_rank_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id),
                update_time TIMESTAMP NOT NULL,
                mapped_spotify_id INTEGER NOT NULL REFERENCES spotify_items(id),
                timeframe INTEGER NOT NULL,
                ranking INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_track_rank_user_time
            ON track_rank_snapshots(user_id, update_time);

            CREATE TABLE IF NOT EXISTS tracks_artists (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                track_id INTEGER NOT NULL REFERENCES spotify_items(id),
                artist_id INTEGER NOT NULL REFERENCES spotify_items(id),
                UNIQUE (track_id, artist_id)
            );

            CREATE TABLE IF NOT EXISTS artists_genres (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                artist_id INTEGER NOT NULL REFERENCES spotify_items(id),
                genre TEXT NOT NULL,
                UNIQUE (artist_id, genre)
            );
        """)
    except aiosqlite.Error as e:
        logging.error("Error creating stats tables: %s", e)
        raise PersistenceError("Error initializing the stats database") from e
    logging.info("Stats database tables initialized")


# Spotify id mapping

async def retrieve_mapped_spotify_ids(
    conn: aiosqlite.Connection, spotify_ids: Iterable[str]
) -> Dict[str, int]:
    """
    Look up internal ids for Spotify ids, assigning new ones where needed.

    Safe to call with any mix of known and unknown ids; an id is only ever
    assigned once thanks to the unique constraint on ``spotify_id``.

    Args:
        conn: Open stats database connection
        spotify_ids: Spotify ids, duplicates allowed

    Returns:
        Internal id per distinct Spotify id
    """
    unique_ids = list(dict.fromkeys(spotify_ids))
    if not unique_ids:
        return {}

    mapping: Dict[str, int] = {}
    try:
        async with _transaction(conn):
            await conn.executemany(
                "INSERT OR IGNORE INTO spotify_items (spotify_id) VALUES (?)",
                [(spotify_id,) for spotify_id in unique_ids],
            )
            for chunk in _chunked(unique_ids):
                async with conn.execute(
                    f"SELECT spotify_id, id FROM spotify_items WHERE spotify_id IN ({_placeholders(len(chunk))})",
                    list(chunk),
                ) as cursor:
                    for spotify_id, internal_id in await cursor.fetchall():
                        mapping[spotify_id] = internal_id
    except aiosqlite.Error as e:
        logging.error("Error mapping %d spotify ids: %s", len(unique_ids), e)
        raise PersistenceError("Error retrieving mapped Spotify ids") from e

    return mapping


async def retrieve_spotify_ids(
    conn: aiosqlite.Connection, internal_ids: Iterable[int]
) -> Dict[int, str]:
    """Reverse of :func:`retrieve_mapped_spotify_ids` for already-known ids."""
    unique_ids = list(dict.fromkeys(internal_ids))
    mapping: Dict[int, str] = {}
    try:
        for chunk in _chunked(unique_ids):
            async with conn.execute(
                f"SELECT id, spotify_id FROM spotify_items WHERE id IN ({_placeholders(len(chunk))})",
                list(chunk),
            ) as cursor:
                for internal_id, spotify_id in await cursor.fetchall():
                    mapping[internal_id] = spotify_id
    except aiosqlite.Error as e:
        logging.error("Error reading spotify ids: %s", e)
        raise PersistenceError("Error retrieving Spotify ids") from e
    return mapping


# Stats rows

async def insert_rank_entries(
    conn: aiosqlite.Connection, table: str, entries: Sequence[RankedEntry]
) -> None:
    if table not in _RANK_TABLES:
        raise ValueError(f"Unknown rank snapshot table: {table}")
    if not entries:
        return
    try:
        async with _transaction(conn):
            await conn.executemany(
                f"""
                INSERT INTO {table} (user_id, update_time, mapped_spotify_id, timeframe, ranking)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (e.user_id, _to_db_time(e.update_time), e.mapped_spotify_id, e.timeframe, e.ranking)
                    for e in entries
                ],
            )
    except aiosqlite.Error as e:
        logging.error("Error inserting %d rows into %s: %s", len(entries), table, e)
        raise PersistenceError(f"Error inserting rank history into {table}") from e


async def insert_track_artist_pairs(
    conn: aiosqlite.Connection, pairs: Sequence[TrackArtistPair]
) -> None:
    if not pairs:
        return
    try:
        async with _transaction(conn):
            await conn.executemany(
                "INSERT OR IGNORE INTO tracks_artists (track_id, artist_id) VALUES (?, ?)",
                [(pair.track_id, pair.artist_id) for pair in pairs],
            )
    except aiosqlite.Error as e:
        logging.error("Error inserting track/artist mappings: %s", e)
        raise PersistenceError("Error inserting track/artist metadata into database") from e


async def replace_artist_genres(
    conn: aiosqlite.Connection,
    artist_ids: Iterable[int],
    pairs: Sequence[ArtistGenrePair],
) -> None:
    """Swap the genre rows of ``artist_ids`` for ``pairs`` in one transaction.

    ``BEGIN IMMEDIATE`` takes the write lock up front so no other writer can
    interleave between the delete and the insert.
    """
    artist_ids = list(dict.fromkeys(artist_ids))
    if not artist_ids:
        return
    try:
        async with _transaction(conn, "IMMEDIATE"):
            for chunk in _chunked(artist_ids):
                await conn.execute(
                    f"DELETE FROM artists_genres WHERE artist_id IN ({_placeholders(len(chunk))})",
                    list(chunk),
                )
            await conn.executemany(
                "INSERT INTO artists_genres (artist_id, genre) VALUES (?, ?)",
                [(pair.artist_id, pair.genre) for pair in pairs],
            )
    except aiosqlite.Error as e:
        logging.error("Error inserting artist/genre mappings: %s", e)
        raise PersistenceError("Error inserting artist/genre mappings into database") from e


async def get_artist_genres(
    conn: aiosqlite.Connection, artist_ids: Iterable[int]
) -> Dict[int, List[str]]:
    artist_ids = list(dict.fromkeys(artist_ids))
    genres: Dict[int, List[str]] = {artist_id: [] for artist_id in artist_ids}
    try:
        for chunk in _chunked(artist_ids):
            async with conn.execute(
                f"""
                SELECT artist_id, genre FROM artists_genres
                WHERE artist_id IN ({_placeholders(len(chunk))})
                ORDER BY artist_id, genre
                """,
                list(chunk),
            ) as cursor:
                for artist_id, genre in await cursor.fetchall():
                    genres[artist_id].append(genre)
    except aiosqlite.Error as e:
        logging.error("Error reading artist genres: %s", e)
        raise PersistenceError("Error reading artist genres") from e
    return genres


async def get_latest_rankings(
    conn: aiosqlite.Connection, table: str, user_id: int
) -> Tuple[Optional[datetime], Dict[Timeframe, List[int]]]:
    """Return the newest snapshot time for a user and its mapped ids per timeframe."""
    if table not in _RANK_TABLES:
        raise ValueError(f"Unknown rank snapshot table: {table}")
    try:
        async with conn.execute(
            f"SELECT MAX(update_time) FROM {table} WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row or row[0] is None:
            return None, {}
        latest = row[0]

        rankings: Dict[Timeframe, List[int]] = {}
        async with conn.execute(
            f"""
            SELECT timeframe, mapped_spotify_id FROM {table}
            WHERE user_id = ? AND update_time = ?
            ORDER BY timeframe, ranking, id
            """,
            (user_id, latest),
        ) as cursor:
            for timeframe, mapped_id in await cursor.fetchall():
                rankings.setdefault(Timeframe.from_code(timeframe), []).append(mapped_id)
    except aiosqlite.Error as e:
        logging.error("Error reading %s for user %s: %s", table, user_id, e)
        raise PersistenceError(f"Error reading rank history from {table}") from e
    return _from_db_time(latest), rankings


# Users

def _row_to_user(row) -> User:
    return User(
        id=row[0],
        spotify_id=row[1],
        username=row[2],
        token=row[3],
        refresh_token=row[4],
        creation_time=_from_db_time(row[5]),
        last_update_time=_from_db_time(row[6]),
    )


async def create_user(
    conn: aiosqlite.Connection,
    spotify_id: str,
    username: str,
    token: str,
    refresh_token: str,
    now: datetime,
) -> User:
    """Insert a user, or refresh the tokens of an existing one with the same Spotify id."""
    try:
        await conn.execute(
            """
            INSERT INTO users (creation_time, last_update_time, spotify_id, username, token, refresh_token)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(spotify_id) DO UPDATE SET
                username = excluded.username,
                token = excluded.token,
                refresh_token = excluded.refresh_token
            """,
            (_to_db_time(now), _to_db_time(NEVER_UPDATED), spotify_id, username, token, refresh_token),
        )
    except aiosqlite.Error as e:
        logging.error("Error inserting user %s: %s", spotify_id, e)
        raise PersistenceError("Error inserting user into database") from e

    user = await get_user_by_spotify_id(conn, spotify_id)
    if user is None:
        raise PersistenceError(f"User {spotify_id} missing right after insert")
    return user


async def get_user_by_spotify_id(conn: aiosqlite.Connection, spotify_id: str) -> Optional[User]:
    try:
        async with conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE spotify_id = ?", (spotify_id,)
        ) as cursor:
            row = await cursor.fetchone()
    except aiosqlite.Error as e:
        logging.error("Error loading user %s: %s", spotify_id, e)
        raise PersistenceError("Error loading user from database") from e
    return _row_to_user(row) if row else None


async def get_users_needing_update(conn: aiosqlite.Connection, cutoff: datetime) -> List[User]:
    """Users whose last stored snapshot is older than ``cutoff``."""
    try:
        async with conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE last_update_time < ? ORDER BY last_update_time",
            (_to_db_time(cutoff),),
        ) as cursor:
            rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        logging.error("Error listing users needing update: %s", e)
        raise PersistenceError("Error loading users from database") from e
    return [_row_to_user(row) for row in rows]


async def update_user_token(
    conn: aiosqlite.Connection, user_id: int, token: str, refresh_token: Optional[str] = None
) -> None:
    """Store a new access token, and the refresh token too when one was issued."""
    try:
        if refresh_token:
            await conn.execute(
                "UPDATE users SET token = ?, refresh_token = ? WHERE id = ?",
                (token, refresh_token, user_id),
            )
        else:
            await conn.execute("UPDATE users SET token = ? WHERE id = ?", (token, user_id))
    except aiosqlite.Error as e:
        logging.error("Error updating token for user %s: %s", user_id, e)
        raise PersistenceError("Error updating user token") from e


async def update_user_last_updated(
    conn: aiosqlite.Connection, user_id: int, update_time: datetime
) -> int:
    """Set the user's last update time; returns the number of rows touched."""
    try:
        cursor = await conn.execute(
            "UPDATE users SET last_update_time = ? WHERE id = ?",
            (_to_db_time(update_time), user_id),
        )
        count = cursor.rowcount
        await cursor.close()
    except aiosqlite.Error as e:
        logging.error("Error updating last update time for user %s: %s", user_id, e)
        raise PersistenceError("Error updating user last update time") from e
    return count
