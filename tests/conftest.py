from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

from spotistats.modules.cache import HashCache
from spotistats.modules.db import connect_db, create_user, initialize_db
from spotistats.modules.helperClasses import Artist, Track


class InMemoryHashCache(HashCache):
    """Dict-backed cache that records every call it receives."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.get_calls: List[Tuple[str, List[str]]] = []
        self.set_calls: List[Tuple[str, List[Tuple[str, str]]]] = []

    async def set_many(self, namespace: str, pairs: Sequence[Tuple[str, str]]) -> None:
        self.set_calls.append((namespace, list(pairs)))
        self.hashes.setdefault(namespace, {}).update(dict(pairs))

    async def get_many(self, namespace: str, keys: Sequence[str]) -> List[Optional[str]]:
        self.get_calls.append((namespace, list(keys)))
        hash_ = self.hashes.get(namespace, {})
        return [hash_.get(key) for key in keys]


def make_artist(artist_id: str, genres: Optional[List[str]] = None, name: Optional[str] = None) -> Artist:
    return Artist(
        id=artist_id,
        name=name or f"Artist {artist_id}",
        genres=genres,
        popularity=50,
        uri=f"spotify:artist:{artist_id}",
    )


def make_track(track_id: str, artist_ids: Sequence[str], name: Optional[str] = None) -> Track:
    return Track(
        id=track_id,
        name=name or f"Track {track_id}",
        artists=[make_artist(artist_id) for artist_id in artist_ids],
        uri=f"spotify:track:{track_id}",
    )


@pytest.fixture
def memory_cache():
    return InMemoryHashCache()


@pytest_asyncio.fixture
async def db_conn(tmp_path):
    async with connect_db(str(tmp_path / "stats.db")) as conn:
        await initialize_db(conn)
        yield conn


@pytest_asyncio.fixture
async def user(db_conn):
    return await create_user(
        db_conn,
        spotify_id="user-1",
        username="Test User",
        token="access-token",
        refresh_token="refresh-token",
        now=datetime(2024, 1, 1, 12, 0, 0),
    )
