"""Tests for writing stats snapshots into the database."""
import logging
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from spotistats.modules.db import (
    ARTIST_RANK_TABLE,
    TRACK_RANK_TABLE,
    PersistenceError,
    get_artist_genres,
    get_user_by_spotify_id,
    retrieve_mapped_spotify_ids,
)
from spotistats.modules.helperClasses import StatsSnapshot, Timeframe, User
from spotistats.modules.persister import collect_artist_genres, store_stats_snapshot

from conftest import make_artist, make_track

SNAPSHOT_TIME = datetime(2024, 3, 1, 8, 30, 0)


def snapshot_with(artists=None, tracks=None, timeframe=Timeframe.SHORT, when=SNAPSHOT_TIME):
    snapshot = StatsSnapshot(last_update_time=when)
    snapshot.artists.set_items(timeframe, artists or [])
    snapshot.tracks.set_items(timeframe, tracks or [])
    return snapshot


async def fetch_rows(conn, sql, params=()):
    async with conn.execute(sql, params) as cursor:
        return await cursor.fetchall()


async def artist_genres(conn, spotify_id):
    mapped = (await retrieve_mapped_spotify_ids(conn, [spotify_id]))[spotify_id]
    return (await get_artist_genres(conn, [mapped]))[mapped]


class TestCollectArtistGenres:
    def test_embedded_artists_do_not_override_reported_genres(self):
        snapshot = snapshot_with(
            artists=[make_artist("a1", genres=["rock", "rock", "indie"])],
            tracks=[make_track("t1", ["a1", "a2"])],
        )

        genres = collect_artist_genres(snapshot)

        assert genres == {"a1": ["rock", "indie"], "a2": None}

    def test_last_reported_genres_win(self):
        snapshot = StatsSnapshot(last_update_time=SNAPSHOT_TIME)
        snapshot.artists.set_items(Timeframe.SHORT, [make_artist("a1", genres=["rock"])])
        snapshot.artists.set_items(Timeframe.LONG, [make_artist("a1", genres=["pop"])])

        assert collect_artist_genres(snapshot) == {"a1": ["pop"]}


class TestStoreStatsSnapshot:
    async def test_rankings_follow_list_order(self, db_conn, user):
        snapshot = snapshot_with(artists=[make_artist(i, genres=[]) for i in ("x", "y", "z")])

        await store_stats_snapshot(db_conn, user, snapshot)

        mapping = await retrieve_mapped_spotify_ids(db_conn, ["x", "y", "z"])
        rows = await fetch_rows(
            db_conn,
            f"SELECT mapped_spotify_id, timeframe, ranking, update_time FROM {ARTIST_RANK_TABLE} ORDER BY ranking",
        )
        assert [(r[0], r[1], r[2]) for r in rows] == [
            (mapping["x"], 0, 0),
            (mapping["y"], 0, 1),
            (mapping["z"], 0, 2),
        ]
        assert {r[3] for r in rows} == {"2024-03-01 08:30:00"}

    async def test_track_ranks_and_pairs(self, db_conn, user):
        snapshot = snapshot_with(
            tracks=[make_track("t1", ["a1"]), make_track("t2", ["a1", "a2"])],
            timeframe=Timeframe.LONG,
        )

        await store_stats_snapshot(db_conn, user, snapshot)

        ranks = await fetch_rows(db_conn, f"SELECT timeframe, ranking FROM {TRACK_RANK_TABLE} ORDER BY ranking")
        assert ranks == [(2, 0), (2, 1)]
        pairs = await fetch_rows(db_conn, "SELECT track_id, artist_id FROM tracks_artists")
        assert len(pairs) == 3

    async def test_track_artist_pairs_deduplicated(self, db_conn, user):
        track = make_track("t1", ["a1"])
        snapshot = snapshot_with(tracks=[track, track])

        await store_stats_snapshot(db_conn, user, snapshot)
        await store_stats_snapshot(db_conn, user, snapshot)

        assert len(await fetch_rows(db_conn, "SELECT * FROM tracks_artists")) == 1

    async def test_genres_replaced_on_next_sync(self, db_conn, user):
        await store_stats_snapshot(db_conn, user, snapshot_with(artists=[make_artist("a1", genres=["rock"])]))
        await store_stats_snapshot(
            db_conn, user, snapshot_with(artists=[make_artist("a1", genres=["pop", "indie"])])
        )

        assert await artist_genres(db_conn, "a1") == ["indie", "pop"]

    async def test_embedded_artist_keeps_stored_genres(self, db_conn, user):
        await store_stats_snapshot(db_conn, user, snapshot_with(artists=[make_artist("a1", genres=["rock"])]))

        await store_stats_snapshot(db_conn, user, snapshot_with(tracks=[make_track("t1", ["a1"])]))

        assert await artist_genres(db_conn, "a1") == ["rock"]

    async def test_history_is_append_only(self, db_conn, user):
        snapshot = snapshot_with(artists=[make_artist("a1", genres=[])], tracks=[make_track("t1", ["a1"])])

        await store_stats_snapshot(db_conn, user, snapshot)
        await store_stats_snapshot(db_conn, user, snapshot)

        assert len(await fetch_rows(db_conn, f"SELECT * FROM {ARTIST_RANK_TABLE}")) == 2
        assert len(await fetch_rows(db_conn, f"SELECT * FROM {TRACK_RANK_TABLE}")) == 2

    async def test_sets_user_last_update_time(self, db_conn, user):
        await store_stats_snapshot(db_conn, user, snapshot_with(artists=[make_artist("a1", genres=[])]))

        reloaded = await get_user_by_spotify_id(db_conn, user.spotify_id)
        assert reloaded.last_update_time == SNAPSHOT_TIME

    async def test_empty_snapshot_only_touches_user(self, db_conn, user):
        await store_stats_snapshot(db_conn, user, StatsSnapshot(last_update_time=SNAPSHOT_TIME))

        assert await fetch_rows(db_conn, f"SELECT * FROM {ARTIST_RANK_TABLE}") == []
        reloaded = await get_user_by_spotify_id(db_conn, user.spotify_id)
        assert reloaded.last_update_time == SNAPSHOT_TIME

    async def test_missing_user_row_is_logged_not_raised(self, db_conn, caplog):
        ghost = User(id=4242, spotify_id="ghost", username="Ghost", token="t", refresh_token="r")

        with caplog.at_level(logging.ERROR):
            await store_stats_snapshot(db_conn, ghost, snapshot_with(artists=[make_artist("a1", genres=[])]))

        assert "Updated 0 rows when setting last update time for user 4242" in caplog.text
        assert len(await fetch_rows(db_conn, f"SELECT * FROM {ARTIST_RANK_TABLE}")) == 1

    async def test_failure_leaves_earlier_steps_committed(self, db_conn, user):
        snapshot = snapshot_with(
            artists=[make_artist("a1", genres=["rock"])],
            tracks=[make_track("t1", ["a1"])],
        )

        with patch(
            "spotistats.modules.persister.replace_artist_genres",
            AsyncMock(side_effect=PersistenceError("disk full")),
        ):
            with pytest.raises(PersistenceError):
                await store_stats_snapshot(db_conn, user, snapshot)

        assert len(await fetch_rows(db_conn, f"SELECT * FROM {ARTIST_RANK_TABLE}")) == 1
        assert len(await fetch_rows(db_conn, "SELECT * FROM tracks_artists")) == 1
        assert await fetch_rows(db_conn, f"SELECT * FROM {TRACK_RANK_TABLE}") == []
        reloaded = await get_user_by_spotify_id(db_conn, user.spotify_id)
        assert reloaded.last_update_time == user.last_update_time
