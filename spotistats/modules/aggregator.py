import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

from .helperClasses import Artist, EntityType, StatsSnapshot, Timeframe, Track, User
from .spotify import SpotifyClient

FAN_OUT_SLOTS: List[Tuple[EntityType, Timeframe]] = [
    (entity_type, timeframe)
    for entity_type in (EntityType.TRACKS, EntityType.ARTISTS)
    for timeframe in Timeframe
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def fetch_snapshot(
    client: SpotifyClient,
    user: User,
    now: Optional[datetime] = None,
    timeout_seconds: Optional[float] = None,
) -> StatsSnapshot:
    """
    Fetch the user's top artists and tracks for every timeframe at once.

    One request per (entity type, timeframe) slot, all six in flight
    together. Every request is awaited before anything is reported; if any
    of them failed the first failure is raised and no snapshot is built.

    Args:
        client: Spotify client
        user: User whose access token is used
        now: Snapshot timestamp; taken once before dispatch when omitted
        timeout_seconds: Bound on the whole six-request join, if set

    Returns:
        StatsSnapshot with all six slots filled in ranking order
    """
    snapshot = StatsSnapshot(last_update_time=now or utc_now())

    logging.info("Kicking off %d top entity requests for user %s...", len(FAN_OUT_SLOTS), user.spotify_id)
    gathered = asyncio.gather(
        *(
            client.get_top_entities(entity_type, timeframe, user.token)
            for entity_type, timeframe in FAN_OUT_SLOTS
        ),
        return_exceptions=True,
    )
    if timeout_seconds:
        results = await asyncio.wait_for(gathered, timeout=timeout_seconds)
    else:
        results = await gathered

    failures = [result for result in results if isinstance(result, BaseException)]
    if failures:
        logging.error(
            "%d/%d top entity requests failed for user %s: %s",
            len(failures), len(FAN_OUT_SLOTS), user.spotify_id, failures[0],
        )
        raise failures[0]

    for (entity_type, timeframe), items in zip(FAN_OUT_SLOTS, results):
        _fill_slot(snapshot, entity_type, timeframe, items)

    logging.info(
        "Fetched stats snapshot for user %s: %d artists, %d tracks",
        user.spotify_id,
        sum(1 for _ in snapshot.artists.all()),
        sum(1 for _ in snapshot.tracks.all()),
    )
    return snapshot


def _fill_slot(
    snapshot: StatsSnapshot,
    entity_type: EntityType,
    timeframe: Timeframe,
    items: Union[List[Artist], List[Track]],
) -> None:
    if entity_type is EntityType.ARTISTS:
        snapshot.artists.set_items(timeframe, items)
    else:
        snapshot.tracks.set_items(timeframe, items)
