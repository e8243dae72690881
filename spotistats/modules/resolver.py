"""
Cache-backed batch resolution of Spotify entities.

Given an ordered list of Spotify ids, the resolver reads everything it can
from the metadata cache, fetches only the misses from Spotify in chunks of at
most ``MAX_BATCH_ENTITY_COUNT`` ids, writes each fetched chunk back to the
cache before moving on, and returns entities in the order the ids were given.
"""
import json
import logging
from typing import Awaitable, Callable, Dict, Generic, List, Sequence, Set, TypeVar

from .cache import HashCache, SerializationError
from .helperClasses import Artist, Track
from .spotify import MAX_BATCH_ENTITY_COUNT, SpotifyClient, UpstreamResponseError

E = TypeVar("E", Artist, Track)

FetchBatch = Callable[[List[str]], Awaitable[Dict[str, E]]]


class EntityCodec(Generic[E]):
    """JSON encoding for one entity type; must round-trip losslessly."""

    def __init__(self, entity_cls):
        self.entity_cls = entity_cls

    def encode(self, entity: E) -> str:
        try:
            return json.dumps(entity.to_dict(), separators=(",", ":"))
        except (TypeError, ValueError) as e:
            logging.error("Error serializing %s %s: %s", self.entity_cls.__name__, entity.id, e)
            raise SerializationError("Error saving items to cache") from e

    def decode(self, raw: str) -> E:
        try:
            return self.entity_cls.from_dict(json.loads(raw))
        except (TypeError, ValueError, KeyError) as e:
            logging.error("Error deserializing cached %s: %s", self.entity_cls.__name__, e)
            raise SerializationError("Error reading values from cache") from e


ARTIST_CODEC: EntityCodec[Artist] = EntityCodec(Artist)
TRACK_CODEC: EntityCodec[Track] = EntityCodec(Track)


def _chunks(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchResolver:
    def __init__(self, cache: HashCache, max_batch_size: int = MAX_BATCH_ENTITY_COUNT):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.cache = cache
        self.max_batch_size = max_batch_size

    async def resolve(
        self,
        namespace: str,
        ids: Sequence[str],
        fetch_batch: FetchBatch,
        codec: EntityCodec[E],
    ) -> List[E]:
        """
        Resolve ids to entities, hitting Spotify only for cache misses.

        Any failure aborts the whole call; chunks fetched before the failure
        stay cached.

        Args:
            namespace: Cache hash holding this entity type
            ids: Spotify ids, duplicates allowed
            fetch_batch: Called with at most ``max_batch_size`` missing ids;
                must return the fetched entities keyed by id
            codec: Serializer for cached values of this entity type

        Returns:
            One entity per input id, in input order
        """
        ids = list(ids)
        if not ids:
            return []

        logging.info("Checking cache for %d spotify ids...", len(ids))
        cached = await self.cache.get_many(namespace, ids)

        resolved: Dict[str, E] = {}
        missing_ids: List[str] = []
        seen_missing: Set[str] = set()
        for spotify_id, raw in zip(ids, cached):
            if raw is not None:
                resolved[spotify_id] = codec.decode(raw)
            elif spotify_id not in seen_missing:
                seen_missing.add(spotify_id)
                missing_ids.append(spotify_id)
        logging.info("%d/%d items found in the cache.", len(ids) - len(missing_ids), len(ids))

        for chunk_ix, chunk in enumerate(_chunks(missing_ids, self.max_batch_size)):
            logging.info("Fetching chunk %d (%d ids)...", chunk_ix, len(chunk))
            fetched = await fetch_batch(chunk)

            absent = [spotify_id for spotify_id in chunk if spotify_id not in fetched]
            if absent:
                logging.error(
                    "Spotify returned no data for %d of %d requested ids in namespace %s: %s",
                    len(absent), len(chunk), namespace, ", ".join(absent),
                )
                raise UpstreamResponseError(f"Spotify did not return {len(absent)} requested entities")

            await self.cache.set_many(
                namespace,
                [(spotify_id, codec.encode(fetched[spotify_id])) for spotify_id in chunk],
            )
            for spotify_id in chunk:
                resolved[spotify_id] = fetched[spotify_id]

        if missing_ids:
            logging.info("Fetched all chunks.")
        return [resolved[spotify_id] for spotify_id in ids]


async def fetch_artists(
    client: SpotifyClient,
    resolver: BatchResolver,
    token: str,
    spotify_ids: Sequence[str],
    namespace: str = "artists",
) -> List[Artist]:
    return await resolver.resolve(
        namespace, spotify_ids, lambda chunk: client.get_artists(chunk, token), ARTIST_CODEC
    )


async def fetch_tracks(
    client: SpotifyClient,
    resolver: BatchResolver,
    token: str,
    spotify_ids: Sequence[str],
    namespace: str = "tracks",
) -> List[Track]:
    return await resolver.resolve(
        namespace, spotify_ids, lambda chunk: client.get_tracks(chunk, token), TRACK_CODEC
    )
