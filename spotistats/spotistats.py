#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from .modules.cache import RedisHashCache
from .modules.db import connect_db, get_user_by_spotify_id, initialize_db
from .modules.helperClasses import StatsSnapshot, SyncConfig
from .modules.orchestrator import SyncOrchestrator, SyncResult, register_user
from .modules.resolver import BatchResolver
from .modules.spotify import SpotifyClient
from .modules.stats import load_artist_genres, load_user_stats
from .settings import SpotistatsSettings, build_sync_config


def configure_logging() -> None:
    # Get log path from environment or use default in data directory
    log_path = os.path.join(os.getenv('DATA_DIR', '/data'), 'spotistats.log')
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    try:
        handlers.append(logging.FileHandler(log_path))
    except OSError as e:
        print(f"Not logging to {log_path}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def _describe_artist(name: str, genres: List[str]) -> str:
    if not genres:
        return name
    return f"{name} ({', '.join(genres[:3])})"


class StatsSyncApp:
    def __init__(self, config: SyncConfig):
        self.config = config

    def _create_client(self) -> SpotifyClient:
        return SpotifyClient(
            client_id=self.config.spotify_client_id,
            client_secret=self.config.spotify_client_secret,
            redirect_uri=self.config.spotify_redirect_uri,
            request_timeout_seconds=self.config.spotify_request_timeout_seconds,
            max_requests_per_second=self.config.max_requests_per_second,
        )

    async def run_round(self, only_spotify_id: Optional[str] = None) -> List[SyncResult]:
        """Sync every user that is due for an update."""
        client = self._create_client()
        try:
            async with connect_db(self.config.db_path) as conn:
                await initialize_db(conn)
                orchestrator = SyncOrchestrator(self.config, client, conn)
                results = await orchestrator.sync_due_users(only_spotify_id=only_spotify_id)
                orchestrator.print_summary()
                return results
        finally:
            await client.close()

    async def register(self, code: str) -> None:
        client = self._create_client()
        try:
            async with connect_db(self.config.db_path) as conn:
                await initialize_db(conn)
                await register_user(client, conn, code)
        finally:
            await client.close()

    async def show_stats(self, spotify_id: str) -> Optional[StatsSnapshot]:
        """Log the latest stored stats for a user, hydrated from the metadata cache."""
        client = self._create_client()
        cache = RedisHashCache(self.config.redis_url)
        try:
            async with connect_db(self.config.db_path) as conn:
                await initialize_db(conn)
                user = await get_user_by_spotify_id(conn, spotify_id)
                if user is None:
                    logging.error("Unknown user %s", spotify_id)
                    return None

                app_token = (await client.fetch_auth_token())["access_token"]
                stats = await load_user_stats(
                    conn,
                    client,
                    BatchResolver(cache),
                    user,
                    app_token,
                    artists_namespace=self.config.artists_cache_hash_name,
                    tracks_namespace=self.config.tracks_cache_hash_name,
                )
                if stats is None:
                    return None
                genres = await load_artist_genres(conn, [artist.id for artist in stats.artists.all()])
        finally:
            await cache.close()
            await client.close()

        logging.info("Stats for %s as of %s", spotify_id, stats.last_update_time)
        for timeframe, artists in stats.artists.items():
            logging.info(
                "  %s artists: %s",
                timeframe.value,
                ", ".join(_describe_artist(a.name, genres.get(a.id, [])) for a in artists[:10]),
            )
        for timeframe, tracks in stats.tracks.items():
            logging.info("  %s tracks: %s", timeframe.value, ", ".join(t.name for t in tracks[:10]))
        return stats

    async def run(self, only_spotify_id: Optional[str] = None) -> None:
        """Main application loop."""
        while True:
            try:
                logging.info("Starting stats sync round")
                await self.run_round(only_spotify_id)
                logging.info("Sleeping for %d seconds", self.config.wait_seconds)
                await asyncio.sleep(self.config.wait_seconds)
            except Exception as e:
                logging.error("Error in main loop: %s", e)
                await asyncio.sleep(60)  # Wait a bit before retrying


def main():
    parser = argparse.ArgumentParser(description="Sync Spotify listening stats into a local database")
    parser.add_argument('--once', action='store_true',
                        help='Run a single sync round and exit')
    parser.add_argument('--user', type=str, default=None,
                        help='Only sync the user with this Spotify id')
    parser.add_argument('--db-path', type=str, default=None,
                        help='Override DB_PATH')
    parser.add_argument('--register', type=str, default=None, metavar='CODE',
                        help='Register a user from an OAuth authorization code')
    parser.add_argument('--show-stats', type=str, default=None, metavar='SPOTIFY_ID',
                        help='Print the latest stored stats for a user')
    args = parser.parse_args()

    configure_logging()
    config = build_sync_config(SpotistatsSettings())
    if args.db_path:
        config.db_path = args.db_path
    app = StatsSyncApp(config)

    try:
        if args.register:
            asyncio.run(app.register(args.register))
        elif args.show_stats:
            asyncio.run(app.show_stats(args.show_stats))
        elif args.once:
            results = asyncio.run(app.run_round(args.user))
            if any(not r.success for r in results):
                sys.exit(1)
        else:
            asyncio.run(app.run(args.user))
    except KeyboardInterrupt:
        logging.info("Shutting down gracefully...")
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
