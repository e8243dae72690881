"""Sync orchestration for Spotify listening stats.

The orchestrator runs one sync round:
- Find users whose last stored snapshot is older than the update interval
- Refresh each user's access token
- Fetch a stats snapshot (six concurrent top-entity requests)
- Persist the snapshot
- Report per-user results

A failed user sync is retried as a whole with exponential backoff; nothing
inside the fetch or persist steps retries on its own.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import aiosqlite
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .aggregator import fetch_snapshot, utc_now
from .db import create_user, get_users_needing_update, update_user_token
from .helperClasses import SpotistatsError, SyncConfig, User
from .persister import store_stats_snapshot
from .spotify import SpotifyClient


@dataclass
class SyncResult:
    """Result of syncing one user."""
    spotify_id: str
    success: bool
    attempts: int = 0
    artists_count: int = 0
    tracks_count: int = 0
    update_time: Optional[datetime] = None
    error: Optional[str] = None


class SyncOrchestrator:
    def __init__(self, config: SyncConfig, client: SpotifyClient, conn: aiosqlite.Connection):
        self.config = config
        self.client = client
        self.conn = conn
        self._results: List[SyncResult] = []

    @property
    def results(self) -> List[SyncResult]:
        """Get all sync results from the last run."""
        return self._results

    async def refresh_token(self, user: User) -> User:
        if not self.config.refresh_tokens:
            return user
        tokens = await self.client.refresh_user_token(user.refresh_token)
        new_refresh_token = tokens.get("refresh_token")
        await update_user_token(self.conn, user.id, tokens["access_token"], new_refresh_token)
        user.token = tokens["access_token"]
        if new_refresh_token:
            user.refresh_token = new_refresh_token
        return user

    async def _sync_once(self, user: User, result: SyncResult) -> None:
        user = await self.refresh_token(user)
        snapshot = await fetch_snapshot(
            self.client, user, timeout_seconds=self.config.fan_out_timeout_seconds
        )
        await store_stats_snapshot(self.conn, user, snapshot)
        result.artists_count = sum(1 for _ in snapshot.artists.all())
        result.tracks_count = sum(1 for _ in snapshot.tracks.all())
        result.update_time = snapshot.last_update_time

    async def sync_user(self, user: User) -> SyncResult:
        """
        Refresh the token, fetch a snapshot and persist it, retrying the whole attempt.

        Args:
            user: The user to sync

        Returns:
            SyncResult; failures after the last retry are recorded, not raised
        """
        result = SyncResult(spotify_id=user.spotify_id, success=False)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.sync_max_retries)),
            wait=wait_exponential(multiplier=self.config.sync_retry_backoff_seconds, max=60),
            retry=retry_if_exception_type((SpotistatsError, asyncio.TimeoutError)),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result.attempts = attempt.retry_state.attempt_number
                    if result.attempts > 1:
                        logging.warning(
                            "Retrying stats sync for user %s (attempt %d)",
                            user.spotify_id, result.attempts,
                        )
                    await self._sync_once(user, result)
            result.success = True
            logging.info("Synced stats for user %s", user.spotify_id)
        except (SpotistatsError, asyncio.TimeoutError) as e:
            result.error = str(e) or type(e).__name__
            logging.error(
                "Failed to sync stats for user %s after %d attempt(s): %s",
                user.spotify_id, result.attempts, result.error,
            )
        return result

    async def sync_due_users(
        self, now: Optional[datetime] = None, only_spotify_id: Optional[str] = None
    ) -> List[SyncResult]:
        """
        Sync every user whose last snapshot is older than the update interval.

        Args:
            now: Reference time for the interval check
            only_spotify_id: Restrict the round to this user

        Returns:
            One SyncResult per user attempted
        """
        self._results = []
        cutoff = (now or utc_now()) - timedelta(seconds=self.config.min_update_interval_seconds)
        users = await get_users_needing_update(self.conn, cutoff)
        if only_spotify_id:
            users = [user for user in users if user.spotify_id == only_spotify_id]

        if not users:
            logging.info("No users need a stats update")
            return self._results

        logging.info("Starting stats sync for %d user(s)", len(users))
        for user in users:
            self._results.append(await self.sync_user(user))

        successful = sum(1 for r in self._results if r.success)
        logging.info("Stats sync complete: %d/%d users synced", successful, len(self._results))
        return self._results

    def print_summary(self) -> None:
        """Print a summary of all sync results."""
        if not self._results:
            logging.info("No sync results to display")
            return

        logging.info("=" * 60)
        logging.info("SYNC SUMMARY")
        logging.info("=" * 60)

        for result in self._results:
            status = "✓" if result.success else "✗"
            logging.info(
                "%s %s: %d artists, %d tracks (%d attempt(s))",
                status,
                result.spotify_id,
                result.artists_count,
                result.tracks_count,
                result.attempts,
            )
            if result.error:
                logging.info("  Error: %s", result.error)

        logging.info("=" * 60)


async def register_user(
    client: SpotifyClient, conn: aiosqlite.Connection, code: str, now: Optional[datetime] = None
) -> User:
    """
    Complete an OAuth login: exchange the code, read the profile, store the user.

    Args:
        client: Spotify client with client credentials and redirect URI set
        conn: Open stats database connection
        code: Authorization code from the OAuth callback
        now: Creation time for a new user

    Returns:
        The stored user; registering again refreshes the stored tokens
    """
    tokens = await client.exchange_code_for_token(code)
    access_token = tokens["access_token"]
    profile = await client.get_user_profile(access_token)
    user = await create_user(
        conn,
        spotify_id=profile["id"],
        username=profile.get("display_name") or profile["id"],
        token=access_token,
        refresh_token=tokens.get("refresh_token", ""),
        now=now or utc_now(),
    )
    logging.info("Registered user %s", user.spotify_id)
    return user
