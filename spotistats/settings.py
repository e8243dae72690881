from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BeforeValidator, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .modules.helperClasses import SyncConfig


def parse_flexible_bool(value: Any) -> bool:
    """Parse boolean from various string formats.

    Accepts: 1, 0, y, yes, n, no, true, false, on, off (case-insensitive)
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("1", "y", "yes", "true", "on"):
            return True
        if normalized in ("0", "n", "no", "false", "off", ""):
            return False
    raise ValueError(f"Cannot parse '{value}' as boolean. Use: 1/0, y/n, yes/no, true/false, on/off")


FlexibleBool = Annotated[bool, BeforeValidator(parse_flexible_bool)]


class SpotistatsSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    spotify_client_id: Optional[str] = Field(default=None, validation_alias="SPOTIFY_CLIENT_ID")
    spotify_client_secret: Optional[str] = Field(
        default=None, validation_alias="SPOTIFY_CLIENT_SECRET"
    )
    spotify_redirect_uri: Optional[str] = Field(
        default=None, validation_alias="SPOTIFY_REDIRECT_URI"
    )

    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    db_path: str = Field(default="/data/spotistats.db", validation_alias="DB_PATH")
    artists_cache_hash_name: str = Field(
        default="artists", validation_alias="ARTISTS_CACHE_HASH_NAME"
    )
    tracks_cache_hash_name: str = Field(
        default="tracks", validation_alias="TRACKS_CACHE_HASH_NAME"
    )

    wait_seconds: int = Field(default=3600, validation_alias="SECONDS_TO_WAIT")
    min_update_interval_seconds: int = Field(
        default=86400, validation_alias="MIN_UPDATE_INTERVAL_SECONDS"
    )
    refresh_tokens: FlexibleBool = Field(default=True, validation_alias="REFRESH_TOKENS")

    spotify_request_timeout_seconds: Optional[int] = Field(
        default=10, validation_alias="SPOTIFY_REQUEST_TIMEOUT_SECONDS"
    )
    fan_out_timeout_seconds: Optional[float] = Field(
        default=60.0, validation_alias="FAN_OUT_TIMEOUT_SECONDS"
    )
    max_requests_per_second: float = Field(
        default=10.0, validation_alias="MAX_REQUESTS_PER_SECOND"
    )

    sync_max_retries: int = Field(default=3, validation_alias="SYNC_MAX_RETRIES")
    sync_retry_backoff_seconds: float = Field(
        default=1.0, validation_alias="SYNC_RETRY_BACKOFF_SECONDS"
    )


def build_sync_config(settings: SpotistatsSettings) -> SyncConfig:
    return SyncConfig(
        spotify_client_id=settings.spotify_client_id,
        spotify_client_secret=settings.spotify_client_secret,
        spotify_redirect_uri=settings.spotify_redirect_uri,
        redis_url=settings.redis_url,
        db_path=settings.db_path,
        artists_cache_hash_name=settings.artists_cache_hash_name,
        tracks_cache_hash_name=settings.tracks_cache_hash_name,
        wait_seconds=settings.wait_seconds,
        min_update_interval_seconds=settings.min_update_interval_seconds,
        refresh_tokens=settings.refresh_tokens,
        spotify_request_timeout_seconds=settings.spotify_request_timeout_seconds,
        fan_out_timeout_seconds=settings.fan_out_timeout_seconds,
        max_requests_per_second=settings.max_requests_per_second,
        sync_max_retries=settings.sync_max_retries,
        sync_retry_backoff_seconds=settings.sync_retry_backoff_seconds,
    )
