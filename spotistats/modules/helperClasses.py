from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class SpotistatsError(Exception):
    """Base class for every hard failure raised by a sync operation."""
    pass


class Timeframe(Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"

    @property
    def code(self) -> int:
        """Stable numeric id used in the rank snapshot tables."""
        return _TIMEFRAME_CODES[self]

    @property
    def api_value(self) -> str:
        return f"{self.value}_term"

    @classmethod
    def from_code(cls, code: int) -> "Timeframe":
        for timeframe, timeframe_code in _TIMEFRAME_CODES.items():
            if timeframe_code == code:
                return timeframe
        raise ValueError(f"Tried to convert invalid timeframe id: {code!r}")


_TIMEFRAME_CODES: Dict[Timeframe, int] = {
    Timeframe.SHORT: 0,
    Timeframe.MEDIUM: 1,
    Timeframe.LONG: 2,
}


class EntityType(Enum):
    ARTISTS = "artists"
    TRACKS = "tracks"


@dataclass
class Image:
    url: str
    height: Optional[int] = None
    width: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Image":
        return cls(url=data["url"], height=data.get("height"), width=data.get("width"))


@dataclass
class Artist:
    id: str
    name: str
    # None means the payload carried no genre information (embedded artist
    # references inside tracks), which is not the same as an empty genre list.
    genres: Optional[List[str]] = None
    popularity: Optional[int] = None
    uri: str = ""
    images: List[Image] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artist":
        genres = data.get("genres")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            genres=list(genres) if genres is not None else None,
            popularity=data.get("popularity"),
            uri=data.get("uri", ""),
            images=[Image.from_dict(img) for img in data.get("images") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Album:
    id: str
    name: str
    images: List[Image] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Album":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            images=[Image.from_dict(img) for img in data.get("images") or []],
        )


@dataclass
class Track:
    id: str
    name: str
    artists: List[Artist] = field(default_factory=list)
    album: Optional[Album] = None
    popularity: Optional[int] = None
    preview_url: Optional[str] = None
    uri: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Track":
        album = data.get("album")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            artists=[Artist.from_dict(artist) for artist in data.get("artists") or []],
            album=Album.from_dict(album) if album else None,
            popularity=data.get("popularity"),
            preview_url=data.get("preview_url"),
            uri=data.get("uri", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TimeFrames(Generic[T]):
    """Ordered per-timeframe lists; list order is the API's ranking order."""
    short: List[T] = field(default_factory=list)
    medium: List[T] = field(default_factory=list)
    long: List[T] = field(default_factory=list)

    def set_items(self, timeframe: Timeframe, items: List[T]) -> None:
        setattr(self, timeframe.value, list(items))

    def get(self, timeframe: Timeframe) -> List[T]:
        return getattr(self, timeframe.value)

    def items(self) -> Iterator[Tuple[Timeframe, List[T]]]:
        for timeframe in Timeframe:
            yield timeframe, self.get(timeframe)

    def all(self) -> Iterator[T]:
        for _, entries in self.items():
            yield from entries


@dataclass
class StatsSnapshot:
    last_update_time: datetime
    artists: TimeFrames[Artist] = field(default_factory=TimeFrames)
    tracks: TimeFrames[Track] = field(default_factory=TimeFrames)


@dataclass
class User:
    id: int
    spotify_id: str
    username: str
    token: str
    refresh_token: str
    creation_time: Optional[datetime] = None
    last_update_time: Optional[datetime] = None


@dataclass
class RankedEntry:
    user_id: int
    mapped_spotify_id: int
    update_time: datetime
    timeframe: int
    ranking: int


@dataclass(frozen=True)
class TrackArtistPair:
    track_id: int
    artist_id: int


@dataclass(frozen=True)
class ArtistGenrePair:
    artist_id: int
    genre: str


@dataclass
class SyncConfig:
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_redirect_uri: Optional[str] = None

    redis_url: str = "redis://localhost:6379/0"
    db_path: str = "/data/spotistats.db"
    artists_cache_hash_name: str = "artists"
    tracks_cache_hash_name: str = "tracks"

    # Scheduling
    wait_seconds: int = 3600
    min_update_interval_seconds: int = 86400
    refresh_tokens: bool = True

    # Upstream request settings
    spotify_request_timeout_seconds: Optional[int] = 10
    fan_out_timeout_seconds: Optional[float] = 60.0
    max_requests_per_second: float = 10.0

    # Outer retry policy for a whole user sync
    sync_max_retries: int = 3
    sync_retry_backoff_seconds: float = 1.0
