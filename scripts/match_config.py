"""
Environment configuration for the match clip watcher.

Tunables are read once at import; secrets and the tracked roster are loaded
on demand by ``WatcherSettings.from_env`` so a missing value surfaces as a
``ConfigError`` instead of an import failure.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------
POLL_INTERVAL_SEC = max(1, int(os.environ.get("WATCHER_POLL_INTERVAL_SEC", "60")))
LIVENESS_INTERVAL_SEC = max(1, int(os.environ.get("WATCHER_LIVENESS_INTERVAL_SEC", "5")))
HEARTBEAT_INTERVAL_SEC = int(os.environ.get("WATCHER_HEARTBEAT_INTERVAL_SEC", "600"))
RIOT_HTTP_TIMEOUT_SEC = max(5, int(os.environ.get("RIOT_HTTP_TIMEOUT_SEC", "15")))
UPLOAD_HTTP_TIMEOUT_SEC = max(30, int(os.environ.get("UPLOAD_HTTP_TIMEOUT_SEC", "300")))
MIN_GAME_DURATION_SEC = int(os.environ.get("MIN_GAME_DURATION_SEC", "300"))

LOG_DIR = Path(os.environ.get("WATCHER_LOG_DIR", str(Path.home() / ".match_watcher" / "logs"))).expanduser()
CONSOLE_LOG_LEVEL = os.environ.get("WATCHER_CONSOLE_LOG_LEVEL", "INFO").upper()

DEFAULT_COMPANION_PROCESS = "Discord"
DEFAULT_RIOT_API_BASE = "https://europe.api.riotgames.com"
DEFAULT_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_TOKEN_CACHE_PATH = Path.home() / ".match_watcher" / "token_cache.json"
DEFAULT_CLIP_EXTENSIONS = (".mp4", ".mkv", ".webm", ".mov")
# Normal draft, ranked solo, blind, ranked flex, ARAM, quickplay.
DEFAULT_CLIP_QUEUE_IDS = frozenset({400, 420, 430, 440, 450, 490})
DEFAULT_PRIVACY_STATUS = "unlisted"


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or malformed."""


def _require(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigError(f"{name} is not set")
    return value


def _count(name: str, default: str | None = None) -> int:
    raw = os.environ.get(name, default)
    if raw is None or not raw.strip():
        raise ConfigError(f"{name} is not set")
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


def _indexed(prefix: str, count: int) -> list[str]:
    return [_require(f"{prefix}_{i}") for i in range(count)]


def _parse_extensions(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_CLIP_EXTENSIONS
    out: list[str] = []
    for part in raw.split(","):
        part = part.strip().lower()
        if not part:
            continue
        out.append(part if part.startswith(".") else f".{part}")
    return tuple(out) or DEFAULT_CLIP_EXTENSIONS


def _parse_queue_ids(raw: str | None) -> frozenset[int]:
    if not raw:
        return DEFAULT_CLIP_QUEUE_IDS
    try:
        return frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ConfigError(f"CLIP_QUEUE_IDS must be a comma separated list of integers, got {raw!r}") from None


@dataclass(frozen=True)
class WatcherSettings:
    folder_path: Path
    riot_api_key: str
    summoner_puuids: list[str]
    friend_puuids: list[str]
    youtube_client_id: str
    youtube_client_secret: str
    youtube_refresh_token: str
    companion_process: str = DEFAULT_COMPANION_PROCESS
    riot_api_base: str = DEFAULT_RIOT_API_BASE
    oauth_token_url: str = DEFAULT_OAUTH_TOKEN_URL
    token_cache_path: Path = DEFAULT_TOKEN_CACHE_PATH
    clip_extensions: tuple[str, ...] = DEFAULT_CLIP_EXTENSIONS
    clip_queue_ids: frozenset[int] = field(default=DEFAULT_CLIP_QUEUE_IDS)
    privacy_status: str = DEFAULT_PRIVACY_STATUS

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "WatcherSettings":
        if dotenv:
            load_dotenv()

        summoners = _indexed("SUMMONER_PUUID", _count("SUMMONERS_COUNT"))
        friends = _indexed("FRIEND_PUUID", _count("FRIENDS_COUNT", "0"))

        return cls(
            folder_path=Path(_require("FOLDER_PATH")).expanduser(),
            riot_api_key=_require("RIOT_API_KEY"),
            summoner_puuids=summoners,
            friend_puuids=friends,
            youtube_client_id=_require("YOUTUBE_CLIENT_ID"),
            youtube_client_secret=_require("YOUTUBE_CLIENT_SECRET"),
            youtube_refresh_token=_require("YOUTUBE_REFRESH_TOKEN"),
            companion_process=os.environ.get("COMPANION_PROCESS", DEFAULT_COMPANION_PROCESS).strip()
            or DEFAULT_COMPANION_PROCESS,
            riot_api_base=os.environ.get("RIOT_API_BASE", DEFAULT_RIOT_API_BASE).rstrip("/"),
            oauth_token_url=os.environ.get("OAUTH_TOKEN_URL", DEFAULT_OAUTH_TOKEN_URL),
            token_cache_path=Path(os.environ.get("TOKEN_CACHE_PATH", str(DEFAULT_TOKEN_CACHE_PATH))).expanduser(),
            clip_extensions=_parse_extensions(os.environ.get("CLIP_EXTENSIONS")),
            clip_queue_ids=_parse_queue_ids(os.environ.get("CLIP_QUEUE_IDS")),
            privacy_status=os.environ.get("CLIP_PRIVACY_STATUS", DEFAULT_PRIVACY_STATUS),
        )

    def roster_for(self, puuid: str) -> frozenset[str]:
        """Friends and the other tracked summoners, excluding ``puuid`` itself."""
        return (frozenset(self.friend_puuids) | frozenset(self.summoner_puuids)) - {puuid}
