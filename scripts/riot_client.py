"""Riot match-v5 API client."""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

import httpx

from match_config import DEFAULT_CLIP_QUEUE_IDS, DEFAULT_RIOT_API_BASE, MIN_GAME_DURATION_SEC, RIOT_HTTP_TIMEOUT_SEC

logger = logging.getLogger("match_watcher.riot")


class RiotApiError(RuntimeError):
    """Raised when a match-v5 call fails or returns something unusable."""


@dataclass(frozen=True)
class ParticipantStats:
    puuid: str
    champion: str
    position: str
    kills: int
    deaths: int
    assists: int
    win: bool
    creep_score: int
    display_name: str = ""

    @property
    def kda(self) -> str:
        return f"{self.kills}/{self.deaths}/{self.assists}"


@dataclass(frozen=True)
class MatchDetail:
    match_id: str
    queue_id: int
    game_mode: str
    duration_sec: int
    started_at: float | None
    player: ParticipantStats
    friends: tuple[ParticipantStats, ...] = field(default_factory=tuple)
    of_interest: bool = True


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _participant(raw: dict[str, Any]) -> ParticipantStats:
    game_name = raw.get("riotIdGameName") or raw.get("summonerName") or ""
    tagline = raw.get("riotIdTagline") or ""
    display = f"{game_name}#{tagline}" if game_name and tagline else game_name
    return ParticipantStats(
        puuid=str(raw.get("puuid", "")),
        champion=str(raw.get("championName") or "Unknown"),
        position=str(raw.get("teamPosition") or raw.get("individualPosition") or ""),
        kills=_as_int(raw.get("kills")),
        deaths=_as_int(raw.get("deaths")),
        assists=_as_int(raw.get("assists")),
        win=bool(raw.get("win")),
        creep_score=_as_int(raw.get("totalMinionsKilled")) + _as_int(raw.get("neutralMinionsKilled")),
        display_name=display,
    )


def _duration_seconds(info: dict[str, Any]) -> int:
    # Matches recorded before patch 11.20 report gameDuration in milliseconds
    # and carry no gameEndTimestamp.
    duration = _as_int(info.get("gameDuration"))
    if "gameEndTimestamp" in info:
        return duration
    return duration // 1000


def parse_match_detail(
    payload: Any,
    puuid: str,
    roster: Iterable[str] = (),
    *,
    queue_ids: frozenset[int] = DEFAULT_CLIP_QUEUE_IDS,
    min_duration_sec: int = MIN_GAME_DURATION_SEC,
) -> MatchDetail:
    if not isinstance(payload, dict):
        raise RiotApiError("Match payload is not an object")
    info = payload.get("info")
    metadata = payload.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    if not isinstance(info, dict) or not isinstance(info.get("participants"), list):
        raise RiotApiError("Match payload has no participants")

    roster_set = set(roster) - {puuid}
    player: ParticipantStats | None = None
    friends: list[ParticipantStats] = []
    for raw in info["participants"]:
        if not isinstance(raw, dict):
            continue
        stats = _participant(raw)
        if stats.puuid == puuid:
            player = stats
        elif stats.puuid in roster_set:
            friends.append(stats)

    match_id = str(metadata.get("matchId") or "")
    if player is None:
        raise RiotApiError(f"Summoner {puuid[:12]} not found in match {match_id or '?'}")

    queue_id = _as_int(info.get("queueId"))
    duration = _duration_seconds(info)
    start_ms = info.get("gameStartTimestamp")
    started_at = _as_int(start_ms) / 1000 if start_ms else None

    return MatchDetail(
        match_id=match_id,
        queue_id=queue_id,
        game_mode=str(info.get("gameMode") or ""),
        duration_sec=duration,
        started_at=started_at,
        player=player,
        friends=tuple(friends),
        of_interest=queue_id in queue_ids and duration >= min_duration_sec,
    )


class RiotMatchClient:
    """Async client for the two match-v5 endpoints the watcher needs."""

    def __init__(
        self,
        api_key: str,
        *,
        api_base: str = DEFAULT_RIOT_API_BASE,
        timeout: float = RIOT_HTTP_TIMEOUT_SEC,
        queue_ids: frozenset[int] = DEFAULT_CLIP_QUEUE_IDS,
        min_duration_sec: int = MIN_GAME_DURATION_SEC,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._queue_ids = queue_ids
        self._min_duration_sec = min_duration_sec
        self._client = http_client or httpx.AsyncClient(timeout=timeout, trust_env=False)
        self._owns_client = http_client is None
        self._headers = {"X-Riot-Token": api_key}

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._api_base}{path}"
        try:
            response = await self._client.get(url, params=params, headers=self._headers)
        except httpx.HTTPError as exc:
            raise RiotApiError(f"GET {path} failed: {exc}") from exc
        if response.status_code >= 300:
            raise RiotApiError(f"GET {path} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise RiotApiError(f"GET {path} returned invalid JSON") from exc

    async def fetch_latest_match_id(self, puuid: str) -> str:
        data = await self._get_json(
            f"/lol/match/v5/matches/by-puuid/{puuid}/ids",
            params={"start": 0, "count": 1},
        )
        if not isinstance(data, list):
            raise RiotApiError("Match id listing is not a list")
        if not data:
            raise RiotApiError("No match ID found")
        logger.debug("Latest match summoner=%s match=%s", puuid[:12], data[0])
        return str(data[0])

    async def fetch_match_detail(self, puuid: str, match_id: str, roster: Iterable[str] = ()) -> MatchDetail:
        data = await self._get_json(f"/lol/match/v5/matches/{match_id}")
        detail = parse_match_detail(
            data,
            puuid,
            roster,
            queue_ids=self._queue_ids,
            min_duration_sec=self._min_duration_sec,
        )
        if not detail.match_id:
            # Older payloads occasionally omit metadata.
            detail = replace(detail, match_id=match_id)
        return detail

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
