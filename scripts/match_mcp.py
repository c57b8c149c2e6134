import functools
import json
import time
from datetime import datetime
from typing import Any

from mcp.server.fastmcp import FastMCP

from clip_publisher import ClipNotFoundError, locate_clip
from match_config import ConfigError, WatcherSettings
from process_probe import find_processes, is_process_running
from riot_client import RiotApiError, RiotMatchClient

# Initialize FastMCP server
mcp = FastMCP("Match Clip Watcher")


@functools.lru_cache(maxsize=1)
def _settings() -> WatcherSettings:
    return WatcherSettings.from_env()


def _riot_client(settings: WatcherSettings) -> RiotMatchClient:
    return RiotMatchClient(
        settings.riot_api_key,
        api_base=settings.riot_api_base,
        queue_ids=settings.clip_queue_ids,
    )


def _token_cache_report(settings: WatcherSettings) -> dict[str, Any]:
    path = settings.token_cache_path
    if not path.exists():
        return {"ok": False, "path": str(path), "reason": "missing"}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        expires_at = float(data["expires_at"])
    except (OSError, ValueError, KeyError, TypeError) as exc:
        return {"ok": False, "path": str(path), "error": str(exc)}
    return {
        "ok": expires_at > time.time(),
        "path": str(path),
        "expires_at": datetime.fromtimestamp(expires_at).isoformat(),
    }


def _clip_folder_report(settings: WatcherSettings) -> dict[str, Any]:
    folder = settings.folder_path
    if not folder.is_dir():
        return {"ok": False, "path": str(folder), "reason": "missing"}
    clips = [p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in settings.clip_extensions]
    report: dict[str, Any] = {"ok": True, "path": str(folder), "pending_clips": len(clips)}
    try:
        newest = locate_clip(folder, extensions=settings.clip_extensions)
        report["newest_clip"] = newest.path.name
        report["newest_clip_at"] = datetime.fromtimestamp(newest.modified_at).isoformat()
    except ClipNotFoundError:
        pass
    return report


@mcp.tool()
async def latest_match(puuid: str) -> str:
    """
    Return the id of the latest match Riot reports for a summoner PUUID.
    """
    client = _riot_client(_settings())
    try:
        match_id = await client.fetch_latest_match_id(puuid.strip())
        return json.dumps({"puuid": puuid, "match_id": match_id})
    except RiotApiError as e:
        return f"Failed to fetch latest match: {str(e)}"
    finally:
        await client.aclose()


@mcp.tool()
async def match_summary(puuid: str, match_id: str) -> str:
    """
    Summarize one match from the point of view of a summoner, including tracked friends.
    """
    settings = _settings()
    client = _riot_client(settings)
    puuid = puuid.strip()
    try:
        detail = await client.fetch_match_detail(puuid, match_id.strip(), settings.roster_for(puuid))
    except RiotApiError as e:
        return f"Failed to fetch match {match_id}: {str(e)}"
    finally:
        await client.aclose()

    def stats(p) -> dict[str, Any]:
        return {
            "name": p.display_name,
            "champion": p.champion,
            "position": p.position,
            "kda": p.kda,
            "cs": p.creep_score,
            "win": p.win,
        }

    summary = {
        "match_id": detail.match_id,
        "queue_id": detail.queue_id,
        "game_mode": detail.game_mode,
        "duration_sec": detail.duration_sec,
        "of_interest": detail.of_interest,
        "player": stats(detail.player),
        "friends": [stats(f) for f in detail.friends],
    }
    return json.dumps(summary, ensure_ascii=False, indent=2)


@mcp.tool()
def watcher_health() -> str:
    """
    Health snapshot for the companion process, the watcher daemon, the clip folder and the token cache.
    """
    report: dict[str, Any] = {"checked_at": datetime.now().isoformat()}
    try:
        settings = _settings()
    except ConfigError as exc:
        report["config"] = {"ok": False, "error": str(exc)}
        report["all_ok"] = False
        return json.dumps(report, ensure_ascii=False, indent=2)

    report["config"] = {
        "ok": True,
        "summoners": len(settings.summoner_puuids),
        "friends": len(settings.friend_puuids),
    }
    report["companion"] = {
        "ok": is_process_running(settings.companion_process),
        "name": settings.companion_process,
    }
    pids = find_processes("match_daemon.py") + find_processes("match-watcher")
    report["daemon"] = {"ok": bool(pids), "pids": sorted(set(pids))[:5]}
    report["clips"] = _clip_folder_report(settings)
    report["token_cache"] = _token_cache_report(settings)

    report["all_ok"] = all(report[key]["ok"] for key in ("config", "companion", "daemon", "clips", "token_cache"))
    return json.dumps(report, ensure_ascii=False, indent=2)


def main() -> None:
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
