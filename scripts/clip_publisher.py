"""
Clip pipeline: find the clip recorded for a finished match, upload it to
YouTube, then remove the local copy.

Each stage raises its own ``PipelineError`` subclass. ``ClipPipeline.run``
turns those into a ``PipelineOutcome`` and logs every stage, so a caller only
sees an exception for genuinely unexpected failures.
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import httpx

from match_config import DEFAULT_CLIP_EXTENSIONS, DEFAULT_PRIVACY_STATUS, UPLOAD_HTTP_TIMEOUT_SEC
from oauth_tokens import OAuthTokenProvider, TokenError
from riot_client import MatchDetail

logger = logging.getLogger("match_watcher.clips")

YOUTUBE_UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
YOUTUBE_GAMING_CATEGORY = "20"
MAX_TITLE_LEN = 100
UPLOAD_CHUNK_BYTES = 8 * 1024 * 1024


class PipelineError(RuntimeError):
    """Base class for clip pipeline stage failures."""


class ClipNotFoundError(PipelineError):
    pass


class PublishError(PipelineError):
    pass


@dataclass(frozen=True)
class ClipRef:
    path: Path
    size: int
    modified_at: float


@dataclass(frozen=True)
class PipelineOutcome:
    match_id: str
    status: str  # "published" | "skipped" | "failed"
    stage: str = ""
    video_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


# ---------------------------------------------------------------------------
# Local clip folder
# ---------------------------------------------------------------------------
def locate_clip(
    folder: Path,
    not_before: float | None = None,
    extensions: tuple[str, ...] = DEFAULT_CLIP_EXTENSIONS,
) -> ClipRef:
    """Return the newest clip in ``folder`` modified at or after ``not_before``."""
    if not folder.is_dir():
        raise ClipNotFoundError(f"Clip folder does not exist: {folder}")

    wanted = {ext.lower() for ext in extensions}
    best: ClipRef | None = None
    try:
        entries = list(folder.iterdir())
    except OSError as exc:
        raise ClipNotFoundError(f"Cannot list clip folder {folder}: {exc}") from exc

    for path in entries:
        if path.suffix.lower() not in wanted:
            continue
        try:
            st = path.stat()
        except OSError:
            continue
        if not path.is_file():
            continue
        if not_before is not None and st.st_mtime < not_before:
            continue
        if best is None or st.st_mtime > best.modified_at:
            best = ClipRef(path=path, size=st.st_size, modified_at=st.st_mtime)

    if best is None:
        raise ClipNotFoundError(f"No clip found in {folder}")
    return best


def delete_clip(path: Path) -> None:
    try:
        path.unlink()
    except OSError as exc:
        raise PipelineError(f"Failed to delete {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# YouTube
# ---------------------------------------------------------------------------
def build_title(detail: MatchDetail) -> str:
    player = detail.player
    result = "Victory" if player.win else "Defeat"
    title = f"{player.champion} {player.kda} {result}"
    if detail.game_mode:
        title += f" - {detail.game_mode}"
    if detail.friends:
        names = ", ".join(f.display_name or f.champion for f in detail.friends)
        title += f" with {names}"
    if len(title) > MAX_TITLE_LEN:
        title = title[: MAX_TITLE_LEN - 3].rstrip() + "..."
    return title


def build_description(detail: MatchDetail) -> str:
    minutes, seconds = divmod(detail.duration_sec, 60)
    lines = [
        f"Match {detail.match_id} ({detail.game_mode or 'queue ' + str(detail.queue_id)}, {minutes}:{seconds:02d})",
        f"{detail.player.display_name or detail.player.champion}: {detail.player.champion} "
        f"{detail.player.position or '-'} {detail.player.kda}, {detail.player.creep_score} CS",
    ]
    for friend in detail.friends:
        lines.append(
            f"{friend.display_name or friend.puuid[:12]}: {friend.champion} "
            f"{friend.position or '-'} {friend.kda}, {friend.creep_score} CS"
        )
    return "\n".join(lines)


async def _iter_file(path: Path, chunk_size: int = UPLOAD_CHUNK_BYTES) -> AsyncIterator[bytes]:
    with path.open("rb") as f:
        while True:
            chunk = await asyncio.to_thread(f.read, chunk_size)
            if not chunk:
                break
            yield chunk


class YouTubePublisher:
    """Uploads clips with the YouTube Data API resumable upload protocol."""

    def __init__(
        self,
        tokens: OAuthTokenProvider,
        *,
        privacy_status: str = DEFAULT_PRIVACY_STATUS,
        upload_url: str = YOUTUBE_UPLOAD_URL,
        timeout: float = UPLOAD_HTTP_TIMEOUT_SEC,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._tokens = tokens
        self._privacy_status = privacy_status
        self._upload_url = upload_url
        self._client = http_client or httpx.AsyncClient(timeout=timeout, trust_env=False)
        self._owns_client = http_client is None

    async def publish(self, clip: ClipRef, detail: MatchDetail) -> str:
        try:
            token = await self._tokens.get_access_token()
        except TokenError as exc:
            raise PublishError(str(exc)) from exc

        content_type = mimetypes.guess_type(clip.path.name)[0] or "video/mp4"
        metadata = {
            "snippet": {
                "title": build_title(detail),
                "description": build_description(detail),
                "tags": ["League of Legends", detail.player.champion],
                "categoryId": YOUTUBE_GAMING_CATEGORY,
            },
            "status": {"privacyStatus": self._privacy_status},
        }
        auth = {"Authorization": f"Bearer {token}"}

        try:
            session = await self._client.post(
                self._upload_url,
                params={"uploadType": "resumable", "part": "snippet,status"},
                json=metadata,
                headers={
                    **auth,
                    "X-Upload-Content-Type": content_type,
                    "X-Upload-Content-Length": str(clip.size),
                },
            )
            if session.status_code >= 300:
                raise PublishError(f"Upload session returned HTTP {session.status_code}: {session.text[:200]}")
            location = session.headers.get("Location")
            if not location:
                raise PublishError("Upload session response has no Location header")

            response = await self._client.put(
                location,
                content=_iter_file(clip.path),
                headers={**auth, "Content-Type": content_type, "Content-Length": str(clip.size)},
            )
        except httpx.HTTPError as exc:
            raise PublishError(f"Upload of {clip.path.name} failed: {exc}") from exc

        if response.status_code >= 300:
            raise PublishError(f"Upload returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            video_id = str(response.json()["id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise PublishError("Upload response has no video id") from exc
        return video_id

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class ClipPipeline:
    def __init__(
        self,
        folder: Path,
        publisher: YouTubePublisher,
        *,
        extensions: tuple[str, ...] = DEFAULT_CLIP_EXTENSIONS,
    ) -> None:
        self._folder = folder
        self._publisher = publisher
        self._extensions = extensions
        # Every worker shares one clip folder.
        self._folder_lock = asyncio.Lock()

    async def run(self, detail: MatchDetail) -> PipelineOutcome:
        match_id = detail.match_id
        if not detail.of_interest:
            logger.info(
                "Skipping clip match=%s queue=%d duration=%ds (not a tracked queue or a remake)",
                match_id,
                detail.queue_id,
                detail.duration_sec,
            )
            return PipelineOutcome(match_id=match_id, status="skipped")

        async with self._folder_lock:
            try:
                clip = await asyncio.to_thread(locate_clip, self._folder, detail.started_at, self._extensions)
            except PipelineError as exc:
                logger.warning("Pipeline stage=locate failed match=%s: %s", match_id, exc)
                return PipelineOutcome(match_id=match_id, status="failed", stage="locate", error=str(exc))
            logger.info("Pipeline stage=locate match=%s clip=%s size=%d", match_id, clip.path.name, clip.size)

            try:
                video_id = await self._publisher.publish(clip, detail)
            except PipelineError as exc:
                logger.error("Pipeline stage=publish failed match=%s clip=%s: %s", match_id, clip.path.name, exc)
                return PipelineOutcome(match_id=match_id, status="failed", stage="publish", error=str(exc))
            logger.info("Pipeline stage=publish match=%s video=%s", match_id, video_id)

            try:
                await asyncio.to_thread(delete_clip, clip.path)
            except PipelineError as exc:
                logger.error("Pipeline stage=delete failed match=%s: %s", match_id, exc)
                return PipelineOutcome(
                    match_id=match_id, status="failed", stage="delete", video_id=video_id, error=str(exc)
                )
            logger.info("Pipeline stage=delete match=%s clip=%s", match_id, clip.path.name)

        return PipelineOutcome(match_id=match_id, status="published", video_id=video_id)
