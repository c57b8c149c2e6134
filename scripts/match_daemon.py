#!/usr/bin/env python3
"""
Match clip watcher daemon.

Goals:
- One independent poll loop per tracked summoner
- Publish the clip of every match finished while the daemon runs, once
- Live exactly as long as the companion process (Discord by default)
"""

import asyncio
import logging
import logging.handlers
import signal
import sys
import time
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Protocol

import psutil

from clip_publisher import ClipPipeline, PipelineOutcome, YouTubePublisher
from match_config import (
    CONSOLE_LOG_LEVEL,
    DEFAULT_COMPANION_PROCESS,
    HEARTBEAT_INTERVAL_SEC,
    LIVENESS_INTERVAL_SEC,
    LOG_DIR,
    POLL_INTERVAL_SEC,
    ConfigError,
    WatcherSettings,
)
from match_directory import MatchDirectory
from oauth_tokens import OAuthTokenProvider
from process_probe import is_process_running
from riot_client import MatchDetail, RiotApiError, RiotMatchClient

EXIT_OK = 0
EXIT_STARTUP_FAILED = 1

logger = logging.getLogger("match_watcher")

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def configure_logging(log_dir: Path = LOG_DIR, console_level: str = CONSOLE_LOG_LEVEL) -> None:
    if logger.handlers:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.setLevel(logging.INFO)

    rfh = logging.handlers.RotatingFileHandler(
        str(log_dir / "match_watcher.log"), maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    rfh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(rfh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(console_level)
    sh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(sh)


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------
class ShutdownSignal:
    """One-shot broadcast flag. Once set it stays set."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    def set(self, reason: str = "") -> bool:
        """Set the flag; returns True only for the call that actually set it."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.info("Shutdown initiated reason=%s", reason or "unspecified")
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if woken early by shutdown."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown: ShutdownSignal) -> None:
    def _handle_signal(signum):
        logger.info("Received signal %s, shutting down.", signum)
        shutdown.set(f"signal {signum}")

    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, _handle_signal, signum)
        except (NotImplementedError, RuntimeError):
            # No loop signal support on Windows.
            signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(_handle_signal, s))


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------
class MatchSource(Protocol):
    async def fetch_latest_match_id(self, puuid: str) -> str: ...

    async def fetch_match_detail(self, puuid: str, match_id: str, roster: Iterable[str] = ()) -> MatchDetail: ...


class MatchPipeline(Protocol):
    async def run(self, detail: MatchDetail) -> PipelineOutcome: ...


class PollWorker:
    """
    Poll loop for a single summoner.

    The first successful fetch only records a baseline: whatever Riot reports
    as latest at startup was played before the daemon was watching. After
    that, any latest id different from the recorded one is a new match and
    goes through the pipeline once. The directory advances as soon as the
    match detail is known, whatever the pipeline outcome, so a clip that keeps
    failing is not retried forever.
    """

    def __init__(
        self,
        puuid: str,
        source: MatchSource,
        directory: MatchDirectory,
        pipeline: MatchPipeline,
        shutdown: ShutdownSignal,
        *,
        roster: Iterable[str] = (),
        poll_interval: float = POLL_INTERVAL_SEC,
    ) -> None:
        self.puuid = puuid
        self._source = source
        self._directory = directory
        self._pipeline = pipeline
        self._shutdown = shutdown
        self._roster = frozenset(roster) - {puuid}
        self._poll_interval = poll_interval

        self.bootstrapping = True
        self.cycles = 0
        self.novel_matches = 0
        self.errors = 0

    @property
    def label(self) -> str:
        return self.puuid[:12]

    async def run(self) -> None:
        logger.info("Worker started summoner=%s", self.label)
        while not self._shutdown.is_set():
            try:
                await self.run_cycle()
            except Exception:
                self.errors += 1
                logger.exception("Unhandled error in poll cycle summoner=%s", self.label)
            if await self._shutdown.sleep(self._poll_interval):
                break
        logger.info(
            "Worker stopped summoner=%s cycles=%d novel=%d errors=%d",
            self.label,
            self.cycles,
            self.novel_matches,
            self.errors,
        )

    async def run_cycle(self) -> PipelineOutcome | None:
        self.cycles += 1
        try:
            latest = await self._source.fetch_latest_match_id(self.puuid)
        except RiotApiError as exc:
            self.errors += 1
            logger.warning("Fetch failed summoner=%s: %s", self.label, exc)
            return None

        if self.bootstrapping:
            self._directory.record(self.puuid, latest)
            self.bootstrapping = False
            logger.info("Baseline recorded summoner=%s match=%s", self.label, latest)
            return None

        if self._directory.is_known(self.puuid, latest):
            return None

        logger.info(
            "New match detected summoner=%s match=%s previous=%s",
            self.label,
            latest,
            self._directory.lookup(self.puuid),
        )
        try:
            detail = await self._source.fetch_match_detail(self.puuid, latest, self._roster)
        except RiotApiError as exc:
            self.errors += 1
            logger.warning("Detail fetch failed summoner=%s match=%s, retrying next cycle: %s", self.label, latest, exc)
            return None

        outcome: PipelineOutcome | None = None
        try:
            outcome = await self._pipeline.run(detail)
        except Exception:
            self.errors += 1
            logger.exception("Pipeline crashed summoner=%s match=%s", self.label, latest)

        self._directory.record(self.puuid, latest)
        self.novel_matches += 1
        if outcome is not None:
            if not outcome.ok:
                self.errors += 1
            logger.info(
                "Match processed summoner=%s match=%s status=%s%s",
                self.label,
                latest,
                outcome.status,
                f" stage={outcome.stage}" if outcome.stage else "",
            )
        return outcome


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------
class Supervisor:
    def __init__(
        self,
        source: MatchSource,
        pipeline: MatchPipeline,
        *,
        probe: Callable[[str], bool] = is_process_running,
        companion: str = DEFAULT_COMPANION_PROCESS,
        friends: Iterable[str] = (),
        directory: MatchDirectory | None = None,
        shutdown: ShutdownSignal | None = None,
        poll_interval: float = POLL_INTERVAL_SEC,
        liveness_interval: float = LIVENESS_INTERVAL_SEC,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SEC,
    ) -> None:
        self._source = source
        self._pipeline = pipeline
        self._probe = probe
        self._companion = companion
        self._friends = frozenset(friends)
        self._poll_interval = poll_interval
        self._liveness_interval = liveness_interval
        self._heartbeat_interval = heartbeat_interval
        self.directory = directory if directory is not None else MatchDirectory()
        self.shutdown = shutdown if shutdown is not None else ShutdownSignal()
        self.workers: list[PollWorker] = []

    async def companion_running(self) -> bool:
        try:
            return bool(await asyncio.to_thread(self._probe, self._companion))
        except Exception as exc:
            logger.warning("Liveness probe for %s failed: %s", self._companion, exc)
            return False

    @staticmethod
    def _dedupe(puuids: Iterable[str]) -> list[str]:
        seen: set[str] = set()
        out: list[str] = []
        for puuid in puuids:
            if puuid in seen:
                logger.warning("Ignoring duplicate summoner=%s", puuid[:12])
                continue
            seen.add(puuid)
            out.append(puuid)
        return out

    async def run(
        self,
        puuids: Iterable[str],
        bootstrap: Callable[[], Awaitable[object]] | None = None,
    ) -> int:
        if not await self.companion_running():
            logger.error("%s not detected, exiting without starting workers.", self._companion)
            return EXIT_STARTUP_FAILED

        if bootstrap is not None:
            try:
                await bootstrap()
            except Exception as exc:
                logger.error("Startup bootstrap failed: %s", exc)
                return EXIT_STARTUP_FAILED

        tracked = self._dedupe(puuids)
        roster = self._friends | frozenset(tracked)
        logger.info("%s detected, starting %d workers.", self._companion, len(tracked))

        self.workers = [
            PollWorker(
                puuid,
                self._source,
                self.directory,
                self._pipeline,
                self.shutdown,
                roster=roster - {puuid},
                poll_interval=self._poll_interval,
            )
            for puuid in tracked
        ]
        tasks = [asyncio.create_task(worker.run(), name=f"poll-{worker.label}") for worker in self.workers]

        try:
            await self._monitor_liveness()
        finally:
            self.shutdown.set("supervisor exiting")
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for worker, result in zip(self.workers, results):
                if isinstance(result, BaseException):
                    logger.error("Worker summoner=%s exited abnormally: %r", worker.label, result)

        logger.info(
            "Shutdown complete workers=%d novel=%d errors=%d",
            len(self.workers),
            sum(w.novel_matches for w in self.workers),
            sum(w.errors for w in self.workers),
        )
        return EXIT_OK

    async def _monitor_liveness(self) -> None:
        last_heartbeat = time.monotonic()
        while not self.shutdown.is_set():
            if not await self.companion_running():
                logger.info("%s closed, stopping workers.", self._companion)
                self.shutdown.set(f"{self._companion} closed")
                break
            if self._heartbeat_interval > 0 and time.monotonic() - last_heartbeat >= self._heartbeat_interval:
                last_heartbeat = time.monotonic()
                self.heartbeat()
            await self.shutdown.sleep(self._liveness_interval)

    def heartbeat(self) -> None:
        try:
            mem_mb = psutil.Process().memory_info().rss / (1024 * 1024)
        except psutil.Error:
            mem_mb = -1
        logger.info(
            "♥ workers=%d known=%d novel=%d errors=%d mem=%.1fMB",
            len(self.workers),
            len(self.directory),
            sum(w.novel_matches for w in self.workers),
            sum(w.errors for w in self.workers),
            mem_mb,
        )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
async def run_watcher(settings: WatcherSettings, probe: Callable[[str], bool] = is_process_running) -> int:
    riot = RiotMatchClient(
        settings.riot_api_key,
        api_base=settings.riot_api_base,
        queue_ids=settings.clip_queue_ids,
    )
    tokens = OAuthTokenProvider(
        settings.youtube_client_id,
        settings.youtube_client_secret,
        settings.youtube_refresh_token,
        token_url=settings.oauth_token_url,
        cache_path=settings.token_cache_path,
    )
    publisher = YouTubePublisher(tokens, privacy_status=settings.privacy_status)
    pipeline = ClipPipeline(settings.folder_path, publisher, extensions=settings.clip_extensions)
    supervisor = Supervisor(
        riot,
        pipeline,
        probe=probe,
        companion=settings.companion_process,
        friends=settings.friend_puuids,
    )
    _install_signal_handlers(asyncio.get_running_loop(), supervisor.shutdown)

    try:
        return await supervisor.run(settings.summoner_puuids, bootstrap=tokens.get_access_token)
    finally:
        await riot.aclose()
        await publisher.aclose()
        await tokens.aclose()


def main() -> int:
    configure_logging()
    logger.info("Starting match clip watcher")
    try:
        settings = WatcherSettings.from_env()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_STARTUP_FAILED

    logger.info(
        "Summoners=%d Friends=%d Companion=%s Clips=%s",
        len(settings.summoner_puuids),
        len(settings.friend_puuids),
        settings.companion_process,
        settings.folder_path,
    )
    logger.info(
        "Poll=%ds Liveness=%ds Heartbeat=%ds",
        POLL_INTERVAL_SEC,
        LIVENESS_INTERVAL_SEC,
        HEARTBEAT_INTERVAL_SEC,
    )
    return asyncio.run(run_watcher(settings))


if __name__ == "__main__":
    raise SystemExit(main())
