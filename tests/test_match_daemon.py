import asyncio
import os
import signal
import sys

import pytest

import match_daemon
from helpers import wait_until
from match_config import ConfigError, WatcherSettings
from match_daemon import EXIT_OK, EXIT_STARTUP_FAILED, ShutdownSignal, _install_signal_handlers, run_watcher

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers need a POSIX event loop")


class StubRiot:
    def __init__(self, *args, **kwargs):
        self.latest_calls = 0
        self.closed = False

    async def fetch_latest_match_id(self, puuid):
        self.latest_calls += 1
        return "EUW1_1"

    async def fetch_match_detail(self, puuid, match_id, roster=()):
        raise AssertionError("no new match expected")

    async def aclose(self):
        self.closed = True


class StubTokens:
    def __init__(self, *args, error=None, **kwargs):
        self.error = error
        self.calls = 0
        self.closed = False

    async def get_access_token(self):
        self.calls += 1
        if self.error:
            raise self.error
        return "ya29.token"

    async def aclose(self):
        self.closed = True


class StubPublisher:
    def __init__(self, tokens, **kwargs):
        self.closed = False

    async def aclose(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path):
    return WatcherSettings(
        folder_path=tmp_path,
        riot_api_key="RGAPI-key",
        summoner_puuids=["P1"],
        friend_puuids=[],
        youtube_client_id="cid",
        youtube_client_secret="secret",
        youtube_refresh_token="refresh",
        token_cache_path=tmp_path / "token.json",
    )


@pytest.fixture
def clients(monkeypatch):
    made = {}

    def factory(name, cls, **extra):
        def build(*args, **kwargs):
            made[name] = cls(*args, **{**kwargs, **extra})
            return made[name]

        return build

    def install(token_error=None):
        monkeypatch.setattr(match_daemon, "RiotMatchClient", factory("riot", StubRiot))
        monkeypatch.setattr(match_daemon, "OAuthTokenProvider", factory("tokens", StubTokens, error=token_error))
        monkeypatch.setattr(match_daemon, "YouTubePublisher", factory("publisher", StubPublisher))
        return made

    return install


def _remove_signal_handlers():
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.remove_signal_handler(signum)


# ---------------------------------------------------------------------------
# run_watcher
# ---------------------------------------------------------------------------
@posix_only
@pytest.mark.asyncio
async def test_absent_companion_exits_and_closes_clients(settings, clients):
    made = clients()

    code = await run_watcher(settings, probe=lambda name: False)
    _remove_signal_handlers()

    assert code == EXIT_STARTUP_FAILED
    assert made["tokens"].calls == 0
    assert made["riot"].latest_calls == 0
    assert made["riot"].closed and made["tokens"].closed and made["publisher"].closed


@posix_only
@pytest.mark.asyncio
async def test_access_token_is_fetched_before_polling(settings, clients):
    made = clients(token_error=RuntimeError("invalid_grant"))

    code = await run_watcher(settings, probe=lambda name: True)
    _remove_signal_handlers()

    assert code == EXIT_STARTUP_FAILED
    assert made["tokens"].calls == 1
    assert made["riot"].latest_calls == 0
    assert made["riot"].closed and made["tokens"].closed and made["publisher"].closed


@posix_only
@pytest.mark.asyncio
async def test_sigterm_stops_watcher_with_exit_ok(settings, clients):
    made = clients()

    run = asyncio.create_task(run_watcher(settings, probe=lambda name: True))
    await wait_until(lambda: "riot" in made and made["riot"].latest_calls >= 1)
    os.kill(os.getpid(), signal.SIGTERM)

    assert await asyncio.wait_for(run, timeout=2) == EXIT_OK
    _remove_signal_handlers()
    assert made["tokens"].calls == 1
    assert made["riot"].closed


@posix_only
@pytest.mark.asyncio
async def test_sigint_sets_shutdown_signal():
    shutdown = ShutdownSignal()
    _install_signal_handlers(asyncio.get_running_loop(), shutdown)
    try:
        os.kill(os.getpid(), signal.SIGINT)
        assert await shutdown.sleep(1)
    finally:
        _remove_signal_handlers()

    assert shutdown.reason == f"signal {signal.SIGINT}"


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------
def _raise_config_error(*args, **kwargs):
    raise ConfigError("SUMMONERS_COUNT is not set")


def test_main_exits_on_config_error(monkeypatch):
    monkeypatch.setattr(match_daemon, "configure_logging", lambda: None)
    monkeypatch.setattr(match_daemon.WatcherSettings, "from_env", _raise_config_error)

    def unexpected(settings):
        raise AssertionError("watcher must not start")

    monkeypatch.setattr(match_daemon, "run_watcher", unexpected)

    assert match_daemon.main() == EXIT_STARTUP_FAILED


def test_main_returns_watcher_exit_code(monkeypatch, settings):
    seen = []

    async def fake_run_watcher(s):
        seen.append(s)
        return EXIT_OK

    monkeypatch.setattr(match_daemon, "configure_logging", lambda: None)
    monkeypatch.setattr(match_daemon.WatcherSettings, "from_env", lambda *args, **kwargs: settings)
    monkeypatch.setattr(match_daemon, "run_watcher", fake_run_watcher)

    assert match_daemon.main() == EXIT_OK
    assert seen == [settings]
