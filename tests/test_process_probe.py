import psutil
import pytest

import process_probe
from process_probe import find_processes, is_process_running


class FakeProc:
    def __init__(self, **info):
        self.info = info


def _patch_processes(monkeypatch, procs=None, error=None):
    def process_iter(attrs=None):
        if error is not None:
            raise error
        return iter(procs or [])

    monkeypatch.setattr(process_probe.psutil, "process_iter", process_iter)


@pytest.mark.parametrize("running", ["Discord", "discord", "Discord.exe", "DISCORD.EXE"])
def test_name_match_ignores_case_and_exe(monkeypatch, running):
    _patch_processes(monkeypatch, [FakeProc(name="bash"), FakeProc(name=running)])

    assert is_process_running("Discord")
    assert is_process_running("discord.exe")


def test_no_match(monkeypatch):
    _patch_processes(monkeypatch, [FakeProc(name="DiscordPTB"), FakeProc(name=None)])

    assert not is_process_running("Discord")


def test_empty_name_never_matches(monkeypatch):
    _patch_processes(monkeypatch, [FakeProc(name="")])

    assert not is_process_running("  ")


def test_scan_error_counts_as_not_running(monkeypatch, caplog):
    _patch_processes(monkeypatch, error=psutil.AccessDenied())

    assert not is_process_running("Discord")
    assert "Process scan failed" in caplog.text


def test_find_processes_matches_argument_suffix(monkeypatch):
    _patch_processes(
        monkeypatch,
        [
            FakeProc(pid=10, cmdline=["python", "/opt/watcher/match_daemon.py"]),
            FakeProc(pid=11, cmdline=["python", "/opt/watcher/match_daemon.py.bak"]),
            FakeProc(pid=12, cmdline=None),
            FakeProc(pid=13, cmdline=["/usr/bin/match-watcher"]),
        ],
    )

    assert find_processes("match_daemon.py") == [10]
    assert find_processes("match-watcher") == [13]


def test_find_processes_limit(monkeypatch):
    _patch_processes(monkeypatch, [FakeProc(pid=i, cmdline=["x/match-watcher"]) for i in range(10)])

    assert find_processes("match-watcher", limit=3) == [0, 1, 2]
