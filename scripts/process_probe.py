"""Companion process detection."""

import logging

import psutil

logger = logging.getLogger("match_watcher.probe")


def _normalise(name: str) -> str:
    name = name.strip().lower()
    if name.endswith(".exe"):
        name = name[:-4]
    return name


def is_process_running(process_name: str) -> bool:
    """
    True when a process named ``process_name`` is running.

    Matching ignores case and a trailing ``.exe``. Anything that prevents an
    answer counts as "not running".
    """
    wanted = _normalise(process_name)
    if not wanted:
        return False
    try:
        for proc in psutil.process_iter(["name"]):
            name = proc.info.get("name") or ""
            if _normalise(name) == wanted:
                return True
    except (psutil.Error, OSError) as exc:
        logger.warning("Process scan failed while looking for %s: %s", process_name, exc)
    return False


def find_processes(suffix: str, limit: int = 5) -> list[int]:
    """PIDs of processes with a command line argument ending in ``suffix``."""
    pids: list[int] = []
    try:
        for proc in psutil.process_iter(["pid", "cmdline"]):
            if any(arg.endswith(suffix) for arg in proc.info.get("cmdline") or []):
                pids.append(proc.info["pid"])
                if len(pids) >= limit:
                    break
    except (psutil.Error, OSError) as exc:
        logger.warning("Process scan failed while looking for %s: %s", suffix, exc)
    return pids
