"""In-memory record of the last match seen for each tracked summoner."""

import threading


class MatchDirectory:
    """
    Maps summoner PUUID -> most recent known match id.

    One lock guards the whole map. Every worker owns exactly one PUUID, so the
    lock only has to keep the dict consistent; it is never held across I/O.
    """

    def __init__(self):
        self._matches: dict[str, str] = {}
        self._lock = threading.Lock()

    def lookup(self, puuid: str) -> str | None:
        with self._lock:
            return self._matches.get(puuid)

    def is_known(self, puuid: str, match_id: str) -> bool:
        """True only when a match is stored for ``puuid`` and equals ``match_id``."""
        with self._lock:
            stored = self._matches.get(puuid)
        return stored is not None and stored == match_id

    def record(self, puuid: str, match_id: str) -> None:
        with self._lock:
            self._matches[puuid] = match_id

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._matches)

    def __len__(self) -> int:
        with self._lock:
            return len(self._matches)
