import asyncio

from clip_publisher import PipelineOutcome
from riot_client import MatchDetail, ParticipantStats, RiotApiError


def make_stats(puuid: str, champion: str = "Ahri", **overrides) -> ParticipantStats:
    values = {
        "puuid": puuid,
        "champion": champion,
        "position": "MIDDLE",
        "kills": 7,
        "deaths": 2,
        "assists": 9,
        "win": True,
        "creep_score": 210,
        "display_name": f"{puuid}#EUW",
    }
    values.update(overrides)
    return ParticipantStats(**values)


def make_detail(match_id: str, puuid: str = "P1", **overrides) -> MatchDetail:
    values = {
        "match_id": match_id,
        "queue_id": 420,
        "game_mode": "CLASSIC",
        "duration_sec": 1800,
        "started_at": None,
        "player": make_stats(puuid),
        "friends": (),
        "of_interest": True,
    }
    values.update(overrides)
    return MatchDetail(**values)


class FakeMatchSource:
    """
    Serves scripted latest-match answers per PUUID.

    Each PUUID maps to a list of answers consumed in order; the last answer
    repeats forever. An answer that is an exception instance is raised.
    """

    def __init__(self, latest: dict[str, list]):
        self._latest = {puuid: list(answers) for puuid, answers in latest.items()}
        self.latest_calls: dict[str, int] = {}
        self.detail_calls: list[tuple[str, str, frozenset[str]]] = []
        self.detail_failures: dict[str, int] = {}

    async def fetch_latest_match_id(self, puuid: str) -> str:
        self.latest_calls[puuid] = self.latest_calls.get(puuid, 0) + 1
        answers = self._latest[puuid]
        answer = answers.pop(0) if len(answers) > 1 else answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def fetch_match_detail(self, puuid: str, match_id: str, roster=()) -> MatchDetail:
        self.detail_calls.append((puuid, match_id, frozenset(roster)))
        remaining = self.detail_failures.get(match_id, 0)
        if remaining:
            self.detail_failures[match_id] = remaining - 1
            raise RiotApiError(f"detail for {match_id} unavailable")
        return make_detail(match_id, puuid)


class RecordingPipeline:
    def __init__(self, *, error: Exception | None = None, status: str = "published"):
        self.runs: list[MatchDetail] = []
        self._error = error
        self._status = status

    async def run(self, detail: MatchDetail) -> PipelineOutcome:
        self.runs.append(detail)
        if self._error is not None:
            raise self._error
        stage = "publish" if self._status == "failed" else ""
        return PipelineOutcome(match_id=detail.match_id, status=self._status, stage=stage)


class GatedPipeline(RecordingPipeline):
    """Blocks inside ``run`` until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, detail: MatchDetail) -> PipelineOutcome:
        self.runs.append(detail)
        self.started.set()
        await self.release.wait()
        return PipelineOutcome(match_id=detail.match_id, status="published", video_id="vid")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
