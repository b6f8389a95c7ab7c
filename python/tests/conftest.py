from __future__ import annotations

import logging
from pathlib import Path

import pytest
import requests

from registry_crawlers.artifacts import ArtifactWriter, TransitionLog
from registry_crawlers.deadline import Deadline
from registry_crawlers.models import RunRequest, SolvedToken

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeSite:
    """Scripted registry session. The last response of each list repeats."""

    def __init__(
        self,
        search_responses: list[str],
        token_responses: list[str] | None = None,
        *,
        clock: FakeClock | None = None,
        seconds_per_call: float = 0.0,
    ) -> None:
        self.search_responses = list(search_responses)
        self.token_responses = list(token_responses or [])
        self.clock = clock
        self.seconds_per_call = seconds_per_call
        self.current_url = "https://registry.test/businessentitysearch/"
        self.title = "Fake Registry"
        self.page_source = load_fixture("search_form.html")
        self.searches: list[str] = []
        self.submitted: list[tuple[str, str]] = []
        self.closed = False

    def _tick(self) -> None:
        if self.clock is not None:
            self.clock.advance(self.seconds_per_call)

    def _next(self, responses: list[str]) -> str:
        if not responses:
            raise AssertionError("FakeSite has no scripted response left")
        html = responses.pop(0) if len(responses) > 1 else responses[0]
        self.page_source = html
        return html

    def save_screenshot(self, filename: str) -> bool:
        Path(filename).write_bytes(b"\x89PNG fake")
        return True

    def open_search(self, deadline: Deadline) -> str:
        self._tick()
        deadline.check("open search page")
        self.page_source = load_fixture("search_form.html")
        return self.page_source

    def submit_search(self, file_number: str, deadline: Deadline) -> str:
        self._tick()
        deadline.check("submit search")
        self.searches.append(file_number)
        return self._next(self.search_responses)

    def capture_challenge_image(self, deadline: Deadline) -> str:
        return "ZmFrZS1pbWFnZQ=="

    def submit_token(self, challenge, token: SolvedToken, deadline: Deadline) -> str:
        self._tick()
        deadline.check("submit solved token")
        self.submitted.append((challenge.challenge_id, token.value))
        return self._next(self.token_responses)

    def pace(self, deadline: Deadline) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class StubSolver:
    """Returns tokens or raises the scripted exceptions, in order; the last outcome repeats."""

    def __init__(self, outcomes: list[object] | None = None, *, ttl: float = 120.0) -> None:
        self.outcomes = list(outcomes or ["token-ok"])
        self.ttl = ttl
        self.calls: list[object] = []
        self.rejected: list[SolvedToken] = []
        self.closed = False

    def solve(self, challenge, deadline: Deadline) -> SolvedToken:
        self.calls.append(challenge)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        now = deadline.now()
        return SolvedToken(value=str(outcome), job_id=f"job-{len(self.calls)}", issued_at=now, expires_at=now + self.ttl)

    def report_rejected(self, token: SolvedToken) -> None:
        self.rejected.append(token)

    def close(self) -> None:
        self.closed = True


class FakeResponse:
    def __init__(self, payload: object = None, *, status_code: int = 200, json_error: bool = False) -> None:
        self.payload = payload
        self.status_code = status_code
        self.json_error = json_error

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error", response=self)

    def json(self) -> object:
        if self.json_error:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeHttpSession:
    """Stands in for ``requests.Session``; ``in.php`` and ``res.php`` get separate scripts."""

    def __init__(self, submit: list[object], poll: list[object] | None = None) -> None:
        self.submit = list(submit)
        self.poll = list(poll or [])
        self.requests: list[tuple[str, str, dict]] = []
        self.reports: list[dict] = []
        self.closed = False

    def request(self, method: str, url: str, timeout: float = 0, **kwargs) -> FakeResponse:
        self.requests.append((method, url, {"timeout": timeout, **kwargs}))
        script = self.submit if url.endswith("in.php") else self.poll
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url: str, params: dict | None = None, timeout: float = 0) -> FakeResponse:
        self.reports.append(dict(params or {}))
        return FakeResponse({"status": 1, "request": "OK_REPORT_RECORDED"})

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_request(clock: FakeClock):
    def _make(file_number: str = "09853537", request_id: str = "req-1", budget: float = 600.0) -> RunRequest:
        return RunRequest(file_number=file_number, request_id=request_id, deadline=Deadline(budget, clock=clock))

    return _make


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("tests.registry_crawlers")


@pytest.fixture
def artifacts(tmp_path: Path) -> ArtifactWriter:
    return ArtifactWriter(tmp_path / "logs" / "run")


@pytest.fixture
def transition_log(tmp_path: Path) -> TransitionLog:
    return TransitionLog(tmp_path / "logs" / "run" / "transitions.jsonl", "req-1")
