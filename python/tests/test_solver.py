"""
Tests for the solving-service adapter, driven by a scripted HTTP session and a manual clock.
"""

import pytest
import requests

from conftest import FakeHttpSession, FakeResponse
from registry_crawlers.deadline import Deadline
from registry_crawlers.errors import (
    CaptchaServiceUnavailable,
    CaptchaSolveError,
    CaptchaTimeoutError,
    ChallengeReusedError,
)
from registry_crawlers.models import Challenge, ChallengeKind
from registry_crawlers.solver import CaptchaSolver, SolverConfig

SUBMITTED = FakeResponse({"status": 1, "request": "4242"})
NOT_READY = FakeResponse({"status": 0, "request": "CAPCHA_NOT_READY"})
READY = FakeResponse({"status": 1, "request": "03AGdBq-solved-token"})


def recaptcha(clock) -> Challenge:
    return Challenge(
        kind=ChallengeKind.RECAPTCHA_V2,
        page_url="https://registry.test/search",
        discovered_at=clock(),
        site_key="6LcTestSiteKey",
    )


def make_solver(clock, session, **overrides) -> CaptchaSolver:
    config = SolverConfig(api_key="test-key", api_base="https://solver.test/", **overrides)
    return CaptchaSolver(config, session=session, sleep=clock.sleep)


class TestSolve:
    """Happy paths and the poll schedule."""

    def test_returns_token_after_polling(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[NOT_READY, NOT_READY, READY])
        solver = make_solver(clock, session)

        token = solver.solve(recaptcha(clock), Deadline(600, clock=clock))

        assert token.value == "03AGdBq-solved-token"
        assert token.job_id == "4242"
        assert token.expires_at == pytest.approx(token.issued_at + solver.config.token_ttl)
        assert clock.sleeps == pytest.approx([5.0, 7.5, 11.25])

    def test_submit_payload_for_recaptcha(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[READY])
        make_solver(clock, session).solve(recaptcha(clock), Deadline(600, clock=clock))

        method, url, kwargs = session.requests[0]
        assert (method, url) == ("POST", "https://solver.test/in.php")
        assert kwargs["data"]["method"] == "userrecaptcha"
        assert kwargs["data"]["googlekey"] == "6LcTestSiteKey"
        assert kwargs["data"]["pageurl"] == "https://registry.test/search"
        assert kwargs["data"]["json"] == 1

    def test_submit_payload_for_image(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[READY])
        challenge = Challenge(
            kind=ChallengeKind.IMAGE,
            page_url="https://registry.test/search",
            discovered_at=clock(),
            image_b64="aW1hZ2U=",
        )

        make_solver(clock, session).solve(challenge, Deadline(600, clock=clock))

        data = session.requests[0][2]["data"]
        assert data["method"] == "base64"
        assert data["body"] == "aW1hZ2U="
        assert "googlekey" not in data

    def test_backoff_is_capped(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[NOT_READY] * 6 + [READY])

        make_solver(clock, session).solve(recaptcha(clock), Deadline(600, clock=clock))

        assert clock.sleeps == pytest.approx([5.0, 7.5, 11.25, 16.875, 20.0, 20.0, 20.0])

    def test_no_slot_available_resubmits(self, clock):
        no_slot = FakeResponse({"status": 0, "request": "ERROR_NO_SLOT_AVAILABLE"})
        session = FakeHttpSession(submit=[no_slot, SUBMITTED], poll=[READY])

        token = make_solver(clock, session, no_slot_delay=3.0).solve(recaptcha(clock), Deadline(600, clock=clock))

        assert token.job_id == "4242"
        assert clock.sleeps[0] == 3.0
        assert [r[1] for r in session.requests].count("https://solver.test/in.php") == 2

    def test_per_call_timeout_is_capped_by_deadline(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[READY])

        make_solver(clock, session, http_timeout=20.0).solve(recaptcha(clock), Deadline(8, clock=clock))

        assert session.requests[0][2]["timeout"] == pytest.approx(8.0)
        assert session.requests[1][2]["timeout"] == pytest.approx(3.0)


class TestFailures:
    """Each failure cause maps to its own exception."""

    def test_explicit_rejection_is_retryable_solve_error(self, clock):
        unsolvable = FakeResponse({"status": 0, "request": "ERROR_CAPTCHA_UNSOLVABLE"})
        session = FakeHttpSession(submit=[SUBMITTED], poll=[NOT_READY, unsolvable])

        with pytest.raises(CaptchaSolveError) as excinfo:
            make_solver(clock, session).solve(recaptcha(clock), Deadline(600, clock=clock))

        assert excinfo.value.code == "ERROR_CAPTCHA_UNSOLVABLE"
        assert excinfo.value.retryable is True

    def test_account_error_is_not_retryable(self, clock):
        session = FakeHttpSession(submit=[FakeResponse({"status": 0, "request": "ERROR_ZERO_BALANCE"})])

        with pytest.raises(CaptchaSolveError) as excinfo:
            make_solver(clock, session).solve(recaptcha(clock), Deadline(600, clock=clock))

        assert excinfo.value.retryable is False

    def test_missing_api_key_never_calls_service(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED])
        solver = CaptchaSolver(SolverConfig(api_key=None), session=session, sleep=clock.sleep)

        with pytest.raises(CaptchaSolveError, match="MISSING_API_KEY"):
            solver.solve(recaptcha(clock), Deadline(600, clock=clock))
        assert session.requests == []

    def test_deadline_elapses_while_polling(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[NOT_READY])
        deadline = Deadline(12, clock=clock)

        with pytest.raises(CaptchaTimeoutError):
            make_solver(clock, session).solve(recaptcha(clock), deadline)

        assert clock.sleeps == pytest.approx([5.0, 7.0])
        assert deadline.expired()

    def test_repeated_transport_failures(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[requests.ConnectionError("connection refused")])

        with pytest.raises(CaptchaServiceUnavailable) as excinfo:
            make_solver(clock, session).solve(recaptcha(clock), Deadline(600, clock=clock))

        assert excinfo.value.failures == 3

    def test_server_errors_count_as_transport_failures(self, clock):
        session = FakeHttpSession(submit=[FakeResponse(status_code=503)])

        with pytest.raises(CaptchaServiceUnavailable):
            make_solver(clock, session).solve(recaptcha(clock), Deadline(600, clock=clock))

        assert len(session.requests) == 3

    def test_transient_transport_failures_recover(self, clock):
        session = FakeHttpSession(
            submit=[SUBMITTED],
            poll=[requests.Timeout("read timed out"), FakeResponse(json_error=True), READY],
        )

        token = make_solver(clock, session).solve(recaptcha(clock), Deadline(600, clock=clock))

        assert token.value == "03AGdBq-solved-token"

    def test_challenge_is_never_solved_twice(self, clock):
        session = FakeHttpSession(submit=[SUBMITTED], poll=[READY])
        solver = make_solver(clock, session)
        challenge = recaptcha(clock)
        solver.solve(challenge, Deadline(600, clock=clock))
        requests_before = len(session.requests)

        with pytest.raises(ChallengeReusedError):
            solver.solve(challenge, Deadline(600, clock=clock))
        assert len(session.requests) == requests_before


def test_report_rejected_token(clock):
    session = FakeHttpSession(submit=[SUBMITTED], poll=[READY])
    solver = make_solver(clock, session)
    token = solver.solve(recaptcha(clock), Deadline(600, clock=clock))

    solver.report_rejected(token)

    assert session.reports == [{"key": "test-key", "action": "reportbad", "id": "4242", "json": 1}]
