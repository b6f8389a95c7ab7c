"""Adapter for 2captcha-compatible solving services.

The service is asynchronous by polling: a job is submitted to ``in.php`` and its result
fetched from ``res.php`` until it is ready. All waiting and backoff for a solve happens
inside :meth:`CaptchaSolver.solve`; callers only see a token or one of three failures:

* ``CaptchaSolveError``: the service rejected or could not solve the job.
* ``CaptchaTimeoutError``: the run deadline ran out while submitting or polling.
* ``CaptchaServiceUnavailable``: repeated transport failures talking to the service.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from registry_crawlers.deadline import Deadline
from registry_crawlers.errors import (
    CaptchaServiceUnavailable,
    CaptchaSolveError,
    CaptchaTimeoutError,
    ChallengeReusedError,
)
from registry_crawlers.models import Challenge, ChallengeKind, SolvedToken

NOT_READY = "CAPCHA_NOT_READY"
NO_SLOT = "ERROR_NO_SLOT_AVAILABLE"

# Account-level rejections, never retried with a new challenge.
FATAL_CODES = frozenset(
    {
        "ERROR_WRONG_USER_KEY",
        "ERROR_KEY_DOES_NOT_EXIST",
        "ERROR_ZERO_BALANCE",
        "ERROR_IP_NOT_ALLOWED",
        "ERROR_IP_BANNED",
        "MISSING_API_KEY",
        "MISSING_SITE_KEY",
    }
)


@dataclass
class SolverConfig:
    api_key: str | None = None
    api_base: str = "https://api.solvecaptcha.com"
    initial_delay: float = 5.0
    max_delay: float = 20.0
    backoff_factor: float = 1.5
    no_slot_delay: float = 5.0
    http_timeout: float = 20.0
    max_transport_failures: int = 3
    token_ttl: float = 110.0


class CaptchaSolver:
    def __init__(
        self,
        config: SolverConfig,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self._consumed: set[str] = set()
        self._transport_failures = 0

    def solve(self, challenge: Challenge, deadline: Deadline) -> SolvedToken:
        if challenge.challenge_id in self._consumed:
            raise ChallengeReusedError(f"Challenge {challenge.challenge_id} was already submitted")
        self._consumed.add(challenge.challenge_id)

        if not self.config.api_key:
            raise CaptchaSolveError("MISSING_API_KEY", retryable=False)

        payload = self._submit_payload(challenge)
        self._transport_failures = 0
        job_id = self._submit(payload, deadline)
        self.logger.info("Captcha job submitted: kind=%s job_id=%s", challenge.kind.value, job_id)

        value = self._poll(job_id, deadline)
        issued_at = deadline.now()
        self.logger.info("Captcha job solved: job_id=%s after %.1fs", job_id, issued_at - challenge.discovered_at)
        return SolvedToken(
            value=value,
            job_id=job_id,
            issued_at=issued_at,
            expires_at=issued_at + self.config.token_ttl,
        )

    def report_rejected(self, token: SolvedToken) -> None:
        if not self.config.api_key:
            return
        try:
            response = self.session.get(
                self._url("res.php"),
                params={"key": self.config.api_key, "action": "reportbad", "id": token.job_id, "json": 1},
                timeout=self.config.http_timeout,
            )
            response.raise_for_status()
            self.logger.info("Reported rejected token for job_id=%s", token.job_id)
        except requests.RequestException as exc:
            self.logger.warning("Could not report rejected token for job_id=%s: %r", token.job_id, exc)

    def close(self) -> None:
        self.session.close()

    def _url(self, path: str) -> str:
        return f"{self.config.api_base.rstrip('/')}/{path}"

    def _submit_payload(self, challenge: Challenge) -> dict[str, Any]:
        payload: dict[str, Any] = {"key": self.config.api_key, "json": 1}
        if challenge.kind is ChallengeKind.IMAGE:
            if not challenge.image_b64:
                raise CaptchaSolveError("EMPTY_IMAGE_CHALLENGE")
            payload.update({"method": "base64", "body": challenge.image_b64})
            return payload

        if not challenge.site_key:
            raise CaptchaSolveError("MISSING_SITE_KEY", retryable=False)
        if challenge.kind is ChallengeKind.HCAPTCHA:
            payload.update({"method": "hcaptcha", "sitekey": challenge.site_key})
        else:
            payload.update({"method": "userrecaptcha", "googlekey": challenge.site_key})
        payload["pageurl"] = challenge.page_url
        return payload

    def _submit(self, payload: dict[str, Any], deadline: Deadline) -> str:
        delay = self.config.initial_delay
        while True:
            data = self._request("POST", "in.php", deadline, data=payload)
            if data is None:
                self._wait(delay, deadline)
                delay = self._next_delay(delay)
                continue
            if data.get("status") == 1:
                return str(data["request"])

            code = str(data.get("request") or "UNKNOWN_ERROR")
            if code == NO_SLOT:
                self.logger.warning("Solving service has no free slot, retrying submit in %.1fs", self.config.no_slot_delay)
                self._wait(self.config.no_slot_delay, deadline)
                continue
            raise CaptchaSolveError(code, retryable=code not in FATAL_CODES)

    def _poll(self, job_id: str, deadline: Deadline) -> str:
        delay = self.config.initial_delay
        polls = 0
        while True:
            self._wait(delay, deadline)
            delay = self._next_delay(delay)
            polls += 1

            data = self._request(
                "GET",
                "res.php",
                deadline,
                params={"key": self.config.api_key, "action": "get", "id": job_id, "json": 1},
            )
            if data is None:
                continue
            if data.get("status") == 1:
                return str(data["request"])

            code = str(data.get("request") or "UNKNOWN_ERROR")
            if code == NOT_READY:
                self.logger.debug("Captcha job %s not ready (poll %d), next poll in %.1fs", job_id, polls, delay)
                continue
            raise CaptchaSolveError(code, retryable=code not in FATAL_CODES)

    def _next_delay(self, delay: float) -> float:
        return min(delay * self.config.backoff_factor, self.config.max_delay)

    def _wait(self, seconds: float, deadline: Deadline) -> None:
        remaining = deadline.remaining()
        if remaining <= 0:
            raise CaptchaTimeoutError("Run deadline reached while waiting on the solving service")
        self._sleep(min(seconds, remaining))
        if deadline.expired():
            raise CaptchaTimeoutError("Run deadline reached while waiting on the solving service")

    def _request(self, method: str, path: str, deadline: Deadline, **kwargs: Any) -> dict[str, Any] | None:
        timeout = deadline.cap(self.config.http_timeout)
        if timeout <= 0:
            raise CaptchaTimeoutError("Run deadline reached before calling the solving service")

        try:
            response = self.session.request(method, self._url(path), timeout=timeout, **kwargs)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            self._transport_failures += 1
            self.logger.warning(
                "Solving service transport failure %d/%d on %s: %r",
                self._transport_failures,
                self.config.max_transport_failures,
                path,
                exc,
            )
            if self._transport_failures >= self.config.max_transport_failures:
                raise CaptchaServiceUnavailable(
                    f"Solving service unreachable after {self._transport_failures} consecutive failures",
                    failures=self._transport_failures,
                ) from exc
            return None

        self._transport_failures = 0
        if not isinstance(data, dict):
            raise CaptchaSolveError(f"UNEXPECTED_RESPONSE:{type(data).__name__}")
        return data
