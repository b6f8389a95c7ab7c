from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from registry_crawlers.artifacts import ArtifactWriter, ResultWriter, TransitionLog, safe_request_id
from registry_crawlers.logging_utils import build_logger, close_logger
from registry_crawlers.models import EntityRecord, RunRequest, RunResult, RunStatus
from registry_crawlers.navigation import (
    NavigationConfig,
    NavigationContext,
    NavState,
    RegistrySite,
    Solver,
    navigate,
)

STATUS_BY_STATE = {
    NavState.PARSED: RunStatus.SUCCESS,
    NavState.NOT_FOUND: RunStatus.NOT_FOUND,
    NavState.CAPTCHA_FAILED: RunStatus.CAPTCHA_FAILED,
    NavState.TIMED_OUT: RunStatus.TIMEOUT,
    NavState.PARSE_ERROR: RunStatus.PARSE_ERROR,
    NavState.SITE_CHANGED: RunStatus.SITE_CHANGED,
    NavState.RATE_LIMITED: RunStatus.RATE_LIMITED,
}

SiteFactory = Callable[[logging.Logger], RegistrySite]
SolverFactory = Callable[[logging.Logger], Solver]


@dataclass
class OrchestratorConfig:
    output_dir: Path = Path(".")
    logs_dir: Path = Path("logs")
    session_retries: int = 0
    retry_wait_seconds: float = 30.0
    log_level: int = logging.INFO
    navigation: NavigationConfig = field(default_factory=NavigationConfig)


@dataclass
class AttemptOutcome:
    status: RunStatus
    record: EntityRecord | None = None
    reason: str | None = None
    retryable: bool = False


class Orchestrator:
    """Owns one run end to end and always leaves exactly one result artifact behind.

    Each attempt gets a fresh site session and solver from the factories. Terminal
    navigation states map to a ``RunStatus``; anything that escapes the state machine is
    logged and reported as ``error`` (or ``timeout`` when the budget is already spent).
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        site_factory: SiteFactory,
        solver_factory: SolverFactory,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.site_factory = site_factory
        self.solver_factory = solver_factory
        self._sleep = sleep

    def run(self, request: RunRequest) -> RunResult:
        run_id = safe_request_id(request.request_id)
        run_dir = self.config.logs_dir / run_id
        log_file = run_dir / "crawler.log"
        logger = logging.getLogger(f"crawler.{run_id}")
        try:
            try:
                logger = build_logger(logger.name, log_file, self.config.log_level)
                artifacts = ArtifactWriter(run_dir=run_dir)
                transitions = TransitionLog(run_dir / "transitions.jsonl", request.request_id)
            except OSError as exc:
                logger.exception("Could not set up run diagnostics under %s", run_dir)
                outcome = AttemptOutcome(
                    status=RunStatus.ERROR,
                    reason=f"Diagnostics setup failed: {type(exc).__name__}: {exc}",
                )
                return self._finish(request, logger, outcome, log_path=str(log_file) if log_file.exists() else "")

            logger.info(
                "Starting run request_id=%s file_number=%s budget=%.0fs",
                request.request_id,
                request.file_number,
                request.deadline.budget_seconds,
            )
            outcome = self._drive(request, logger, artifacts, transitions)
            return self._finish(
                request,
                logger,
                outcome,
                log_path=str(log_file),
                transitions_path=str(transitions.path),
                screenshots=tuple(artifacts.screenshots),
            )
        finally:
            close_logger(logger)

    def _finish(
        self,
        request: RunRequest,
        logger: logging.Logger,
        outcome: AttemptOutcome,
        *,
        log_path: str = "",
        transitions_path: str = "",
        screenshots: tuple[str, ...] = (),
    ) -> RunResult:
        result = RunResult(
            request_id=request.request_id,
            file_number=request.file_number,
            status=outcome.status,
            record=outcome.record,
            reason=outcome.reason,
            log_path=log_path,
            transitions_path=transitions_path,
            screenshots=screenshots,
        )
        path = ResultWriter(self.config.output_dir).write(result)
        logger.info(
            "Run finished status=%s elapsed=%.1fs artifact=%s",
            result.status.value,
            request.deadline.elapsed(),
            path,
        )
        return result

    def _drive(
        self,
        request: RunRequest,
        logger: logging.Logger,
        artifacts: ArtifactWriter,
        transitions: TransitionLog,
    ) -> AttemptOutcome:
        attempt = 0
        while True:
            attempt += 1
            outcome = self._attempt(request, logger, artifacts, transitions, attempt)
            if not self._should_retry(request, outcome, attempt):
                return outcome

            wait = min(self.config.retry_wait_seconds, request.deadline.remaining())
            logger.warning(
                "Attempt %d ended with status=%s (%s); starting a new session in %.1fs",
                attempt,
                outcome.status.value,
                outcome.reason,
                wait,
            )
            self._sleep(wait)

    def _should_retry(self, request: RunRequest, outcome: AttemptOutcome, attempt: int) -> bool:
        if not outcome.retryable or attempt > self.config.session_retries:
            return False
        return request.deadline.remaining() > self.config.retry_wait_seconds

    def _attempt(
        self,
        request: RunRequest,
        logger: logging.Logger,
        artifacts: ArtifactWriter,
        transitions: TransitionLog,
        attempt: int,
    ) -> AttemptOutcome:
        site: RegistrySite | None = None
        solver: Solver | None = None
        try:
            site = self.site_factory(logger)
            solver = self.solver_factory(logger)
            context = NavigationContext(
                logger=logger,
                request=request,
                site=site,
                solver=solver,
                artifacts=artifacts,
                transitions=transitions,
                config=self.config.navigation,
            )
            final_state = navigate(context)
            return AttemptOutcome(
                status=STATUS_BY_STATE[final_state],
                record=context.record if final_state is NavState.PARSED else None,
                reason=context.failure,
                retryable=final_state is NavState.RATE_LIMITED or context.service_unavailable,
            )
        except Exception as exc:
            logger.exception("Run attempt %d failed: %s: %r", attempt, type(exc).__name__, exc)
            if site is not None:
                try:
                    artifacts.capture(site, state="ERROR", note="unhandled_exception")
                except Exception:
                    logger.exception("Failed to write error artifacts")
            status = RunStatus.TIMEOUT if request.deadline.expired() else RunStatus.ERROR
            return AttemptOutcome(status=status, reason=f"{type(exc).__name__}: {exc}")
        finally:
            if solver is not None:
                try:
                    solver.close()
                except Exception:
                    logger.exception("Failed to close solver session")
            if site is not None:
                try:
                    site.close()
                except Exception:
                    logger.exception("Failed to close registry session")
