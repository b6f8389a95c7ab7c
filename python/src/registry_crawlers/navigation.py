from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from registry_crawlers.artifacts import ArtifactWriter, TransitionLog
from registry_crawlers.deadline import Deadline
from registry_crawlers.errors import (
    CaptchaServiceUnavailable,
    CaptchaSolveError,
    CaptchaTimeoutError,
    DeadlineExceeded,
    ParseError,
    SiteChangedError,
)
from registry_crawlers.fsm import FSMConfig, FSMRunner
from registry_crawlers.models import Challenge, ChallengeKind, EntityRecord, RunRequest, SolvedToken
from registry_crawlers.normalizer import DEFAULT_TEMPLATES, LayoutTemplate, normalize
from registry_crawlers.pages import DEFAULT_MARKERS, PageKind, PageMarkers, classify_page, extract_challenge


class NavState(Enum):
    INIT = "INIT"
    SEARCH_SUBMITTED = "SEARCH_SUBMITTED"
    CHALLENGE_PRESENTED = "CHALLENGE_PRESENTED"
    CHALLENGE_SOLVED = "CHALLENGE_SOLVED"
    RESULTS_LOADED = "RESULTS_LOADED"
    PARSED = "PARSED"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    SITE_CHANGED = "SITE_CHANGED"
    PARSE_ERROR = "PARSE_ERROR"
    CAPTCHA_FAILED = "CAPTCHA_FAILED"
    TIMED_OUT = "TIMED_OUT"


TERMINAL_STATES = frozenset(
    {
        NavState.PARSED,
        NavState.NOT_FOUND,
        NavState.RATE_LIMITED,
        NavState.SITE_CHANGED,
        NavState.PARSE_ERROR,
        NavState.CAPTCHA_FAILED,
        NavState.TIMED_OUT,
    }
)

TRANSITIONS: dict[NavState, frozenset[NavState]] = {
    NavState.INIT: frozenset(
        {NavState.SEARCH_SUBMITTED, NavState.NOT_FOUND, NavState.RATE_LIMITED, NavState.TIMED_OUT}
    ),
    NavState.SEARCH_SUBMITTED: frozenset(
        {
            NavState.CHALLENGE_PRESENTED,
            NavState.RESULTS_LOADED,
            NavState.NOT_FOUND,
            NavState.RATE_LIMITED,
            NavState.SITE_CHANGED,
            NavState.TIMED_OUT,
        }
    ),
    NavState.CHALLENGE_PRESENTED: frozenset(
        {
            NavState.CHALLENGE_SOLVED,
            NavState.INIT,
            NavState.CAPTCHA_FAILED,
            NavState.RATE_LIMITED,
            NavState.TIMED_OUT,
        }
    ),
    NavState.CHALLENGE_SOLVED: frozenset(
        {
            NavState.RESULTS_LOADED,
            NavState.CHALLENGE_PRESENTED,
            NavState.INIT,
            NavState.NOT_FOUND,
            NavState.RATE_LIMITED,
            NavState.SITE_CHANGED,
            NavState.CAPTCHA_FAILED,
            NavState.TIMED_OUT,
        }
    ),
    NavState.RESULTS_LOADED: frozenset(
        {
            NavState.PARSED,
            NavState.SITE_CHANGED,
            NavState.PARSE_ERROR,
            NavState.RATE_LIMITED,
            NavState.TIMED_OUT,
        }
    ),
}


class RegistrySite(Protocol):
    current_url: str
    title: str
    page_source: str

    def save_screenshot(self, filename: str) -> bool: ...

    def open_search(self, deadline: Deadline) -> str: ...

    def submit_search(self, file_number: str, deadline: Deadline) -> str: ...

    def capture_challenge_image(self, deadline: Deadline) -> str: ...

    def submit_token(self, challenge: Challenge, token: SolvedToken, deadline: Deadline) -> str: ...

    def pace(self, deadline: Deadline) -> None: ...

    def close(self) -> None: ...


class Solver(Protocol):
    def solve(self, challenge: Challenge, deadline: Deadline) -> SolvedToken: ...

    def report_rejected(self, token: SolvedToken) -> None: ...

    def close(self) -> None: ...


@dataclass
class NavigationConfig:
    max_captcha_attempts: int = 3
    max_token_rejections: int = 1
    max_steps: int = 50
    markers: PageMarkers = DEFAULT_MARKERS
    templates: tuple[LayoutTemplate, ...] = DEFAULT_TEMPLATES


@dataclass
class NavigationContext:
    logger: logging.Logger
    request: RunRequest
    site: RegistrySite
    solver: Solver
    artifacts: ArtifactWriter
    transitions: TransitionLog
    config: NavigationConfig = field(default_factory=NavigationConfig)
    page_html: str = ""
    challenge: Challenge | None = None
    solved_challenge: Challenge | None = None
    token: SolvedToken | None = None
    record: EntityRecord | None = None
    captcha_attempts: int = 0
    token_rejections: int = 0
    outcome: str = ""
    failure: str | None = None
    service_unavailable: bool = False

    @property
    def deadline(self) -> Deadline:
        return self.request.deadline

    def fail(self, state: NavState, reason: str) -> NavState:
        self.failure = reason
        self.outcome = reason
        return state


def _route_page(context: NavigationContext, kind: PageKind) -> NavState | None:
    if kind is PageKind.NOT_FOUND:
        return context.fail(NavState.NOT_FOUND, f"registry reports no entity for file_number={context.request.file_number}")
    if kind is PageKind.RATE_LIMITED:
        return context.fail(NavState.RATE_LIMITED, "registry throttled the session")
    return None


def _extract_challenge(context: NavigationContext) -> Challenge | None:
    challenge = extract_challenge(
        context.page_html,
        context.site.current_url,
        context.deadline.now(),
        context.config.markers,
    )
    if challenge is not None and challenge.kind is ChallengeKind.IMAGE and not challenge.image_b64:
        challenge = challenge.with_image(context.site.capture_challenge_image(context.deadline))
    return challenge


def _same_material(first: Challenge, second: Challenge) -> bool:
    # Token widgets are reissued on every render; only image payloads can repeat.
    return first.kind is second.kind is ChallengeKind.IMAGE and first.image_b64 == second.image_b64


def _present_challenge(context: NavigationContext, challenge: Challenge | None = None) -> NavState:
    if challenge is None:
        challenge = _extract_challenge(context)
    if challenge is None:
        return context.fail(NavState.SITE_CHANGED, "challenge markup detected but no challenge could be extracted")
    context.challenge = challenge
    context.outcome = f"challenge_{challenge.kind.value}"
    return NavState.CHALLENGE_PRESENTED


def _retry_or_fail(context: NavigationContext, reason: str) -> NavState:
    if context.captcha_attempts < context.config.max_captcha_attempts:
        context.logger.warning(
            "%s; retrying search with a new challenge (attempt %d/%d used)",
            reason,
            context.captcha_attempts,
            context.config.max_captcha_attempts,
        )
        context.outcome = "retry_search"
        return NavState.INIT
    return context.fail(
        NavState.CAPTCHA_FAILED,
        f"{reason}; giving up after {context.captcha_attempts} captcha attempts",
    )


def state_init(context: NavigationContext) -> NavState:
    context.logger.info(
        "FSM state=%s searching file_number=%s", NavState.INIT.value, context.request.file_number
    )
    context.site.open_search(context.deadline)
    context.page_html = context.site.submit_search(context.request.file_number, context.deadline)

    routed = _route_page(context, classify_page(context.page_html, context.config.markers, context.config.templates))
    if routed is not None:
        return routed
    context.outcome = "search_submitted"
    return NavState.SEARCH_SUBMITTED


def state_search_submitted(context: NavigationContext) -> NavState:
    kind = classify_page(context.page_html, context.config.markers, context.config.templates)
    context.logger.info("FSM state=%s response classified as %s", NavState.SEARCH_SUBMITTED.value, kind.value)

    routed = _route_page(context, kind)
    if routed is not None:
        return routed
    if kind is PageKind.CHALLENGE:
        return _present_challenge(context)
    if kind is PageKind.RESULTS:
        context.outcome = "results_without_challenge"
        return NavState.RESULTS_LOADED
    return context.fail(NavState.SITE_CHANGED, "search response matches no known page layout")


def state_challenge_presented(context: NavigationContext) -> NavState:
    challenge = context.challenge
    context.challenge = None
    if challenge is None:
        raise RuntimeError("CHALLENGE_PRESENTED reached without a challenge")

    context.captcha_attempts += 1
    context.logger.info(
        "FSM state=%s solving %s challenge (attempt %d/%d)",
        NavState.CHALLENGE_PRESENTED.value,
        challenge.kind.value,
        context.captcha_attempts,
        context.config.max_captcha_attempts,
    )
    try:
        context.token = context.solver.solve(challenge, context.deadline)
    except CaptchaTimeoutError as exc:
        return context.fail(NavState.TIMED_OUT, str(exc))
    except CaptchaServiceUnavailable as exc:
        context.service_unavailable = True
        return context.fail(NavState.CAPTCHA_FAILED, str(exc))
    except CaptchaSolveError as exc:
        if not exc.retryable:
            return context.fail(NavState.CAPTCHA_FAILED, str(exc))
        return _retry_or_fail(context, str(exc))

    context.solved_challenge = challenge
    context.outcome = "token_issued"
    return NavState.CHALLENGE_SOLVED


def _token_rejected(context: NavigationContext, solved: Challenge, reason: str) -> NavState:
    context.token_rejections += 1
    if (
        context.token_rejections > context.config.max_token_rejections
        or context.captcha_attempts >= context.config.max_captcha_attempts
    ):
        return _retry_or_fail(context, reason)

    challenge = _extract_challenge(context)
    if challenge is None:
        return context.fail(NavState.SITE_CHANGED, "challenge markup detected but no challenge could be extracted")
    if _same_material(challenge, solved):
        return _retry_or_fail(context, f"{reason}; registry presented the same challenge again")
    context.logger.warning("%s; solving the new challenge", reason)
    return _present_challenge(context, challenge)


def state_challenge_solved(context: NavigationContext) -> NavState:
    token, challenge = context.token, context.solved_challenge
    context.token = None
    context.solved_challenge = None
    if token is None or challenge is None:
        raise RuntimeError("CHALLENGE_SOLVED reached without a solved challenge")

    if token.is_expired(context.deadline.now()):
        return _retry_or_fail(context, f"token for job_id={token.job_id} expired before submission")

    context.logger.info("FSM state=%s submitting solved token job_id=%s", NavState.CHALLENGE_SOLVED.value, token.job_id)
    context.page_html = context.site.submit_token(challenge, token, context.deadline)
    kind = classify_page(context.page_html, context.config.markers, context.config.templates)

    routed = _route_page(context, kind)
    if routed is not None:
        return routed
    if kind is PageKind.RESULTS:
        context.outcome = "results_loaded"
        return NavState.RESULTS_LOADED
    if kind is PageKind.CHALLENGE:
        context.solver.report_rejected(token)
        return _token_rejected(context, challenge, f"registry rejected token for job_id={token.job_id}")
    return context.fail(NavState.SITE_CHANGED, "token response matches no known page layout")


def state_results_loaded(context: NavigationContext) -> NavState:
    context.logger.info("FSM state=%s normalizing results page", NavState.RESULTS_LOADED.value)
    try:
        context.record = normalize(context.page_html, context.config.templates)
    except SiteChangedError as exc:
        return context.fail(NavState.SITE_CHANGED, str(exc))
    except ParseError as exc:
        return context.fail(NavState.PARSE_ERROR, str(exc))

    context.logger.info(
        "Parsed entity name=%s status=%s managers=%d",
        context.record.business_name,
        context.record.status,
        len(context.record.managers),
    )
    context.outcome = "record_parsed"
    return NavState.PARSED


def _guarded(handler: Callable[[NavigationContext], NavState]) -> Callable[[NavigationContext], NavState]:
    def run(context: NavigationContext) -> NavState:
        try:
            return handler(context)
        except DeadlineExceeded as exc:
            return context.fail(NavState.TIMED_OUT, str(exc))

    run.__name__ = handler.__name__
    return run


def check_deadline(context: NavigationContext, state: NavState) -> NavState | None:
    if context.deadline.expired():
        return context.fail(
            NavState.TIMED_OUT,
            f"run deadline of {context.deadline.budget_seconds:.0f}s exceeded in state {state.value}",
        )
    return None


def record_transition(context: NavigationContext, from_state: NavState, to_state: NavState) -> None:
    outcome = context.outcome or to_state.value.lower()
    screenshot: str | None = None
    try:
        created = context.artifacts.capture(context.site, state=to_state.value, note=outcome)
        screenshot = created["png"]
    except Exception:
        context.logger.exception("Failed to capture artifacts for transition %s -> %s", from_state.value, to_state.value)

    context.transitions.write(
        from_state=from_state.value,
        to_state=to_state.value,
        outcome=outcome,
        elapsed_seconds=context.deadline.elapsed(),
        screenshot=screenshot,
    )
    context.logger.info("Transition %s -> %s outcome=%s", from_state.value, to_state.value, outcome)
    context.outcome = ""

    if to_state not in TERMINAL_STATES:
        context.site.pace(context.deadline)


def build_machine(config: NavigationConfig) -> FSMRunner[NavState, NavigationContext]:
    return FSMRunner(
        initial_state=NavState.INIT,
        terminal_states=TERMINAL_STATES,
        handlers={
            NavState.INIT: _guarded(state_init),
            NavState.SEARCH_SUBMITTED: _guarded(state_search_submitted),
            NavState.CHALLENGE_PRESENTED: _guarded(state_challenge_presented),
            NavState.CHALLENGE_SOLVED: _guarded(state_challenge_solved),
            NavState.RESULTS_LOADED: _guarded(state_results_loaded),
        },
        transitions=TRANSITIONS,
        on_transition=record_transition,
        interrupt=check_deadline,
        config=FSMConfig(max_steps=config.max_steps),
    )


def navigate(context: NavigationContext) -> NavState:
    final_state = build_machine(context.config).run(context)
    context.logger.info("Navigation finished with final state=%s", final_state.value)
    return final_state
