from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from registry_crawlers.errors import ConfigError
from registry_crawlers.logging_utils import parse_level
from registry_crawlers.navigation import NavigationConfig
from registry_crawlers.orchestrator import OrchestratorConfig
from registry_crawlers.site import SiteConfig
from registry_crawlers.solver import SolverConfig

TRUTHY = {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in TRUTHY


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid {name} value {raw!r}. Expected an integer.") from exc


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid {name} value {raw!r}. Expected a number.") from exc


def default_request_id() -> str:
    return datetime.now().strftime("dp-%Y%m%d_%H%M%S")


@dataclass
class RunSettings:
    file_number: str = ""
    request_id: str = field(default_factory=default_request_id)
    api_key: str | None = None
    api_base: str = "https://api.solvecaptcha.com"
    captcha_initial_delay: float = 5.0
    captcha_max_delay: float = 20.0
    captcha_backoff_factor: float = 1.5
    captcha_max_attempts: int = 3
    deadline_seconds: float = 840.0
    timeout_seconds: int = 20
    headless: bool = False
    search_url: str = SiteConfig.search_url
    output_dir: Path = Path(".")
    logs_dir: Path = Path("logs")
    session_retries: int = 0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> RunSettings:
        return cls(
            file_number=os.getenv("FILE_NUMBER", "").strip(),
            request_id=os.getenv("REQUEST_ID", "").strip() or default_request_id(),
            api_key=os.getenv("SOLVECAPTCHA_API_KEY") or None,
            api_base=os.getenv("CAPTCHA_API_BASE", cls.api_base),
            captcha_initial_delay=env_float("CAPTCHA_INITIAL_DELAY", cls.captcha_initial_delay),
            captcha_max_delay=env_float("CAPTCHA_MAX_DELAY", cls.captcha_max_delay),
            captcha_backoff_factor=env_float("CAPTCHA_BACKOFF_FACTOR", cls.captcha_backoff_factor),
            captcha_max_attempts=env_int("CAPTCHA_MAX_ATTEMPTS", cls.captcha_max_attempts),
            deadline_seconds=env_float("RUN_DEADLINE_SECONDS", cls.deadline_seconds),
            timeout_seconds=env_int("CRAWLER_TIMEOUT_SECONDS", cls.timeout_seconds),
            headless=env_flag("CRAWLER_HEADLESS", cls.headless),
            search_url=os.getenv("CRAWLER_ILSOS_SEARCH_URL", cls.search_url),
            output_dir=Path(os.getenv("OUTPUT_DIR", ".")),
            logs_dir=Path(os.getenv("LOGS_DIR", "logs")),
            session_retries=env_int("SESSION_RETRIES", cls.session_retries),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )

    def validate(self) -> None:
        if not self.file_number:
            raise ConfigError("A file number is required (argument or FILE_NUMBER).")
        if not self.request_id.strip():
            raise ConfigError("A request id is required (--request-id or REQUEST_ID) and must not be blank.")
        if self.deadline_seconds <= 0:
            raise ConfigError(f"RUN_DEADLINE_SECONDS must be positive, got {self.deadline_seconds}")
        if self.captcha_max_attempts < 1:
            raise ConfigError(f"CAPTCHA_MAX_ATTEMPTS must be >= 1, got {self.captcha_max_attempts}")
        if self.captcha_initial_delay <= 0 or self.captcha_max_delay < self.captcha_initial_delay:
            raise ConfigError(
                "Captcha poll schedule must satisfy 0 < CAPTCHA_INITIAL_DELAY <= CAPTCHA_MAX_DELAY "
                f"(got {self.captcha_initial_delay} / {self.captcha_max_delay})"
            )

    def solver_config(self) -> SolverConfig:
        return SolverConfig(
            api_key=self.api_key,
            api_base=self.api_base,
            initial_delay=self.captcha_initial_delay,
            max_delay=self.captcha_max_delay,
            backoff_factor=self.captcha_backoff_factor,
            http_timeout=float(self.timeout_seconds),
        )

    def site_config(self) -> SiteConfig:
        return SiteConfig(search_url=self.search_url, timeout_seconds=self.timeout_seconds)

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            output_dir=self.output_dir,
            logs_dir=self.logs_dir,
            session_retries=self.session_retries,
            log_level=parse_level(self.log_level),
            navigation=NavigationConfig(max_captcha_attempts=self.captcha_max_attempts),
        )
