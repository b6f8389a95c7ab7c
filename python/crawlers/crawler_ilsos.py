#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[2]
PYTHON_SRC = PROJECT_ROOT / "python" / "src"
if str(PYTHON_SRC) not in sys.path:
    sys.path.insert(0, str(PYTHON_SRC))

from registry_crawlers.artifacts import result_path  # noqa: E402
from registry_crawlers.config import RunSettings  # noqa: E402
from registry_crawlers.errors import ConfigError  # noqa: E402
from registry_crawlers.models import RunRequest  # noqa: E402
from registry_crawlers.orchestrator import Orchestrator  # noqa: E402
from registry_crawlers.site import SeleniumRegistrySite, build_driver  # noqa: E402
from registry_crawlers.solver import CaptchaSolver  # noqa: E402


def parse_args(settings: RunSettings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Illinois business entity crawler (one file number per run)")
    parser.add_argument("file_number", nargs="?", default=settings.file_number)
    parser.add_argument("--slug", default="ilsos")
    parser.add_argument("--request-id", default=settings.request_id)
    parser.add_argument("--search-url", default=settings.search_url)
    parser.add_argument("--deadline", type=float, default=settings.deadline_seconds, help="Whole-run budget in seconds.")
    parser.add_argument("--timeout", type=int, default=settings.timeout_seconds, help="Per-call timeout in seconds.")
    parser.add_argument("--output-dir", type=Path, default=settings.output_dir)
    parser.add_argument("--logs-dir", type=Path, default=settings.logs_dir)
    parser.add_argument("--headless", action="store_true", help="Run Chrome headless")
    parser.add_argument("--headed", action="store_true", help="Force headed mode")
    return parser.parse_args()


def apply_args(settings: RunSettings, args: argparse.Namespace) -> RunSettings:
    settings.file_number = (args.file_number or "").strip()
    settings.request_id = (args.request_id or "").strip()
    settings.search_url = args.search_url
    settings.deadline_seconds = args.deadline
    settings.timeout_seconds = args.timeout
    settings.output_dir = args.output_dir
    settings.logs_dir = args.logs_dir
    if args.headed:
        settings.headless = False
    elif args.headless:
        settings.headless = True
    return settings


def main() -> int:
    load_dotenv(PROJECT_ROOT / ".env", override=False)
    try:
        settings = RunSettings.from_env()
        settings = apply_args(settings, parse_args(settings))
        settings.validate()
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    request = RunRequest.create(settings.file_number, settings.request_id, settings.deadline_seconds)
    site_config = settings.site_config()
    solver_config = settings.solver_config()

    orchestrator = Orchestrator(
        settings.orchestrator_config(),
        site_factory=lambda logger: SeleniumRegistrySite(build_driver(settings.headless), site_config, logger),
        solver_factory=lambda logger: CaptchaSolver(solver_config, logger=logger),
    )
    try:
        result = orchestrator.run(request)
    except Exception as exc:  # pragma: no cover
        print(f"Failed to write result artifact: {type(exc).__name__}: {exc!r}", file=sys.stderr)
        return 1

    print(f"{result_path(settings.output_dir, request.request_id)} status={result.status.value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
