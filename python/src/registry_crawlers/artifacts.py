from __future__ import annotations

import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from registry_crawlers.errors import ArtifactExistsError
from registry_crawlers.models import RunResult

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class Capturable(Protocol):
    current_url: str
    title: str
    page_source: str

    def save_screenshot(self, filename: str) -> bool: ...


def safe_request_id(request_id: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", request_id.strip()).strip("._")
    return cleaned or "unnamed"


def result_path(output_dir: Path, request_id: str) -> Path:
    return output_dir / f"processed_data_{safe_request_id(request_id)}.json"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ArtifactWriter:
    def __init__(self, run_dir: Path) -> None:
        self.run_dir = run_dir
        self.steps_dir = self.run_dir / "steps"
        self.steps_dir.mkdir(parents=True, exist_ok=True)
        self._counter = 0
        self.screenshots: list[str] = []

    def capture(self, driver: Capturable, *, state: str, note: str = "") -> dict[str, str]:
        self._counter += 1
        step_prefix = f"{self._counter:03d}_{state.lower()}"
        if note:
            step_prefix = f"{step_prefix}_{_UNSAFE_CHARS.sub('_', note)}"

        png_path = self.steps_dir / f"{step_prefix}.png"
        html_path = self.steps_dir / f"{step_prefix}.html"
        meta_path = self.steps_dir / f"{step_prefix}.json"

        driver.save_screenshot(str(png_path))
        html_path.write_text(driver.page_source, encoding="utf-8")
        self.screenshots.append(str(png_path))

        metadata = {
            "state": state,
            "note": note,
            "captured_at": utc_timestamp(),
            "url": driver.current_url,
            "title": driver.title,
            "png": str(png_path),
            "html": str(html_path),
        }
        meta_path.write_text(json.dumps(metadata, ensure_ascii=True, indent=2), encoding="utf-8")

        return {"png": str(png_path), "html": str(html_path), "meta": str(meta_path)}


class TransitionLog:
    """Appends one JSON line per state transition."""

    def __init__(self, path: Path, request_id: str) -> None:
        self.path = path
        self.request_id = request_id
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def write(
        self,
        *,
        from_state: str,
        to_state: str,
        outcome: str,
        elapsed_seconds: float,
        screenshot: str | None,
    ) -> dict[str, object]:
        entry: dict[str, object] = {
            "timestamp": utc_timestamp(),
            "request_id": self.request_id,
            "from": from_state,
            "to": to_state,
            "outcome": outcome,
            "elapsed_seconds": round(elapsed_seconds, 3),
            "screenshot": screenshot,
        }
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=True) + "\n")
        return entry

    def read(self) -> list[dict[str, object]]:
        lines = self.path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]


class ResultWriter:
    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def write(self, result: RunResult) -> Path:
        target = result_path(self.output_dir, result.request_id)
        if target.exists():
            raise ArtifactExistsError(f"Result artifact already written: {target}")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(result.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, target)
        return target
