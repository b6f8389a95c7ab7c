#!/usr/bin/env python3
from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
CRAWLERS_DIR = PROJECT_ROOT / "python" / "crawlers"


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a registry crawler by source slug for one file number")
    parser.add_argument("slug", help="Source slug, e.g. ilsos")
    parser.add_argument("file_number", nargs="?", default=None, help="Entity file number, e.g. 09853537")
    parser.add_argument("extra_args", nargs=argparse.REMAINDER)
    args = parser.parse_args()

    script_path = CRAWLERS_DIR / f"crawler_{args.slug}.py"
    if not script_path.exists():
        print(f"Crawler script not found for slug '{args.slug}': {script_path}")
        return 1

    command = [sys.executable, str(script_path), "--slug", args.slug]
    if args.file_number:
        command.append(args.file_number)
    command.extend(args.extra_args)
    return subprocess.call(command)


if __name__ == "__main__":
    raise SystemExit(main())
