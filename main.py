"""Entry point for running a tuning study from a source checkout."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent
SRC_DIR = ROOT_DIR / "src"

if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

from ffmtune.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
