"""Progress and warning messages on stderr."""

from __future__ import annotations

import sys


def log_progress(message: str) -> None:
    print(f"[phylogwas] {message}", file=sys.stderr, flush=True)


def log_warning(message: str) -> None:
    print(f"[phylogwas][warning] {message}", file=sys.stderr, flush=True)
