#!/usr/bin/env python3
"""
Container entrypoint: migrate, then hand the process over to gunicorn.

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

DEFAULT_PORT = 8080


def resolve_port(raw: str | None) -> int:
    raw = (raw or "").strip()
    if not raw:
        print(f"WARNING: PORT not set, using default {DEFAULT_PORT}", flush=True)
        return DEFAULT_PORT
    port = int(raw)
    if not 1 <= port <= 65535:
        raise ValueError(f"port {port} out of range")
    return port


def gunicorn_argv(port: int) -> list[str]:
    workers = (os.environ.get("WEB_CONCURRENCY") or "2").strip()
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", "60",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    try:
        port = resolve_port(os.environ.get("PORT"))
    except ValueError as e:
        print(f"ERROR: invalid PORT ({e}); expected an integer 1-65535.", flush=True)
        sys.exit(1)

    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed, not starting web workers: {e}", flush=True)
        sys.exit(1)

    print(f"=== docledger: gunicorn on 0.0.0.0:{port} ===", flush=True)
    # --preload builds the app once; each worker disposes the inherited engine after fork
    os.execvp("gunicorn", gunicorn_argv(port))


if __name__ == "__main__":
    main()
