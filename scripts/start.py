#!/usr/bin/env python3
"""
Container entrypoint: release phase, then gunicorn.

    python scripts/start.py

PORT (default 8080) and WEB_CONCURRENCY (default 2) pick the bind port and
worker count. gunicorn runs without --preload: each worker owns its own
enrichment thread pool, which must be created after fork.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port() -> int:
    raw = (os.environ.get("PORT") or "8080").strip()
    try:
        port = int(raw)
    except ValueError:
        raise SystemExit(f"ERROR: PORT must be an integer, got {raw!r}")
    if not 1 <= port <= 65535:
        raise SystemExit(f"ERROR: PORT out of range: {port}")
    return port


def gunicorn_argv(port: int, workers: str) -> list[str]:
    # Request timeout covers a slow storage put plus its retries; enrichment never runs on the request path.
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", "90",
        "--graceful-timeout", "30",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _port()
    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed, not starting web workers: {e}", flush=True)
        sys.exit(1)

    argv = gunicorn_argv(port, os.environ.get("WEB_CONCURRENCY", "2"))
    print("=== exec " + " ".join(argv) + " ===", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
