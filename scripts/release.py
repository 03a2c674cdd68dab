"""
Release phase for the document portal.

    python scripts/release.py

Steps, each fatal on failure:
  schema   alembic upgrade head
  seed     admin/employee roles, permissions and the bootstrap admin
  storage  the configured blob store accepts a write

Enrichment settings are only reported: a missing GEMINI_API_KEY means
documents are stored without summaries, not that the release is broken.
"""

from __future__ import annotations

import os
import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release a production deploy onto sqlite.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def check_storage() -> None:
    from app.docportal.config import load_config
    from app.docportal.storage import storage_from_config

    storage = storage_from_config(load_config())
    probe = f"_release/{uuid.uuid4().hex}.probe"
    storage.put_bytes(probe, b"ok", content_type="text/plain")
    storage.delete(probe)


def report_enrichment() -> None:
    mode = (os.environ.get("ENRICHMENT_MODE") or "background").strip().lower()
    has_key = bool((os.environ.get("GEMINI_API_KEY") or "").strip())
    print(f"enrichment: mode={mode} summaries={'on' if has_key else 'off (GEMINI_API_KEY unset)'}", flush=True)


def run_release() -> None:
    db_url = _database_url()
    from scripts import init_db

    steps = (
        ("schema", lambda: migrate(db_url)),
        ("seed", lambda: init_db.seed_only(database_url=db_url)),
        ("storage", check_storage),
    )
    for name, step in steps:
        print(f"--- release: {name}", flush=True)
        step()
    report_enrichment()
    print("--- release: done", flush=True)


if __name__ == "__main__":
    run_release()
