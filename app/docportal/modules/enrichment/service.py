"""
Enrichment service layer.

`submit` is the document-created -> enrichment-requested hand-off. The worker
body (`run_enrichment`) opens its own sessions and only ever writes the
enrichment columns, so it cannot clobber a concurrent review decision.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from flask import Flask
from sqlalchemy import update

from app.docportal.audit import record_event
from app.docportal.db import session_scope
from app.docportal.errors import EnrichmentError, NotFoundError, StorageError
from app.docportal.modules.document_lifecycle.models import (
    ENRICHMENT_COMPLETED,
    ENRICHMENT_FAILED,
    ENRICHMENT_QUEUED,
    ENRICHMENT_SKIPPED,
    Document,
)
from app.docportal.storage import Storage, storage_from_config

from .client import EnrichmentClient, client_from_config
from .extract import extract_text

logger = logging.getLogger(__name__)

MODES = ("background", "inline", "off")


@dataclass
class EnrichmentOutcome:
    document_id: int
    status: str
    extracted_text: str | None = None
    summary: str | None = None
    translation: str | None = None
    error: str | None = None


def _write_enrichment(app: Flask, outcome: EnrichmentOutcome) -> None:
    # Table-level UPDATE: leaves status/version alone so review transitions never conflict with it.
    table = Document.__table__
    with session_scope(app) as s:
        s.execute(
            update(table)
            .where(table.c.id == outcome.document_id)
            .values(
                extracted_text=outcome.extracted_text,
                summary=outcome.summary,
                translation=outcome.translation,
                enrichment_status=outcome.status,
                enrichment_error=outcome.error[:512] if outcome.error else None,
                updated_at=datetime.utcnow(),
            )
        )
        record_event(
            s,
            actor=None,
            action="doc.enrich",
            entity_type="Document",
            entity_id=str(outcome.document_id),
            reason=outcome.error,
            metadata={"status": outcome.status, "has_summary": bool(outcome.summary)},
        )


def run_enrichment(
    app: Flask,
    document_id: int,
    *,
    client: EnrichmentClient | None,
    storage: Storage,
    language: str = "Malayalam",
) -> EnrichmentOutcome | None:
    with session_scope(app) as s:
        d = s.get(Document, document_id)
        if d is None:
            logger.warning("Enrichment skipped: document %s no longer exists", document_id)
            return None
        storage_key, content_type, filename = d.storage_key, d.content_type, d.filename

    outcome = EnrichmentOutcome(document_id=document_id, status=ENRICHMENT_COMPLETED)
    try:
        try:
            data = storage.get_bytes(storage_key)
        except StorageError as e:
            raise EnrichmentError(f"Could not read stored file: {e}") from e

        outcome.extracted_text = extract_text(data, content_type=content_type, filename=filename)
        if not outcome.extracted_text:
            outcome.status = ENRICHMENT_SKIPPED
            outcome.error = "No extractable text."
        elif client is None:
            outcome.status = ENRICHMENT_SKIPPED
            outcome.error = "No summarization service configured."
        else:
            outcome.summary = client.summarize(outcome.extracted_text) or None
            if outcome.summary:
                outcome.translation = client.translate(outcome.summary, language) or None
    except EnrichmentError as e:
        logger.warning("Enrichment failed (document=%s): %s", document_id, e)
        outcome.status = ENRICHMENT_FAILED
        outcome.error = str(e)
    except Exception as e:
        # Never leave the document "queued".
        logger.exception("Enrichment crashed (document=%s)", document_id)
        outcome.status = ENRICHMENT_FAILED
        outcome.error = f"Unexpected error: {type(e).__name__}: {e}"

    _write_enrichment(app, outcome)
    logger.info("Enrichment finished (document=%s status=%s)", document_id, outcome.status)
    return outcome


class EnrichmentDispatcher:
    """
    Queues enrichment for new documents.

    background: bounded thread pool (production)
    inline:     runs before `submit` returns (tests, single-process dev)
    off:        marks documents skipped
    """

    def __init__(
        self,
        app: Flask,
        *,
        mode: str = "background",
        workers: int = 2,
        client: EnrichmentClient | None = None,
        storage: Storage | None = None,
        language: str = "Malayalam",
    ):
        if mode not in MODES:
            raise ValueError(f"Invalid ENRICHMENT_MODE: {mode!r} (expected one of {', '.join(MODES)})")
        self.app = app
        self.mode = mode
        self.client = client
        self.storage = storage or storage_from_config(app.config)
        self.language = language
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="enrichment") if mode == "background" else None

    def _run(self, document_id: int) -> EnrichmentOutcome | None:
        return run_enrichment(
            self.app,
            document_id,
            client=self.client,
            storage=self.storage,
            language=self.language,
        )

    def _mark(self, document_id: int, status: str) -> None:
        table = Document.__table__
        with session_scope(self.app) as s:
            s.execute(
                update(table)
                .where(table.c.id == document_id)
                .values(enrichment_status=status, enrichment_error=None)
            )

    def submit(self, document_id: int) -> Future | None:
        if self.mode == "off":
            self._mark(document_id, ENRICHMENT_SKIPPED)
            return None
        self._mark(document_id, ENRICHMENT_QUEUED)
        if self._executor is None:
            try:
                self._run(document_id)
            except Exception:
                # Enrichment must never fail the request that created the document.
                logger.exception("Inline enrichment crashed (document=%s)", document_id)
            return None

        fut = self._executor.submit(self._run, document_id)
        fut.add_done_callback(lambda f, did=document_id: self._log_crash(f, did))
        return fut

    @staticmethod
    def _log_crash(fut: Future, document_id: int) -> None:
        exc = fut.exception()
        if exc is not None:
            logger.error("Background enrichment crashed (document=%s): %r", document_id, exc)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def init_enrichment(app: Flask) -> EnrichmentDispatcher:
    dispatcher = EnrichmentDispatcher(
        app,
        mode=(app.config.get("ENRICHMENT_MODE") or "background").strip().lower(),
        workers=int(app.config.get("ENRICHMENT_WORKERS") or 2),
        client=client_from_config(app.config),
        language=app.config.get("TRANSLATION_LANGUAGE") or "Malayalam",
    )
    app.extensions["enrichment"] = dispatcher
    return dispatcher


def dispatcher_for(app: Flask) -> EnrichmentDispatcher:
    return app.extensions["enrichment"]


def retry_enrichment(app: Flask, document_id: int) -> Future | None:
    """Re-queue enrichment for an existing document (admin override after a failure)."""
    with session_scope(app) as s:
        if s.get(Document, document_id) is None:
            raise NotFoundError(f"Document {document_id} not found.")
    logger.info("Enrichment re-queued (document=%s)", document_id)
    return dispatcher_for(app).submit(document_id)
