"""
Document lifecycle service layer.

Owns the status machine (pending -> under_review -> approved | rejected), the
approval/assignment protocol and the visibility rule. Each mutating operation
is its own transaction: it commits on success and rolls back on failure, so
stale concurrent writes surface as ConflictError instead of overwriting.
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.utils import secure_filename

from app.docportal.audit import record_event
from app.docportal.directory import list_active_employees, resolve_assignees
from app.docportal.errors import ConflictError, NotFoundError, StorageError, ValidationError
from app.docportal.models import User
from app.docportal.modules.notifications.service import NotificationSink, OutgoingNotification, notify_all
from app.docportal.storage import Storage, put_with_retry

from .models import (
    AWAITING_REVIEW,
    PRIORITIES,
    VALID_STATUSES,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_UNDER_REVIEW,
    Assignment,
    Document,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentMeta:
    title: str
    category: str
    description: str | None = None
    priority: str = "medium"
    deadline: date | None = None


@dataclass
class ApprovalResult:
    document: Document
    new_assignments: list[Assignment] = field(default_factory=list)
    notified: int = 0


def parse_deadline(s: str | None) -> date | None:
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise ValidationError(f"Deadline must be a YYYY-MM-DD date (got {s!r}).")


def normalize_priority(p: str | None) -> str:
    v = (p or "medium").strip().lower()
    if v not in PRIORITIES:
        raise ValidationError(f"Priority must be one of {', '.join(PRIORITIES)}.")
    return v


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def build_storage_key(filename: str, *, upload_date: date | None = None) -> str:
    """One key per upload; retries of the same upload reuse it."""
    upload_date = upload_date or date.today()
    return f"documents/{upload_date.isoformat()}/{uuid.uuid4().hex}/{sanitize_upload_filename(filename)}"


def _now() -> datetime:
    return datetime.utcnow()


def _load_for_update(s: Session, doc_id: int) -> Document:
    d = s.execute(
        select(Document)
        .where(Document.id == doc_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if d is None:
        raise NotFoundError(f"Document {doc_id} not found.")
    return d


def _commit_transition(s: Session, doc_id: int) -> None:
    try:
        s.commit()
    except (StaleDataError, IntegrityError) as e:
        s.rollback()
        logger.info("Concurrent write lost (document=%s): %s", doc_id, e)
        raise ConflictError(f"Document {doc_id} was changed by another reviewer; reload and try again.") from e


# --- create ---------------------------------------------------------------


def create_document(
    s: Session,
    storage: Storage,
    *,
    meta: DocumentMeta,
    data: bytes,
    filename: str,
    content_type: str | None,
    user: User | None,
    put_retries: int = 3,
) -> Document:
    """
    Store the blob, then the record. Either both exist afterwards or neither does.
    """
    title = (meta.title or "").strip()
    category = (meta.category or "").strip()
    missing = [name for name, v in (("title", title), ("category", category)) if not v]
    if missing:
        raise ValidationError(f"Required: {', '.join(missing)}.")
    if not data:
        raise ValidationError("Choose a non-empty file to upload.")
    priority = normalize_priority(meta.priority)

    safe_name = sanitize_upload_filename(filename)
    ctype = (content_type or "application/octet-stream").strip()
    sha256, size_bytes = file_digest_and_bytes(data)
    storage_key = build_storage_key(safe_name)

    put_with_retry(storage, storage_key, data, content_type=ctype, retries=put_retries)

    try:
        now = _now()
        d = Document(
            title=title,
            category=category,
            description=(meta.description or "").strip() or None,
            priority=priority,
            deadline=meta.deadline,
            status=STATUS_PENDING,
            uploaded_by_user_id=user.id if user else None,
            storage_key=storage_key,
            filename=safe_name,
            content_type=ctype,
            sha256=sha256,
            size_bytes=size_bytes,
            created_at=now,
            updated_at=now,
        )
        s.add(d)
        s.flush()
        record_event(
            s,
            actor=user,
            action="doc.create",
            entity_type="Document",
            entity_id=str(d.id),
            metadata={"title": title, "category": category, "filename": safe_name, "sha256": sha256, "size_bytes": size_bytes},
        )
        s.commit()
    except Exception:
        s.rollback()
        try:
            storage.delete(storage_key)
        except StorageError as e:
            logger.error("Orphaned blob after failed document insert (key=%s): %s", storage_key, e)
        raise

    logger.info("Document created (id=%s title=%r key=%s)", d.id, d.title, storage_key)
    return d


# --- transitions ------------------------------------------------------------


def start_review(s: Session, doc_id: int, *, user: User) -> Document:
    """pending -> under_review. Repeating it is a no-op."""
    d = _load_for_update(s, doc_id)
    if d.status == STATUS_UNDER_REVIEW:
        s.commit()
        return d
    if d.status != STATUS_PENDING:
        current = d.status
        s.rollback()
        raise ConflictError(f"Document {doc_id} is {current}; only pending documents can be taken into review.")

    d.status = STATUS_UNDER_REVIEW
    d.updated_at = _now()
    record_event(
        s,
        actor=user,
        action="doc.review_start",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"from": STATUS_PENDING, "to": STATUS_UNDER_REVIEW},
    )
    _commit_transition(s, doc_id)
    return d


def approve_document(
    s: Session,
    doc_id: int,
    employee_ids: Iterable[int],
    *,
    user: User,
    notes: str | None = None,
    sink: NotificationSink | None = None,
) -> ApprovalResult:
    """
    Approve and assign. On an already approved document this only adds the
    net-new assignees; existing assignees get neither a new row nor a new
    notification.
    """
    assignees = resolve_assignees(s, employee_ids)
    d = _load_for_update(s, doc_id)
    if d.status not in AWAITING_REVIEW and d.status != STATUS_APPROVED:
        current = d.status
        s.rollback()
        raise ConflictError(f"Document {doc_id} is {current} and can no longer be approved.")

    already = {a.user_id for a in d.assignments}
    newcomers = [u for u in assignees if u.id not in already]
    clean_notes = (notes or "").strip() or None
    from_status = d.status

    if from_status == STATUS_APPROVED and not newcomers and clean_notes in (None, d.review_notes):
        s.commit()
        return ApprovalResult(document=d)

    now = _now()
    created: list[Assignment] = []
    for u in newcomers:
        a = Assignment(document_id=d.id, user_id=u.id, assigned_at=now, assigned_by_user_id=user.id)
        d.assignments.append(a)
        created.append(a)

    d.status = STATUS_APPROVED
    if clean_notes is not None:
        d.review_notes = clean_notes
    d.reviewed_by_user_id = user.id
    d.reviewed_at = now
    d.updated_at = now

    record_event(
        s,
        actor=user,
        action="doc.approve" if from_status != STATUS_APPROVED else "doc.assign",
        entity_type="Document",
        entity_id=str(d.id),
        reason=clean_notes,
        metadata={
            "from": from_status,
            "to": STATUS_APPROVED,
            "assigned_user_ids": [u.id for u in newcomers],
            "already_assigned_user_ids": sorted(already),
        },
    )
    _commit_transition(s, doc_id)
    logger.info("Document approved (id=%s new_assignees=%s)", d.id, [u.id for u in newcomers])

    result = ApprovalResult(document=d, new_assignments=created)
    if sink is not None and newcomers:
        result.notified = notify_all(
            sink,
            [
                OutgoingNotification(
                    recipient_id=u.id,
                    title="New Document Assigned",
                    message=f"You have been assigned a new document: {d.title}",
                    category="document",
                    priority=d.priority,
                    document_id=d.id,
                )
                for u in newcomers
            ],
        )
    return result


def reject_document(s: Session, doc_id: int, notes: str | None, *, user: User) -> Document:
    clean_notes = (notes or "").strip()
    if not clean_notes:
        raise ValidationError("Rejection requires review notes.")

    d = _load_for_update(s, doc_id)
    if d.status not in AWAITING_REVIEW:
        current = d.status
        s.rollback()
        raise ConflictError(f"Document {doc_id} is {current} and can no longer be rejected.")

    from_status = d.status
    now = _now()
    d.status = STATUS_REJECTED
    d.review_notes = clean_notes
    d.reviewed_by_user_id = user.id
    d.reviewed_at = now
    d.updated_at = now

    record_event(
        s,
        actor=user,
        action="doc.reject",
        entity_type="Document",
        entity_id=str(d.id),
        reason=clean_notes,
        metadata={"from": from_status, "to": STATUS_REJECTED},
    )
    _commit_transition(s, doc_id)
    logger.info("Document rejected (id=%s)", d.id)
    return d


# --- queries ---------------------------------------------------------------


def _newest_first(q):
    return q.order_by(Document.created_at.desc(), Document.id.desc())


def assigned_and_approved(user_id: int):
    """Visibility predicate for one employee: approved AND an assignment names them."""
    return (Document.status == STATUS_APPROVED) & exists().where(
        Assignment.document_id == Document.id,
        Assignment.user_id == user_id,
    )


def visible_documents_query(user: User):
    q = select(Document)
    if user.is_admin:
        return q
    return q.where(assigned_and_approved(user.id))


def list_pending(s: Session) -> list[Document]:
    return list(s.execute(_newest_first(select(Document).where(Document.status.in_(AWAITING_REVIEW)))).scalars().all())


def list_approved_for(s: Session, user_id: int) -> list[Document]:
    q = _newest_first(select(Document).where(assigned_and_approved(user_id)))
    return list(s.execute(q).scalars().all())


def list_employees(s: Session) -> list[User]:
    return list_active_employees(s)


def document_stats(s: Session, *, today: date | None = None) -> dict:
    """
    Admin dashboard counters. "approved_today" counts documents whose approval
    (reviewed_at, UTC) falls on `today`.
    """
    by_status = {status: 0 for status in VALID_STATUSES}
    for status, n in s.execute(select(Document.status, func.count(Document.id)).group_by(Document.status)):
        by_status[status] = n

    day = today or _now().date()
    start = datetime.combine(day, datetime.min.time())
    end = datetime.combine(day, datetime.max.time())
    approved_today = s.execute(
        select(func.count(Document.id)).where(
            Document.status == STATUS_APPROVED,
            Document.reviewed_at.between(start, end),
        )
    ).scalar_one()

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "pending_review": sum(by_status[st] for st in AWAITING_REVIEW),
        "approved_today": approved_today,
        "active_employees": len(list_active_employees(s)),
    }


def get_document(s: Session, doc_id: int) -> Document:
    d = s.get(Document, doc_id)
    if d is None:
        raise NotFoundError(f"Document {doc_id} not found.")
    return d


def get_document_for(s: Session, user: User, doc_id: int) -> Document:
    """Fetch through the visibility rule; a hidden document reads as missing."""
    d = s.execute(visible_documents_query(user).where(Document.id == doc_id)).scalar_one_or_none()
    if d is None:
        raise NotFoundError(f"Document {doc_id} not found.")
    return d


def list_assignments(s: Session, doc_id: int) -> list[Assignment]:
    d = get_document(s, doc_id)
    return list(d.assignments)


def download_for(s: Session, storage: Storage, user: User, doc_id: int, *, ttl_seconds: int) -> tuple[Document, str | None]:
    """
    Resolve a download for `user`. Returns a signed URL when the backend can
    issue one; otherwise None and the caller streams `storage.open(...)`.
    """
    d = get_document_for(s, user, doc_id)
    record_event(
        s,
        actor=user,
        action="doc.download",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={"filename": d.filename},
    )
    s.commit()
    return d, storage.signed_url(d.storage_key, ttl_seconds)


# --- serialization -----------------------------------------------------------


def assignment_to_dict(a: Assignment) -> dict:
    return {
        "document_id": a.document_id,
        "user_id": a.user_id,
        "user_name": a.user.name if a.user else None,
        "assigned_at": a.assigned_at.isoformat() if a.assigned_at else None,
    }


def document_to_dict(d: Document, *, include_text: bool = False, include_review: bool = True) -> dict:
    out = {
        "id": d.id,
        "title": d.title,
        "category": d.category,
        "description": d.description,
        "priority": d.priority,
        "deadline": d.deadline.isoformat() if d.deadline else None,
        "status": d.status,
        "uploaded_by": d.uploaded_by_user_id,
        "uploaded_by_name": d.uploaded_by.name if d.uploaded_by else None,
        "filename": d.filename,
        "content_type": d.content_type,
        "size_bytes": d.size_bytes,
        "summary": d.summary,
        "translation": d.translation,
        "enrichment_status": d.enrichment_status,
        "created_at": d.created_at.isoformat() if d.created_at else None,
        "updated_at": d.updated_at.isoformat() if d.updated_at else None,
    }
    if include_review:
        out["review_notes"] = d.review_notes
        out["reviewed_at"] = d.reviewed_at.isoformat() if d.reviewed_at else None
        out["enrichment_error"] = d.enrichment_error
        out["assigned_user_ids"] = [a.user_id for a in d.assignments]
    if include_text:
        out["extracted_text"] = d.extracted_text
    return out
