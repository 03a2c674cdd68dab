from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.docportal.auth import user_to_dict
from app.docportal.db import db_session
from app.docportal.errors import ValidationError
from app.docportal.models import User
from app.docportal.modules.enrichment.service import dispatcher_for, retry_enrichment
from app.docportal.modules.notifications.service import sink_for
from app.docportal.rbac import require_permission
from app.docportal.storage import storage_from_config

from .service import (
    DocumentMeta,
    approve_document,
    assignment_to_dict,
    create_document,
    document_stats,
    document_to_dict,
    get_document,
    list_assignments,
    list_employees,
    list_pending,
    parse_deadline,
    reject_document,
    start_review,
)

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return dict(request.form)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _employee_ids(payload: dict) -> list:
    if not request.is_json:
        return request.form.getlist("employee_ids")
    raw = payload.get("employee_ids")
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("employee_ids must be a list.")
    return raw


@bp.post("/documents")
@require_permission("docs.create")
def create_document_post():
    s = db_session()
    u = _current_user()

    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Choose a file to upload.")

    meta = DocumentMeta(
        title=request.form.get("title") or "",
        category=request.form.get("category") or "",
        description=request.form.get("description"),
        priority=request.form.get("priority") or "medium",
        deadline=parse_deadline(request.form.get("deadline")),
    )
    d = create_document(
        s,
        storage_from_config(current_app.config),
        meta=meta,
        data=f.read(),
        filename=f.filename,
        content_type=f.mimetype,
        user=u,
        put_retries=int(current_app.config.get("STORAGE_PUT_RETRIES") or 3),
    )
    doc_id = d.id

    # Enrichment is queued only after the record is committed.
    dispatcher_for(current_app).submit(doc_id)
    s.expire_all()
    return jsonify({"document": document_to_dict(get_document(s, doc_id))}), 201


@bp.get("/documents/pending")
@require_permission("docs.view")
def pending_documents():
    s = db_session()
    return jsonify({"documents": [document_to_dict(d) for d in list_pending(s)]})


@bp.get("/documents/stats")
@require_permission("docs.view")
def documents_stats():
    s = db_session()
    return jsonify({"stats": document_stats(s)})


@bp.get("/documents/<int:doc_id>")
@require_permission("docs.view")
def document_detail(doc_id: int):
    s = db_session()
    return jsonify({"document": document_to_dict(get_document(s, doc_id), include_text=True)})


@bp.post("/documents/<int:doc_id>/review")
@require_permission("docs.review")
def document_start_review(doc_id: int):
    s = db_session()
    d = start_review(s, doc_id, user=_current_user())
    return jsonify({"document": document_to_dict(d)})


@bp.post("/documents/<int:doc_id>/approve")
@require_permission("docs.review")
def document_approve(doc_id: int):
    s = db_session()
    payload = _json_body()
    result = approve_document(
        s,
        doc_id,
        _employee_ids(payload),
        user=_current_user(),
        notes=payload.get("notes"),
        sink=sink_for(current_app),
    )
    return jsonify(
        {
            "document": document_to_dict(result.document),
            "new_assignments": [assignment_to_dict(a) for a in result.new_assignments],
            "notified": result.notified,
        }
    )


@bp.post("/documents/<int:doc_id>/reject")
@require_permission("docs.review")
def document_reject(doc_id: int):
    s = db_session()
    payload = _json_body()
    d = reject_document(s, doc_id, payload.get("notes"), user=_current_user())
    return jsonify({"document": document_to_dict(d)})


@bp.get("/documents/<int:doc_id>/assignments")
@require_permission("docs.view")
def document_assignments(doc_id: int):
    s = db_session()
    return jsonify({"assignments": [assignment_to_dict(a) for a in list_assignments(s, doc_id)]})


@bp.post("/documents/<int:doc_id>/enrich")
@require_permission("docs.review")
def document_retry_enrichment(doc_id: int):
    s = db_session()
    retry_enrichment(current_app._get_current_object(), doc_id)
    s.expire_all()
    return jsonify({"document": document_to_dict(get_document(s, doc_id))}), 202


@bp.get("/employees")
@require_permission("employees.view")
def employees():
    s = db_session()
    return jsonify({"employees": [user_to_dict(u) for u in list_employees(s)]})
