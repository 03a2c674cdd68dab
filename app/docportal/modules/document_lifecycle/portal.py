"""
Employee-facing reads. Every lookup here goes through the visibility rule.
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, redirect, send_file

from app.docportal.db import db_session
from app.docportal.models import User
from app.docportal.rbac import require_permission
from app.docportal.storage import storage_from_config

from .service import document_to_dict, download_for, get_document_for, list_approved_for

bp = Blueprint("portal", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/documents")
@require_permission("portal.view")
def my_documents():
    s = db_session()
    u = _current_user()
    docs = list_approved_for(s, u.id)
    return jsonify({"documents": [document_to_dict(d, include_review=False) for d in docs]})


@bp.get("/documents/<int:doc_id>")
@require_permission("portal.view")
def my_document_detail(doc_id: int):
    s = db_session()
    d = get_document_for(s, _current_user(), doc_id)
    return jsonify({"document": document_to_dict(d, include_text=True, include_review=False)})


@bp.get("/documents/<int:doc_id>/download")
@require_permission("docs.download")
def my_document_download(doc_id: int):
    s = db_session()
    storage = storage_from_config(current_app.config)
    d, url = download_for(
        s,
        storage,
        _current_user(),
        doc_id,
        ttl_seconds=int(current_app.config.get("SIGNED_URL_TTL_SECONDS") or 900),
    )
    if url:
        return redirect(url, code=302)
    return send_file(
        storage.open(d.storage_key),
        mimetype=d.content_type,
        as_attachment=True,
        download_name=d.filename,
        max_age=0,
    )
