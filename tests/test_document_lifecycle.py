"""Service-level tests for the document lifecycle (state machine, assignment, visibility)."""
import random
from datetime import date, datetime

import pytest
from werkzeug.security import generate_password_hash

from app.docportal import create_app
from app.docportal.db import session_scope
from app.docportal.errors import ConflictError, NotFoundError, NotificationError, StorageError, ValidationError
from app.docportal.models import AuditEvent, Base, User
from app.docportal.modules.document_lifecycle import service
from app.docportal.modules.document_lifecycle.models import Assignment, Document
from app.docportal.modules.document_lifecycle.service import (
    DocumentMeta,
    _commit_transition,
    approve_document,
    create_document,
    document_stats,
    download_for,
    get_document_for,
    list_approved_for,
    list_employees,
    list_pending,
    reject_document,
    start_review,
)
from app.docportal.modules.notifications.models import Notification
from app.docportal.modules.notifications.service import sink_for
from app.docportal.storage import Storage, storage_from_config
from scripts.init_db import ensure_roles

EMPLOYEES = (
    ("anita@example.com", "Anita Rao", True),
    ("biju@example.com", "Biju Thomas", True),
    ("chitra@example.com", "Chitra Menon", True),
    ("dev@example.com", "Dev Pillai", False),
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "blobs"))
    monkeypatch.setenv("ENRICHMENT_MODE", "off")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        role_admin, role_employee = ensure_roles(s)
        admin = User(email="admin@example.com", name="Admin", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(role_admin)
        s.add(admin)
        for email, name, active in EMPLOYEES:
            u = User(email=email, name=name, department="Operations", password_hash=generate_password_hash("pw"), is_active=active)
            u.roles.append(role_employee)
            s.add(u)

    yield app
    app.extensions["enrichment"].shutdown()


def _user(s, email: str) -> User:
    return s.query(User).filter(User.email == email).one()


def _uid(app, email: str) -> int:
    with session_scope(app) as s:
        return _user(s, email).id


def _create(app, title: str = "Safety Manual", category: str = "Safety", data: bytes = b"Wear a helmet.") -> int:
    with session_scope(app) as s:
        d = create_document(
            s,
            storage_from_config(app.config),
            meta=DocumentMeta(title=title, category=category),
            data=data,
            filename="manual.txt",
            content_type="text/plain",
            user=_user(s, "admin@example.com"),
        )
        return d.id


def _approve(app, doc_id: int, emails: list[str], notes: str | None = None, sink=None):
    with session_scope(app) as s:
        ids = [_user(s, e).id for e in emails]
        return approve_document(
            s,
            doc_id,
            ids,
            user=_user(s, "admin@example.com"),
            notes=notes,
            sink=sink if sink is not None else sink_for(app),
        )


def _approve_ids(app, doc_id: int, ids: list):
    with session_scope(app) as s:
        return approve_document(s, doc_id, ids, user=_user(s, "admin@example.com"))


def _reject(app, doc_id: int, notes):
    with session_scope(app) as s:
        return reject_document(s, doc_id, notes, user=_user(s, "admin@example.com"))


def _approved_ids_for(app, email: str) -> list[int]:
    with session_scope(app) as s:
        return [d.id for d in list_approved_for(s, _user(s, email).id)]


def test_create_document_starts_pending_and_is_listed(app):
    doc_id = _create(app)

    with session_scope(app) as s:
        d = s.get(Document, doc_id)
        assert d.status == "pending"
        assert d.title == "Safety Manual"
        assert d.category == "Safety"
        assert d.priority == "medium"
        assert d.summary is None
        assert d.storage_key
        assert storage_from_config(app.config).get_bytes(d.storage_key) == b"Wear a helmet."
        assert doc_id in [p.id for p in list_pending(s)]
        actions = [e.action for e in s.query(AuditEvent).all()]
        assert "doc.create" in actions
        created = s.query(AuditEvent).filter(AuditEvent.action == "doc.create").one()
        assert created.client_ip is None


def test_list_pending_is_newest_first(app):
    first = _create(app, title="First")
    second = _create(app, title="Second")
    with session_scope(app) as s:
        ids = [d.id for d in list_pending(s)]
    assert ids.index(second) < ids.index(first)


@pytest.mark.parametrize(
    "title, category, data",
    [
        ("", "Safety", b"x"),
        ("   ", "Safety", b"x"),
        ("Manual", "", b"x"),
        ("Manual", "Safety", b""),
    ],
)
def test_create_rejects_missing_fields_without_side_effects(app, title, category, data):
    with pytest.raises(ValidationError):
        _create(app, title=title, category=category, data=data)

    with session_scope(app) as s:
        assert s.query(Document).count() == 0
    blobs = storage_from_config(app.config).root
    assert not blobs.exists() or not any(p.is_file() for p in blobs.rglob("*"))


def test_create_rejects_unknown_priority(app):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            create_document(
                s,
                storage_from_config(app.config),
                meta=DocumentMeta(title="Manual", category="Safety", priority="urgent"),
                data=b"x",
                filename="m.txt",
                content_type="text/plain",
                user=None,
            )


class _DownStorage(Storage):
    def __init__(self):
        self.attempts = 0

    def put_bytes(self, key, data, *, content_type=None):
        self.attempts += 1
        raise StorageError("bucket unreachable")

    def delete(self, key):
        pass


def test_storage_failure_is_retried_then_surfaces_without_a_document(app, monkeypatch):
    monkeypatch.setattr("app.docportal.storage.time.sleep", lambda _s: None)
    storage = _DownStorage()

    with session_scope(app) as s:
        with pytest.raises(StorageError):
            create_document(
                s,
                storage,
                meta=DocumentMeta(title="Manual", category="Safety"),
                data=b"x",
                filename="m.txt",
                content_type="text/plain",
                user=None,
                put_retries=2,
            )

    assert storage.attempts == 3
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_failed_record_write_deletes_the_stored_blob(app, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(service, "record_event", _boom)

    with pytest.raises(RuntimeError):
        _create(app)

    with session_scope(app) as s:
        assert s.query(Document).count() == 0
    blobs = storage_from_config(app.config).root
    assert not any(p.is_file() for p in blobs.rglob("*"))


def test_approve_assigns_notifies_and_grants_visibility(app):
    doc_id = _create(app)

    result = _approve(app, doc_id, ["anita@example.com", "biju@example.com"], notes="looks good")

    assert result.document.status == "approved"
    assert result.document.review_notes == "looks good"
    assert len(result.new_assignments) == 2
    assert result.notified == 2

    with session_scope(app) as s:
        assert s.query(Assignment).filter(Assignment.document_id == doc_id).count() == 2
        notes = s.query(Notification).all()
        assert len(notes) == 2
        assert {n.title for n in notes} == {"New Document Assigned"}
        assert all("Safety Manual" in n.message for n in notes)
        assert doc_id not in [d.id for d in list_pending(s)]

    assert _approved_ids_for(app, "anita@example.com") == [doc_id]
    assert _approved_ids_for(app, "chitra@example.com") == []


def test_reject_records_notes_and_never_becomes_visible(app):
    doc_id = _create(app)

    d = _reject(app, doc_id, "missing signature page")

    assert d.status == "rejected"
    assert d.review_notes == "missing signature page"
    with session_scope(app) as s:
        assert s.query(Assignment).count() == 0
    for email, _, _ in EMPLOYEES:
        assert _approved_ids_for(app, email) == []


def test_reapproval_only_adds_and_notifies_new_employees(app):
    doc_id = _create(app)

    first = _approve(app, doc_id, ["anita@example.com", "biju@example.com"])
    second = _approve(app, doc_id, ["biju@example.com", "chitra@example.com"])

    assert [a.user_id for a in first.new_assignments] == [_uid(app, "anita@example.com"), _uid(app, "biju@example.com")]
    assert [a.user_id for a in second.new_assignments] == [_uid(app, "chitra@example.com")]
    assert second.notified == 1

    with session_scope(app) as s:
        assigned = sorted(a.user_id for a in s.query(Assignment).filter(Assignment.document_id == doc_id))
        assert assigned == sorted(_user(s, e).id for e in ("anita@example.com", "biju@example.com", "chitra@example.com"))
        per_recipient = {}
        for n in s.query(Notification).all():
            per_recipient[n.recipient_user_id] = per_recipient.get(n.recipient_user_id, 0) + 1
        assert per_recipient == {_user(s, e).id: 1 for e in ("anita@example.com", "biju@example.com", "chitra@example.com")}


def test_approving_same_set_twice_is_a_no_op(app):
    doc_id = _create(app)
    _approve(app, doc_id, ["anita@example.com"], notes="ok")

    again = _approve(app, doc_id, ["anita@example.com", "anita@example.com"], notes="ok")

    assert again.new_assignments == []
    assert again.notified == 0
    with session_scope(app) as s:
        assert s.query(Assignment).count() == 1
        assert s.query(Notification).count() == 1


@pytest.mark.parametrize("notes", ["", "   ", "\n\t", None])
def test_reject_requires_notes(app, notes):
    doc_id = _create(app)

    with pytest.raises(ValidationError):
        _reject(app, doc_id, notes)

    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == "pending"


def test_approve_requires_employees(app):
    doc_id = _create(app)

    with pytest.raises(ValidationError):
        _approve(app, doc_id, [])

    with session_scope(app) as s:
        d = s.get(Document, doc_id)
        assert d.status == "pending"
        assert d.assignments == []


@pytest.mark.parametrize("bad", ["dev@example.com", "admin@example.com"])
def test_approve_rejects_inactive_or_non_employee_targets(app, bad):
    doc_id = _create(app)

    with pytest.raises(ValidationError):
        _approve(app, doc_id, ["anita@example.com", bad])

    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == "pending"
        assert s.query(Assignment).count() == 0
        assert s.query(Notification).count() == 0


def test_approve_rejects_unknown_user_ids(app):
    doc_id = _create(app)
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            approve_document(s, doc_id, [987654], user=_user(s, "admin@example.com"))


@pytest.mark.parametrize("make_bad", [lambda uid: True, lambda uid: uid + 0.7, lambda uid: "two", lambda uid: None])
def test_approve_rejects_malformed_employee_ids(app, make_bad):
    doc_id = _create(app)
    anita_id = _uid(app, "anita@example.com")

    with pytest.raises(ValidationError):
        _approve_ids(app, doc_id, [make_bad(anita_id)])

    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == "pending"
        assert s.query(Assignment).count() == 0


def test_approve_accepts_whole_number_ids(app):
    doc_id = _create(app)
    anita_id = _uid(app, "anita@example.com")

    result = _approve_ids(app, doc_id, [float(anita_id), str(anita_id)])

    assert [a.user_id for a in result.new_assignments] == [anita_id]


def test_unknown_document_is_not_found(app):
    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        anita = _user(s, "anita@example.com")
        with pytest.raises(NotFoundError):
            approve_document(s, 424242, [anita.id], user=admin)
        with pytest.raises(NotFoundError):
            reject_document(s, 424242, "nope", user=admin)
        with pytest.raises(NotFoundError):
            start_review(s, 424242, user=admin)


def test_terminal_states_refuse_further_transitions(app):
    approved = _create(app, title="Approved")
    rejected = _create(app, title="Rejected")
    _approve(app, approved, ["anita@example.com"])
    _reject(app, rejected, "wrong template")

    with pytest.raises(ConflictError):
        _reject(app, approved, "changed my mind")
    with pytest.raises(ConflictError):
        _approve(app, rejected, ["anita@example.com"])
    with pytest.raises(ConflictError):
        _reject(app, rejected, "again")

    with session_scope(app) as s:
        assert s.get(Document, approved).status == "approved"
        assert s.get(Document, rejected).status == "rejected"
        assert s.query(Assignment).filter(Assignment.document_id == rejected).count() == 0


def test_under_review_behaves_like_pending(app):
    doc_id = _create(app)

    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        assert start_review(s, doc_id, user=admin).status == "under_review"
        assert start_review(s, doc_id, user=admin).status == "under_review"
        assert doc_id in [d.id for d in list_pending(s)]
        anita = _user(s, "anita@example.com")
        with pytest.raises(NotFoundError):
            get_document_for(s, anita, doc_id)

    result = _approve(app, doc_id, ["anita@example.com"])
    assert result.document.status == "approved"

    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            start_review(s, doc_id, user=_user(s, "admin@example.com"))


def test_list_employees_returns_active_employees_sorted_by_name(app):
    with session_scope(app) as s:
        names = [u.name for u in list_employees(s)]
    assert names == ["Anita Rao", "Biju Thomas", "Chitra Menon"]


def test_list_approved_for_unknown_user_is_empty(app):
    doc_id = _create(app)
    _approve(app, doc_id, ["anita@example.com"])
    with session_scope(app) as s:
        assert list_approved_for(s, 999999) == []


def test_visibility_matches_status_and_assignments(app):
    rng = random.Random(1337)
    active = [e for e, _, is_active in EMPLOYEES if is_active]
    expected: dict[str, set[int]] = {e: set() for e in active}
    all_ids = []

    for i in range(15):
        doc_id = _create(app, title=f"Doc {i}")
        all_ids.append(doc_id)
        action = rng.choice(["pending", "review", "approve", "reject", "approve_then_extend"])
        if action == "review":
            with session_scope(app) as s:
                start_review(s, doc_id, user=_user(s, "admin@example.com"))
        elif action == "reject":
            _reject(app, doc_id, "not relevant")
        elif action in ("approve", "approve_then_extend"):
            picked = rng.sample(active, rng.randint(1, len(active)))
            _approve(app, doc_id, picked)
            for e in picked:
                expected[e].add(doc_id)
            if action == "approve_then_extend":
                more = rng.sample(active, 1)
                _approve(app, doc_id, more)
                expected[more[0]].add(doc_id)

    for email in active:
        assert set(_approved_ids_for(app, email)) == expected[email]
        with session_scope(app) as s:
            u = _user(s, email)
            for doc_id in all_ids:
                if doc_id in expected[email]:
                    assert get_document_for(s, u, doc_id).id == doc_id
                else:
                    with pytest.raises(NotFoundError):
                        get_document_for(s, u, doc_id)

    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        assert {get_document_for(s, admin, d).id for d in all_ids} == set(all_ids)


def test_stale_concurrent_write_raises_conflict(app):
    doc_id = _create(app)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s_a, s_b = sm(), sm()
    try:
        stale = s_b.get(Document, doc_id)
        assert stale.version == 1

        reject_document(s_a, doc_id, "wrong template", user=_user(s_a, "admin@example.com"))

        stale.status = "approved"
        stale.updated_at = datetime.utcnow()
        with pytest.raises(ConflictError):
            _commit_transition(s_b, doc_id)
    finally:
        s_a.close()
        s_b.close()

    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == "rejected"


def _interleave_after_load(monkeypatch, app, winner):
    """Run `winner` in its own session right after the next row load, before the loser writes."""
    real_load = service._load_for_update
    state = {"fired": False}

    def _load_then_let_winner_commit(s, doc_id):
        d = real_load(s, doc_id)
        if not state["fired"]:
            state["fired"] = True
            with session_scope(app) as other:
                winner(other, doc_id)
        return d

    monkeypatch.setattr(service, "_load_for_update", _load_then_let_winner_commit)


@pytest.mark.parametrize("loser_action", ["reject", "approve"])
def test_interleaved_review_decisions_one_wins_other_conflicts(app, monkeypatch, loser_action):
    doc_id = _create(app)

    def winner(s, did):
        approve_document(s, did, [_user(s, "anita@example.com").id], user=_user(s, "admin@example.com"))

    _interleave_after_load(monkeypatch, app, winner)

    with session_scope(app) as s:
        admin = _user(s, "admin@example.com")
        with pytest.raises(ConflictError):
            if loser_action == "reject":
                reject_document(s, doc_id, "superseded", user=admin)
            else:
                approve_document(s, doc_id, [_user(s, "biju@example.com").id], user=admin)

    with session_scope(app) as s:
        d = s.get(Document, doc_id)
        assert d.status == "approved"
        assert [a.user_id for a in d.assignments] == [_user(s, "anita@example.com").id]
    assert _approved_ids_for(app, "biju@example.com") == []


class _BrokenSink:
    def send(self, *args, **kwargs):
        raise NotificationError("mail relay down")


def test_notification_failure_does_not_roll_back_approval(app):
    doc_id = _create(app)

    result = _approve(app, doc_id, ["anita@example.com"], sink=_BrokenSink())

    assert result.notified == 0
    with session_scope(app) as s:
        assert s.get(Document, doc_id).status == "approved"
        assert s.query(Assignment).count() == 1
    assert _approved_ids_for(app, "anita@example.com") == [doc_id]


def test_download_for_respects_visibility(app):
    doc_id = _create(app)
    _approve(app, doc_id, ["anita@example.com"])
    storage = storage_from_config(app.config)

    with session_scope(app) as s:
        d, url = download_for(s, storage, _user(s, "anita@example.com"), doc_id, ttl_seconds=60)
        assert url is None
        assert storage.get_bytes(d.storage_key) == b"Wear a helmet."
        with pytest.raises(NotFoundError):
            download_for(s, storage, _user(s, "biju@example.com"), doc_id, ttl_seconds=60)


def test_document_stats_counts_by_status(app):
    approved = _create(app, title="Approved")
    _create(app, title="Pending")
    in_review = _create(app, title="In review")
    rejected = _create(app, title="Rejected")
    _approve(app, approved, ["anita@example.com"])
    _reject(app, rejected, "duplicate")
    with session_scope(app) as s:
        start_review(s, in_review, user=_user(s, "admin@example.com"))

    with session_scope(app) as s:
        reviewed_on = s.get(Document, approved).reviewed_at.date()
        stats = document_stats(s, today=reviewed_on)
        yesterday_stats = document_stats(s, today=date.fromordinal(reviewed_on.toordinal() - 1))

    assert stats["total"] == 4
    assert stats["by_status"] == {"pending": 1, "under_review": 1, "approved": 1, "rejected": 1}
    assert stats["pending_review"] == 2
    assert stats["approved_today"] == 1
    assert stats["active_employees"] == 3
    assert yesterday_stats["approved_today"] == 0


def test_document_stats_on_empty_portal(app):
    with session_scope(app) as s:
        stats = document_stats(s)
    assert stats["total"] == 0
    assert stats["pending_review"] == 0
    assert stats["approved_today"] == 0
