import io
import logging
from datetime import datetime

import pytest
from sqlalchemy import exc as sa_exc, update

from app.docledger import create_app
from app.docledger.audit import AuditLedger, entry_detail
from app.docledger.auth import Identity
from app.docledger.db import session_scope
from app.docledger.errors import ConflictingTransition
from app.docledger.models import AuditEntry, Base
from app.docledger.modules.documents.models import Document
from app.docledger.modules.documents.store import DocumentStore


def _make_client(tmp_path, monkeypatch, **env):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("TRANSITION_AUTHORIZATION", "REAPPLY_POLICY", "REJECTION_DEFAULT_REASON"):
        monkeypatch.delenv(k, raising=False)
    for k, v in env.items():
        monkeypatch.setenv(k, v)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app.test_client()


@pytest.fixture()
def client(tmp_path, monkeypatch):
    return _make_client(tmp_path, monkeypatch)


def _auth(client, custom_id):
    token = client.application.extensions["docledger"].identity_gate.provider.issue(Identity(custom_id=custom_id))
    return {"Authorization": f"Bearer {token}"}


def _upload(client, who="U1", data=b"abc", **form):
    payload = {"file": (io.BytesIO(data), "a.pdf")}
    payload.update(form)
    r = client.post(
        "/api/documents/upload",
        data=payload,
        content_type="multipart/form-data",
        headers=_auth(client, who),
    )
    assert r.status_code == 201
    return r.json["document"]["id"]


def _decide(client, who, document_id, action, **extra):
    body = {"document_id": document_id, "action": action}
    body.update(extra)
    return client.post("/api/documents/accept", json=body, headers=_auth(client, who))


def _entries(client, document_id):
    with session_scope(client.application) as s:
        rows = (
            s.query(AuditEntry)
            .filter(AuditEntry.document_id == document_id)
            .order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc())
            .all()
        )
        return [(e.action, e.actor_identity, entry_detail(e)) for e in rows]


def _status(client, document_id):
    with session_scope(client.application) as s:
        return s.get(Document, document_id).status


def test_accept_moves_uploaded_to_accepted_and_records_actor(client):
    doc_id = _upload(client)
    r = _decide(client, "U1", doc_id, "accept")
    assert r.status_code == 200
    assert r.json["changed"] is True
    assert r.json["document"]["status"] == "accepted"

    entries = _entries(client, doc_id)
    assert [a for a, _, _ in entries] == ["upload", "accepted"]
    action, actor, detail = entries[-1]
    assert actor == "U1"
    assert detail["previous_status"] == "uploaded"
    assert detail["new_status"] == "accepted"
    assert detail["file_name"] == "a.pdf"


def test_decided_documents_are_terminal(client):
    doc_id = _upload(client)
    assert _decide(client, "U1", doc_id, "accept").status_code == 200

    r = _decide(client, "U2", doc_id, "reject")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_transition"
    assert _status(client, doc_id) == "accepted"
    assert [a for a, _, _ in _entries(client, doc_id)] == ["upload", "accepted"]


def test_unknown_action_is_rejected_without_side_effects(client):
    doc_id = _upload(client)
    r = _decide(client, "U1", doc_id, "frobnicate")
    assert r.status_code == 400
    assert r.json["error"] == "invalid_action"
    assert _status(client, doc_id) == "uploaded"
    assert len(_entries(client, doc_id)) == 1


def test_missing_fields_and_unknown_document(client):
    r = client.post("/api/documents/accept", json={"action": "accept"}, headers=_auth(client, "U1"))
    assert r.status_code == 400

    r = _decide(client, "U1", "00000000-0000-0000-0000-000000000000", "accept")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_transition_requires_identity(client):
    doc_id = _upload(client)
    r = client.post("/api/documents/accept", json={"document_id": doc_id, "action": "accept"})
    assert r.status_code == 401
    assert _status(client, doc_id) == "uploaded"


def test_reapply_is_idempotent_by_default(client):
    doc_id = _upload(client)
    assert _decide(client, "U1", doc_id, "accept").status_code == 200

    r = _decide(client, "U1", doc_id, "accept")
    assert r.status_code == 200
    assert r.json["changed"] is False
    assert r.json["document"]["status"] == "accepted"
    assert [a for a, _, _ in _entries(client, doc_id)] == ["upload", "accepted"]


def test_reapply_can_be_refused(tmp_path, monkeypatch):
    client = _make_client(tmp_path, monkeypatch, REAPPLY_POLICY="reject")
    doc_id = _upload(client)
    assert _decide(client, "U1", doc_id, "reject").status_code == 200

    r = _decide(client, "U1", doc_id, "reject")
    assert r.status_code == 409
    assert r.json["error"] == "already_in_state"
    assert len(_entries(client, doc_id)) == 2


def test_reviewer_policy_limits_who_decides(tmp_path, monkeypatch):
    client = _make_client(tmp_path, monkeypatch, TRANSITION_AUTHORIZATION="reviewer")
    doc_id = _upload(client, "U1", reviewer_id="U2")

    r = _decide(client, "U3", doc_id, "accept")
    assert r.status_code == 403
    assert r.json["error"] == "forbidden"
    assert _status(client, doc_id) == "uploaded"

    r = _decide(client, "U2", doc_id, "accept")
    assert r.status_code == 200

    # no reviewer named: the owner decides
    other = _upload(client, "U1", data=b"other bytes")
    assert _decide(client, "U2", other, "reject").status_code == 403
    assert _decide(client, "U1", other, "reject").status_code == 200


def test_rejection_reason_defaults_and_is_kept(client):
    a = _upload(client, data=b"first")
    b = _upload(client, data=b"second")

    assert _decide(client, "U1", a, "reject").status_code == 200
    assert _decide(client, "U1", b, "reject", reason="Wrong lot number").status_code == 200

    assert _entries(client, a)[-1][2]["reason"] == "Document rejected during preview"
    assert _entries(client, b)[-1][2]["reason"] == "Wrong lot number"


def test_audit_failure_rolls_back_the_transition(client, monkeypatch):
    doc_id = _upload(client)

    def _boom(*args, **kwargs):
        raise sa_exc.OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(AuditLedger, "append", _boom)
    r = _decide(client, "U1", doc_id, "accept")
    assert r.status_code == 500
    assert r.json["error"] == "audit_write_failed"

    assert _status(client, doc_id) == "uploaded"
    assert [a for a, _, _ in _entries(client, doc_id)] == ["upload"]


def test_lost_race_is_a_conflict_and_leaves_one_decision(client, monkeypatch, caplog):
    app = client.application
    doc_id = _upload(client)
    svc = app.extensions["docledger"]
    real_lookup = DocumentStore.lookup
    fired = []

    def lookup_then_interleave(self, s, document_id):
        found = real_lookup(self, s, document_id)
        if not fired:
            fired.append(True)
            # a second reviewer commits a rejection between our read and our write
            with session_scope(app) as other:
                svc.transitions.apply(other, Identity(custom_id="U2"), document_id, "reject")
        return found

    monkeypatch.setattr(DocumentStore, "lookup", lookup_then_interleave)
    with caplog.at_level(logging.WARNING):
        r = _decide(client, "U1", doc_id, "accept")
    assert r.status_code == 409
    assert r.json["error"] == "conflicting_transition"
    assert "lost the race" in caplog.text

    assert _status(client, doc_id) == "rejected"
    entries = _entries(client, doc_id)
    assert [(a, who) for a, who, _ in entries] == [("upload", "U1"), ("rejected", "U2")]


def test_processor_reports_conflict_directly(client, monkeypatch):
    app = client.application
    doc_id = _upload(client)
    svc = app.extensions["docledger"]

    monkeypatch.setattr(DocumentStore, "compare_and_set_status", lambda self, s, document_id, **kw: False)
    with app.app_context():
        with pytest.raises(ConflictingTransition):
            with session_scope(app) as s:
                svc.transitions.apply(s, Identity(custom_id="U1"), doc_id, "accept")

    assert _status(client, doc_id) == "uploaded"


def test_store_guards_status_and_fingerprint_values(client):
    app = client.application
    doc_id = _upload(client)
    store = DocumentStore()

    with session_scope(app) as s:
        with pytest.raises(ValueError):
            store.compare_and_set_status(s, doc_id, expected="uploaded", new="archived", now=datetime.utcnow())
        with pytest.raises(ValueError):
            store.create(
                s,
                file_name="a.pdf",
                file_size=3,
                file_type="application/pdf",
                content_hash="not-a-hash",
                storage_reference="documents/x",
                public_url=None,
                owner_identity="U1",
            )

    # the database refuses statuses outside the lifecycle too
    with pytest.raises(sa_exc.IntegrityError):
        with session_scope(app) as s:
            s.execute(update(Document).where(Document.id == doc_id).values(status="archived"))
    assert _status(client, doc_id) == "uploaded"
