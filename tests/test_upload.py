import io
import logging

import pytest
from sqlalchemy import exc as sa_exc

from app.docledger import create_app
from app.docledger.audit import AuditLedger
from app.docledger.auth import Identity
from app.docledger.db import session_scope
from app.docledger.models import AuditEntry, Base
from app.docledger.modules.documents.models import Document
from app.docledger.modules.documents.service import build_storage_path, parse_metadata, resolve_file_type
from app.docledger.modules.documents.store import DocumentStore
from app.docledger.errors import ValidationError
from app.docledger.storage import Storage, UploadResult

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class RecordingStorage(Storage):
    def __init__(self, result=None):
        self.calls = []
        self.result = result or UploadResult(url="http://files.test/blob")

    def upload(self, data, bucket, path, *, content_type=None):
        self.calls.append((bucket, path, data, content_type))
        return self.result


def _make_client(tmp_path, monkeypatch, storage=None, **env):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("MAX_FILE_SIZE_BYTES", "ALLOWED_FILE_TYPES", "TRANSITION_AUTHORIZATION", "REAPPLY_POLICY"):
        monkeypatch.delenv(k, raising=False)
    for k, v in env.items():
        monkeypatch.setenv(k, v)

    app = create_app(storage=storage)
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app.test_client()


@pytest.fixture()
def client(tmp_path, monkeypatch):
    return _make_client(tmp_path, monkeypatch)


def _auth(client, custom_id):
    token = client.application.extensions["docledger"].identity_gate.provider.issue(Identity(custom_id=custom_id))
    return {"Authorization": f"Bearer {token}"}


def _upload(client, who, data=b"abc", name="a.pdf", **form):
    payload = {"file": (io.BytesIO(data), name)}
    payload.update(form)
    return client.post(
        "/api/documents/upload",
        data=payload,
        content_type="multipart/form-data",
        headers=_auth(client, who),
    )


def _boom(*args, **kwargs):
    raise sa_exc.OperationalError("INSERT", {}, Exception("boom"))


def test_upload_records_document_and_ledger_entry(client):
    r = _upload(client, "U1", metadata='{"batch": "B-7"}')
    assert r.status_code == 201
    assert r.json["success"] is True
    assert r.json["warnings"] == []
    doc = r.json["document"]
    assert doc["status"] == "uploaded"
    assert doc["content_hash"] == ABC_SHA256
    assert doc["file_size"] == 3
    assert doc["file_type"] == "application/pdf"
    assert doc["owner_id"] == "U1"
    assert doc["metadata"] == {"batch": "B-7"}
    assert r.json["preview_url"]

    with session_scope(client.application) as s:
        d = s.get(Document, doc["id"])
        assert d.storage_reference.startswith("documents/documents/U1/")
        entries = s.query(AuditEntry).filter(AuditEntry.document_id == d.id).all()
        assert [e.action for e in entries] == ["upload"]
        assert entries[0].actor_identity == "U1"
        assert entries[0].request_id

    # the stored blob is the exact submitted bytes
    storage = client.application.extensions["docledger"].storage
    bucket, _, path = d.storage_reference.partition("/")
    assert storage.read(bucket, path) == b"abc"


def test_upload_rejects_oversized_file(tmp_path, monkeypatch):
    storage = RecordingStorage()
    client = _make_client(tmp_path, monkeypatch, storage=storage, MAX_FILE_SIZE_BYTES="10")
    r = _upload(client, "U1", data=b"x" * 5000)
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"
    assert storage.calls == []

    with session_scope(client.application) as s:
        assert s.query(Document).count() == 0
        assert s.query(AuditEntry).count() == 0

    r = _upload(client, "U1", data=b"x" * 10)
    assert r.status_code == 201
    assert len(storage.calls) == 1


def test_upload_rejects_disallowed_type(client):
    r = _upload(client, "U1", data=b"plain text", name="notes.txt")
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"
    assert "not allowed" in r.json["message"]


def test_upload_rejects_bad_metadata(client):
    r = _upload(client, "U1", metadata="[1, 2")
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"

    r = _upload(client, "U1", metadata="[1, 2]")
    assert r.status_code == 400


def test_upload_requires_file(client):
    r = client.post(
        "/api/documents/upload",
        data={"metadata": "{}"},
        content_type="multipart/form-data",
        headers=_auth(client, "U1"),
    )
    assert r.status_code == 400
    assert r.json["message"] == "Missing required field: file"


def test_unauthenticated_upload_never_reaches_storage(tmp_path, monkeypatch):
    storage = RecordingStorage()
    client = _make_client(tmp_path, monkeypatch, storage=storage)
    r = client.post(
        "/api/documents/upload",
        data={"file": (io.BytesIO(b"abc"), "a.pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 401
    assert r.json["error"] == "unauthenticated"
    assert storage.calls == []


def test_storage_failure_creates_nothing(tmp_path, monkeypatch):
    storage = RecordingStorage(UploadResult(error="bucket unavailable"))
    client = _make_client(tmp_path, monkeypatch, storage=storage)
    r = _upload(client, "U1")
    assert r.status_code == 500
    assert r.json["error"] == "storage_upload_failed"
    assert len(storage.calls) == 1

    with session_scope(client.application) as s:
        assert s.query(Document).count() == 0
        assert s.query(AuditEntry).count() == 0


def test_storage_timeout_maps_to_timeout(tmp_path, monkeypatch):
    storage = RecordingStorage(UploadResult(error="read timeout", timed_out=True))
    client = _make_client(tmp_path, monkeypatch, storage=storage)
    r = _upload(client, "U1")
    assert r.status_code == 500
    assert r.json["error"] == "timeout"


def test_record_failure_logs_orphaned_blob(client, monkeypatch, caplog):
    monkeypatch.setattr(DocumentStore, "create", _boom)
    with caplog.at_level(logging.ERROR):
        r = _upload(client, "U1")
    assert r.status_code == 500
    assert r.json["error"] == "record_creation_failed"
    assert "Orphaned blob documents/documents/U1/" in caplog.text

    with session_scope(client.application) as s:
        assert s.query(Document).count() == 0
        assert s.query(AuditEntry).count() == 0


def test_audit_failure_after_upload_is_a_warning(client, monkeypatch, caplog):
    monkeypatch.setattr(AuditLedger, "append", _boom)
    with caplog.at_level(logging.CRITICAL):
        r = _upload(client, "U1")
    assert r.status_code == 201
    assert r.json["warnings"] == ["audit_write_failed"]
    assert "ledger gap" in caplog.text

    with session_scope(client.application) as s:
        assert s.query(Document).count() == 1
        assert s.query(AuditEntry).count() == 0


def test_duplicate_upload_is_flagged_unless_forced(client):
    first = _upload(client, "U1")
    assert first.status_code == 201

    r = _upload(client, "U1", name="copy.pdf")
    assert r.status_code == 409
    assert r.json["error"] == "duplicate_document"
    assert r.json["existing_document_id"] == first.json["document"]["id"]

    r = _upload(client, "U1", name="copy.pdf", force_upload="true")
    assert r.status_code == 201
    assert r.json["document"]["id"] != first.json["document"]["id"]

    # same bytes from a different owner are not a duplicate
    r = _upload(client, "U2")
    assert r.status_code == 201


def test_resolve_file_type():
    assert resolve_file_type("a.pdf", None) == "application/pdf"
    assert resolve_file_type("a.pdf", "application/octet-stream") == "application/pdf"
    assert resolve_file_type("a.bin", "Application/PDF; charset=binary") == "application/pdf"


def test_storage_paths_are_fresh():
    a = build_storage_path("U1", "../../a.pdf")
    b = build_storage_path("U1", "../../a.pdf")
    assert a != b
    assert a.startswith("documents/U1/")
    assert ".." not in a
    assert a.endswith("_original_a.pdf")


def test_parse_metadata():
    assert parse_metadata(None) == {}
    assert parse_metadata("  ") == {}
    assert parse_metadata('{"k": 1}') == {"k": 1}
    with pytest.raises(ValidationError):
        parse_metadata('"just a string"')
