from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.docledger.audit import entry_to_dict, request_provenance
from app.docledger.db import db_session
from app.docledger.errors import ValidationError
from app.docledger.rbac import current_identity, require_identity
from app.docledger.services import Services

from .service import HistoryResult, document_history, list_documents, parse_metadata, require_document

bp = Blueprint("documents", __name__)


def _services() -> Services:
    return current_app.extensions["docledger"]


def _history_dict(h: HistoryResult) -> dict:
    return {
        "document": h.document.to_dict(),
        "entries": [entry_to_dict(e) for e in h.entries],
        "ledger_consistent": h.ledger_consistent,
    }


def _uploaded_file():
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("Missing required field: file")
    return f


@bp.get("")
@require_identity
def my_documents():
    identity = current_identity()
    svc = _services()
    results = list_documents(db_session(), svc.store, svc.ledger, identity.custom_id)
    return jsonify({"success": True, "documents": [_history_dict(h) for h in results], "total": len(results)})


@bp.post("/upload")
@require_identity
def upload_document():
    identity = current_identity()
    f = _uploaded_file()
    metadata = parse_metadata(request.form.get("metadata"))
    force = (request.form.get("force_upload") or "").strip().lower() in ("1", "true", "yes")

    result = _services().uploads.submit(
        db_session(),
        identity,
        f.read(),
        file_name=f.filename,
        file_type=f.mimetype,
        metadata=metadata,
        reviewer_id=request.form.get("reviewer_id"),
        force=force,
        provenance=request_provenance(),
    )
    warnings = [] if result.audit_recorded else ["audit_write_failed"]
    return (
        jsonify(
            {
                "success": True,
                "document": result.document.to_dict(),
                "preview_url": result.public_url,
                "warnings": warnings,
                "message": "Document uploaded successfully",
            }
        ),
        201,
    )


@bp.post("/accept")
@require_identity
def apply_transition():
    identity = current_identity()
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    document_id = str(payload.get("document_id") or "").strip()
    action = payload.get("action")
    if not document_id or not action:
        raise ValidationError("Missing required fields: document_id, action")
    reason = payload.get("reason")

    result = _services().transitions.apply(
        db_session(),
        identity,
        document_id,
        action,
        reason=reason if isinstance(reason, str) else None,
        provenance=request_provenance(),
    )
    return jsonify(
        {
            "success": True,
            "document": result.document.to_dict(),
            "changed": result.changed,
            "message": f"Document {result.document.status}" if result.changed else "No change",
        }
    )


@bp.get("/<document_id>")
@require_identity
def document_detail(document_id: str):
    doc = require_document(_services().store, db_session(), document_id)
    return jsonify({"success": True, "document": doc.to_dict()})


@bp.get("/<document_id>/history")
@require_identity
def document_history_view(document_id: str):
    svc = _services()
    h = document_history(db_session(), svc.store, svc.ledger, document_id)
    return jsonify({"success": True, **_history_dict(h)})


@bp.post("/<document_id>/verify")
@require_identity
def verify_document(document_id: str):
    identity = current_identity()
    f = _uploaded_file()
    result = _services().integrity.verify_bytes(
        db_session(),
        identity,
        document_id,
        f.read(),
        provenance=request_provenance(),
    )
    return jsonify(
        {
            "success": True,
            "document_id": result.document.id,
            "match": result.match,
            "content_hash": result.document.content_hash,
            "supplied_hash": result.computed_hash,
        }
    )


@bp.get("/<document_id>/integrity")
@require_identity
def stored_integrity(document_id: str):
    identity = current_identity()
    result = _services().integrity.verify_stored(
        db_session(),
        identity,
        document_id,
        provenance=request_provenance(),
    )
    return jsonify(
        {
            "success": True,
            "document_id": result.document.id,
            "intact": result.match,
            "content_hash": result.document.content_hash,
            "stored_hash": result.computed_hash,
        }
    )
