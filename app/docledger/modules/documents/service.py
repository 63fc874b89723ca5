"""
Documents service layer.

Upload orchestration (hash -> blob store -> record -> ledger), the
accept/reject state machine, ledger history and integrity verification.
"""
from __future__ import annotations

import json
import logging
import mimetypes
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.docledger.audit import (
    ACTION_ACCEPTED,
    ACTION_REJECTED,
    ACTION_UPLOAD,
    ACTION_VERIFIED,
    AuditLedger,
    Provenance,
)
from app.docledger.auth import Identity
from app.docledger.db import is_timeout_error
from app.docledger.errors import (
    AlreadyInState,
    AuditWriteFailed,
    ConflictingTransition,
    DuplicateDocument,
    IntegrityCheckFailed,
    InvalidTransition,
    NotFound,
    RecordCreationFailed,
    RecordLookupFailed,
    RecordUpdateFailed,
    StorageUploadFailed,
    Timeout,
    ValidationError,
)
from app.docledger.integrity import content_fingerprint, fingerprint_matches
from app.docledger.rbac import ensure_may_transition
from app.docledger.storage import Storage, StorageError, split_reference

from .models import STATUS_ACCEPTED, STATUS_REJECTED, STATUS_UPLOADED, Document
from .store import FAILED, DocumentStore

logger = logging.getLogger(__name__)

# Action -> target status
ACTIONS = {
    "accept": STATUS_ACCEPTED,
    "reject": STATUS_REJECTED,
}

# Valid status transitions
STATUS_TRANSITIONS = {
    STATUS_UPLOADED: {STATUS_ACCEPTED, STATUS_REJECTED},
    STATUS_ACCEPTED: set(),
    STATUS_REJECTED: set(),
}

_LEDGER_ACTION = {
    STATUS_ACCEPTED: ACTION_ACCEPTED,
    STATUS_REJECTED: ACTION_REJECTED,
}

REAPPLY_IDEMPOTENT = "idempotent"
REAPPLY_REJECT = "reject"


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def build_storage_path(owner_id: str, filename: str) -> str:
    """Fresh blob location: owner, epoch millis and a random nonce keep it collision-free."""
    safe_owner = secure_filename(owner_id or "") or "unknown"
    stamp = int(time.time() * 1000)
    nonce = uuid.uuid4().hex[:8]
    return f"documents/{safe_owner}/{stamp}_{nonce}_original_{sanitize_upload_filename(filename)}"


def resolve_file_type(filename: str, declared: str | None) -> str:
    ct = (declared or "").split(";")[0].strip().lower()
    if not ct or ct == "application/octet-stream":
        guessed, _ = mimetypes.guess_type(filename or "")
        if guessed:
            return guessed.lower()
    return ct or "application/octet-stream"


def parse_metadata(raw: str | None) -> dict[str, Any]:
    """Parse the optional JSON metadata form field."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid metadata format: {e.msg}") from e
    if not isinstance(value, dict):
        raise ValidationError("Invalid metadata format: expected a JSON object")
    return value


def _store_failure(e: SQLAlchemyError, what: str, failure: type) -> Exception:
    if is_timeout_error(e):
        return Timeout(f"Timed out while trying to {what}")
    return failure(f"Failed to {what}")


def require_document(store: DocumentStore, s: Session, document_id: str) -> Document:
    lookup = store.lookup(s, document_id)
    if lookup.outcome == FAILED:
        logger.error("Document lookup failed (document_id=%s): %s", document_id, lookup.error)
        raise _store_failure(lookup.error, "read document", RecordLookupFailed) from lookup.error
    if not lookup.found:
        raise NotFound("Document not found")
    return lookup.document


# ============================================================================
# Upload
# ============================================================================


@dataclass(frozen=True)
class UploadPolicy:
    max_file_size_bytes: int
    allowed_types: frozenset[str]
    bucket: str = "documents"


@dataclass(frozen=True)
class SubmitResult:
    document: Document
    public_url: str | None
    audit_recorded: bool = True


@dataclass(frozen=True)
class UploadOrchestrator:
    storage: Storage
    store: DocumentStore
    ledger: AuditLedger
    policy: UploadPolicy

    def validate(self, file_bytes: bytes, file_type: str, metadata: dict[str, Any] | None) -> None:
        if not file_bytes:
            raise ValidationError("Missing required field: file")
        if len(file_bytes) > self.policy.max_file_size_bytes:
            raise ValidationError(
                f"File too large: {len(file_bytes)} bytes exceeds the {self.policy.max_file_size_bytes} byte limit"
            )
        if file_type not in self.policy.allowed_types:
            allowed = ", ".join(sorted(self.policy.allowed_types))
            raise ValidationError(f"File type {file_type!r} is not allowed (allowed: {allowed})")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("Invalid metadata format: expected a JSON object")

    def submit(
        self,
        s: Session,
        identity: Identity,
        file_bytes: bytes,
        *,
        file_name: str,
        file_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        reviewer_id: str | None = None,
        force: bool = False,
        provenance: Provenance | None = None,
    ) -> SubmitResult:
        file_type = resolve_file_type(file_name, file_type)
        self.validate(file_bytes, file_type, metadata)
        file_size = len(file_bytes)

        # Fingerprint the submitted bytes; the same object is what gets stored.
        content_hash = content_fingerprint(file_bytes)

        if not force:
            try:
                existing = self.store.find_by_hash(s, identity.custom_id, content_hash)
            except SQLAlchemyError as e:
                s.rollback()
                raise _store_failure(e, "check for duplicate documents", RecordLookupFailed) from e
            if existing is not None:
                raise DuplicateDocument(
                    f"This document was already uploaded (status: {existing.status})",
                    existing_document_id=existing.id,
                )

        bucket = self.policy.bucket
        path = build_storage_path(identity.custom_id, file_name)
        upload = self.storage.upload(file_bytes, bucket, path, content_type=file_type)
        if upload.timed_out:
            raise Timeout("Timed out uploading the original document")
        if not upload.ok:
            logger.error("Blob upload failed (actor=%s file=%s): %s", identity.custom_id, file_name, upload.error)
            raise StorageUploadFailed("Failed to upload original document")
        storage_reference = f"{bucket}/{path}"

        try:
            doc = self.store.create(
                s,
                file_name=file_name,
                file_size=file_size,
                file_type=file_type,
                content_hash=content_hash,
                storage_reference=storage_reference,
                public_url=upload.url,
                owner_identity=identity.custom_id,
                reviewer_identity=(reviewer_id or "").strip() or None,
                metadata_json=json.dumps(metadata, sort_keys=True) if metadata else None,
            )
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            # No automatic delete from the blob store; reconcile from this line.
            logger.error(
                "Orphaned blob %s: document record creation failed (actor=%s hash=%s): %s",
                storage_reference,
                identity.custom_id,
                content_hash,
                e,
            )
            raise _store_failure(e, "create document record", RecordCreationFailed) from e

        # Detach: the ledger write below may roll back without touching this snapshot.
        s.expunge(doc)

        try:
            self.ledger.append(
                s,
                document_id=doc.id,
                actor_identity=identity.custom_id,
                action=ACTION_UPLOAD,
                detail={
                    "previous_status": None,
                    "new_status": STATUS_UPLOADED,
                    "file_name": file_name,
                    "file_size": file_size,
                    "content_hash": content_hash,
                    "storage_reference": storage_reference,
                    "force_upload": force,
                },
                provenance=provenance,
            )
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            logger.critical(
                "Integrity warning: ledger gap, upload of document %s by %s has no audit entry: %s",
                doc.id,
                identity.custom_id,
                e,
            )
            return SubmitResult(document=doc, public_url=upload.url, audit_recorded=False)

        logger.info("Document %s uploaded by %s (%s bytes)", doc.id, identity.custom_id, file_size)
        return SubmitResult(document=doc, public_url=upload.url)


# ============================================================================
# Accept / reject
# ============================================================================


@dataclass(frozen=True)
class TransitionResult:
    document: Document
    changed: bool


@dataclass(frozen=True)
class TransitionProcessor:
    store: DocumentStore
    ledger: AuditLedger
    authorization: str = "any"
    reapply_policy: str = REAPPLY_IDEMPOTENT
    default_rejection_reason: str = "Document rejected during preview"

    def apply(
        self,
        s: Session,
        identity: Identity,
        document_id: str,
        action: str,
        *,
        reason: str | None = None,
        provenance: Provenance | None = None,
    ) -> TransitionResult:
        new_status = ACTIONS.get(action) if isinstance(action, str) else None
        if new_status is None:
            raise ValidationError('Invalid action. Must be "accept" or "reject"', kind="invalid_action")

        doc = require_document(self.store, s, document_id)
        ensure_may_transition(self.authorization, identity, doc)

        previous_status = doc.status
        if previous_status == new_status:
            if self.reapply_policy == REAPPLY_REJECT:
                raise AlreadyInState(f"Document is already {new_status}")
            return TransitionResult(document=doc, changed=False)
        if new_status not in STATUS_TRANSITIONS.get(previous_status, set()):
            raise InvalidTransition(f"Cannot transition from '{previous_status}' to '{new_status}'")

        now = datetime.utcnow()
        try:
            swapped = self.store.compare_and_set_status(
                s, doc.id, expected=previous_status, new=new_status, now=now
            )
        except SQLAlchemyError as e:
            s.rollback()
            logger.error("Status write failed (document_id=%s action=%s actor=%s): %s", doc.id, action, identity.custom_id, e)
            raise _store_failure(e, "update document status", RecordUpdateFailed) from e
        if not swapped:
            s.rollback()
            logger.warning(
                "Conflicting transition on document %s: %s by %s lost the race", doc.id, action, identity.custom_id
            )
            raise ConflictingTransition("Document status changed concurrently; re-fetch and decide again")

        detail: dict[str, Any] = {
            "previous_status": previous_status,
            "new_status": new_status,
            "file_name": doc.file_name,
            "content_hash": doc.content_hash,
        }
        if new_status == STATUS_REJECTED:
            detail["reason"] = (reason or "").strip() or self.default_rejection_reason
        elif reason and reason.strip():
            detail["reason"] = reason.strip()

        # Status write and ledger entry commit together or not at all.
        try:
            self.ledger.append(
                s,
                document_id=doc.id,
                actor_identity=identity.custom_id,
                action=_LEDGER_ACTION[new_status],
                detail=detail,
                provenance=provenance,
                timestamp=now,
            )
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            logger.error(
                "Audit write failed, transition rolled back (document_id=%s action=%s actor=%s): %s",
                doc.id,
                action,
                identity.custom_id,
                e,
            )
            if is_timeout_error(e):
                raise Timeout("Timed out while recording the transition") from e
            raise AuditWriteFailed("Transition not applied: audit entry could not be written") from e

        s.refresh(doc)
        logger.info("Document %s %s by %s", doc.id, new_status, identity.custom_id)
        return TransitionResult(document=doc, changed=True)


# ============================================================================
# History & integrity
# ============================================================================


@dataclass(frozen=True)
class HistoryResult:
    document: Document
    entries: list = field(default_factory=list)
    ledger_consistent: bool = True


def document_history(s: Session, store: DocumentStore, ledger: AuditLedger, document_id: str) -> HistoryResult:
    doc = require_document(store, s, document_id)
    try:
        entries = ledger.entries_for(s, doc.id)
    except SQLAlchemyError as e:
        raise _store_failure(e, "read audit entries", RecordLookupFailed) from e
    consistent = ledger.is_consistent(s, doc.id, doc.status)
    if not consistent:
        logger.critical("Integrity warning: ledger replay does not match status of document %s", doc.id)
    return HistoryResult(document=doc, entries=entries, ledger_consistent=consistent)


def list_documents(s: Session, store: DocumentStore, ledger: AuditLedger, custom_id: str) -> list[HistoryResult]:
    """The caller's documents (owned or assigned for review), newest first, each with its ledger."""
    try:
        docs = store.list_for(s, custom_id)
        results = []
        for doc in docs:
            entries = ledger.entries_for(s, doc.id)
            consistent = ledger.is_consistent(s, doc.id, doc.status)
            if not consistent:
                logger.critical("Integrity warning: ledger replay does not match status of document %s", doc.id)
            results.append(HistoryResult(document=doc, entries=entries, ledger_consistent=consistent))
    except SQLAlchemyError as e:
        logger.error("Listing documents for %s failed: %s", custom_id, e)
        raise _store_failure(e, "list documents", RecordLookupFailed) from e
    return results


@dataclass(frozen=True)
class VerificationResult:
    document: Document
    match: bool
    computed_hash: str


@dataclass(frozen=True)
class IntegrityService:
    storage: Storage
    store: DocumentStore
    ledger: AuditLedger

    def _record(
        self,
        s: Session,
        identity: Identity,
        doc: Document,
        *,
        method: str,
        computed_hash: str,
        match: bool,
        provenance: Provenance | None,
    ) -> None:
        try:
            self.ledger.append(
                s,
                document_id=doc.id,
                actor_identity=identity.custom_id,
                action=ACTION_VERIFIED,
                detail={
                    "status": doc.status,
                    "file_name": doc.file_name,
                    "content_hash": doc.content_hash,
                    "computed_hash": computed_hash,
                    "method": method,
                    "match": match,
                },
                provenance=provenance,
            )
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            logger.error("Verification of document %s by %s not recorded: %s", doc.id, identity.custom_id, e)
            raise AuditWriteFailed("Verification result could not be recorded") from e

    def verify_bytes(
        self,
        s: Session,
        identity: Identity,
        document_id: str,
        data: bytes,
        *,
        provenance: Provenance | None = None,
    ) -> VerificationResult:
        """Compare caller-supplied bytes against the fingerprint taken at upload."""
        if not data:
            raise ValidationError("Missing required field: file")
        doc = require_document(self.store, s, document_id)
        computed = content_fingerprint(data)
        match = fingerprint_matches(data, doc.content_hash)
        self._record(s, identity, doc, method="supplied_bytes", computed_hash=computed, match=match, provenance=provenance)
        return VerificationResult(document=doc, match=match, computed_hash=computed)

    def verify_stored(
        self,
        s: Session,
        identity: Identity,
        document_id: str,
        *,
        provenance: Provenance | None = None,
    ) -> VerificationResult:
        """Re-read the stored blob and compare it against the upload fingerprint."""
        doc = require_document(self.store, s, document_id)
        try:
            bucket, path = split_reference(doc.storage_reference)
            data = self.storage.read(bucket, path)
        except StorageError as e:
            logger.error("Stored copy of document %s unreadable: %s", doc.id, e)
            raise IntegrityCheckFailed("Stored copy could not be read") from e
        computed = content_fingerprint(data)
        match = fingerprint_matches(data, doc.content_hash)
        if not match:
            logger.critical(
                "Integrity warning: stored copy of document %s does not match its upload fingerprint", doc.id
            )
        self._record(s, identity, doc, method="stored_copy", computed_hash=computed, match=match, provenance=provenance)
        return VerificationResult(document=doc, match=match, computed_hash=computed)
