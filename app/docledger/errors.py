"""
Error taxonomy for the document ledger.

Every public operation raises one of these; the HTTP layer renders them as
``{"error": kind, "message": ...}`` with the matching status code.
"""
from __future__ import annotations


class DocLedgerError(RuntimeError):
    kind = "internal_error"
    http_status = 500

    def __init__(self, message: str = "", *, kind: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if kind:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


# caller identity problems (never retried)
class Unauthenticated(DocLedgerError):
    kind = "unauthenticated"
    http_status = 401


class InvalidCredential(DocLedgerError):
    kind = "invalid_credential"
    http_status = 401


class ValidationError(DocLedgerError):
    kind = "validation_error"
    http_status = 400


class Forbidden(DocLedgerError):
    kind = "forbidden"
    http_status = 403


class NotFound(DocLedgerError):
    kind = "not_found"
    http_status = 404


# conflicts (caller may re-fetch and decide)
class ConflictingTransition(DocLedgerError):
    kind = "conflicting_transition"
    http_status = 409


class InvalidTransition(DocLedgerError):
    kind = "invalid_transition"
    http_status = 409


class AlreadyInState(DocLedgerError):
    kind = "already_in_state"
    http_status = 409


class DuplicateDocument(DocLedgerError):
    kind = "duplicate_document"
    http_status = 409

    def __init__(self, message: str = "", *, existing_document_id: str | None = None) -> None:
        super().__init__(message)
        self.existing_document_id = existing_document_id


# infrastructure failures
class StorageUploadFailed(DocLedgerError):
    kind = "storage_upload_failed"


class RecordCreationFailed(DocLedgerError):
    kind = "record_creation_failed"


class RecordLookupFailed(DocLedgerError):
    kind = "record_lookup_failed"


class RecordUpdateFailed(DocLedgerError):
    kind = "record_update_failed"


class AuditWriteFailed(DocLedgerError):
    kind = "audit_write_failed"


class IntegrityCheckFailed(DocLedgerError):
    kind = "integrity_check_failed"


class Timeout(DocLedgerError):
    kind = "timeout"


class AuditImmutableError(RuntimeError):
    """Raised when something tries to update or delete a written audit entry."""
