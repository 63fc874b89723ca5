from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.docledger.integrity import is_fingerprint

from .models import STATUS_UPLOADED, VALID_STATUSES, Document

FOUND = "found"
NOT_FOUND = "not_found"
FAILED = "failed"


@dataclass(frozen=True)
class Lookup:
    """Outcome of reading a document: found, not found, or the store failed."""

    outcome: str
    document: Document | None = None
    error: SQLAlchemyError | None = None

    @property
    def found(self) -> bool:
        return self.outcome == FOUND


class DocumentStore:
    """Holds the mutable status projection, one row per document."""

    def create(
        self,
        s: Session,
        *,
        file_name: str,
        file_size: int,
        file_type: str,
        content_hash: str,
        storage_reference: str,
        public_url: str | None,
        owner_identity: str,
        reviewer_identity: str | None = None,
        metadata_json: str | None = None,
    ) -> Document:
        if not is_fingerprint(content_hash):
            raise ValueError(f"content_hash must be a sha256 hex digest (got {content_hash!r})")
        now = datetime.utcnow()
        d = Document(
            file_name=file_name,
            file_size=file_size,
            file_type=file_type,
            content_hash=content_hash,
            storage_reference=storage_reference,
            public_url=public_url,
            status=STATUS_UPLOADED,
            metadata_json=metadata_json,
            owner_identity=owner_identity,
            reviewer_identity=reviewer_identity,
            created_at=now,
            updated_at=now,
        )
        s.add(d)
        s.flush()
        return d

    def lookup(self, s: Session, document_id: str) -> Lookup:
        try:
            d = s.get(Document, document_id)
        except SQLAlchemyError as e:
            return Lookup(FAILED, error=e)
        if d is None:
            return Lookup(NOT_FOUND)
        return Lookup(FOUND, document=d)

    def find_by_hash(self, s: Session, owner_identity: str, content_hash: str) -> Document | None:
        return (
            s.query(Document)
            .filter(Document.owner_identity == owner_identity)
            .filter(Document.content_hash == content_hash)
            .order_by(Document.created_at.asc())
            .first()
        )

    def list_for(self, s: Session, custom_id: str) -> list[Document]:
        """Documents the identity owns or was named to review, newest first."""
        return (
            s.query(Document)
            .filter(or_(Document.owner_identity == custom_id, Document.reviewer_identity == custom_id))
            .order_by(Document.created_at.desc(), Document.id.asc())
            .all()
        )

    def compare_and_set_status(
        self,
        s: Session,
        document_id: str,
        *,
        expected: str,
        new: str,
        now: datetime,
    ) -> bool:
        """
        Conditional status write. Returns False when the row no longer holds
        ``expected`` (another transition won), leaving it untouched.
        """
        if new not in VALID_STATUSES:
            raise ValueError(f"Unknown document status: {new!r}")
        res = s.execute(
            update(Document)
            .where(Document.id == document_id, Document.status == expected)
            .values(status=new, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1
