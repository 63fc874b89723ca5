from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.docledger.errors import AuditImmutableError


class Base(DeclarativeBase):
    pass


class AuditEntry(Base):
    """
    Append-only audit trail entry.

    One row per attributable action against one document. Rows are never
    updated or deleted; the ``detail_json`` snapshot carries enough context
    (previous/new status, file name, hash, reason) to explain the action
    without re-reading the document, whose state may have moved on.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("idx_audit_entries_document_created", "document_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[str] = mapped_column(String(36), nullable=False)
    actor_identity: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "upload", "accepted"
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    detail_json: Mapped[str] = mapped_column(Text, nullable=False)

    # request provenance (forensics)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    client_signature: Mapped[str | None] = mapped_column(String(1024), nullable=True)


@event.listens_for(AuditEntry, "before_update")
def _refuse_audit_update(mapper, connection, target):  # type: ignore[no-redef]
    raise AuditImmutableError(f"audit entry {target.id} is immutable")


@event.listens_for(AuditEntry, "before_delete")
def _refuse_audit_delete(mapper, connection, target):  # type: ignore[no-redef]
    raise AuditImmutableError(f"audit entry {target.id} cannot be deleted")


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.docledger.modules.documents.models import Document  # noqa: E402,F401
