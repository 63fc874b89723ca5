from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.docledger.models import Base

STATUS_UPLOADED = "uploaded"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"

VALID_STATUSES = (STATUS_UPLOADED, STATUS_ACCEPTED, STATUS_REJECTED)

_STATUS_CHECK = "status IN (" + ", ".join(f"'{v}'" for v in VALID_STATUSES) + ")"


def _new_document_id() -> str:
    return str(uuid.uuid4())


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_owner_hash", "owner_identity", "content_hash"),
        CheckConstraint(_STATUS_CHECK, name="ck_documents_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_document_id)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    file_type: Mapped[str] = mapped_column(String(128), nullable=False)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_reference: Mapped[str] = mapped_column(String(1024), nullable=False)
    public_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # uploaded -> accepted | rejected
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_UPLOADED)

    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    owner_identity: Mapped[str] = mapped_column(String(128), nullable=False)
    reviewer_identity: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def metadata_dict(self) -> dict[str, Any]:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "content_hash": self.content_hash,
            "public_url": self.public_url,
            "status": self.status,
            "metadata": self.metadata_dict,
            "owner_id": self.owner_identity,
            "reviewer_id": self.reviewer_identity,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
