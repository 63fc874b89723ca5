from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.docledger.models import AuditEntry
from app.docledger.modules.documents.models import STATUS_ACCEPTED, STATUS_REJECTED, STATUS_UPLOADED

logger = logging.getLogger(__name__)

ACTION_UPLOAD = "upload"
ACTION_ACCEPTED = "accepted"
ACTION_REJECTED = "rejected"
ACTION_VERIFIED = "verified"

# action -> (status the document must be in, status it moves to)
TRANSITION_ACTIONS: dict[str, tuple[str | None, str]] = {
    ACTION_UPLOAD: (None, STATUS_UPLOADED),
    ACTION_ACCEPTED: (STATUS_UPLOADED, STATUS_ACCEPTED),
    ACTION_REJECTED: (STATUS_UPLOADED, STATUS_REJECTED),
}


class LedgerReplayError(ValueError):
    pass


@dataclass(frozen=True)
class Provenance:
    request_id: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    client_signature: str | None = None


def _client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.headers.get("X-Real-IP") or request.headers.get("X-Client-IP") or request.remote_addr


def request_provenance() -> Provenance:
    """Snapshot of the current request for forensic reconstruction."""
    if not has_request_context():
        return Provenance()
    ua = request.headers.get("User-Agent")
    return Provenance(
        request_id=getattr(g, "request_id", None),
        client_ip=_client_ip(),
        user_agent=ua[:512] if ua else None,
        client_signature=request.headers.get("X-Client-Signature") or None,
    )


def entry_detail(entry: AuditEntry) -> dict[str, Any]:
    return json.loads(entry.detail_json) if entry.detail_json else {}


def entry_to_dict(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "document_id": entry.document_id,
        "actor_id": entry.actor_identity,
        "action": entry.action,
        "timestamp": entry.created_at.isoformat() if entry.created_at else None,
        "details": entry_detail(entry),
        "request_id": entry.request_id,
        "ip_address": entry.client_ip,
    }


class AuditLedger:
    """
    Append-only ledger of attributable document actions.

    ``append`` only stages the row on the caller's session; the caller decides
    which transaction it commits with.
    """

    def append(
        self,
        s: Session,
        *,
        document_id: str,
        actor_identity: str,
        action: str,
        detail: dict[str, Any],
        provenance: Provenance | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        if not actor_identity:
            raise ValueError("audit entries require an acting identity")
        p = provenance or Provenance()
        entry = AuditEntry(
            document_id=document_id,
            actor_identity=actor_identity,
            action=action,
            created_at=timestamp or datetime.utcnow(),
            detail_json=json.dumps(detail, sort_keys=True, default=str),
            request_id=p.request_id,
            client_ip=p.client_ip,
            user_agent=p.user_agent,
            client_signature=p.client_signature,
        )
        s.add(entry)
        return entry

    def entries_for(self, s: Session, document_id: str) -> list[AuditEntry]:
        return (
            s.query(AuditEntry)
            .filter(AuditEntry.document_id == document_id)
            .order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc())
            .all()
        )

    @staticmethod
    def replay_status(entries: Iterable[AuditEntry]) -> str | None:
        """
        Fold transition entries (in timestamp order) into a document status.
        Non-transition entries such as verifications are skipped.
        """
        status: str | None = None
        for e in entries:
            step = TRANSITION_ACTIONS.get(e.action)
            if step is None:
                continue
            required, target = step
            if status != required:
                raise LedgerReplayError(
                    f"entry {e.id} ({e.action}) found document in {status!r}, expected {required!r}"
                )
            recorded_previous = entry_detail(e).get("previous_status")
            if recorded_previous != required:
                raise LedgerReplayError(f"entry {e.id} records previous_status={recorded_previous!r}")
            status = target
        return status

    def is_consistent(self, s: Session, document_id: str, current_status: str) -> bool:
        try:
            return self.replay_status(self.entries_for(s, document_id)) == current_status
        except LedgerReplayError as e:
            logger.error("Ledger replay failed for document %s: %s", document_id, e)
            return False
