from __future__ import annotations

from dataclasses import dataclass

from app.docledger.audit import AuditLedger
from app.docledger.auth import IdentityGate, IdentityProvider
from app.docledger.modules.documents.service import (
    IntegrityService,
    TransitionProcessor,
    UploadOrchestrator,
    UploadPolicy,
)
from app.docledger.modules.documents.store import DocumentStore
from app.docledger.storage import Storage, storage_from_config


@dataclass
class Services:
    """
    Process-wide collaborators. Built once in create_app and shared by every
    request through ``app.extensions["docledger"]``.
    """

    storage: Storage
    store: DocumentStore
    ledger: AuditLedger
    identity_gate: IdentityGate
    uploads: UploadOrchestrator
    transitions: TransitionProcessor
    integrity: IntegrityService


def build_services(config: dict, *, storage: Storage | None = None) -> Services:
    storage = storage or storage_from_config(config)
    store = DocumentStore()
    ledger = AuditLedger()
    provider = IdentityProvider(
        config["SECRET_KEY"],
        max_age_seconds=int(config.get("AUTH_TOKEN_MAX_AGE_SECONDS") or 86400),
    )
    policy = UploadPolicy(
        max_file_size_bytes=int(config["MAX_FILE_SIZE_BYTES"]),
        allowed_types=frozenset(config["ALLOWED_FILE_TYPES"]),
        bucket=config.get("STORAGE_BUCKET") or "documents",
    )
    return Services(
        storage=storage,
        store=store,
        ledger=ledger,
        identity_gate=IdentityGate(provider),
        uploads=UploadOrchestrator(storage=storage, store=store, ledger=ledger, policy=policy),
        transitions=TransitionProcessor(
            store=store,
            ledger=ledger,
            authorization=config.get("TRANSITION_AUTHORIZATION") or "any",
            reapply_policy=config.get("REAPPLY_POLICY") or "idempotent",
            default_rejection_reason=config.get("REJECTION_DEFAULT_REASON") or "Document rejected during preview",
        ),
        integrity=IntegrityService(storage=storage, store=store, ledger=ledger),
    )
