from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.docledger.auth import Identity
from app.docledger.errors import Forbidden, Unauthenticated
from app.docledger.modules.documents.models import Document

POLICY_ANY = "any"
POLICY_REVIEWER = "reviewer"


def current_identity() -> Identity:
    identity: Identity | None = getattr(g, "identity", None)
    if identity is None:
        raise getattr(g, "auth_error", None) or Unauthenticated("Authentication required")
    return identity


def require_identity(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Reject the request with 401 before the view body runs."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        current_identity()
        return fn(*args, **kwargs)

    return wrapped


def designated_reviewer(doc: Document) -> str:
    return doc.reviewer_identity or doc.owner_identity


def ensure_may_transition(policy: str, identity: Identity, doc: Document) -> None:
    """
    "any": every verified identity may accept/reject.
    "reviewer": only the designated reviewer (the owner when none was named).
    """
    if policy == POLICY_ANY:
        return
    if policy == POLICY_REVIEWER:
        if identity.custom_id != designated_reviewer(doc):
            raise Forbidden("Only the designated reviewer may accept or reject this document")
        return
    raise ValueError(f"Unknown transition authorization policy: {policy!r}")
