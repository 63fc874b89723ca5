from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.docledger.errors import InvalidCredential, Unauthenticated

bp = Blueprint("auth", __name__)

TOKEN_SALT = "docledger-auth"


@dataclass(frozen=True)
class Identity:
    custom_id: str
    wallet_address: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"custom_id": self.custom_id, "wallet_address": self.wallet_address}


@dataclass(frozen=True)
class VerifyResult:
    identity: Identity | None = None
    error: str | None = None


class IdentityProvider:
    """
    Signs and verifies time-limited identity tokens.

    The payload is the only source of an Identity; nothing in a request body
    can name the caller.
    """

    def __init__(self, secret_key: str, *, max_age_seconds: int) -> None:
        self.max_age_seconds = max_age_seconds
        self._serializer = URLSafeTimedSerializer(secret_key, salt=TOKEN_SALT)

    def issue(self, identity: Identity) -> str:
        payload: dict[str, Any] = {"custom_id": identity.custom_id}
        if identity.wallet_address:
            payload["wallet_address"] = identity.wallet_address
        return self._serializer.dumps(payload)

    def verify(self, token: str) -> VerifyResult:
        try:
            payload = self._serializer.loads(token, max_age=self.max_age_seconds)
        except SignatureExpired:
            return VerifyResult(error="Token expired")
        except BadSignature:
            return VerifyResult(error="Invalid or malformed token")
        if not isinstance(payload, dict):
            return VerifyResult(error="Invalid token payload")
        custom_id = str(payload.get("custom_id") or "").strip()
        if not custom_id:
            return VerifyResult(error="Token carries no identity")
        wallet = str(payload.get("wallet_address") or "").strip() or None
        return VerifyResult(identity=Identity(custom_id=custom_id, wallet_address=wallet))


class IdentityGate:
    def __init__(self, provider: IdentityProvider) -> None:
        self.provider = provider

    def authenticate(self, token: str | None) -> Identity:
        token = (token or "").strip()
        if not token:
            raise Unauthenticated("Authentication required")
        result = self.provider.verify(token)
        if result.identity is None:
            raise InvalidCredential(result.error or "Invalid authentication token")
        return result.identity


def _request_token() -> str | None:
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME") or "auth-token"
    token = request.cookies.get(cookie_name)
    if token:
        return token
    header = request.headers.get("Authorization") or ""
    if header.startswith("Bearer "):
        return header[len("Bearer "):]
    return None


def load_current_identity() -> None:
    """
    Resolves g.identity from the signed credential (cookie, then bearer header).
    Also assigns a per-request request_id for audit/log correlation.
    Failures are parked on g.auth_error; require_identity raises them.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.identity = None
    g.auth_error = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    gate: IdentityGate = current_app.extensions["docledger"].identity_gate
    try:
        g.identity = gate.authenticate(_request_token())
    except (Unauthenticated, InvalidCredential) as e:
        g.auth_error = e
        if isinstance(e, InvalidCredential):
            current_app.logger.info("Rejected credential (request_id=%s): %s", g.request_id, e)


@bp.get("/me")
def me():
    from app.docledger.rbac import current_identity

    return jsonify({"success": True, "identity": current_identity().to_dict()})


@bp.post("/session")
def create_session():
    """
    Exchange a provider-issued token for the same-origin auth cookie.
    The token is verified first; an unverifiable token never becomes a cookie.
    """
    payload = request.get_json(silent=True) or {}
    token = payload.get("token") if isinstance(payload, dict) else None
    gate: IdentityGate = current_app.extensions["docledger"].identity_gate
    identity = gate.authenticate(token if isinstance(token, str) else None)
    resp = jsonify({"success": True, "identity": identity.to_dict()})
    return set_auth_cookie(resp, token)


@bp.post("/clear")
def clear():
    resp = jsonify({"success": True})
    resp.delete_cookie(current_app.config.get("AUTH_COOKIE_NAME") or "auth-token", path="/")
    return resp


def set_auth_cookie(resp, token: str):
    resp.set_cookie(
        current_app.config.get("AUTH_COOKIE_NAME") or "auth-token",
        token,
        max_age=int(current_app.config.get("AUTH_TOKEN_MAX_AGE_SECONDS") or 86400),
        httponly=True,
        secure=bool(current_app.config.get("AUTH_COOKIE_SECURE")),
        samesite="Strict",
        path="/",
    )
    return resp
