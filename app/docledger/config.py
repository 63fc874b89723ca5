import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    storage_root: str
    storage_bucket: str
    public_base_url: str
    s3_endpoint: str
    s3_region: str
    s3_access_key_id: str
    s3_secret_access_key: str

    max_file_size_bytes: int
    allowed_file_types: frozenset[str]

    auth_cookie_name: str
    auth_token_max_age_seconds: int
    store_timeout_seconds: int

    transition_authorization: str
    reapply_policy: str
    rejection_default_reason: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from e


def _parse_types(raw: str) -> frozenset[str]:
    return frozenset(t.strip().lower() for t in raw.split(",") if t.strip())


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///docledger.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", os.path.join(os.getcwd(), "storage")),
        storage_bucket=_getenv("STORAGE_BUCKET", "documents"),
        public_base_url=_getenv("PUBLIC_BASE_URL", "http://localhost:8080/files"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        max_file_size_bytes=_getenv_int("MAX_FILE_SIZE_BYTES", 10 * 1024 * 1024),
        allowed_file_types=_parse_types(_getenv("ALLOWED_FILE_TYPES", "application/pdf")),
        auth_cookie_name=_getenv("AUTH_COOKIE_NAME", "auth-token"),
        auth_token_max_age_seconds=_getenv_int("AUTH_TOKEN_MAX_AGE_SECONDS", 24 * 60 * 60),
        store_timeout_seconds=_getenv_int("STORE_TIMEOUT_SECONDS", 10),
        transition_authorization=_getenv("TRANSITION_AUTHORIZATION", "any").lower(),
        reapply_policy=_getenv("REAPPLY_POLICY", "idempotent").lower(),
        rejection_default_reason=_getenv("REJECTION_DEFAULT_REASON", "Document rejected during preview"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    if s.transition_authorization not in ("any", "reviewer"):
        raise RuntimeError("TRANSITION_AUTHORIZATION must be 'any' or 'reviewer'.")
    if s.reapply_policy not in ("idempotent", "reject"):
        raise RuntimeError("REAPPLY_POLICY must be 'idempotent' or 'reject'.")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "STORAGE_BUCKET": s.storage_bucket,
        "PUBLIC_BASE_URL": s.public_base_url,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "MAX_FILE_SIZE_BYTES": s.max_file_size_bytes,
        "ALLOWED_FILE_TYPES": s.allowed_file_types,
        "AUTH_COOKIE_NAME": s.auth_cookie_name,
        "AUTH_TOKEN_MAX_AGE_SECONDS": s.auth_token_max_age_seconds,
        "STORE_TIMEOUT_SECONDS": s.store_timeout_seconds,
        "TRANSITION_AUTHORIZATION": s.transition_authorization,
        "REAPPLY_POLICY": s.reapply_policy,
        "REJECTION_DEFAULT_REASON": s.rejection_default_reason,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "AUTH_COOKIE_SECURE": is_production,
        # request body cap: one file plus multipart overhead
        "MAX_CONTENT_LENGTH": s.max_file_size_bytes + 1024 * 1024,
    }
