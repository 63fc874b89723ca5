from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class UploadResult:
    url: str | None = None
    error: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out


class Storage:
    """
    Blob store boundary. ``upload`` never raises for backend failures; it
    reports them in the result so the caller decides what a failure means.
    """

    def upload(self, data: bytes, bucket: str, path: str, *, content_type: str | None = None) -> UploadResult:
        raise NotImplementedError

    def read(self, bucket: str, path: str) -> bytes:
        raise NotImplementedError


def split_reference(storage_reference: str) -> tuple[str, str]:
    bucket, _, path = (storage_reference or "").partition("/")
    if not bucket or not path:
        raise StorageError(f"Malformed storage reference: {storage_reference!r}")
    return bucket, path


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    public_base_url: str = ""

    def _path(self, bucket: str, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        p = (self.root / bucket / safe_key).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Refusing path outside storage root: {key!r}")
        return p

    def upload(self, data: bytes, bucket: str, path: str, *, content_type: str | None = None) -> UploadResult:
        try:
            p = self._path(bucket, path)
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except (OSError, StorageError) as e:
            logger.error("Local upload failed (bucket=%s path=%s): %s", bucket, path, e)
            return UploadResult(error=str(e))
        base = self.public_base_url.rstrip("/")
        return UploadResult(url=f"{base}/{bucket}/{path}" if base else p.as_uri())

    def read(self, bucket: str, path: str) -> bytes:
        try:
            return self._path(bucket, path).read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read {bucket}/{path}: {e}") from e


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    access_key_id: str
    secret_access_key: str
    timeout_seconds: int = 10

    def _client(self):
        import boto3
        from botocore.config import Config

        # single attempt, bounded by STORE_TIMEOUT_SECONDS
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=Config(
                signature_version="s3v4",
                connect_timeout=self.timeout_seconds,
                read_timeout=self.timeout_seconds,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )

    def _public_url(self, bucket: str, key: str) -> str:
        if self.endpoint:
            return f"https://{bucket}.{self.endpoint}/{key}"
        return f"https://{bucket}.s3.amazonaws.com/{key}"

    def upload(self, data: bytes, bucket: str, path: str, *, content_type: str | None = None) -> UploadResult:
        from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._client().put_object(Bucket=bucket, Key=path, Body=data, **extra)
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            logger.error("S3 upload timed out (bucket=%s key=%s): %s", bucket, path, e)
            return UploadResult(error=str(e), timed_out=True)
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 upload failed (bucket=%s key=%s): %s", bucket, path, e)
            return UploadResult(error=str(e))
        return UploadResult(url=self._public_url(bucket, path))

    def read(self, bucket: str, path: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            obj = self._client().get_object(Bucket=bucket, Key=path)
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot read {bucket}/{path}: {e}") from e


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            timeout_seconds=int(config.get("STORE_TIMEOUT_SECONDS") or 10),
        )
    # default local
    return LocalStorage(
        root=Path(config.get("STORAGE_ROOT") or "storage"),
        public_base_url=(config.get("PUBLIC_BASE_URL") or "").strip(),
    )
