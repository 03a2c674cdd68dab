from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from app.docportal.errors import StorageError

logger = logging.getLogger(__name__)


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def signed_url(self, key: str, ttl_seconds: int) -> str | None:
        """Time-limited URL for direct download, or None when the backend cannot issue one."""
        return None

    def get_bytes(self, key: str) -> bytes:
        fobj = self.open(key)
        try:
            return fobj.read()
        except OSError as e:
            raise StorageError(f"Read failed for {key}: {e}") from e
        finally:
            fobj.close()


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        if ".." in safe_key.split("/"):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.root / safe_key

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Local write failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        try:
            return p.open("rb")
        except OSError as e:
            raise StorageError(f"Local read failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        p = self._path(key)
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Local delete failed for {key}: {e}") from e


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    timeout_seconds: int = 30

    def _client(self):
        import boto3
        from botocore.config import Config

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=Config(
                connect_timeout=self.timeout_seconds,
                read_timeout=self.timeout_seconds,
                retries={"max_attempts": 1},
            ),
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 put failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 get failed for {key}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]

    def get_bytes(self, key: str) -> bytes:
        from botocore.exceptions import BotoCoreError

        body = self.open(key)
        try:
            return body.read()
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 read failed for {key}: {e}") from e
        finally:
            body.close()

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete(self, key: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client().delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete failed for {key}: {e}") from e

    def signed_url(self, key: str, ttl_seconds: int) -> str | None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return self._client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 presign failed for {key}: {e}") from e


def put_with_retry(
    storage: Storage,
    key: str,
    data: bytes,
    *,
    content_type: str | None = None,
    retries: int = 3,
    backoff_seconds: float = 0.5,
) -> None:
    """
    At-least-once put. Storage keys are deterministic per upload, so a retried
    put overwrites the same object instead of leaving duplicates behind.
    """
    last_err: StorageError | None = None
    for attempt in range(retries + 1):
        try:
            storage.put_bytes(key, data, content_type=content_type)
            return
        except StorageError as e:
            last_err = e
            logger.warning("Storage put failed (key=%s attempt=%s/%s): %s", key, attempt + 1, retries + 1, e)
            if attempt < retries:
                time.sleep(min(backoff_seconds * (2**attempt), 5))
    raise StorageError(f"Storage put failed after {retries + 1} attempts: {last_err}")


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            timeout_seconds=int(config.get("STORAGE_TIMEOUT_SECONDS") or 30),
        )
    # default local
    root = (config.get("STORAGE_ROOT") or "").strip()
    return LocalStorage(root=Path(root) if root else Path(os.getcwd()) / "storage")
