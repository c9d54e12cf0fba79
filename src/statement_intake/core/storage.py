from __future__ import annotations

import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from statement_intake.core.config import settings
from statement_intake.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

T = TypeVar("T")


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int


class ObjectStorage:
    """Reader/writer for uploaded documents.

    The parse pipeline only calls `get` and `size`; `put` and `delete` serve job
    submission. Every backend failure surfaces as StorageError.
    """

    def put(self, *, key: str, body: bytes) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError

    def size(self, *, key: str) -> int:  # pragma: no cover
        raise NotImplementedError

    def delete(self, *, key: str) -> None:  # pragma: no cover
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def _existing(self, key: str) -> Path:
        path = self._path(key)
        if not path.exists():
            raise StorageError(f"Object not found: {key}")
        return path

    def _run(self, op: str, key: str, fn: Callable[[], T], **fields: Any) -> T:
        start = time.monotonic()
        try:
            result = fn()
        except StorageError:
            log_event(logger, f"storage.{op}.failure", backend="local", storage_key=key)
            raise
        except OSError as e:
            log_exception(
                logger,
                f"storage.{op}.failure",
                backend="local",
                storage_key=key,
                duration_ms=monotonic_ms(start),
            )
            raise StorageError(f"Could not {op} object {key}: {e.strerror or e}") from e
        if op == "put":
            log_event(
                logger,
                "storage.put.success",
                backend="local",
                storage_key=key,
                duration_ms=monotonic_ms(start),
                **fields,
            )
        return result

    def put(self, *, key: str, body: bytes) -> StoredObject:
        def _write() -> StoredObject:
            path = self._path(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
            return StoredObject(key=key, byte_size=len(body))

        return self._run("put", key, _write, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        return self._run("get", key, lambda: self._existing(key).read_bytes())

    def size(self, *, key: str) -> int:
        return self._run("size", key, lambda: self._existing(key).stat().st_size)

    def delete(self, *, key: str) -> None:
        def _unlink() -> None:
            self._path(key).unlink(missing_ok=True)

        self._run("delete", key, _unlink)


_TRANSIENT_S3_CODES = frozenset(
    {
        "RequestTimeout",
        "Throttling",
        "ThrottlingException",
        "SlowDown",
        "InternalError",
        "ServiceUnavailable",
    }
)


def _is_transient(error: Exception) -> bool:
    if isinstance(error, ClientError):
        return (error.response.get("Error") or {}).get("Code") in _TRANSIENT_S3_CODES
    return isinstance(error, BotoCoreError)


def _s3_client():
    from botocore.config import Config

    region = settings.s3_region
    if not region or region.lower() == "auto":
        region = "us-east-1"
    session = boto3.session.Session(
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        region_name=region,
    )
    return session.client(
        "s3",
        endpoint_url=settings.s3_endpoint_url or None,
        config=Config(
            s3={"addressing_style": "virtual"},
            retries={"max_attempts": 3, "mode": "adaptive"},
            connect_timeout=30,
            read_timeout=120,
        ),
    )


class S3ObjectStorage(ObjectStorage):
    """S3 (or S3-compatible) backend.

    Every operation is retried on throttling and transient provider errors with
    capped exponential backoff; anything else fails at once.
    """

    max_attempts = 4

    def __init__(
        self,
        *,
        client: Any | None = None,
        bucket: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client if client is not None else _s3_client()
        self._bucket = bucket if bucket is not None else settings.s3_bucket
        self._sleep = sleep

    @staticmethod
    def _backoff_s(attempt: int) -> float:
        return min(3.0, 0.25 * (2 ** (attempt - 1)))

    def _call(self, op: str, key: str, fn: Callable[[], T]) -> T:
        start = time.monotonic()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except Exception as e:  # noqa: BLE001
                if attempt < self.max_attempts and _is_transient(e):
                    delay_s = self._backoff_s(attempt)
                    log_event(
                        logger,
                        f"storage.{op}.retry",
                        backend="s3",
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_type=type(e).__name__,
                    )
                    self._sleep(delay_s)
                    continue
                log_exception(
                    logger,
                    f"storage.{op}.failure",
                    backend="s3",
                    storage_key=key,
                    attempt=attempt,
                    duration_ms=monotonic_ms(start),
                )
                raise StorageError(f"Could not {op} object {key}: {type(e).__name__}") from e
        raise StorageError(f"Could not {op} object {key}")  # pragma: no cover

    def put(self, *, key: str, body: bytes) -> StoredObject:
        start = time.monotonic()
        self._call(
            "put",
            key,
            lambda: self._client.put_object(Bucket=self._bucket, Key=key, Body=body),
        )
        log_event(
            logger,
            "storage.put.success",
            backend="s3",
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        return self._call(
            "get",
            key,
            lambda: self._client.get_object(Bucket=self._bucket, Key=key)["Body"].read(),
        )

    def size(self, *, key: str) -> int:
        head = self._call(
            "size", key, lambda: self._client.head_object(Bucket=self._bucket, Key=key)
        )
        return int(head.get("ContentLength") or 0)

    def delete(self, *, key: str) -> None:
        self._call(
            "delete", key, lambda: self._client.delete_object(Bucket=self._bucket, Key=key)
        )


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    if settings.storage_backend == "s3":
        _storage = S3ObjectStorage()
    else:
        root = settings.local_storage_path
        if not root.is_absolute():
            root = Path(os.getcwd()) / root
        _storage = LocalObjectStorage(root)
    return _storage
