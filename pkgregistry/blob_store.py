"""
Content store for package archives.

Blobs are addressed by (package name, version) and hold exactly one archive
per key. Writes are atomic and create-once: an existing blob is never
overwritten, and a concurrent second writer gets ``BlobExistsError``.

Backends:
- LocalBlobStore: ``<root>/<name>/<version>/package.zip`` on the local filesystem
- S3BlobStore: ``<prefix>/<name>/<version>/package.zip`` in an S3 bucket

Env vars (via pkgregistry.config.Settings):
- REGISTRY_BLOB_BACKEND=local|s3 (default: local)
- REGISTRY_STORAGE_PATH=Packages
- REGISTRY_S3_BUCKET=your-bucket
- REGISTRY_S3_PREFIX=optional/prefix (no leading slash)
- REGISTRY_S3_SSE=aws:kms|AES256 (optional)
- REGISTRY_S3_KMS_KEY_ID=arn:aws:kms:... (optional, when REGISTRY_S3_SSE=aws:kms)
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import uuid
from collections.abc import Iterator
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO

from botocore.exceptions import BotoCoreError, ClientError

from pkgregistry.errors import BlobExistsError, StorageError

logger = logging.getLogger(__name__)

BLOB_FILENAME = "package.zip"
CHUNK_SIZE = 1024 * 1024
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")


def _safe_segment(segment: str) -> str:
    seg = (segment or "").strip()
    if not seg or seg in (".", "..") or ".." in seg:
        raise ValueError("Invalid storage key: path traversal not allowed")
    if not _SEGMENT_RE.match(seg):
        raise ValueError("Invalid storage key: contains unexpected characters")
    if len(seg) > 255:
        raise ValueError("Invalid storage key: segment too long")
    return seg


class BlobStore:
    """Interface shared by the content store backends."""

    def store(self, name: str, version: str, stream: BinaryIO) -> str:
        raise NotImplementedError

    def open(self, name: str, version: str) -> BinaryIO | None:
        raise NotImplementedError

    def open_with_length(self, name: str, version: str) -> tuple[BinaryIO, int | None] | None:
        """Open a blob together with its stored byte length, when the backend knows it."""
        handle = self.open(name, version)
        if handle is None:
            return None
        try:
            length = os.fstat(handle.fileno()).st_size
        except (AttributeError, OSError, ValueError):
            length = None
        return handle, length

    def modified_at(self, name: str, version: str) -> datetime | None:
        raise NotImplementedError

    def retrieve(self, name: str, version: str) -> bytes | None:
        handle = self.open(name, version)
        if handle is None:
            return None
        try:
            return handle.read()
        finally:
            handle.close()

    def remove(self, name: str, version: str) -> bool:
        raise NotImplementedError

    def exists(self, name: str, version: str) -> bool:
        raise NotImplementedError

    def iter_keys(self) -> Iterator[tuple[str, str, datetime]]:
        raise NotImplementedError

    def ping(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _version_dir(self, name: str, version: str) -> Path:
        return self.root / _safe_segment(name) / _safe_segment(version)

    def _path(self, name: str, version: str) -> Path:
        return self._version_dir(name, version) / BLOB_FILENAME

    def store(self, name: str, version: str, stream: BinaryIO) -> str:
        dest = self._path(name, version)
        tmp = dest.with_name(f".{BLOB_FILENAME}.{uuid.uuid4().hex}.part")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as wf:
                shutil.copyfileobj(stream, wf, CHUNK_SIZE)
                wf.flush()
                os.fsync(wf.fileno())
            # link() refuses an existing target, which makes the publish create-once
            os.link(tmp, dest)
        except FileExistsError:
            raise BlobExistsError(f"Blob already exists for {name}@{version}") from None
        except OSError as exc:
            logger.exception("LocalBlobStore.store failed for %s@%s", name, version)
            raise StorageError(f"Failed to store blob for {name}@{version}") from exc
        finally:
            tmp.unlink(missing_ok=True)
        logger.info("Stored blob %s@%s at %s", name, version, dest)
        return str(dest)

    def open(self, name: str, version: str) -> BinaryIO | None:
        try:
            return open(self._path(name, version), "rb")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.exception("LocalBlobStore.open failed for %s@%s", name, version)
            raise StorageError(f"Failed to read blob for {name}@{version}") from exc

    def remove(self, name: str, version: str) -> bool:
        version_dir = self._version_dir(name, version)
        try:
            (version_dir / BLOB_FILENAME).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.exception("LocalBlobStore.remove failed for %s@%s", name, version)
            raise StorageError(f"Failed to delete blob for {name}@{version}") from exc
        # Directories may still hold an in-flight .part file; leave them then
        with suppress(OSError):
            version_dir.rmdir()
            version_dir.parent.rmdir()
        logger.info("Deleted blob %s@%s", name, version)
        return True

    def exists(self, name: str, version: str) -> bool:
        return self._path(name, version).is_file()

    def modified_at(self, name: str, version: str) -> datetime | None:
        try:
            mtime = self._path(name, version).stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to stat blob for {name}@{version}") from exc
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def iter_keys(self) -> Iterator[tuple[str, str, datetime]]:
        for pkg_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for ver_dir in sorted(p for p in pkg_dir.iterdir() if p.is_dir()):
                blob = ver_dir / BLOB_FILENAME
                if blob.is_file():
                    mtime = datetime.fromtimestamp(blob.stat().st_mtime, tz=timezone.utc)
                    yield pkg_dir.name, ver_dir.name, mtime

    def ping(self) -> None:
        if not self.root.is_dir() or not os.access(self.root, os.W_OK):
            raise StorageError(f"Storage root {self.root} is not a writable directory")


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_EXISTS_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3BlobStore(BlobStore):
    def __init__(
        self,
        client: Any,
        bucket: str,
        prefix: str = "",
        sse: str | None = None,
        kms_key_id: str | None = None,
        acl: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3BlobStore requires a bucket name")
        self.client = client
        self.bucket = bucket
        self.prefix = (prefix or "").strip("/")
        self.sse = sse
        self.kms_key_id = kms_key_id
        self.acl = acl

    def _key(self, name: str, version: str) -> str:
        key = f"{_safe_segment(name)}/{_safe_segment(version)}/{BLOB_FILENAME}"
        return f"{self.prefix}/{key}" if self.prefix else key

    def store(self, name: str, version: str, stream: BinaryIO) -> str:
        key = self._key(name, version)
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": stream,
            "ContentType": "application/zip",
            "IfNoneMatch": "*",
        }
        if self.sse:
            params["ServerSideEncryption"] = self.sse
            if self.sse == "aws:kms" and self.kms_key_id:
                params["SSEKMSKeyId"] = self.kms_key_id
        if self.acl:
            params["ACL"] = self.acl
        logger.info("S3BlobStore.store: bucket=%s key=%s", self.bucket, key)
        try:
            self.client.put_object(**params)
        except ClientError as exc:
            if _error_code(exc) in _EXISTS_CODES:
                raise BlobExistsError(f"Blob already exists for {name}@{version}") from None
            safe_params = {k: v for k, v in params.items() if k != "Body"}
            logger.exception("S3 put_object failed: %s | params=%s", exc, safe_params)
            raise StorageError(f"Failed to store blob for {name}@{version}") from exc
        except BotoCoreError as exc:
            logger.exception("S3 put_object failed for %s@%s", name, version)
            raise StorageError(f"Failed to store blob for {name}@{version}") from exc
        return f"s3://{self.bucket}/{key}"

    def _get_object(self, name: str, version: str) -> dict[str, Any] | None:
        key = self._key(name, version)
        try:
            return self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return None
            logger.exception("S3 get_object failed: bucket=%s key=%s", self.bucket, key)
            raise StorageError(f"Failed to read blob for {name}@{version}") from exc
        except BotoCoreError as exc:
            logger.exception("S3 get_object failed: bucket=%s key=%s", self.bucket, key)
            raise StorageError(f"Failed to read blob for {name}@{version}") from exc

    def open(self, name: str, version: str) -> BinaryIO | None:
        obj = self._get_object(name, version)
        return obj["Body"] if obj is not None else None

    def open_with_length(self, name: str, version: str) -> tuple[BinaryIO, int | None] | None:
        obj = self._get_object(name, version)
        if obj is None:
            return None
        length = obj.get("ContentLength")
        return obj["Body"], int(length) if length is not None else None

    def _head_object(self, name: str, version: str) -> dict[str, Any] | None:
        key = self._key(name, version)
        try:
            return self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return None
            logger.exception("S3 head_object failed: bucket=%s key=%s", self.bucket, key)
            raise StorageError(f"Failed to stat blob for {name}@{version}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to stat blob for {name}@{version}") from exc

    def exists(self, name: str, version: str) -> bool:
        return self._head_object(name, version) is not None

    def modified_at(self, name: str, version: str) -> datetime | None:
        head = self._head_object(name, version)
        return head["LastModified"] if head is not None else None

    def remove(self, name: str, version: str) -> bool:
        # delete_object succeeds on missing keys, so existence is checked first
        if not self.exists(name, version):
            return False
        key = self._key(name, version)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.exception("Failed to delete S3 object: %s", key)
            raise StorageError(f"Failed to delete blob for {name}@{version}") from exc
        logger.info("Deleted S3 object %s", key)
        return True

    def iter_keys(self) -> Iterator[tuple[str, str, datetime]]:
        list_prefix = f"{self.prefix}/" if self.prefix else ""
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
                for obj in page.get("Contents", []):
                    parts = obj["Key"][len(list_prefix):].split("/")
                    if len(parts) == 3 and parts[2] == BLOB_FILENAME:
                        yield parts[0], parts[1], obj["LastModified"]
        except (ClientError, BotoCoreError) as exc:
            logger.exception("S3 list_objects_v2 failed: bucket=%s", self.bucket)
            raise StorageError("Failed to list blobs") from exc

    def ping(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"S3 bucket {self.bucket} is not reachable") from exc


def build_blob_store(settings) -> BlobStore:
    if settings.blob_backend == "s3":
        import boto3

        client = boto3.client("s3", region_name=settings.aws_region)
        logger.info("S3 enabled: bucket=%s region=%s prefix=%s", settings.s3_bucket, settings.aws_region, settings.s3_prefix)
        return S3BlobStore(
            client,
            settings.s3_bucket,
            prefix=settings.s3_prefix,
            sse=settings.s3_sse,
            kms_key_id=settings.s3_kms_key_id,
            acl=settings.s3_acl,
        )
    logger.info("Local blob storage at %s", settings.storage_path)
    return LocalBlobStore(settings.storage_path)
