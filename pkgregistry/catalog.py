"""
Catalog store for package metadata records.

Records are keyed by (name, version). The only write that creates a record is
``insert_if_absent``, whose uniqueness check and write happen as a single
operation inside the backend:
- MemoryCatalogStore: one critical section around check and write (local dev, tests)
- DynamoCatalogStore: conditional ``put_item`` on ``attribute_not_exists(PK)``

Table layout (single table, see db/dynamodb_setup.py):
    PK = PKG#<name>
    SK = VER#<version>
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import threading
import time
from collections.abc import Iterator
from decimal import Decimal
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from pkgregistry.audit_logging import security_alert, storage_audit
from pkgregistry.errors import StorageError
from pkgregistry.models import PackageRecord, PackageStats

logger = logging.getLogger(__name__)

_CONDITION_FAILED = "ConditionalCheckFailedException"


def _matches(record: PackageRecord, term: str) -> bool:
    needle = term.lower()
    return needle in record.name.lower() or needle in record.description.lower() or term in record.tags


def _paginate(records: list[PackageRecord], search: str | None, page: int, page_size: int):
    if search:
        records = [r for r in records if _matches(r, search)]
    start = (page - 1) * page_size
    return records[start:start + page_size], len(records)


def _aggregate(name: str, records: list[PackageRecord]) -> PackageStats | None:
    if not records:
        return None
    return PackageStats(
        name=name,
        total_downloads=sum(r.download_count for r in records),
        version_count=len(records),
        last_updated=max(r.created_at for r in records),
        version_downloads={r.version: r.download_count for r in records},
    )


class CatalogStore:
    """Interface shared by the catalog backends."""

    def list(self, search: str | None = None, page: int = 1, page_size: int = 10) -> tuple[list[PackageRecord], int]:
        raise NotImplementedError

    def list_versions(self, name: str) -> list[str]:
        raise NotImplementedError

    def get_metadata(self, name: str, version: str) -> PackageRecord | None:
        raise NotImplementedError

    def insert_if_absent(self, record: PackageRecord) -> bool:
        raise NotImplementedError

    def remove(self, name: str, version: str) -> bool:
        raise NotImplementedError

    def increment_download_count(self, name: str, version: str) -> None:
        raise NotImplementedError

    def aggregate_stats(self, name: str) -> PackageStats | None:
        raise NotImplementedError

    def iter_records(self) -> Iterator[PackageRecord]:
        raise NotImplementedError

    def ping(self) -> None:
        raise NotImplementedError


class MemoryCatalogStore(CatalogStore):
    """In-process catalog. Natural order is insertion order.

    With ``persist_path`` the records are mirrored to a JSON file after every
    write (atomic replace) and loaded back at startup, so a dev server keeps
    its catalog across reloads.
    """

    def __init__(self, persist_path: str | os.PathLike[str] | None = None) -> None:
        self._records: dict[tuple[str, str], PackageRecord] = {}
        self._lock = threading.Lock()
        self._persist_path = Path(persist_path) if persist_path else None
        if self._persist_path is not None:
            self._load_state()

    def _load_state(self) -> None:
        path = self._persist_path
        if not path.exists():
            logger.info("Catalog persist file %s missing; starting with empty state", path)
            return
        content = path.read_text(encoding="utf-8").strip()
        if not content:
            return
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Catalog persist file {path} is corrupt") from exc
        for raw in data.get("records", []):
            record = PackageRecord.from_dict(raw)
            self._records[record.key] = record
        logger.info("Loaded %d catalog records from %s", len(self._records), path)

    def _persist(self) -> None:
        """Write the current records; caller holds the lock."""
        if self._persist_path is None:
            return
        payload = json.dumps({"records": [r.to_dict() for r in self._records.values()]})
        tmp = self._persist_path.with_name(self._persist_path.name + f".tmp-{os.getpid()}-{threading.get_ident()}")
        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, self._persist_path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            logger.exception("Failed to persist catalog to %s", self._persist_path)
            raise StorageError("Catalog write failed") from exc

    def _snapshot(self) -> list[PackageRecord]:
        with self._lock:
            return [dataclasses.replace(r, tags=list(r.tags)) for r in self._records.values()]

    def list(self, search=None, page=1, page_size=10):
        return _paginate(self._snapshot(), search, page, page_size)

    def list_versions(self, name):
        # Reverse insertion order first so equal timestamps still list newest first
        records = [r for r in reversed(self._snapshot()) if r.name == name]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.version for r in records]

    def get_metadata(self, name, version):
        with self._lock:
            record = self._records.get((name, version))
            return dataclasses.replace(record, tags=list(record.tags)) if record else None

    def insert_if_absent(self, record):
        with self._lock:
            if record.key in self._records:
                return False
            self._records[record.key] = dataclasses.replace(record, tags=list(record.tags))
            try:
                self._persist()
            except StorageError:
                del self._records[record.key]
                raise
            return True

    def remove(self, name, version):
        with self._lock:
            record = self._records.pop((name, version), None)
            if record is None:
                return False
            try:
                self._persist()
            except StorageError:
                self._records[record.key] = record
                raise
            return True

    def increment_download_count(self, name, version):
        with self._lock:
            record = self._records.get((name, version))
            if record is None:
                return
            record.download_count += 1
            try:
                self._persist()
            except StorageError:
                record.download_count -= 1
                raise

    def aggregate_stats(self, name):
        return _aggregate(name, [r for r in self._snapshot() if r.name == name])

    def iter_records(self):
        return iter(self._snapshot())

    def ping(self):
        if self._persist_path is not None and not os.access(self._persist_path.parent, os.W_OK):
            raise StorageError(f"Catalog persist directory {self._persist_path.parent} is not writable")


class DynamoCatalogStore(CatalogStore):
    """DynamoDB-backed catalog (boto3 Table resource)."""

    def __init__(self, table: Any, table_name: str = "PackagesTable") -> None:
        self.table = table
        self.table_name = table_name

    @staticmethod
    def _make_pk(name: str) -> str:
        """Create partition key: PKG#{name}"""
        return f"PKG#{name}"

    @staticmethod
    def _make_sk(version: str) -> str:
        """Create sort key: VER#{version}"""
        return f"VER#{version}"

    def _key(self, name: str, version: str) -> dict[str, str]:
        return {"PK": self._make_pk(name), "SK": self._make_sk(version)}

    def _to_item(self, record: PackageRecord) -> dict[str, Any]:
        item = record.to_dict()
        item.update(self._key(record.name, record.version))
        return item

    @staticmethod
    def _from_item(item: dict[str, Any]) -> PackageRecord:
        raw = {k: (int(v) if isinstance(v, Decimal) else v) for k, v in item.items()}
        return PackageRecord.from_dict(raw)

    def _fail(self, operation: str, exc: Exception, **fields: Any) -> StorageError:
        logger.error("DynamoDB %s failed: %s", operation, exc)
        security_alert(f"dynamodb_{operation}_failed", table=self.table_name, error=str(exc), **fields)
        return StorageError(f"Catalog {operation} failed")

    def _scan_all(self) -> list[PackageRecord]:
        kwargs: dict[str, Any] = {
            "FilterExpression": "begins_with(PK, :prefix)",
            "ExpressionAttributeValues": {":prefix": "PKG#"},
        }
        items: list[dict[str, Any]] = []
        while True:
            response = self.table.scan(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        records = [self._from_item(i) for i in items]
        records.sort(key=lambda r: (r.created_at, r.name, r.version))
        return records

    def _query_package(self, name: str) -> list[PackageRecord]:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": "PK = :pk",
            "ExpressionAttributeValues": {":pk": self._make_pk(name)},
        }
        items: list[dict[str, Any]] = []
        while True:
            response = self.table.query(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return [self._from_item(i) for i in items]

    def list(self, search=None, page=1, page_size=10):
        start = time.time()
        try:
            records = self._scan_all()
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("list", exc, search=search) from exc
        result = _paginate(records, search, page, page_size)
        storage_audit(
            "dynamodb_list",
            table=self.table_name,
            search=search,
            result_count=result[1],
            duration_ms=int((time.time() - start) * 1000),
        )
        return result

    def list_versions(self, name):
        try:
            records = self._query_package(name)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("list_versions", exc, package=name) from exc
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.version for r in records]

    def get_metadata(self, name, version):
        try:
            response = self.table.get_item(Key=self._key(name, version), ConsistentRead=True)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("get", exc, package=name, version=version) from exc
        item = response.get("Item")
        return self._from_item(item) if item else None

    def insert_if_absent(self, record):
        start = time.time()
        try:
            self.table.put_item(Item=self._to_item(record), ConditionExpression="attribute_not_exists(PK)")
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == _CONDITION_FAILED:
                logger.info("Catalog insert conflict for %s@%s", record.name, record.version)
                return False
            raise self._fail("put_item", exc, package=record.name, version=record.version) from exc
        except BotoCoreError as exc:
            raise self._fail("put_item", exc, package=record.name, version=record.version) from exc
        storage_audit(
            "dynamodb_put_item",
            table=self.table_name,
            package=record.name,
            version=record.version,
            duration_ms=int((time.time() - start) * 1000),
        )
        return True

    def remove(self, name, version):
        try:
            response = self.table.delete_item(Key=self._key(name, version), ReturnValues="ALL_OLD")
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("delete", exc, package=name, version=version) from exc
        deleted = bool(response.get("Attributes"))
        if deleted:
            storage_audit("dynamodb_delete", table=self.table_name, package=name, version=version)
        return deleted

    def increment_download_count(self, name, version):
        try:
            self.table.update_item(
                Key=self._key(name, version),
                UpdateExpression="ADD download_count :one",
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeValues={":one": 1},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == _CONDITION_FAILED:
                return
            raise self._fail("update_item", exc, package=name, version=version) from exc
        except BotoCoreError as exc:
            raise self._fail("update_item", exc, package=name, version=version) from exc

    def aggregate_stats(self, name):
        try:
            records = self._query_package(name)
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("stats", exc, package=name) from exc
        return _aggregate(name, records)

    def iter_records(self):
        try:
            return iter(self._scan_all())
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("scan", exc) from exc

    def ping(self):
        try:
            self.table.load()
        except (ClientError, BotoCoreError) as exc:
            raise self._fail("ping", exc) from exc


def build_catalog_store(settings) -> CatalogStore:
    if settings.catalog_backend == "dynamodb":
        import boto3

        table = boto3.resource("dynamodb", region_name=settings.aws_region).Table(settings.dynamodb_table)
        logger.info("DynamoDB enabled: table=%s, region=%s", settings.dynamodb_table, settings.aws_region)
        return DynamoCatalogStore(table, settings.dynamodb_table)
    logger.info("Using in-memory catalog store (persist_file=%s)", settings.catalog_persist_file)
    return MemoryCatalogStore(settings.catalog_persist_file)
