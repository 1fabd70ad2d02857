"""
Tests for pkgregistry/catalog.py.

MemoryCatalogStore is exercised directly (including JSON persistence);
DynamoCatalogStore runs against a mocked boto3 Table resource.
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError

from pkgregistry.catalog import DynamoCatalogStore, MemoryCatalogStore, build_catalog_store
from pkgregistry.config import Settings
from pkgregistry.errors import StorageError
from pkgregistry.models import PackageRecord

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _record(name="demo", version="1.0.0", minutes=0, **kwargs):
    fields = {"checksum": "ab" * 32, "size": 10, "created_at": BASE_TIME + timedelta(minutes=minutes)}
    fields.update(kwargs)
    return PackageRecord(name=name, version=version, **fields)


def _client_error(code, operation="PutItem"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestMemoryCatalogStore:
    def setup_method(self):
        self.store = MemoryCatalogStore()

    def test_insert_if_absent(self):
        assert self.store.insert_if_absent(_record()) is True
        assert self.store.insert_if_absent(_record(description="second")) is False
        assert self.store.get_metadata("demo", "1.0.0").description == ""

    def test_concurrent_inserts_single_winner(self):
        barrier = threading.Barrier(8)
        results = []

        def insert():
            barrier.wait()
            results.append(self.store.insert_if_absent(_record()))

        threads = [threading.Thread(target=insert) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert len(list(self.store.iter_records())) == 1

    def test_get_metadata_returns_copy(self):
        self.store.insert_if_absent(_record(tags=["a"]))
        copy = self.store.get_metadata("demo", "1.0.0")
        copy.tags.append("mutated")
        copy.download_count = 99
        fresh = self.store.get_metadata("demo", "1.0.0")
        assert fresh.tags == ["a"]
        assert fresh.download_count == 0

    def test_get_metadata_missing(self):
        assert self.store.get_metadata("demo", "1.0.0") is None

    def test_list_pagination(self):
        for i in range(25):
            self.store.insert_if_absent(_record(name=f"pkg{i:02d}", minutes=i))
        page, total = self.store.list(page=2, page_size=10)
        assert total == 25
        assert [r.name for r in page] == [f"pkg{i:02d}" for i in range(10, 20)]

    def test_list_page_past_end(self):
        self.store.insert_if_absent(_record())
        page, total = self.store.list(page=5, page_size=10)
        assert page == []
        assert total == 1

    def test_list_search(self):
        self.store.insert_if_absent(_record(name="http-client", description="A client"))
        self.store.insert_if_absent(_record(name="parser", description="Parses HTTP responses"))
        self.store.insert_if_absent(_record(name="other", tags=["web"]))
        self.store.insert_if_absent(_record(name="unrelated", tags=["webby"]))

        names = [r.name for r in self.store.list(search="HTTP")[0]]
        assert names == ["http-client", "parser"]
        names = [r.name for r in self.store.list(search="web")[0]]
        assert names == ["other"]

    def test_list_versions_newest_first(self):
        self.store.insert_if_absent(_record(version="1.0.0", minutes=0))
        self.store.insert_if_absent(_record(version="3.0.0", minutes=2))
        self.store.insert_if_absent(_record(version="2.0.0", minutes=1))
        self.store.insert_if_absent(_record(name="other", version="9.0.0", minutes=5))
        assert self.store.list_versions("demo") == ["3.0.0", "2.0.0", "1.0.0"]
        assert self.store.list_versions("missing") == []

    def test_list_versions_equal_timestamps_use_insertion_order(self):
        self.store.insert_if_absent(_record(version="1.0.0"))
        self.store.insert_if_absent(_record(version="1.1.0"))
        assert self.store.list_versions("demo") == ["1.1.0", "1.0.0"]

    def test_remove(self):
        self.store.insert_if_absent(_record())
        assert self.store.remove("demo", "1.0.0") is True
        assert self.store.remove("demo", "1.0.0") is False
        assert self.store.get_metadata("demo", "1.0.0") is None

    def test_increment_download_count(self):
        self.store.insert_if_absent(_record())
        self.store.increment_download_count("demo", "1.0.0")
        self.store.increment_download_count("demo", "1.0.0")
        assert self.store.get_metadata("demo", "1.0.0").download_count == 2
        # Unknown keys are ignored
        self.store.increment_download_count("demo", "9.9.9")

    def test_aggregate_stats(self):
        self.store.insert_if_absent(_record(version="1.0.0", download_count=3, minutes=0))
        self.store.insert_if_absent(_record(version="2.0.0", download_count=5, minutes=10))
        stats = self.store.aggregate_stats("demo")
        assert stats.total_downloads == 8
        assert stats.version_count == 2
        assert stats.last_updated == BASE_TIME + timedelta(minutes=10)
        assert stats.version_downloads == {"1.0.0": 3, "2.0.0": 5}
        assert self.store.aggregate_stats("missing") is None


class TestMemoryCatalogPersistence:
    def test_records_survive_reload(self, tmp_path):
        path = tmp_path / "catalog.json"
        store = MemoryCatalogStore(path)
        store.insert_if_absent(_record(tags=["x"]))
        store.increment_download_count("demo", "1.0.0")

        reloaded = MemoryCatalogStore(path)
        record = reloaded.get_metadata("demo", "1.0.0")
        assert record.tags == ["x"]
        assert record.download_count == 1
        assert record.created_at == BASE_TIME

    def test_missing_file_starts_empty(self, tmp_path):
        store = MemoryCatalogStore(tmp_path / "nope.json")
        assert list(store.iter_records()) == []

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            MemoryCatalogStore(path)

    def test_failed_persist_rolls_back_insert(self, tmp_path):
        store = MemoryCatalogStore(tmp_path / "catalog.json")
        with patch("pkgregistry.catalog.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                store.insert_if_absent(_record())
        assert store.get_metadata("demo", "1.0.0") is None
        assert list(tmp_path.iterdir()) == []

    def test_persisted_payload_is_json(self, tmp_path):
        path = tmp_path / "catalog.json"
        MemoryCatalogStore(path).insert_if_absent(_record())
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["records"][0]["name"] == "demo"
        assert data["records"][0]["created_at"] == "2024-01-01T00:00:00Z"


class TestDynamoCatalogStore:
    def setup_method(self):
        self.table = Mock()
        self.store = DynamoCatalogStore(self.table, "PackagesTable")

    def _item(self, name="demo", version="1.0.0", downloads=0, created="2024-01-01T00:00:00Z"):
        return {
            "PK": f"PKG#{name}",
            "SK": f"VER#{version}",
            "id": "abc",
            "name": name,
            "version": version,
            "description": "",
            "tags": ["t"],
            "author": "alice",
            "created_at": created,
            "download_count": Decimal(downloads),
            "checksum": "ab" * 32,
            "size": Decimal(10),
        }

    def test_insert_uses_condition_expression(self):
        assert self.store.insert_if_absent(_record()) is True
        kwargs = self.table.put_item.call_args.kwargs
        assert kwargs["ConditionExpression"] == "attribute_not_exists(PK)"
        assert kwargs["Item"]["PK"] == "PKG#demo"
        assert kwargs["Item"]["SK"] == "VER#1.0.0"

    def test_insert_conflict_returns_false(self):
        self.table.put_item.side_effect = _client_error("ConditionalCheckFailedException")
        assert self.store.insert_if_absent(_record()) is False

    def test_insert_failure_raises_storage_error(self):
        self.table.put_item.side_effect = _client_error("ProvisionedThroughputExceededException")
        with pytest.raises(StorageError):
            self.store.insert_if_absent(_record())

    def test_get_metadata_converts_decimals(self):
        self.table.get_item.return_value = {"Item": self._item(downloads=4)}
        record = self.store.get_metadata("demo", "1.0.0")
        assert record.download_count == 4
        assert isinstance(record.size, int)
        assert record.created_at == BASE_TIME
        self.table.get_item.assert_called_once_with(Key={"PK": "PKG#demo", "SK": "VER#1.0.0"}, ConsistentRead=True)

    def test_get_metadata_missing(self):
        self.table.get_item.return_value = {}
        assert self.store.get_metadata("demo", "1.0.0") is None

    def test_list_follows_scan_pagination(self):
        self.table.scan.side_effect = [
            {"Items": [self._item("b", created="2024-01-02T00:00:00Z")], "LastEvaluatedKey": {"PK": "x"}},
            {"Items": [self._item("a", created="2024-01-01T00:00:00Z")]},
        ]
        records, total = self.store.list()
        assert total == 2
        assert [r.name for r in records] == ["a", "b"]
        assert self.table.scan.call_args_list[1].kwargs["ExclusiveStartKey"] == {"PK": "x"}

    def test_list_failure_raises_storage_error(self):
        self.table.scan.side_effect = _client_error("ResourceNotFoundException", "Scan")
        with pytest.raises(StorageError):
            self.store.list()

    def test_list_versions_newest_first(self):
        self.table.query.return_value = {
            "Items": [
                self._item(version="1.0.0", created="2024-01-01T00:00:00Z"),
                self._item(version="2.0.0", created="2024-02-01T00:00:00Z"),
            ]
        }
        assert self.store.list_versions("demo") == ["2.0.0", "1.0.0"]

    def test_remove(self):
        self.table.delete_item.return_value = {"Attributes": self._item()}
        assert self.store.remove("demo", "1.0.0") is True
        self.table.delete_item.return_value = {}
        assert self.store.remove("demo", "1.0.0") is False

    def test_increment_is_atomic_add(self):
        self.store.increment_download_count("demo", "1.0.0")
        kwargs = self.table.update_item.call_args.kwargs
        assert kwargs["UpdateExpression"] == "ADD download_count :one"
        assert kwargs["ConditionExpression"] == "attribute_exists(PK)"

    def test_increment_missing_record_is_ignored(self):
        self.table.update_item.side_effect = _client_error("ConditionalCheckFailedException", "UpdateItem")
        self.store.increment_download_count("demo", "1.0.0")

    def test_aggregate_stats(self):
        self.table.query.return_value = {
            "Items": [self._item(version="1.0.0", downloads=3), self._item(version="2.0.0", downloads=5)]
        }
        stats = self.store.aggregate_stats("demo")
        assert stats.total_downloads == 8
        assert stats.version_count == 2

    def test_ping_failure(self):
        self.table.load.side_effect = _client_error("ResourceNotFoundException", "DescribeTable")
        with pytest.raises(StorageError):
            self.store.ping()


class TestBuildCatalogStore:
    def test_memory_default(self):
        assert isinstance(build_catalog_store(Settings()), MemoryCatalogStore)

    @patch("boto3.resource")
    def test_dynamodb_backend(self, mock_resource):
        store = build_catalog_store(Settings(catalog_backend="dynamodb", dynamodb_table="T", aws_region="eu-west-1"))
        assert isinstance(store, DynamoCatalogStore)
        mock_resource.assert_called_once_with("dynamodb", region_name="eu-west-1")
        mock_resource.return_value.Table.assert_called_once_with("T")
