"""
Shared pytest fixtures for the package registry tests.

Provides zip archive builders, temporary stores, a wired RegistryService and a
Flask test client backed by that service.
"""

import io
import zipfile
from typing import Callable, Dict, Optional

import pytest

from pkgregistry.app import create_app
from pkgregistry.blob_store import LocalBlobStore
from pkgregistry.catalog import MemoryCatalogStore
from pkgregistry.config import Settings
from pkgregistry.identity import ApiKeyIdentityProvider, Principal
from pkgregistry.models import UploadRequest
from pkgregistry.service import RegistryService

API_KEY = "test-key-alice"
OTHER_API_KEY = "test-key-bob"
ADMIN_API_KEY = "test-key-admin"


# ==================== ARCHIVE FIXTURES ====================


def build_zip(entries: Optional[Dict[str, bytes]] = None) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zout:
        for name, data in (entries or {"README.md": b"# demo\n", "src/main.py": b"print('hi')\n"}).items():
            zout.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def make_zip() -> Callable[..., bytes]:
    """Return a builder: make_zip({"name": b"data"}) -> zip bytes."""
    return build_zip


@pytest.fixture
def sample_zip() -> bytes:
    return build_zip()


@pytest.fixture
def make_upload(sample_zip):
    """Build an UploadRequest around an in-memory archive."""

    def _make(name="demo", version="1.0.0", data=None, **overrides):
        fields = {
            "name": name,
            "version": version,
            "description": "A demo package",
            "tags": ["demo", "test"],
            "filename": f"{name}.zip",
            "content_type": "application/zip",
            "stream": io.BytesIO(sample_zip if data is None else data),
        }
        fields.update(overrides)
        return UploadRequest(**fields)

    return _make


# ==================== STORE / SERVICE FIXTURES ====================


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "Packages")


@pytest.fixture
def catalog() -> MemoryCatalogStore:
    return MemoryCatalogStore()


@pytest.fixture
def identity() -> ApiKeyIdentityProvider:
    return ApiKeyIdentityProvider(
        {API_KEY: "alice", OTHER_API_KEY: "bob", ADMIN_API_KEY: "root"},
        admin_principals=["root"],
    )


@pytest.fixture
def principal() -> Principal:
    return Principal(name="alice")


@pytest.fixture
def service(catalog, blob_store, identity) -> RegistryService:
    return RegistryService(catalog, blob_store, identity)


# ==================== FLASK FIXTURES ====================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        storage_path=str(tmp_path / "Packages"),
        api_keys={API_KEY: "alice", OTHER_API_KEY: "bob", ADMIN_API_KEY: "root"},
        admin_principals=["root"],
    )


@pytest.fixture
def app(service, settings):
    config = {
        "TESTING": True,
        "RATELIMIT_ENABLED": False,
    }
    return create_app(config, service=service, settings=settings)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"X-API-Key": API_KEY}
