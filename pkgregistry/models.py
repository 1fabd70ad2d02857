from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    text = str(raw)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Catalog records
# ---------------------------------------------------------------------------


@dataclass
class PackageRecord:
    """Metadata row for one published package version."""

    name: str
    version: str
    checksum: str
    size: int
    description: str = ""
    tags: list[str] = field(default_factory=list)
    author: str = ""
    created_at: datetime = field(default_factory=utcnow)
    download_count: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.version)

    def to_public_dict(self) -> dict[str, Any]:
        """Client-facing projection; never exposes checksum or record id."""
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "tags": list(self.tags),
            "author": self.author,
            "createdAt": _isoformat(self.created_at),
            "downloadCount": int(self.download_count),
            "fileSize": int(self.size),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "tags": list(self.tags),
            "author": self.author,
            "created_at": _isoformat(self.created_at),
            "download_count": int(self.download_count),
            "checksum": self.checksum,
            "size": int(self.size),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PackageRecord:
        return cls(
            id=str(raw.get("id") or uuid.uuid4().hex),
            name=str(raw["name"]),
            version=str(raw["version"]),
            description=str(raw.get("description") or ""),
            tags=[str(t) for t in (raw.get("tags") or [])],
            author=str(raw.get("author") or ""),
            created_at=_parse_timestamp(raw.get("created_at") or utcnow()),
            download_count=int(raw.get("download_count") or 0),
            checksum=str(raw.get("checksum") or ""),
            size=int(raw.get("size") or 0),
        )


@dataclass
class PackageStats:
    name: str
    total_downloads: int
    version_count: int
    last_updated: datetime
    version_downloads: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "totalDownloads": self.total_downloads,
            "versionCount": self.version_count,
            "lastUpdated": _isoformat(self.last_updated),
            "versionDownloads": dict(self.version_downloads),
        }


@dataclass
class PackageListResult:
    packages: list[PackageRecord]
    total_count: int
    page: int
    page_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "packages": [p.to_public_dict() for p in self.packages],
            "totalCount": self.total_count,
            "page": self.page,
            "pageSize": self.page_size,
        }


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------


@dataclass
class UploadRequest:
    name: str = ""
    version: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    filename: str | None = None
    content_type: str | None = None
    stream: BinaryIO | None = None


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)


@dataclass
class PackageDownload:
    record: PackageRecord
    stream: BinaryIO
    filename: str
    # Byte length reported by the content store; None when unknown
    size: int | None = None
