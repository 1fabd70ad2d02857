"""
Registry orchestrator: publish, fetch, remove and report workflows.

Cross-store consistency policy (there is no transaction spanning both stores):
- publish writes the blob first, then the catalog record
- remove deletes the catalog record first, then the blob
So a failure can leave an orphan blob (cleared by the reconciliation sweep in
pkgregistry.maintenance) but never a record that points at nothing.

Conflicts are decided by the catalog's conditional insert alone. An existing
blob only means "look at the catalog": a record there is a conflict, no record
means either a publish in flight or an orphan that is old enough to reclaim.
An ambiguous catalog write (timeout, retried condition) is settled by reading
the record back before any blob is discarded.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from pkgregistry.audit_logging import audit_event, security_alert
from pkgregistry.blob_store import BlobStore, build_blob_store
from pkgregistry.catalog import CatalogStore, build_catalog_store
from pkgregistry.errors import (
    AuthError,
    BlobExistsError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PublishInProgressError,
    SafetyError,
    StorageError,
    ValidationError,
)
from pkgregistry.identity import IdentityProvider, Principal, build_identity_provider
from pkgregistry.integrity import (
    MAX_ENTRIES,
    MAX_UNCOMPRESSED_BYTES,
    compute_checksum,
    validate_archive_safety,
    verify_checksum,
)
from pkgregistry.models import PackageDownload, PackageListResult, PackageRecord, PackageStats, UploadRequest, utcnow
from pkgregistry.validation import is_valid_package_name, is_valid_version, validate_upload_request

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
# A blob without a record younger than this is treated as a publish in flight
ORPHAN_GRACE_SECONDS = 300


class RegistryService:
    def __init__(
        self,
        catalog: CatalogStore,
        blobs: BlobStore,
        identity: IdentityProvider,
        *,
        max_uncompressed_bytes: int = MAX_UNCOMPRESSED_BYTES,
        max_entries: int = MAX_ENTRIES,
        orphan_grace_seconds: int = ORPHAN_GRACE_SECONDS,
    ) -> None:
        self.catalog = catalog
        self.blobs = blobs
        self.identity = identity
        self.max_uncompressed_bytes = max_uncompressed_bytes
        self.max_entries = max_entries
        self.orphan_grace_seconds = orphan_grace_seconds

    @classmethod
    def from_settings(cls, settings) -> RegistryService:
        return cls(
            build_catalog_store(settings),
            build_blob_store(settings),
            build_identity_provider(settings),
            max_uncompressed_bytes=settings.max_archive_uncompressed_bytes,
            max_entries=settings.max_archive_entries,
            orphan_grace_seconds=settings.reconcile_grace_seconds,
        )

    # -------------------- helpers --------------------

    @staticmethod
    def _require_valid(name: str, version: str | None = None) -> None:
        if not is_valid_package_name(name):
            raise ValidationError("Invalid package name")
        if version is not None and not is_valid_version(version):
            raise ValidationError("Invalid package version")

    def _discard_blob(self, name: str, version: str, reason: str) -> None:
        """Best-effort removal of a blob this publish wrote. Never raises."""
        try:
            self.blobs.remove(name, version)
            logger.info("Compensated %s@%s: removed blob (%s)", name, version, reason)
        except StorageError:
            logger.exception("Compensation failed for %s@%s; blob is orphaned", name, version)
            security_alert("orphan_blob", alert_type="reconciliation", package=name, version=version, reason=reason)

    def _store_blob(self, name: str, version: str, stream) -> str:
        """Create-once blob write that lets the catalog arbitrate an occupied key."""
        try:
            return self.blobs.store(name, version, stream)
        except BlobExistsError:
            pass

        if self.catalog.get_metadata(name, version) is not None:
            logger.warning("Publish of %s@%s rejected: version already in catalog", name, version)
            raise ConflictError("This version already exists")

        written_at = self.blobs.modified_at(name, version)
        if written_at is not None:
            age = utcnow() - written_at
            if age < timedelta(seconds=self.orphan_grace_seconds):
                logger.warning("Publish of %s@%s deferred: unrecorded blob is %ss old", name, version, int(age.total_seconds()))
                raise PublishInProgressError("This version is being published by another request; retry later")
            logger.warning("Reclaiming orphan blob %s@%s written at %s", name, version, written_at.isoformat())
            if not self.blobs.remove(name, version):
                # Someone else reclaimed it first
                raise PublishInProgressError("This version is being published by another request; retry later")
            security_alert("orphan_blob_reclaimed", alert_type="reconciliation", package=name, version=version, written_at=written_at)

        stream.seek(0)
        try:
            return self.blobs.store(name, version, stream)
        except BlobExistsError:
            raise PublishInProgressError("This version is being published by another request; retry later") from None

    def _record_is_ours(self, record: PackageRecord, reason: str) -> bool:
        """Settle an ambiguous catalog write by reading the record back.

        A timed-out or internally retried conditional write may have stored
        this publish's record after all; True means it did. Otherwise the blob
        is discarded, or left for the reconciliation sweep when the catalog
        cannot be read.
        """
        name, version = record.name, record.version
        try:
            stored = self.catalog.get_metadata(name, version)
        except StorageError:
            logger.exception("Could not confirm catalog write for %s@%s; keeping blob", name, version)
            security_alert("orphan_blob", alert_type="reconciliation", package=name, version=version, reason=f"{reason}_unconfirmed")
            return False
        if stored is not None and stored.id == record.id:
            logger.warning("Catalog reported %s for %s@%s but the record is stored", reason, name, version)
            return True
        self._discard_blob(name, version, reason=reason)
        return False

    def _track_download(self, name: str, version: str) -> None:
        try:
            self.catalog.increment_download_count(name, version)
        except StorageError:
            logger.warning("Download counter update failed for %s@%s", name, version, exc_info=True)

    # -------------------- publish --------------------

    def publish(self, upload: UploadRequest, principal: Principal | None) -> PackageRecord:
        if principal is None:
            raise AuthError("Authentication required")
        result = validate_upload_request(upload)
        if not result.is_valid:
            raise ValidationError(result.errors)

        name, version, stream = upload.name, upload.version, upload.stream
        stream.seek(0)
        if not validate_archive_safety(
            stream, max_uncompressed_bytes=self.max_uncompressed_bytes, max_entries=self.max_entries
        ):
            raise SafetyError("Archive failed safety checks (size, entry count or path traversal)")

        stream.seek(0)
        checksum = compute_checksum(stream)
        size = stream.tell()
        stream.seek(0)

        record = PackageRecord(
            name=name,
            version=version,
            description=upload.description or "",
            tags=list(upload.tags or []),
            author=principal.name,
            checksum=checksum,
            size=size,
        )

        location = self._store_blob(name, version, stream)

        try:
            inserted = self.catalog.insert_if_absent(record)
        except StorageError:
            if not self._record_is_ours(record, reason="catalog_write_failed"):
                raise
        else:
            if not inserted and not self._record_is_ours(record, reason="lost_publish_race"):
                raise ConflictError("This version already exists")

        audit_event(
            "package_published",
            package=name,
            version=version,
            principal=principal.name,
            size=size,
            checksum=checksum,
            location=location,
        )
        return record

    # -------------------- reads --------------------

    def fetch(self, name: str, version: str) -> PackageDownload:
        """Open the blob for download and count it.

        A download is counted once the stream is opened, not when the client
        has received every byte.
        """
        self._require_valid(name, version)
        record = self.catalog.get_metadata(name, version)
        if record is None:
            raise NotFoundError(name, version)
        opened = self.blobs.open_with_length(name, version)
        if opened is None:
            logger.error("Catalog has %s@%s but its blob is missing", name, version)
            security_alert("dangling_record", alert_type="reconciliation", package=name, version=version)
            raise StorageError(f"Blob missing for {name}@{version}")
        stream, size = opened
        if size is not None and size != record.size:
            logger.warning("Blob %s@%s is %d bytes, catalog says %d", name, version, size, record.size)
        self._track_download(name, version)
        return PackageDownload(record=record, stream=stream, filename=f"{name}-{version}.zip", size=size)

    def get_metadata(self, name: str, version: str) -> PackageRecord:
        self._require_valid(name, version)
        record = self.catalog.get_metadata(name, version)
        if record is None:
            raise NotFoundError(name, version)
        return record

    def list_packages(self, search: str | None = None, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> PackageListResult:
        if page < 1:
            page = 1
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            page_size = DEFAULT_PAGE_SIZE
        term = search.strip() if search else None
        records, total = self.catalog.list(term or None, page, page_size)
        return PackageListResult(packages=records, total_count=total, page=page, page_size=page_size)

    def list_versions(self, name: str) -> list[str]:
        self._require_valid(name)
        versions = self.catalog.list_versions(name)
        if not versions:
            raise NotFoundError(name)
        return versions

    def stats(self, name: str) -> PackageStats:
        self._require_valid(name)
        stats = self.catalog.aggregate_stats(name)
        if stats is None:
            raise NotFoundError(name)
        return stats

    # -------------------- remove --------------------

    def remove(self, name: str, version: str, principal: Principal | None) -> None:
        self._require_valid(name, version)
        if principal is None:
            raise AuthError("Authentication required")
        record = None
        if self.identity.needs_record_for_delete(principal):
            record = self.catalog.get_metadata(name, version)
        if not self.identity.can_delete(principal, name, record):
            logger.warning("User %s attempted to delete package %s without permission", principal.name, name)
            raise ForbiddenError("Not allowed to delete this package")
        if not self.catalog.remove(name, version):
            raise NotFoundError(name, version)

        try:
            removed = self.blobs.remove(name, version)
        except StorageError:
            logger.exception("Blob delete failed for %s@%s after its record was removed", name, version)
            security_alert("orphan_blob", alert_type="reconciliation", package=name, version=version, reason="blob_delete_failed")
        else:
            if not removed:
                logger.warning("Record %s@%s was removed but had no blob", name, version)
        audit_event("package_deleted", package=name, version=version, principal=principal.name)

    # -------------------- verification --------------------

    def verify(self, name: str, version: str) -> PackageRecord:
        """Recompute the blob digest and compare it with the catalog checksum.

        Raises IntegrityError on mismatch. Not used on the request path.
        """
        record = self.get_metadata(name, version)
        stream = self.blobs.open(name, version)
        if stream is None:
            raise StorageError(f"Blob missing for {name}@{version}")
        try:
            verify_checksum(stream, record.checksum, name=name, version=version)
        finally:
            stream.close()
        return record
