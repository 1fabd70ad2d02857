"""
Out-of-band maintenance for the registry stores.

- reconcile: find blobs with no catalog record (orphans left by failed
  compensation) and records with no blob (store corruption); optionally fix them.
- verify: recompute every blob's checksum and compare it with its record.

Usage:
    python -m pkgregistry.maintenance reconcile [--fix] [--grace-seconds N]
    python -m pkgregistry.maintenance verify
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import timedelta

from pkgregistry.audit_logging import configure_audit_logger, security_alert
from pkgregistry.blob_store import BlobStore
from pkgregistry.catalog import CatalogStore
from pkgregistry.config import get_settings
from pkgregistry.errors import IntegrityError, StorageError
from pkgregistry.models import utcnow
from pkgregistry.service import RegistryService

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    orphan_blobs: list[tuple[str, str]] = field(default_factory=list)
    dangling_records: list[tuple[str, str]] = field(default_factory=list)
    removed_blobs: list[tuple[str, str]] = field(default_factory=list)
    removed_records: list[tuple[str, str]] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.orphan_blobs and not self.dangling_records

    def to_dict(self) -> dict[str, list[str]]:
        def fmt(keys):
            return [f"{n}@{v}" for n, v in keys]

        return {
            "orphan_blobs": fmt(self.orphan_blobs),
            "dangling_records": fmt(self.dangling_records),
            "removed_blobs": fmt(self.removed_blobs),
            "removed_records": fmt(self.removed_records),
        }


@dataclass
class VerifyReport:
    checked: int = 0
    mismatches: list[IntegrityError] = field(default_factory=list)
    missing: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "checked": self.checked,
            "mismatches": [{"package": e.name, "version": e.version, "expected": e.expected, "actual": e.actual} for e in self.mismatches],
            "missing": [f"{n}@{v}" for n, v in self.missing],
        }


def reconcile(catalog: CatalogStore, blobs: BlobStore, fix: bool = False, grace_seconds: int = 300) -> ReconcileReport:
    """Compare both stores and report (or repair) inconsistencies.

    Blobs younger than ``grace_seconds`` are skipped: their publish may still be
    about to write the catalog record.
    """
    report = ReconcileReport()
    record_keys = {r.key for r in catalog.iter_records()}
    cutoff = utcnow() - timedelta(seconds=grace_seconds)
    blob_keys: set[tuple[str, str]] = set()

    for name, version, modified_at in blobs.iter_keys():
        blob_keys.add((name, version))
        if (name, version) in record_keys or modified_at > cutoff:
            continue
        report.orphan_blobs.append((name, version))
        security_alert("orphan_blob_found", alert_type="reconciliation", package=name, version=version)
        if fix and catalog.get_metadata(name, version) is None:
            try:
                if blobs.remove(name, version):
                    report.removed_blobs.append((name, version))
            except StorageError:
                logger.exception("Failed to remove orphan blob %s@%s", name, version)

    for name, version in sorted(record_keys - blob_keys):
        # Re-check: the listing may predate a publish that has since completed
        if blobs.exists(name, version):
            continue
        report.dangling_records.append((name, version))
        security_alert("dangling_record_found", alert_type="reconciliation", package=name, version=version)
        if fix and catalog.remove(name, version):
            report.removed_records.append((name, version))

    logger.info(
        "Reconcile finished: orphan_blobs=%d dangling_records=%d",
        len(report.orphan_blobs),
        len(report.dangling_records),
    )
    return report


def verify_all(service: RegistryService) -> VerifyReport:
    report = VerifyReport()
    for record in service.catalog.iter_records():
        report.checked += 1
        try:
            service.verify(record.name, record.version)
        except IntegrityError as exc:
            logger.error("%s", exc.message)
            security_alert("checksum_mismatch", alert_type="integrity", package=record.name, version=record.version)
            report.mismatches.append(exc)
        except StorageError:
            report.missing.append(record.key)
    return report


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="pkgregistry.maintenance", description="Registry store maintenance")
    sub = parser.add_subparsers(dest="command", required=True)
    rec = sub.add_parser("reconcile", help="find orphan blobs and dangling records")
    rec.add_argument("--fix", action="store_true", help="remove orphan blobs and dangling records")
    rec.add_argument("--grace-seconds", type=int, default=None, help="skip blobs younger than this")
    sub.add_parser("verify", help="recompute and compare every checksum")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    configure_audit_logger()
    if settings.catalog_backend == "memory" and not settings.catalog_persist_file:
        # A fresh in-memory catalog is always empty; every blob would look orphaned
        print("Error: maintenance requires a persistent catalog (REGISTRY_CATALOG_BACKEND=dynamodb or REGISTRY_CATALOG_PERSIST_FILE)", file=sys.stderr)
        return 2
    service = RegistryService.from_settings(settings)

    if args.command == "reconcile":
        grace = settings.reconcile_grace_seconds if args.grace_seconds is None else args.grace_seconds
        report = reconcile(service.catalog, service.blobs, fix=args.fix, grace_seconds=grace)
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.clean or args.fix else 1

    verify_report = verify_all(service)
    print(json.dumps(verify_report.to_dict(), indent=2))
    return 0 if not verify_report.mismatches and not verify_report.missing else 1


if __name__ == "__main__":
    sys.exit(main())
