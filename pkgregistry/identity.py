"""Identity provider: maps request credentials to an opaque principal.

The orchestrator never sees raw credential material; it only receives a
``Principal`` (or ``None`` for anonymous callers) and asks ``can_delete``.
"""
from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from pkgregistry.models import PackageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    name: str
    is_admin: bool = False


class IdentityProvider:
    def authenticate(self, credential: str | None) -> Principal | None:
        raise NotImplementedError

    def can_delete(self, principal: Principal, package_name: str, record: PackageRecord | None = None) -> bool:
        raise NotImplementedError

    def needs_record_for_delete(self, principal: Principal) -> bool:
        """Whether ``can_delete`` must see the stored record for this principal."""
        return True


class ApiKeyIdentityProvider(IdentityProvider):
    """API keys configured as ``{key: principal_name}``.

    With ``owner_only_delete`` a principal may only delete versions it
    authored; admins may always delete.
    """

    def __init__(
        self,
        api_keys: Mapping[str, str],
        admin_principals: list[str] | None = None,
        owner_only_delete: bool = False,
    ) -> None:
        self._api_keys = dict(api_keys)
        self._admins = set(admin_principals or [])
        self.owner_only_delete = owner_only_delete

    def authenticate(self, credential: str | None) -> Principal | None:
        if not credential:
            return None
        presented = credential.strip().encode("utf-8")
        for key, name in self._api_keys.items():
            if hmac.compare_digest(presented, key.encode("utf-8")):
                return Principal(name=name, is_admin=name in self._admins)
        logger.warning("Rejected unknown API key")
        return None

    def needs_record_for_delete(self, principal: Principal) -> bool:
        return self.owner_only_delete and not principal.is_admin

    def can_delete(self, principal: Principal, package_name: str, record: PackageRecord | None = None) -> bool:
        if principal.is_admin or not self.owner_only_delete:
            return True
        # Unknown records fall through to the not-found path in the caller
        return record is None or record.author == principal.name


def build_identity_provider(settings) -> IdentityProvider:
    return ApiKeyIdentityProvider(
        settings.api_keys,
        admin_principals=settings.admin_principals,
        owner_only_delete=settings.owner_only_delete,
    )
