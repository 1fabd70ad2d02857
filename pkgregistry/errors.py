"""
Exception taxonomy for the package registry.

Every error carries the HTTP status the API layer answers with. Expected
outcomes (validation, conflict, safety, not-found, auth) expose their message
to the caller; storage and integrity failures expose only a generic message.
"""

from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """Base exception for all registry errors."""

    status_code = 500
    public = True

    def __init__(self, message: str, status_code: int | None = None, details: dict[str, Any] | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a JSON-safe response body."""
        body: dict[str, Any] = {"error": self.message if self.public else "An internal server error occurred"}
        if self.public and self.details:
            body["details"] = self.details
        return body


class ValidationError(RegistryError):
    """Malformed name, version or upload fields."""

    status_code = 400

    def __init__(self, errors: list[str] | str):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))

    def to_dict(self) -> dict[str, Any]:
        return {"errors": list(self.errors)}


class ConflictError(RegistryError):
    """The version is already published."""

    status_code = 409


class PublishInProgressError(ConflictError):
    """Another publish holds the blob key but has not written its record yet.

    Retryable: the key is either about to be published or will be reclaimed
    as an orphan once it is older than the grace period.
    """


class SafetyError(RegistryError):
    """Archive exceeds resource limits or contains path-escaping entries."""

    status_code = 422


class NotFoundError(RegistryError):
    """No such package or version."""

    status_code = 404

    def __init__(self, name: str, version: str | None = None):
        self.name = name
        self.version = version
        target = f"{name}@{version}" if version else name
        super().__init__(f"Package not found: {target}")


class AuthError(RegistryError):
    """Missing or invalid credentials."""

    status_code = 401


class ForbiddenError(AuthError):
    """Authenticated, but not allowed to perform the operation."""

    status_code = 403


class StorageError(RegistryError):
    """Blob or metadata store unreachable or inconsistent."""

    status_code = 500
    public = False


class BlobExistsError(StorageError):
    """A blob is already stored under the key; blobs are written once."""


class IntegrityError(RegistryError):
    """Stored checksum does not match the recomputed digest."""

    status_code = 500
    public = False

    def __init__(self, name: str, version: str, expected: str, actual: str):
        self.name = name
        self.version = version
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {name}@{version}: expected {expected}, got {actual}")
