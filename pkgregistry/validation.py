"""Request validation for the package registry.

Two layers live here:
- Syntactic checks on package names, versions and upload fields. These are
  pure functions; compiled patterns are module constants built at import.
- A lightweight Flask middleware (``init_validation``) that rejects oversized
  payloads and over-long query/path parameters before any route runs.
"""
from __future__ import annotations

import os
import re
from http import HTTPStatus

from flask import jsonify, request

from pkgregistry.models import UploadRequest, ValidationResult

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000
MAX_TAGS = 10
MAX_TAG_LENGTH = 50
ALLOWED_CONTENT_TYPE = "application/zip"
ALLOWED_EXTENSION = ".zip"

PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")
# Characters no filesystem accepts in a path segment (Windows is the strictest)
_INVALID_PATH_CHARS = frozenset('<>:"/\\|?*' + "".join(chr(c) for c in range(32)))


def is_valid_package_name(name: str | None) -> bool:
    if not name or not name.strip():
        return False
    if len(name) > MAX_NAME_LENGTH:
        return False
    if ".." in name or "/" in name or "\\" in name:
        return False
    if any(ch in _INVALID_PATH_CHARS for ch in name):
        return False
    return PACKAGE_NAME_RE.fullmatch(name) is not None


def is_valid_version(version: str | None) -> bool:
    if not version or not version.strip():
        return False
    return VERSION_RE.fullmatch(version) is not None


def validate_upload_request(upload: UploadRequest) -> ValidationResult:
    """Collect every field-level problem with an upload. Never raises."""
    result = ValidationResult()

    name = upload.name or ""
    if not name.strip():
        result.errors.append("Package name is required")
    elif not is_valid_package_name(name):
        result.errors.append("Invalid package name format")

    version = upload.version or ""
    if not version.strip():
        result.errors.append("Version is required")
    elif not is_valid_version(version):
        result.errors.append("Version must follow semantic versioning (e.g., 1.0.0)")

    if upload.description and len(upload.description) > MAX_DESCRIPTION_LENGTH:
        result.errors.append(f"Description too long (max {MAX_DESCRIPTION_LENGTH} characters)")

    tags = upload.tags or []
    if len(tags) > MAX_TAGS:
        result.errors.append(f"Too many tags (max {MAX_TAGS})")
    if any(len(tag) > MAX_TAG_LENGTH for tag in tags):
        result.errors.append(f"Tag too long (max {MAX_TAG_LENGTH} characters each)")

    if upload.stream is None:
        result.errors.append("Package file is required")
    else:
        ext = os.path.splitext(upload.filename or "")[1].lower()
        if (upload.content_type or "").split(";")[0].strip() != ALLOWED_CONTENT_TYPE or ext != ALLOWED_EXTENSION:
            result.errors.append("Only .zip files are allowed")

    result.is_valid = not result.errors
    return result


def parse_tags(raw: str | None) -> list[str]:
    """Split a comma-separated tag field, dropping empty items."""
    if not raw:
        return []
    return [t for t in raw.split(",") if t]


def init_validation(app) -> None:
    max_qlen = int(app.config.get("MAX_QUERY_PARAM_LENGTH", 512))
    max_plen = int(app.config.get("MAX_PATH_PARAM_LENGTH", 256))

    @app.before_request
    def _validate_request():
        # Werkzeug also enforces MAX_CONTENT_LENGTH, but only once the body is read
        cl = request.content_length
        limit = app.config.get("MAX_CONTENT_LENGTH")
        if cl is not None and limit and cl > limit:
            resp = jsonify({"error": f"Package size exceeds maximum allowed size of {limit} bytes"})
            resp.status_code = HTTPStatus.REQUEST_ENTITY_TOO_LARGE
            return resp

        for k, v in request.args.items():
            if v is not None and len(v) > max_qlen:
                resp = jsonify({"error": f"Query parameter '{k}' is too long"})
                resp.status_code = HTTPStatus.BAD_REQUEST
                return resp

        for k, v in (request.view_args or {}).items():
            if isinstance(v, str) and len(v) > max_plen:
                resp = jsonify({"error": f"Path parameter '{k}' is too long"})
                resp.status_code = HTTPStatus.BAD_REQUEST
                return resp
        return None
