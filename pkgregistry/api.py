from __future__ import annotations

import logging
import os
from http import HTTPStatus
from typing import Any

import yaml
from flask import Blueprint, Response, current_app, g, jsonify, request, send_file

from pkgregistry.errors import AuthError, StorageError
from pkgregistry.identity import Principal
from pkgregistry.models import UploadRequest
from pkgregistry.rate_lim import limiter, upload_limit
from pkgregistry.service import DEFAULT_PAGE_SIZE, RegistryService
from pkgregistry.validation import parse_tags

logger = logging.getLogger(__name__)

blueprint = Blueprint("registry", __name__, url_prefix="/api/v1")
health_blueprint = Blueprint("health", __name__)

_OPENAPI_PATH = os.path.join(os.path.dirname(__file__), "openapi.yaml")


def _service() -> RegistryService:
    return current_app.extensions["registry"]


def _safe_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _authenticate() -> Principal | None:
    header = current_app.config.get("API_KEY_HEADER", "X-API-Key")
    principal = _service().identity.authenticate(request.headers.get(header))
    g.principal_name = principal.name if principal else None
    return principal


def _require_auth() -> Principal:
    principal = _authenticate()
    if principal is None:
        logger.warning("Unauthorized %s %s from %s", request.method, request.path, request.remote_addr)
        raise AuthError("Missing or invalid API key")
    return principal


# -------------------- Health / docs --------------------


@health_blueprint.route("/health", methods=["GET"])
def health() -> tuple[Response, int]:
    service = _service()
    checks: dict[str, dict[str, str]] = {}
    for component, check in (("database", service.catalog.ping), ("storage", service.blobs.ping)):
        try:
            check()
            checks[component] = {"status": "Healthy"}
        except StorageError as exc:
            logger.error("%s health check failed: %s", component, exc)
            checks[component] = {"status": "Unhealthy", "description": str(exc)}
    healthy = all(c["status"] == "Healthy" for c in checks.values())
    return jsonify({"status": "Healthy" if healthy else "Unhealthy", "checks": checks}), (
        HTTPStatus.OK if healthy else HTTPStatus.SERVICE_UNAVAILABLE
    )


@health_blueprint.route("/openapi", methods=["GET"])
def get_openapi_spec() -> tuple[Response, int]:
    """Return the OpenAPI specification."""
    try:
        with open(_OPENAPI_PATH, encoding="utf-8") as f:
            openapi_spec = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load OpenAPI specification: %s", e)
        return jsonify({"error": "OpenAPI specification not available"}), 500
    return jsonify(openapi_spec), 200


# -------------------- Packages --------------------


@blueprint.route("/packages", methods=["GET"])
def list_packages_route() -> tuple[Response, int]:
    search = request.args.get("search")
    page = _safe_int(request.args.get("page"), 1)
    page_size = _safe_int(request.args.get("pageSize"), DEFAULT_PAGE_SIZE)
    logger.info("Listing packages - search=%s page=%s pageSize=%s", search, page, page_size)
    result = _service().list_packages(search, page, page_size)
    return jsonify(result.to_dict()), 200


@blueprint.route("/packages/<string:name>", methods=["GET"])
def list_versions_route(name: str) -> tuple[Response, int]:
    logger.info("Listing versions for package: %s", name)
    return jsonify(_service().list_versions(name)), 200


@blueprint.route("/packages/<string:name>/stats", methods=["GET"])
def stats_route(name: str) -> tuple[Response, int]:
    return jsonify(_service().stats(name).to_dict()), 200


@blueprint.route("/packages/<string:name>/<string:version>", methods=["GET"])
def download_route(name: str, version: str) -> Response:
    logger.info("Download requested - package=%s version=%s", name, version)
    download = _service().fetch(name, version)
    # The response wraps the handle; Werkzeug closes it when the client is done or disconnects
    response = send_file(
        download.stream,
        mimetype="application/zip",
        as_attachment=True,
        download_name=download.filename,
        conditional=False,
        etag=False,
    )
    if download.size is not None:
        response.content_length = download.size
    return response


@blueprint.route("/packages/<string:name>/<string:version>/metadata", methods=["GET"])
def metadata_route(name: str, version: str) -> tuple[Response, int]:
    return jsonify(_service().get_metadata(name, version).to_public_dict()), 200


@blueprint.route("/packages", methods=["POST"])
@limiter.limit(upload_limit)
def upload_route() -> tuple[Response, int]:
    principal = _require_auth()
    form = request.form
    file = request.files.get("file")
    has_file = file is not None and bool(file.filename)
    upload = UploadRequest(
        name=form.get("name", ""),
        version=form.get("version", ""),
        description=form.get("description", ""),
        tags=parse_tags(form.get("tags")),
        filename=file.filename if has_file else None,
        content_type=file.content_type if has_file else None,
        stream=file.stream if has_file else None,
    )
    logger.info("Processing upload for %s@%s by %s", upload.name, upload.version, principal.name)
    record = _service().publish(upload, principal)
    logger.info("Package uploaded successfully: %s@%s", record.name, record.version)
    return jsonify({"message": "Package uploaded successfully", "packageId": record.id}), 201


@blueprint.route("/packages/<string:name>/<string:version>", methods=["DELETE"])
def delete_route(name: str, version: str) -> tuple[Response, int]:
    principal = _require_auth()
    _service().remove(name, version, principal)
    logger.info("Package deleted: %s@%s by %s", name, version, principal.name)
    return jsonify({"message": "Package deleted successfully"}), 200
