"""
Structured audit logging for the registry.

Security- and storage-relevant events go to the ``audit`` logger as one JSON
object per line on stdout. Entries with ``alert=true`` are security or
reconciliation alerts and can be filtered downstream (e.g. CloudWatch metric
filters).
"""
import json
import logging
import time
import uuid
from typing import Any

from flask import g, request

AUDIT_LOGGER = "audit"
# Responses with these codes also emit a security alert
ALERT_STATUSES = frozenset({401, 403, 500})
# Placed first in each line when present
LEADING_FIELDS = (
    "request_id",
    "principal",
    "package",
    "version",
    "operation",
    "status_code",
    "duration_ms",
    "alert",
    "alert_type",
)
_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, None, (), None).__dict__) | {"message", "asctime"}


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class JSONFormatter(logging.Formatter):
    """Render a record and its ``extra`` fields as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}
        for key in LEADING_FIELDS:
            if key in extras:
                entry[key] = _json_safe(extras.pop(key))
        for key, value in extras.items():
            entry.setdefault(key, _json_safe(value))
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_audit_logger(level: int = logging.INFO) -> logging.Logger:
    audit_logger = logging.getLogger(AUDIT_LOGGER)
    audit_logger.setLevel(level)
    if not audit_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        audit_logger.addHandler(handler)
        audit_logger.propagate = False
    return audit_logger


def _request_event(response, header_name: str) -> dict[str, Any]:
    view_args = request.view_args or {}
    started = getattr(g, "audit_started", None)
    return {
        "type": "http_request",
        "request_id": getattr(g, "request_id", None),
        "method": request.method,
        "path": request.path,
        "status_code": response.status_code,
        "duration_ms": int((time.time() - started) * 1000) if started else None,
        "client_ip": request.remote_addr or request.headers.get("X-Forwarded-For", ""),
        "api_key_present": bool(request.headers.get(header_name)),
        "principal": getattr(g, "principal_name", None),
        "package": view_args.get("name"),
        "version": view_args.get("version"),
    }


def init_audit_logging(app) -> None:
    """Emit one ``http_request`` audit entry per request, plus a
    ``security_alert`` for 401/403/500 responses.

    The package and version of package routes are taken from the URL so
    per-package activity can be traced without parsing paths.
    """
    audit_logger = configure_audit_logger()
    header_name = app.config.get("API_KEY_HEADER", "X-API-Key")

    @app.before_request
    def _start_audit():
        g.audit_started = time.time()
        g.request_id = uuid.uuid4().hex[:16]

    @app.after_request
    def _emit_audit(response):
        try:
            event = _request_event(response, header_name)
            audit_logger.info("http_request", extra=event)
            if response.status_code in ALERT_STATUSES:
                audit_logger.warning("security_alert", extra={**event, "alert": True, "alert_type": "security"})
        except Exception:
            # Auditing must never turn a served response into an error
            audit_logger.exception("failed to emit audit log for request")
        return response


def audit_event(message: str, **fields: Any) -> None:
    logging.getLogger(AUDIT_LOGGER).info(message, extra=fields)


def security_alert(message: str, alert_type: str = "security", **fields: Any) -> None:
    """WARNING-level audit entry flagged ``alert=true``.

    ``alert_type`` separates access problems ("security") from store
    inconsistencies ("reconciliation") and checksum failures ("integrity").
    """
    logging.getLogger(AUDIT_LOGGER).warning(message, extra={**fields, "alert": True, "alert_type": alert_type})


def storage_audit(operation: str, **fields: Any) -> None:
    logging.getLogger(AUDIT_LOGGER).info("storage_operation", extra={"operation": operation, **fields})
