"""Rate limiting for the registry API using Flask-Limiter."""
import logging

from flask import current_app, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)


def _limiter_key_func() -> str:
    """Return a string key for rate-limiting: API key or IP."""
    header = current_app.config.get("API_KEY_HEADER", "X-API-Key")
    api_key = request.headers.get(header, "").strip()
    if api_key:
        return f"key:{api_key}"
    return get_remote_address()


def upload_limit() -> str:
    return current_app.config.get("UPLOAD_RATE_LIMIT", "10 per hour")


limiter = Limiter(key_func=_limiter_key_func, headers_enabled=True)


def init_rate_limiter(app) -> None:
    """Attach the shared limiter to ``app``.

    Config keys consumed (optional):
      - REQUESTS_PER_MINUTE: default limit for every route (default 100)
      - UPLOADS_PER_HOUR: limit for package uploads (default 10)
      - RATELIMIT_DEFAULT: explicit default limits string (overrides REQUESTS_PER_MINUTE)
      - RATELIMIT_ENABLED: set False to disable limiting (tests)
    """
    app.config.setdefault("REQUESTS_PER_MINUTE", 100)
    app.config.setdefault("UPLOADS_PER_HOUR", 10)
    app.config.setdefault("RATELIMIT_DEFAULT", f"{app.config['REQUESTS_PER_MINUTE']} per minute")
    app.config.setdefault("UPLOAD_RATE_LIMIT", f"{app.config['UPLOADS_PER_HOUR']} per hour")
    limiter.init_app(app)
    logger.info(
        "Rate limiting: default=%s upload=%s", app.config["RATELIMIT_DEFAULT"], app.config["UPLOAD_RATE_LIMIT"]
    )
