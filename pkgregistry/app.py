import logging
from http import HTTPStatus

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from pkgregistry.api import blueprint, health_blueprint
from pkgregistry.audit_logging import init_audit_logging
from pkgregistry.config import Settings, get_settings
from pkgregistry.errors import RegistryError
from pkgregistry.rate_lim import init_rate_limiter
from pkgregistry.service import RegistryService
from pkgregistry.validation import init_validation

logger = logging.getLogger(__name__)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(RegistryError)
    def _registry_error(exc: RegistryError):
        if exc.public:
            logger.warning("%s: %s", type(exc).__name__, exc.message)
        else:
            logger.error("%s: %s", type(exc).__name__, exc.message, exc_info=exc)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(Exception)
    def _unhandled(exc: Exception):
        logger.exception("Unhandled exception occurred")
        return jsonify({"error": "An internal server error occurred"}), HTTPStatus.INTERNAL_SERVER_ERROR


def create_app(config=None, service: RegistryService | None = None, settings: Settings | None = None) -> Flask:
    settings = settings or get_settings()
    app = Flask(__name__)
    app.config.update(
        MAX_CONTENT_LENGTH=settings.max_package_size,
        API_KEY_HEADER=settings.api_key_header,
        REQUESTS_PER_MINUTE=settings.requests_per_minute,
        UPLOADS_PER_HOUR=settings.uploads_per_hour,
    )
    if config:
        app.config.update(config)

    if not app.logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
        app.logger.addHandler(handler)
    app.logger.setLevel(settings.log_level)

    CORS(
        app,
        resources={r"/*": {"origins": settings.allowed_origins}},
        methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", settings.api_key_header],
        max_age=600,
    )
    init_rate_limiter(app)
    init_audit_logging(app)
    init_validation(app)
    _register_error_handlers(app)

    app.extensions["registry"] = service or RegistryService.from_settings(settings)
    app.register_blueprint(health_blueprint)
    app.register_blueprint(blueprint)
    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    application = create_app()
    application.run(debug=True)
