from __future__ import annotations

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .config import load_settings
from .db import engine
from .models import Base
from .routes.health import bp as health_bp
from .routes.live import bp as live_bp
from .routes.query import bp as query_bp
from .services.rounds import RoundRepository


def create_app() -> Flask:
    settings = load_settings()
    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.flask.secret_key
    Base.metadata.create_all(engine)
    RoundRepository().ensure_state()

    app.register_blueprint(health_bp)
    app.register_blueprint(query_bp)
    app.register_blueprint(live_bp)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_error(exc: Exception):
        app.logger.exception("Unhandled error: %s", exc)
        return jsonify({"error": str(exc)}), 500

    return app


def main() -> None:
    settings = load_settings()
    app = create_app()
    app.run(host="0.0.0.0", port=8000, debug=settings.flask.debug, threaded=True)


if __name__ == "__main__":
    main()
