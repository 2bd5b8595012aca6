# backend/possync/__init__.py
import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def _configure_logging(app: Flask) -> None:
    log_dir = app.config.get("LOG_DIR") or "logs"
    os.makedirs(log_dir, exist_ok=True)

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, "possync.log"),
        maxBytes=2_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    ))

    if not any(isinstance(h, RotatingFileHandler) for h in app.logger.handlers):
        app.logger.addHandler(file_handler)
    app.logger.setLevel(level)


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.categories import categories_bp
    from .routes.products import products_bp
    from .routes.sales import sales_bp
    from .routes.sync import sync_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(categories_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(sync_bp)

    if not app.config.get("TESTING"):
        _configure_logging(app)

    @app.errorhandler(500)
    def _handle_500(e):
        app.logger.exception("Unhandled error: %s %s", request.method, request.path)
        return {"error": "Internal server error"}, 500

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
