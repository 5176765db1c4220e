# backend/storefront/__init__.py
import logging

from flask import Flask, jsonify
from sqlalchemy.exc import OperationalError

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    logging.getLogger("storefront").setLevel(app.config["LOG_LEVEL"])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.checkout import checkout_bp
    from .routes.inventory import inventory_bp
    from .routes.loyalty import loyalty_bp
    from .routes.reconciliation import reconciliation_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(loyalty_bp)
    app.register_blueprint(reconciliation_bp)

    @app.errorhandler(OperationalError)
    def handle_store_unavailable(exc):
        db.session.rollback()
        app.logger.exception("Data store unavailable")
        return jsonify({"error": "Data store unavailable", "retryable": True}), 503

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
