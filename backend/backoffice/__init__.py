# backend/backoffice/__init__.py
import logging
from typing import Mapping

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(overrides: Mapping | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Background tasks (marketplace stock sync)
    from .worker import init_celery
    init_celery(app)

    # Register blueprints
    from .routes.inventory import inventory_bp
    from .routes.transfers import transfers_bp
    from .routes.documents import sales_bp, credit_notes_bp, purchases_bp

    app.register_blueprint(inventory_bp)
    app.register_blueprint(transfers_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(credit_notes_bp)
    app.register_blueprint(purchases_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
