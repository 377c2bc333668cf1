# backend/possync/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate, sync_engine


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    level = app.config.get("LOG_LEVEL", "INFO")
    app.logger.setLevel(level)
    logging.getLogger("possync").setLevel(level)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    sync_engine.init_app(app)

    # Register blueprints
    from .routes.sync import sync_bp
    from .routes.warehouses import warehouses_bp
    from .routes.stock_changes import stock_changes_bp

    app.register_blueprint(sync_bp)
    app.register_blueprint(warehouses_bp)
    app.register_blueprint(stock_changes_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    if app.config.get("SYNC_SCHEDULER_AUTOSTART") and not app.config.get("TESTING"):
        sync_engine.start_schedulers(app)

    return app
