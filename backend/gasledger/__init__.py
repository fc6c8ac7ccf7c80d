# backend/gasledger/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Service loggers inherit the app's level so [TAG] data-quality events show up.
    logging.getLogger("gasledger").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sales import sales_bp, employee_sales_bp
    from .routes.cylinders import cylinders_bp
    from .routes.assignments import assignments_bp
    from .routes.returns import returns_bp
    from .routes.purchase_orders import purchase_orders_bp
    from .routes.collections import collections_bp
    from .routes.admin import admin_bp
    from .routes.aggregates import aggregates_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(employee_sales_bp)
    app.register_blueprint(cylinders_bp)
    app.register_blueprint(assignments_bp)
    app.register_blueprint(returns_bp)
    app.register_blueprint(purchase_orders_bp)
    app.register_blueprint(collections_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(aggregates_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
