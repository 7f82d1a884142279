# backend/marketplace/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


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

    # External geo collaborator (replaceable in tests via app.extensions)
    from .services.geo_service import OpenRouteServiceClient
    app.extensions["geo_provider"] = OpenRouteServiceClient(
        api_key=app.config["ORS_API_KEY"],
        base_url=app.config["ORS_BASE_URL"],
        timeout=app.config["GEO_TIMEOUT_SECONDS"],
    )

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
