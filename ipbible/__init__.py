from __future__ import annotations

import atexit
import os
from pathlib import Path

from flask import Flask
from dotenv import load_dotenv

from .config import Config
from .extensions import db, migrate
from .db_utils import ensure_database_schema


BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

_CREDENTIAL_ENV = {
    "OPENAI_API_KEY": ("OPENAI_API_KEY",),
    "GEMINI_API_KEY": ("GOOGLE_API_KEY", "GEMINI_API_KEY", "GENERATIVE_LANGUAGE_API_KEY"),
    "PDFCO_API_KEY": ("PDFCO_API_KEY",),
    "PUBLIC_BASE_URL": ("PUBLIC_BASE_URL",),
}


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)
    if not app.config.get("MEDIA_ROOT"):
        app.config["MEDIA_ROOT"] = str(BASE_DIR / "instance" / "media")
    if not app.config.get("TESTING"):
        # Config attributes are evaluated at import time, before .env is loaded.
        for name, env_names in _CREDENTIAL_ENV.items():
            if app.config.get(name):
                continue
            for env_name in env_names:
                if os.environ.get(env_name):
                    app.config[name] = os.environ[env_name]
                    break
    app.logger.setLevel(str(app.config.get("LOG_LEVEL") or "INFO").upper())

    register_extensions(app)
    register_blueprints(app)
    register_shutdown(app)

    with app.app_context():
        ensure_database_schema()

    return app


def register_extensions(app: Flask) -> None:
    db.init_app(app)
    migrate.init_app(app, db)


def register_blueprints(app: Flask) -> None:
    from .api import bp as api_bp
    from .api import media_bp

    app.register_blueprint(api_bp)
    app.register_blueprint(media_bp)


def register_shutdown(app: Flask) -> None:
    from .services.runtime import close_orchestrator

    atexit.register(close_orchestrator, app)


__all__ = ["create_app", "db"]
