import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _default_sqlite_uri() -> str:
    instance_path = BASE_DIR / "instance"
    instance_path.mkdir(exist_ok=True)
    return f"sqlite:///{instance_path / 'ipbible.db'}"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    """Base configuration shared across environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", _default_sqlite_uri())
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Provider credentials. Gemini accepts any of the historical variable names.
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    GEMINI_API_KEY = (
        os.environ.get("GOOGLE_API_KEY")
        or os.environ.get("GEMINI_API_KEY")
        or os.environ.get("GENERATIVE_LANGUAGE_API_KEY")
    )
    PDFCO_API_KEY = os.environ.get("PDFCO_API_KEY")

    MEDIA_ROOT = os.environ.get("MEDIA_ROOT") or str(BASE_DIR / "instance" / "media")
    MEDIA_URL_PREFIX = os.environ.get("MEDIA_URL_PREFIX", "/media")
    # Absolute origin used when an external service must fetch a stored object.
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL")

    PROVIDER_TIMEOUT_SECONDS = _env_float("PROVIDER_TIMEOUT_SECONDS", 120.0)
    RASTERIZER_TIMEOUT_SECONDS = _env_float("RASTERIZER_TIMEOUT_SECONDS", 60.0)

    CHAT_HISTORY_WINDOW = _env_int("CHAT_HISTORY_WINDOW", 40)
    SCRIPT_EXCERPT_CHARS = _env_int("SCRIPT_EXCERPT_CHARS", 20_000)
    CANON_SCRIPT_CHARS = _env_int("CANON_SCRIPT_CHARS", 80_000)

    MAX_CONTENT_LENGTH = 50 * 1024 * 1024


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    OPENAI_API_KEY = None
    GEMINI_API_KEY = None
    PDFCO_API_KEY = None
    PUBLIC_BASE_URL = None
    MEDIA_ROOT = None
