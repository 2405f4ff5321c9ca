"""Write local development settings (.env) and create the record tables."""
from __future__ import annotations

import argparse
import shutil
import sys
from pathlib import Path
from typing import Dict

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ipbible import create_app, db
DEFAULT_ENV_PATH = REPO_ROOT / ".env"
BACKUP_SUFFIX = ".bak"
SECRET_KEYS = {"SECRET_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY", "PDFCO_API_KEY"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Create or update a .env file with the provider credentials and storage settings "
            "used by the IP Bible service, then initialize the database."
        )
    )
    parser.add_argument("--flask-app", default="ipbible:create_app", help="Flask entry point (default: ipbible:create_app)")
    parser.add_argument("--secret-key", help="Secret key for Flask sessions.")
    parser.add_argument("--openai-api-key", help="API key for OpenAI text and image engines.")
    parser.add_argument("--gemini-api-key", help="API key for Gemini text and image engines.")
    parser.add_argument("--pdfco-api-key", help="PDF.co key used to rasterize the first page of PDF scripts.")
    parser.add_argument(
        "--public-base-url",
        help="Absolute origin (e.g. https://bible.example.com) under which /media is reachable from PDF.co.",
    )
    parser.add_argument("--media-root", help="Directory where generated images and uploads are stored.")
    parser.add_argument("--database-url", help="Override SQLALCHEMY_DATABASE_URI / DATABASE_URL.")
    parser.add_argument(
        "--env-path",
        type=Path,
        default=DEFAULT_ENV_PATH,
        help="Path to the .env file that should be created/updated.",
    )
    parser.add_argument(
        "--skip-db",
        action="store_true",
        help="Only update the .env file without touching the database.",
    )
    return parser.parse_args()


def read_env(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    data: Dict[str, str] = {}
    for line in path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, _, value = stripped.partition("=")
        data[key.strip()] = value.strip()
    return data


def write_env(path: Path, values: Dict[str, str]) -> None:
    if path.exists():
        backup_path = path.with_suffix(path.suffix + BACKUP_SUFFIX)
        shutil.copy(path, backup_path)
        print(f"Existing {path.name} backed up to {backup_path.name}.")
    lines = [f"{key}={value}" for key, value in values.items()]
    path.write_text("\n".join(lines) + "\n")
    print(f"Updated environment variables written to {path}.")


def update_env_file(args: argparse.Namespace) -> Dict[str, str]:
    env_data = read_env(args.env_path)
    env_data["FLASK_APP"] = args.flask_app

    optional = {
        "SECRET_KEY": args.secret_key,
        "OPENAI_API_KEY": args.openai_api_key,
        "GEMINI_API_KEY": args.gemini_api_key,
        "PDFCO_API_KEY": args.pdfco_api_key,
        "PUBLIC_BASE_URL": args.public_base_url,
        "MEDIA_ROOT": args.media_root,
        "DATABASE_URL": args.database_url,
    }
    env_data.update({key: value for key, value in optional.items() if value})
    write_env(args.env_path, env_data)
    return env_data


def initialize_database() -> None:
    app = create_app()
    with app.app_context():
        db.create_all()
    print(f"Database initialized ({app.config['SQLALCHEMY_DATABASE_URI']}).")


def _display(key: str, value: str) -> str:
    if key in SECRET_KEYS and value:
        return value[:4] + "…"
    return value


def main() -> None:
    args = parse_args()
    env_values = update_env_file(args)

    if not args.skip_db:
        initialize_database()
    else:
        print("Database initialization skipped.")

    print("\nSetup complete! Summary:")
    for key in sorted(env_values):
        print(f"  {key}={_display(key, env_values[key])}")


if __name__ == "__main__":
    main()
