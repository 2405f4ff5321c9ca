"""Database helper utilities for ensuring schema consistency."""
from __future__ import annotations

from typing import Iterable, Set

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db


def _get_column_names(table_name: str) -> Set[str]:
    inspector = inspect(db.engine)
    return {column["name"] for column in inspector.get_columns(table_name)}


def ensure_database_schema() -> None:
    """Ensure that the record store tables exist and carry the current columns.

    Runs on every application start. Databases created before the record
    store became versioned get the ``version`` column added with a default of
    ``1`` so existing rows stay readable.
    """

    try:
        inspector = inspect(db.engine)
        table_names: Iterable[str] = inspector.get_table_names()

        # Import locally to avoid circular import issues during application setup.
        from .models import Record, RecordField

        required_tables = {
            "records": Record.__table__,
            "record_fields": RecordField.__table__,
        }

        for table_name, table in required_tables.items():
            if table_name not in table_names:
                table.create(bind=db.engine)

        if "records" in table_names:
            record_columns = _get_column_names("records")
            if "version" not in record_columns:
                with db.engine.begin() as connection:
                    connection.execute(
                        text("ALTER TABLE records ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
                    )
    except SQLAlchemyError:
        # Re-raise so the application does not continue half configured.
        raise
