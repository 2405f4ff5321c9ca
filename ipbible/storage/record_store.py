"""Key/value record store backed by the application database.

Keys are hierarchical strings (``ipbible:<kind>:<project>``). Values are
JSON documents. Hash keys hold flat ``field -> string`` maps and live in a
separate table. There are no cross-key transactions; every operation commits
on its own.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Record, RecordField


class RecordStoreError(RuntimeError):
    """Raised when the record store cannot complete an operation."""


class ConcurrentUpdateError(RecordStoreError):
    """Raised when a versioned write keeps losing against concurrent writers."""


@dataclass
class VersionedValue:
    value: Any
    version: int

    @property
    def exists(self) -> bool:
        return self.version > 0


class RecordStore:
    def __init__(self, session: Optional[Any] = None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # ---------------- plain keys ----------------
    def get(self, key: str, default: Any = None) -> Any:
        found = self.get_versioned(key)
        if not found.exists or found.value is None:
            return default
        return found.value

    def set(self, key: str, value: Any) -> int:
        """Write ``value`` unconditionally and return the new version."""

        session = self.session
        for _ in range(2):
            result = session.execute(
                update(Record)
                .where(Record.key == key)
                .values(value=value, version=Record.version + 1, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                session.commit()
                return self.get_versioned(key).version
            try:
                session.execute(insert(Record).values(key=key, value=value, version=1))
                session.commit()
                return 1
            except IntegrityError:
                # Another writer created the key between the update and the insert.
                session.rollback()
        raise RecordStoreError(f"Unable to write record '{key}'.")

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        session = self.session
        removed = session.execute(
            delete(Record).where(Record.key.in_(keys)).execution_options(synchronize_session=False)
        ).rowcount
        removed += session.execute(
            delete(RecordField).where(RecordField.key.in_(keys)).execution_options(synchronize_session=False)
        ).rowcount
        session.commit()
        return int(removed or 0)

    # ---------------- versioned access ----------------
    def get_versioned(self, key: str) -> VersionedValue:
        row = self.session.execute(
            select(Record.value, Record.version).where(Record.key == key)
        ).first()
        if row is None:
            return VersionedValue(value=None, version=0)
        return VersionedValue(value=row.value, version=int(row.version or 0))

    def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        """Write ``value`` only if the stored version still equals ``expected_version``.

        ``expected_version == 0`` means the key must not exist yet.
        """

        session = self.session
        if expected_version <= 0:
            try:
                session.execute(insert(Record).values(key=key, value=value, version=1))
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

        result = session.execute(
            update(Record)
            .where(Record.key == key, Record.version == expected_version)
            .values(value=value, version=Record.version + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return bool(result.rowcount)

    # ---------------- hash keys ----------------
    def hash_get(self, key: str) -> Dict[str, str]:
        rows = self.session.execute(
            select(RecordField.field, RecordField.value)
            .where(RecordField.key == key)
            .order_by(RecordField.id)
        ).all()
        return {row.field: row.value for row in rows}

    def hash_set(self, key: str, fields: Mapping[str, Any]) -> None:
        session = self.session
        for raw_field, raw_value in fields.items():
            field = str(raw_field)
            value = None if raw_value is None else str(raw_value)
            for _ in range(2):
                if self._update_field(key, field, value):
                    session.commit()
                    break
                try:
                    session.execute(insert(RecordField).values(key=key, field=field, value=value))
                    session.commit()
                    break
                except IntegrityError:
                    # Another writer created the field between the update and the insert.
                    session.rollback()
            else:
                raise RecordStoreError(f"Unable to write field '{field}' of '{key}'.")

    def _update_field(self, key: str, field: str, value: Optional[str]) -> int:
        result = self.session.execute(
            update(RecordField)
            .where(RecordField.key == key, RecordField.field == field)
            .values(value=value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


__all__ = ["ConcurrentUpdateError", "RecordStore", "RecordStoreError", "VersionedValue"]
