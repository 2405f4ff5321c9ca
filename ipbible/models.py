from __future__ import annotations

from datetime import datetime

from .extensions import db


class Record(db.Model):
    """A single key/value entry of the record store.

    ``version`` increases by one on every write so readers can detect a
    concurrent update before overwriting it.
    """

    __tablename__ = "records"

    key = db.Column(db.String(255), primary_key=True)
    value = db.Column(db.JSON, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - repr for debugging
        return f"<Record {self.key} v{self.version}>"


class RecordField(db.Model):
    __tablename__ = "record_fields"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(255), nullable=False, index=True)
    field = db.Column(db.String(255), nullable=False)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("key", "field", name="uq_record_fields_key_field"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<RecordField {self.key}[{self.field}]>"
