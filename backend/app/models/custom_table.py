"""Logical table registry models."""

from __future__ import annotations

from datetime import datetime

from ..extensions import db


class CustomTable(db.Model):
    """Registry entry for a user defined table."""

    __tablename__ = "custom_tables"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), unique=True, nullable=False)
    display_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    icon = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    fields = db.relationship(
        "CustomField",
        back_populates="table",
        cascade="all, delete-orphan",
        order_by="CustomField.order",
    )
    workflows = db.relationship(
        "Workflow",
        back_populates="table",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<CustomTable {self.name!r}>"


class CustomField(db.Model):
    """A column declared on a custom table."""

    __tablename__ = "custom_fields"
    __table_args__ = (db.UniqueConstraint("table_id", "name", name="uq_custom_fields_table_name"),)

    id = db.Column(db.Integer, primary_key=True)
    table_id = db.Column(
        db.Integer, db.ForeignKey("custom_tables.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(64), nullable=False)
    display_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    data_type = db.Column(db.String(64), nullable=False)
    is_required = db.Column(db.Boolean, default=False, nullable=False)
    is_unique = db.Column(db.Boolean, default=False, nullable=False)
    is_timeseries = db.Column(db.Boolean, default=False, nullable=False)
    default_value = db.Column(db.JSON, nullable=True)
    max_length = db.Column(db.Integer, nullable=True)
    precision = db.Column(db.Integer, nullable=True)
    scale = db.Column(db.Integer, nullable=True)
    srid = db.Column(db.Integer, nullable=True)
    geometry_type = db.Column(db.String(32), nullable=True)
    relation_table = db.Column(db.String(64), nullable=True)
    relation_field = db.Column(db.String(64), nullable=True)
    on_delete = db.Column(db.String(16), nullable=True)
    validation = db.Column(db.JSON, nullable=True)
    order = db.Column(db.Integer, default=0, nullable=False)

    table = db.relationship("CustomTable", back_populates="fields")

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<CustomField {self.name!r} {self.data_type}>"
