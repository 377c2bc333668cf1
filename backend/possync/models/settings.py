from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class SystemSetting(db.Model):
    """Key/value configuration store shared by the sync engine and the settings UI."""
    __tablename__ = "system_settings"
    __table_args__ = (
        db.UniqueConstraint("key", name="uq_system_settings_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(128), nullable=False)
    value = db.Column(db.Text, nullable=True)
    description = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "description": self.description,
            "updated_at": to_utc_z(self.updated_at),
        }
