from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class SystemSetting(db.Model):
    """
    One JSON document per adapter section ("orders", "mail", "sms",
    "object_store", "firebase"). Parsed into typed settings by
    settings_service; never read directly by request handlers.
    """
    __tablename__ = "system_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    section = db.Column(db.String(32), nullable=False, unique=True)
    value = db.Column(db.JSON, nullable=False, default=dict)

    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "section": self.section,
            "updated_by_user_id": self.updated_by_user_id,
            "updated_at": to_utc_z(self.updated_at),
        }
