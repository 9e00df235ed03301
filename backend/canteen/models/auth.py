from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Role(db.Model):
    """
    Per-theater named role with a set of page-permission records.

    Names are unique per theater, case-insensitively (name_key holds the
    lower-cased name). Default roles cannot be deleted or renamed.
    """
    __tablename__ = "roles"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name_key", name="uq_roles_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    name_key = db.Column(db.String(64), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    # [{"page": "orders", "route": "/theater/orders", "has_access": true}, ...]
    permissions = db.Column(db.JSON, nullable=False, default=list)

    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    theater = db.relationship("Theater", backref=db.backref("roles", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "description": self.description,
            "permissions": list(self.permissions or []),
            "is_default": self.is_default,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class User(db.Model):
    """
    Theater staff account (POS cashier, kiosk device login, theater admin) or
    a cross-theater operator (is_super_admin, theater_id NULL).
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=True, index=True)
    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    pin_hash = db.Column(db.String(255), nullable=True)

    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=True)
    is_super_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    role = db.relationship("Role")
    theater = db.relationship("Theater", backref=db.backref("users", lazy=True))

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r} theater_id={self.theater_id}>"

    @property
    def is_theater_admin(self) -> bool:
        return bool(self.role is not None and self.role.name_key == "admin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "username": self.username,
            "email": self.email,
            "role": self.role.name if self.role else None,
            "is_super_admin": self.is_super_admin,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at),
        }


class SessionToken(db.Model):
    """
    Bearer session. Only the sha256 of the token is stored.

    theater_id is captured at login and is immutable for the session lifetime.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=True, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    user = db.relationship("User")
