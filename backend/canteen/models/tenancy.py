from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Theater(db.Model):
    """
    Multi-tenant root: every tenant is a Theater.

    All catalog entities, stock ledgers, orders, print jobs and the theater's
    single POS agent are scoped by theater_id. No data may cross theater
    boundaries.

    Lifecycle: is_active=False is a soft deactivation (data retained, no new
    orders, agent stopped). Hard deletion removes the row.
    """
    __tablename__ = "theaters"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    # Order numbers are "<prefix>-<theater id>-<sequence>"
    order_prefix = db.Column(db.String(8), nullable=False, default="ORD")

    # Username the theater's POS agent authenticates with; the password is
    # only ever held in memory by the agent supervisor.
    agent_username = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Theater id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "order_prefix": self.order_prefix,
            "agent_username": self.agent_username,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
