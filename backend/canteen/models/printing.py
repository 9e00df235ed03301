from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


JOB_QUEUED = "QUEUED"
JOB_SENDING = "SENDING"
JOB_DELIVERED = "DELIVERED"
JOB_FAILED = "FAILED"
JOB_STATUSES = (JOB_QUEUED, JOB_SENDING, JOB_DELIVERED, JOB_FAILED)

PRINTER_RECEIPT = "receipt"
PRINTER_KOT = "kot"
PRINTER_TYPES = (PRINTER_RECEIPT, PRINTER_KOT)


class PrintJob(db.Model):
    """
    Durable per-theater print queue row.

    QUEUED -> SENDING -> DELIVERED
                     \\-> QUEUED (retry, next_attempt_at in the future)
                     \\-> FAILED (attempts exhausted)

    Jobs of one theater are delivered strictly in id order; a worker claims
    the head job with a compare-and-set on (status, version_id).
    """
    __tablename__ = "print_jobs"
    __table_args__ = (
        db.Index("ix_print_jobs_theater_status_id", "theater_id", "status", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=JOB_QUEUED)
    printer_hint = db.Column(db.String(128), nullable=True)
    printer_type = db.Column(db.String(16), nullable=False, default=PRINTER_RECEIPT)

    rendered_receipt = db.Column(db.Text, nullable=False)
    # {"orderNumber": ..., "theaterId": ..., "printerType": ...}
    header = db.Column(db.JSON, nullable=False, default=dict)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.String(500), nullable=True)

    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)

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
        return f"<PrintJob id={self.id} theater_id={self.theater_id} status={self.status}>"

    def frame(self) -> dict:
        """Wire frame sent to the theater's agent."""
        return {
            "type": "print",
            "jobId": self.id,
            "printerHint": self.printer_hint,
            "metadata": dict(self.header or {}),
            "html": self.rendered_receipt,
        }

    def to_dict(self, include_payload: bool = False) -> dict:
        data = {
            "id": self.id,
            "theater_id": self.theater_id,
            "order_id": self.order_id,
            "status": self.status,
            "printer_hint": self.printer_hint,
            "printer_type": self.printer_type,
            "metadata": dict(self.header or {}),
            "attempts": self.attempts,
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "last_error": self.last_error,
            "delivered_at": to_utc_z(self.delivered_at),
            "failed_at": to_utc_z(self.failed_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_payload:
            data["rendered_receipt"] = self.rendered_receipt
        return data


class PrinterSetup(db.Model):
    """Printer attached to a theater's local silent-print service."""
    __tablename__ = "printer_setups"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name", name="uq_printer_setups_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    printer_type = db.Column(db.String(16), nullable=False, default=PRINTER_RECEIPT)
    paper_width_mm = db.Column(db.Integer, nullable=False, default=80)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "printer_type": self.printer_type,
            "paper_width_mm": self.paper_width_mm,
            "is_default": self.is_default,
            "is_active": self.is_active,
        }
