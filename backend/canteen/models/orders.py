from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .catalog import money


CHANNEL_POS = "pos"
CHANNEL_KIOSK = "kiosk"
CHANNEL_ONLINE = "online"
CHANNELS = (CHANNEL_POS, CHANNEL_KIOSK, CHANNEL_ONLINE)

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_PREPARING = "preparing"
STATUS_READY = "ready"
STATUS_COMPLETED = "completed"
STATUS_SERVED = "served"
STATUS_CANCELLED = "cancelled"
ORDER_STATUSES = (
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_PREPARING,
    STATUS_READY,
    STATUS_COMPLETED,
    STATUS_SERVED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_SERVED, STATUS_CANCELLED})

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_REFUNDED)

PAYMENT_METHODS = ("cash", "card", "upi", "online", "razorpay", "paytm", "phonepe")


class OrderSequence(db.Model):
    """Per-theater order counter, incremented atomically."""
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("theater_id", name="uq_order_sequences_theater"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)


class Order(db.Model):
    """
    Canteen order.

    Pricing columns are immutable once the order is committed; only status
    and payment fields transition afterwards (see order_service).

    idempotency_key is unique per theater; request_hash is the digest of the
    submitted payload so a replay with a different body is detectable.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "idempotency_key", name="uq_orders_theater_idempotency"),
        db.Index("ix_orders_theater_created", "theater_id", "created_at"),
        db.Index("ix_orders_theater_status", "theater_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)

    order_number = db.Column(db.String(32), nullable=False, unique=True)
    sequence_number = db.Column(db.Integer, nullable=False)

    channel = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING)

    customer_name = db.Column(db.String(128), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    seat = db.Column(db.String(32), nullable=True)
    screen = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    tax = db.Column(db.Numeric(12, 2), nullable=False)
    cgst = db.Column(db.Numeric(12, 2), nullable=False)
    sgst = db.Column(db.Numeric(12, 2), nullable=False)
    service_charge = db.Column(db.Numeric(12, 2), nullable=False)
    discount = db.Column(db.Numeric(12, 2), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    # Total the client displayed; kept for audit only
    client_total = db.Column(db.Numeric(12, 2), nullable=True)

    payment_method = db.Column(db.String(16), nullable=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING)
    payment_reference = db.Column(db.String(128), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    idempotency_key = db.Column(db.String(128), nullable=True)
    request_hash = db.Column(db.String(64), nullable=True)

    # True while cafe-ledger SOLD entries for this order are in effect
    stock_recorded = db.Column(db.Boolean, nullable=False, default=False)

    cancel_reason = db.Column(db.String(255), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderLine.line_no",
    )
    theater = db.relationship("Theater")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "theater_id": self.theater_id,
            "order_number": self.order_number,
            "channel": self.channel,
            "status": self.status,
            "customer": {
                "name": self.customer_name,
                "phone": self.customer_phone,
                "email": self.customer_email,
                "seat": self.seat,
                "screen": self.screen,
            },
            "notes": self.notes,
            "pricing": {
                "subtotal": money(self.subtotal),
                "tax": money(self.tax),
                "cgst": money(self.cgst),
                "sgst": money(self.sgst),
                "service_charge": money(self.service_charge),
                "discount": money(self.discount),
                "total": money(self.total),
            },
            "payment": {
                "method": self.payment_method,
                "status": self.payment_status,
                "reference": self.payment_reference,
                "paid_at": to_utc_z(self.paid_at),
            },
            "cancel_reason": self.cancel_reason,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["items"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    line_no = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    combo_id = db.Column(db.Integer, db.ForeignKey("combos.id"), nullable=True)
    name = db.Column(db.String(255), nullable=False)

    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False)
    gst_type = db.Column(db.String(8), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False)
    total_price = db.Column(db.Numeric(12, 2), nullable=False)

    # [{"product_id": 1, "quantity": 3, "entry_id": 17}, ...]
    stock_consumed = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_no": self.line_no,
            "product_id": self.product_id,
            "combo_id": self.combo_id,
            "name": self.name,
            "unit_price": money(self.unit_price),
            "quantity": self.quantity,
            "tax_rate": money(self.tax_rate),
            "gst_type": self.gst_type,
            "discount_amount": money(self.discount_amount),
            "tax_amount": money(self.tax_amount),
            "total_price": money(self.total_price),
        }
