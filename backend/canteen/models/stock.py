from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z


LEDGER_THEATER = "theater"
LEDGER_CAFE = "cafe"
LEDGER_KINDS = (LEDGER_THEATER, LEDGER_CAFE)

# Entry types
ENTRY_ADDED = "ADDED"
ENTRY_SOLD = "SOLD"
ENTRY_EXPIRED = "EXPIRED"
ENTRY_DAMAGED = "DAMAGED"
ENTRY_RETURNED = "RETURNED"
ENTRY_ADJUSTMENT = "ADJUSTMENT"
ENTRY_TRANSFER = "TRANSFER"
ENTRY_ADDON = "ADDON"
ENTRY_CANCEL = "CANCEL"
ENTRY_TYPES = (
    ENTRY_ADDED,
    ENTRY_SOLD,
    ENTRY_EXPIRED,
    ENTRY_DAMAGED,
    ENTRY_RETURNED,
    ENTRY_ADJUSTMENT,
    ENTRY_TRANSFER,
    ENTRY_ADDON,
    ENTRY_CANCEL,
)


class MonthlyStock(db.Model):
    """
    One month of stock history for a (theater, product, ledger).

    old_stock is the closing balance carried in from the most recent prior
    month. closing_balance, the totals and last_unit are maintained by
    stock_ledger_service on every write so the current balance is a single
    row read.

    MonthlyStock.version_id is the compare-and-swap token: every write to a
    month's entries bumps it, so two writers racing on the same month
    serialize (the loser sees StaleDataError and retries).
    """
    __tablename__ = "monthly_stocks"
    __table_args__ = (
        db.UniqueConstraint(
            "theater_id", "product_id", "ledger", "year", "month",
            name="uq_monthly_stocks_key",
        ),
        db.Index("ix_monthly_stocks_lookup", "theater_id", "product_id", "ledger", "year", "month"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    ledger = db.Column(db.String(16), nullable=False, default=LEDGER_THEATER)

    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    month_name = db.Column(db.String(16), nullable=False)

    old_stock = db.Column(db.Integer, nullable=False, default=0)
    closing_balance = db.Column(db.Integer, nullable=False, default=0)

    total_invord_stock = db.Column(db.Integer, nullable=False, default=0)
    total_sales = db.Column(db.Integer, nullable=False, default=0)
    total_expired_stock = db.Column(db.Integer, nullable=False, default=0)
    total_damage_stock = db.Column(db.Integer, nullable=False, default=0)

    # Unit of the most recent real entry, preferring non-default units
    last_unit = db.Column(db.String(8), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    entries = db.relationship(
        "StockEntry",
        backref="monthly_stock",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="[StockEntry.entry_date, StockEntry.id]",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<MonthlyStock theater_id={self.theater_id} product_id={self.product_id} "
            f"ledger={self.ledger} {self.year}-{self.month:02d}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "product_id": self.product_id,
            "ledger": self.ledger,
            "year": self.year,
            "month": self.month,
            "month_name": self.month_name,
            "old_stock": self.old_stock,
            "closing_balance": self.closing_balance,
            "total_invord_stock": self.total_invord_stock,
            "total_sales": self.total_sales,
            "total_expired_stock": self.total_expired_stock,
            "total_damage_stock": self.total_damage_stock,
            "last_unit": self.last_unit,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockEntry(db.Model):
    """
    A real (user or system posted) ledger entry.

    Carry-forward entries for days without activity are never stored here;
    they are derived on every read/recalculation.
    """
    __tablename__ = "stock_entries"
    __table_args__ = (
        db.Index("ix_stock_entries_month_date", "monthly_stock_id", "entry_date", "id"),
        db.Index("ix_stock_entries_theater_product", "theater_id", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    monthly_stock_id = db.Column(db.Integer, db.ForeignKey("monthly_stocks.id"), nullable=False)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    entry_date = db.Column(db.Date, nullable=False)
    type = db.Column(db.String(16), nullable=False)
    unit = db.Column(db.String(8), nullable=False, default="Nos")
    quantity = db.Column(db.Integer, nullable=False, default=0)

    invord_stock = db.Column(db.Integer, nullable=False, default=0)
    transfer = db.Column(db.Integer, nullable=False, default=0)
    sales = db.Column(db.Integer, nullable=False, default=0)
    addon = db.Column(db.Integer, nullable=False, default=0)
    cancel_stock = db.Column(db.Integer, nullable=False, default=0)
    expired_stock = db.Column(db.Integer, nullable=False, default=0)
    damage_stock = db.Column(db.Integer, nullable=False, default=0)
    stock_adjustment = db.Column(db.Integer, nullable=False, default=0)

    expire_date = db.Column(db.Date, nullable=True)
    batch_number = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    # Derived by recalculation
    old_stock = db.Column(db.Integer, nullable=False, default=0)
    balance = db.Column(db.Integer, nullable=False, default=0)

    # ADDED batches: set once auto-expire has posted the matching EXPIRED entry
    expired_processed = db.Column(db.Boolean, nullable=False, default=False)

    # manual | order | transfer | expire
    source = db.Column(db.String(16), nullable=False, default="manual")
    source_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    source_entry_id = db.Column(db.Integer, nullable=True, index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": to_iso_date(self.entry_date),
            "type": self.type,
            "unit": self.unit,
            "quantity": self.quantity,
            "invord_stock": self.invord_stock,
            "transfer": self.transfer,
            "sales": self.sales,
            "addon": self.addon,
            "cancel_stock": self.cancel_stock,
            "expired_stock": self.expired_stock,
            "damage_stock": self.damage_stock,
            "stock_adjustment": self.stock_adjustment,
            "expire_date": to_iso_date(self.expire_date),
            "batch_number": self.batch_number,
            "notes": self.notes,
            "old_stock": self.old_stock,
            "balance": self.balance,
            "source": self.source,
            "source_order_id": self.source_order_id,
            "is_auto_generated": False,
        }
