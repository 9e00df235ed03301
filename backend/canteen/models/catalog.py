from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..time_utils import to_utc_z


GST_INCLUDE = "INCLUDE"
GST_EXCLUDE = "EXCLUDE"
GST_TYPES = (GST_INCLUDE, GST_EXCLUDE)

STOCK_UNITS = ("Nos", "kg", "g", "L", "ML")
DEFAULT_STOCK_UNIT = "Nos"


def money(value) -> float | None:
    if value is None:
        return None
    return float(Decimal(value))


class Category(db.Model):
    """Ordered product category. Names are unique within a theater."""
    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name", name="uq_categories_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    category_type = db.Column(db.String(32), nullable=False, default="Food")
    description = db.Column(db.String(255), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "category_type": self.category_type,
            "description": self.description,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class KioskType(db.Model):
    """Kiosk screen grouping a product can be shown under."""
    __tablename__ = "kiosk_types"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name", name="uq_kiosk_types_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "description": self.description,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
        }


class ProductType(db.Model):
    """Product template: default unit and quantity label for new products."""
    __tablename__ = "product_types"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name", name="uq_product_types_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    quantity_label = db.Column(db.String(64), nullable=True)
    default_unit = db.Column(db.String(8), nullable=False, default=DEFAULT_STOCK_UNIT)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "quantity_label": self.quantity_label,
            "default_unit": self.default_unit,
            "is_active": self.is_active,
        }


class Product(db.Model):
    """
    Sellable canteen product.

    Pricing: base_price is the list price, sale_price (when set) is the
    selling price and must not exceed base_price. gst_type says whether
    tax_rate is already included in the price (INCLUDE) or added on top
    (EXCLUDE).

    Inventory: only products with track_stock=True post to the stock ledgers.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_theater_active", "theater_id", "is_active"),
        db.Index("ix_products_theater_category", "theater_id", "category_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    kiosk_type_id = db.Column(db.Integer, db.ForeignKey("kiosk_types.id"), nullable=True)
    product_type_id = db.Column(db.Integer, db.ForeignKey("product_types.id"), nullable=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)

    base_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    sale_price = db.Column(db.Numeric(12, 2), nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("0"))
    gst_type = db.Column(db.String(8), nullable=False, default=GST_EXCLUDE)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("0"))

    track_stock = db.Column(db.Boolean, nullable=False, default=True)
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    max_stock = db.Column(db.Integer, nullable=True)
    stock_unit = db.Column(db.String(8), nullable=False, default=DEFAULT_STOCK_UNIT)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category")
    kiosk_type = db.relationship("KioskType")
    product_type = db.relationship("ProductType")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} theater_id={self.theater_id}>"

    @property
    def selling_price(self) -> Decimal:
        return Decimal(self.sale_price if self.sale_price is not None else self.base_price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "category_id": self.category_id,
            "kiosk_type_id": self.kiosk_type_id,
            "product_type_id": self.product_type_id,
            "name": self.name,
            "sku": self.sku,
            "description": self.description,
            "pricing": {
                "base_price": money(self.base_price),
                "sale_price": money(self.sale_price),
                "tax_rate": money(self.tax_rate),
                "gst_type": self.gst_type,
                "discount_percentage": money(self.discount_percentage),
            },
            "inventory": {
                "track_stock": self.track_stock,
                "min_stock": self.min_stock,
                "max_stock": self.max_stock,
                "unit": self.stock_unit,
            },
            "is_active": self.is_active,
            "is_available": self.is_available,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Combo(db.Model):
    """
    Named bundle of products sold at one price.

    discount = actual_price - current_price
    discount_percentage = round(discount / actual_price * 100, 2)
    final_price: current_price for INCLUDE, current_price + tax for EXCLUDE.
    Derived columns are maintained by catalog_service.
    """
    __tablename__ = "combos"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "name", name="uq_combos_theater_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    actual_price = db.Column(db.Numeric(12, 2), nullable=False)
    current_price = db.Column(db.Numeric(12, 2), nullable=False)
    discount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("0"))
    gst_type = db.Column(db.String(8), nullable=False, default=GST_INCLUDE)
    gst_tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("0"))
    gst_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    final_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))

    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    items = db.relationship("ComboItem", backref="combo", lazy=True, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "name": self.name,
            "description": self.description,
            "actual_price": money(self.actual_price),
            "current_price": money(self.current_price),
            "discount": money(self.discount),
            "discount_percentage": money(self.discount_percentage),
            "gst_type": self.gst_type,
            "gst_tax_rate": money(self.gst_tax_rate),
            "gst_amount": money(self.gst_amount),
            "final_price": money(self.final_price),
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "items": [item.to_dict() for item in self.items],
        }


class ComboItem(db.Model):
    __tablename__ = "combo_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    combo_id = db.Column(db.Integer, db.ForeignKey("combos.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
        }
