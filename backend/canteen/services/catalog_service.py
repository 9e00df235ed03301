# Overview: Theater-scoped catalog: products, categories, kiosk/product types and combos.

"""
Catalog store.

Every read and write is scoped by theater_id; a reference to another
theater's category/kiosk type/product is reported as a validation error,
never resolved. Deletes are soft (is_active=False) so historic orders keep
resolving their products.

Combo derived fields (discount, discount_percentage, gst_amount,
final_price) are recomputed on every write from actual/current price and
the combo's GST policy.
"""

from __future__ import annotations

from decimal import Decimal

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Category, Combo, ComboItem, KioskType, Product, ProductType
from ..models.catalog import GST_TYPES, STOCK_UNITS
from ..validation import (
    MAX_PRICE,
    ModelValidationPolicy,
    coerce_decimal,
    coerce_int,
    enforce_rules_product,
    field_error,
    validate_payload,
)
from .concurrency import run_with_retry
from .pricing import combo_derived


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "sku", "description",
        "category_id", "kiosk_type_id", "product_type_id",
        "base_price", "sale_price", "tax_rate", "gst_type", "discount_percentage",
        "track_stock", "min_stock", "max_stock", "stock_unit",
        "is_active", "is_available",
    },
    required_on_create={"name", "base_price"},
)

CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields={"name", "category_type", "description", "sort_order", "is_active"},
    required_on_create={"name"},
)

KIOSK_TYPE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "sort_order", "is_active"},
    required_on_create={"name"},
)

PRODUCT_TYPE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "quantity_label", "default_unit", "is_active"},
    required_on_create={"name"},
)

# camelCase keys sent by the admin UI
_PRODUCT_ALIASES = {
    "categoryId": "category_id",
    "kioskTypeId": "kiosk_type_id",
    "productTypeId": "product_type_id",
    "basePrice": "base_price",
    "salePrice": "sale_price",
    "taxRate": "tax_rate",
    "gstType": "gst_type",
    "discountPercentage": "discount_percentage",
    "trackStock": "track_stock",
    "minStock": "min_stock",
    "maxStock": "max_stock",
    "stockUnit": "stock_unit",
    "isActive": "is_active",
    "isAvailable": "is_available",
}


def _normalize(payload, aliases: dict) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return {aliases.get(k, k): v for k, v in payload.items()}


def _check_reference(model, theater_id: int, field: str, value) -> None:
    if value is None:
        return
    row = db.session.get(model, value)
    if row is None or row.theater_id != theater_id:
        raise field_error(field, "does not exist in this theater")


# -- products ------------------------------------------------------------


def get_product(theater_id: int, product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or product.theater_id != theater_id:
        raise NotFoundError("Product", product_id)
    return product


def list_products(
    theater_id: int,
    *,
    category_id: int | None = None,
    kiosk_type_id: int | None = None,
    search: str | None = None,
    include_inactive: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Theater-scoped listing; paginated when page is given (per_page default 20, max 100)."""
    query = Product.query.filter(Product.theater_id == theater_id)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    if kiosk_type_id is not None:
        query = query.filter(Product.kiosk_type_id == kiosk_type_id)
    if search:
        like = f"%{search.strip().lower()}%"
        query = query.filter(db.or_(db.func.lower(Product.name).like(like), db.func.lower(Product.sku).like(like)))
    query = query.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = query.all()
        return {"items": [p.to_dict() for p in products], "count": len(products)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    products = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def _validate_product_refs(theater_id: int, patch: dict) -> None:
    _check_reference(Category, theater_id, "category_id", patch.get("category_id"))
    _check_reference(KioskType, theater_id, "kiosk_type_id", patch.get("kiosk_type_id"))
    _check_reference(ProductType, theater_id, "product_type_id", patch.get("product_type_id"))


def create_product(theater_id: int, payload: dict) -> Product:
    payload = _normalize(payload, _PRODUCT_ALIASES)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)
    _validate_product_refs(theater_id, patch)

    if "stock_unit" not in patch and patch.get("product_type_id"):
        patch["stock_unit"] = db.session.get(ProductType, patch["product_type_id"]).default_unit

    product = Product(theater_id=theater_id, **patch)
    db.session.add(product)
    db.session.commit()
    return product


def update_product(theater_id: int, product_id: int, payload: dict, *, expected_version: int | None = None) -> Product:
    payload = _normalize(payload, _PRODUCT_ALIASES)
    payload.pop("version_id", None)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)

    def _op():
        product = get_product(theater_id, product_id)
        if expected_version is not None and product.version_id != expected_version:
            raise ConflictError(
                "Product was modified by someone else",
                details={"expected_version": expected_version, "current_version": product.version_id},
            )
        enforce_rules_product(patch, current=product)
        _validate_product_refs(theater_id, patch)
        for key, value in patch.items():
            setattr(product, key, value)
        db.session.commit()
        return product

    return run_with_retry(_op)


def delete_product(theater_id: int, product_id: int) -> Product:
    """Soft delete: the product disappears from listings and cannot be ordered."""
    product = get_product(theater_id, product_id)
    product.is_active = False
    product.is_available = False
    db.session.commit()
    return product


# -- categories ----------------------------------------------------------


def _name_taken(model, theater_id: int, name: str, exclude_id: int | None = None) -> bool:
    query = model.query.filter(model.theater_id == theater_id, db.func.lower(model.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def list_categories(theater_id: int, *, include_inactive: bool = False) -> list[Category]:
    query = Category.query.filter(Category.theater_id == theater_id)
    if not include_inactive:
        query = query.filter(Category.is_active.is_(True))
    return query.order_by(Category.sort_order.asc(), Category.id.asc()).all()


def get_category(theater_id: int, category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None or category.theater_id != theater_id:
        raise NotFoundError("Category", category_id)
    return category


def create_category(theater_id: int, payload: dict) -> Category:
    patch = validate_payload(model=Category, payload=_normalize(payload, {"sortOrder": "sort_order", "categoryType": "category_type"}),
                             policy=CATEGORY_POLICY, partial=False)
    if _name_taken(Category, theater_id, patch["name"]):
        raise ConflictError(f"Category '{patch['name']}' already exists")
    if "sort_order" not in patch:
        last = db.session.query(db.func.max(Category.sort_order)).filter(Category.theater_id == theater_id).scalar()
        patch["sort_order"] = (last or 0) + 1
    category = Category(theater_id=theater_id, **patch)
    db.session.add(category)
    db.session.commit()
    return category


def update_category(theater_id: int, category_id: int, payload: dict) -> Category:
    patch = validate_payload(model=Category, payload=_normalize(payload, {"sortOrder": "sort_order", "categoryType": "category_type"}),
                             policy=CATEGORY_POLICY, partial=True)
    category = get_category(theater_id, category_id)
    if "name" in patch and _name_taken(Category, theater_id, patch["name"], exclude_id=category.id):
        raise ConflictError(f"Category '{patch['name']}' already exists")
    for key, value in patch.items():
        setattr(category, key, value)
    db.session.commit()
    return category


def reorder_categories(theater_id: int, ordered_ids: list) -> list[Category]:
    if not isinstance(ordered_ids, list):
        raise field_error("order", "must be a list of category ids")
    categories = {c.id: c for c in Category.query.filter_by(theater_id=theater_id).all()}
    for position, raw_id in enumerate(ordered_ids, start=1):
        category_id = coerce_int("order", raw_id)
        if category_id not in categories:
            raise field_error("order", f"unknown category {category_id}")
        categories[category_id].sort_order = position
    db.session.commit()
    return list_categories(theater_id, include_inactive=True)


# -- kiosk and product types --------------------------------------------


def list_kiosk_types(theater_id: int) -> list[KioskType]:
    return (
        KioskType.query.filter_by(theater_id=theater_id, is_active=True)
        .order_by(KioskType.sort_order.asc(), KioskType.id.asc())
        .all()
    )


def create_kiosk_type(theater_id: int, payload: dict) -> KioskType:
    patch = validate_payload(model=KioskType, payload=_normalize(payload, {"sortOrder": "sort_order"}),
                             policy=KIOSK_TYPE_POLICY, partial=False)
    if _name_taken(KioskType, theater_id, patch["name"]):
        raise ConflictError(f"Kiosk type '{patch['name']}' already exists")
    kiosk_type = KioskType(theater_id=theater_id, **patch)
    db.session.add(kiosk_type)
    db.session.commit()
    return kiosk_type


def list_product_types(theater_id: int) -> list[ProductType]:
    return ProductType.query.filter_by(theater_id=theater_id, is_active=True).order_by(ProductType.name.asc()).all()


def create_product_type(theater_id: int, payload: dict) -> ProductType:
    patch = validate_payload(
        model=ProductType,
        payload=_normalize(payload, {"quantityLabel": "quantity_label", "defaultUnit": "default_unit"}),
        policy=PRODUCT_TYPE_POLICY,
        partial=False,
    )
    if "default_unit" in patch and patch["default_unit"] not in STOCK_UNITS:
        raise field_error("default_unit", f"must be one of {', '.join(STOCK_UNITS)}")
    if _name_taken(ProductType, theater_id, patch["name"]):
        raise ConflictError(f"Product type '{patch['name']}' already exists")
    product_type = ProductType(theater_id=theater_id, **patch)
    db.session.add(product_type)
    db.session.commit()
    return product_type


# -- combos --------------------------------------------------------------


def get_combo(theater_id: int, combo_id: int) -> Combo:
    combo = db.session.get(Combo, combo_id)
    if combo is None or combo.theater_id != theater_id:
        raise NotFoundError("Combo", combo_id)
    return combo


def list_combos(theater_id: int, *, include_inactive: bool = False) -> list[Combo]:
    query = Combo.query.filter(Combo.theater_id == theater_id)
    if not include_inactive:
        query = query.filter(Combo.is_active.is_(True))
    return query.order_by(Combo.sort_order.asc(), Combo.id.asc()).all()


def _parse_combo_items(theater_id: int, raw_items) -> list[tuple[int, int]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise field_error("items", "must be a non-empty list")
    items = []
    seen = set()
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise field_error(f"items[{idx}]", "must be an object")
        product_id = coerce_int(f"items[{idx}].product_id", raw.get("product_id", raw.get("productId")))
        quantity = coerce_int(f"items[{idx}].quantity", raw.get("quantity", 1))
        if quantity < 1:
            raise field_error(f"items[{idx}].quantity", "must be >= 1")
        if product_id in seen:
            raise field_error(f"items[{idx}].product_id", "is listed twice")
        seen.add(product_id)
        _check_reference(Product, theater_id, f"items[{idx}].product_id", product_id)
        items.append((product_id, quantity))
    return items


def _combo_prices(payload: dict, current: Combo | None) -> dict:
    def pick(key, alias, default=None):
        if key in payload:
            return payload[key]
        if alias in payload:
            return payload[alias]
        return getattr(current, key) if current is not None else default

    actual = coerce_decimal("actual_price", pick("actual_price", "actualPrice"))
    price = coerce_decimal("current_price", pick("current_price", "currentPrice"))
    gst_type = str(pick("gst_type", "gstType", "INCLUDE")).upper()
    rate = coerce_decimal("gst_tax_rate", pick("gst_tax_rate", "gstTaxRate", Decimal("0")))

    for field, value in (("actual_price", actual), ("current_price", price)):
        if value < 0 or value > MAX_PRICE:
            raise field_error(field, f"must be between 0 and {MAX_PRICE}")
    if price > actual:
        raise field_error("current_price", "must not exceed actual_price")
    if gst_type not in GST_TYPES:
        raise field_error("gst_type", f"must be one of {', '.join(GST_TYPES)}")
    if rate < 0 or rate > 100:
        raise field_error("gst_tax_rate", "must be between 0 and 100")

    derived = combo_derived(actual, price, gst_type=gst_type, gst_tax_rate=rate)
    return {
        "actual_price": actual,
        "current_price": price,
        "gst_type": gst_type,
        "gst_tax_rate": rate,
        **derived,
    }


def create_combo(theater_id: int, payload: dict) -> Combo:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    name = str(payload.get("name") or "").strip()
    if not name:
        raise field_error("name", "is required")
    for key, alias in (("actual_price", "actualPrice"), ("current_price", "currentPrice")):
        if key not in payload and alias not in payload:
            raise field_error(key, "is required")
    if _name_taken(Combo, theater_id, name):
        raise ConflictError(f"Combo '{name}' already exists")

    items = _parse_combo_items(theater_id, payload.get("items"))
    combo = Combo(
        theater_id=theater_id,
        name=name,
        description=payload.get("description"),
        sort_order=coerce_int("sort_order", payload.get("sort_order", 0)),
        **_combo_prices(payload, None),
    )
    for product_id, quantity in items:
        combo.items.append(ComboItem(product_id=product_id, quantity=quantity))
    db.session.add(combo)
    db.session.commit()
    return combo


def update_combo(theater_id: int, combo_id: int, payload: dict) -> Combo:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    combo = get_combo(theater_id, combo_id)

    if "name" in payload:
        name = str(payload["name"] or "").strip()
        if not name:
            raise field_error("name", "cannot be blank")
        if _name_taken(Combo, theater_id, name, exclude_id=combo.id):
            raise ConflictError(f"Combo '{name}' already exists")
        combo.name = name
    if "description" in payload:
        combo.description = payload["description"]
    if "is_active" in payload:
        if not isinstance(payload["is_active"], bool):
            raise field_error("is_active", "must be a boolean")
        combo.is_active = payload["is_active"]

    for key, value in _combo_prices(payload, combo).items():
        setattr(combo, key, value)

    if "items" in payload:
        items = _parse_combo_items(theater_id, payload["items"])
        combo.items.clear()
        db.session.flush()
        for product_id, quantity in items:
            combo.items.append(ComboItem(product_id=product_id, quantity=quantity))

    db.session.commit()
    return combo
