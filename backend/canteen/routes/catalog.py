# Overview: Categories, kiosk types, product types and combos.

from flask import Blueprint, request

from ..decorators import require_admin, require_auth, resolve_theater_id
from ..errors import ValidationError
from ..responses import created, ok
from ..services import catalog_service


catalog_bp = Blueprint("catalog", __name__, url_prefix="/api/catalog")


def _include_inactive() -> bool:
    return request.args.get("include_inactive") in ("1", "true")


@catalog_bp.get("/categories")
@require_auth
def list_categories():
    theater_id = resolve_theater_id()
    categories = catalog_service.list_categories(theater_id, include_inactive=_include_inactive())
    return ok([c.to_dict() for c in categories])


@catalog_bp.post("/categories")
@require_auth
@require_admin
def create_category():
    category = catalog_service.create_category(resolve_theater_id(), request.get_json(silent=True))
    return created(category.to_dict(), message="Category created")


@catalog_bp.put("/categories/<int:category_id>")
@require_auth
@require_admin
def update_category(category_id: int):
    category = catalog_service.update_category(resolve_theater_id(), category_id, request.get_json(silent=True))
    return ok(category.to_dict(), message="Category updated")


@catalog_bp.post("/categories/reorder")
@require_auth
@require_admin
def reorder_categories():
    data = request.get_json(silent=True) or {}
    ordered_ids = data.get("ids")
    if not isinstance(ordered_ids, list):
        raise ValidationError("ids must be a list", details={"ids": "must be a list"})
    categories = catalog_service.reorder_categories(resolve_theater_id(), ordered_ids)
    return ok([c.to_dict() for c in categories])


@catalog_bp.get("/kiosk-types")
@require_auth
def list_kiosk_types():
    return ok([k.to_dict() for k in catalog_service.list_kiosk_types(resolve_theater_id())])


@catalog_bp.post("/kiosk-types")
@require_auth
@require_admin
def create_kiosk_type():
    kiosk_type = catalog_service.create_kiosk_type(resolve_theater_id(), request.get_json(silent=True))
    return created(kiosk_type.to_dict(), message="Kiosk type created")


@catalog_bp.get("/product-types")
@require_auth
def list_product_types():
    return ok([p.to_dict() for p in catalog_service.list_product_types(resolve_theater_id())])


@catalog_bp.post("/product-types")
@require_auth
@require_admin
def create_product_type():
    product_type = catalog_service.create_product_type(resolve_theater_id(), request.get_json(silent=True))
    return created(product_type.to_dict(), message="Product type created")


@catalog_bp.get("/combos")
@require_auth
def list_combos():
    combos = catalog_service.list_combos(resolve_theater_id(), include_inactive=_include_inactive())
    return ok([c.to_dict() for c in combos])


@catalog_bp.get("/combos/<int:combo_id>")
@require_auth
def get_combo(combo_id: int):
    return ok(catalog_service.get_combo(resolve_theater_id(), combo_id).to_dict())


@catalog_bp.post("/combos")
@require_auth
@require_admin
def create_combo():
    combo = catalog_service.create_combo(resolve_theater_id(), request.get_json(silent=True))
    return created(combo.to_dict(), message="Combo created")


@catalog_bp.put("/combos/<int:combo_id>")
@require_auth
@require_admin
def update_combo(combo_id: int):
    combo = catalog_service.update_combo(resolve_theater_id(), combo_id, request.get_json(silent=True))
    return ok(combo.to_dict(), message="Combo updated")
