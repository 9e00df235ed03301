# Overview: Product catalog routes (theater-scoped list, create, update, soft delete).

from flask import Blueprint, request

from ..decorators import require_admin, require_auth, resolve_theater_id
from ..responses import created, ok
from ..services import catalog_service, stock_ledger_service
from ..models.stock import LEDGER_CAFE


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
@require_auth
def list_products():
    """
    Query params:
    - theater: int (operators only; theater users are pinned to their own)
    - category_id, kiosk_type_id: int filters
    - q: name/SKU search
    - include_inactive: "1" to include soft-deleted products
    - page, per_page: pagination (per_page default 20, max 100)
    """
    theater_id = resolve_theater_id()
    result = catalog_service.list_products(
        theater_id,
        category_id=request.args.get("category_id", type=int),
        kiosk_type_id=request.args.get("kiosk_type_id", type=int),
        search=request.args.get("q"),
        include_inactive=request.args.get("include_inactive") in ("1", "true"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return ok(result)


@products_bp.get("/<int:product_id>")
@require_auth
def get_product(product_id: int):
    theater_id = resolve_theater_id()
    product = catalog_service.get_product(theater_id, product_id)
    data = product.to_dict()
    if product.track_stock:
        data["stock"] = stock_ledger_service.get_current(theater_id, product.id, ledger=LEDGER_CAFE)
    return ok(data)


@products_bp.post("")
@require_auth
@require_admin
def create_product():
    theater_id = resolve_theater_id()
    product = catalog_service.create_product(theater_id, request.get_json(silent=True))
    return created(product.to_dict(), message="Product created")


@products_bp.put("/<int:product_id>")
@require_auth
@require_admin
def update_product(product_id: int):
    theater_id = resolve_theater_id()
    payload = request.get_json(silent=True) or {}
    expected = request.headers.get("If-Match") or payload.get("version_id")
    product = catalog_service.update_product(
        theater_id,
        product_id,
        payload,
        expected_version=int(expected) if expected not in (None, "") else None,
    )
    return ok(product.to_dict(), message="Product updated")


@products_bp.delete("/<int:product_id>")
@require_auth
@require_admin
def delete_product(product_id: int):
    theater_id = resolve_theater_id()
    product = catalog_service.delete_product(theater_id, product_id)
    return ok(product.to_dict(), message="Product deactivated")
