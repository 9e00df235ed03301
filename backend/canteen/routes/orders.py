# Overview: Order submission, listing, status transitions and payment callbacks.

from flask import Blueprint, current_app, g, request

from ..decorators import require_admin, require_auth, resolve_theater_id
from ..errors import ValidationError
from ..responses import created, ok
from ..services import order_service


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_auth
def submit_order():
    """
    Submit an order. An Idempotency-Key header (or idempotency_key in the
    body) makes retries safe: the same key returns the original order.
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    key = request.headers.get("Idempotency-Key") or payload.get("idempotency_key") or payload.get("idempotencyKey")

    order, was_created = order_service.submit_order(
        resolve_theater_id(payload.get("theater_id")),
        payload,
        idempotency_key=key,
        user_id=g.current_user.id,
    )
    if not was_created:
        current_app.logger.info("Idempotent replay of order %s", order.order_number)
        return ok(order.to_dict(), message="Order already submitted")
    return created(order.to_dict(), message="Order created")


@orders_bp.get("")
@require_auth
def list_orders():
    result = order_service.list_orders(
        resolve_theater_id(),
        status=request.args.get("status"),
        channel=request.args.get("channel"),
        date_from=request.args.get("date_from"),
        date_to=request.args.get("date_to"),
        page=request.args.get("page", 1),
        page_size=request.args.get("page_size", 50),
    )
    return ok(result)


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order(order_id: int):
    return ok(order_service.get_order(resolve_theater_id(), order_id).to_dict())


@orders_bp.patch("/<int:order_id>/status")
@require_auth
@require_admin
def update_status(order_id: int):
    data = request.get_json(silent=True) or {}
    order = order_service.update_status(
        resolve_theater_id(),
        order_id,
        data.get("status"),
        reason=data.get("reason"),
    )
    return ok(order.to_dict(), message=f"Order {order.status}")


@orders_bp.post("/<int:order_id>/payment")
@require_auth
def confirm_payment(order_id: int):
    data = request.get_json(silent=True) or {}
    order = order_service.confirm_payment(
        resolve_theater_id(),
        order_id,
        data.get("status"),
        reference=data.get("reference") or data.get("transaction_id"),
        method=data.get("method"),
    )
    return ok(order.to_dict(), message=f"Payment {order.payment_status}")
