# Overview: Order engine: submit (price, decrement stock, number, persist), status machine, payment callback.

"""
Order engine.

submit_order is all-or-nothing: pricing, stock decrements on the cafe
ledger, the order number and the order rows commit in one transaction.
Version conflicts on any touched month document retry the whole
transaction. The print job is enqueued after commit; enqueue failures are
logged and picked up later by the print backfill sweep.

Status machine:

    pending -> confirmed -> preparing -> ready -> completed | served
    any non-terminal state -> cancelled

Cancelling an order whose stock was decremented posts compensating cafe
CANCEL stock for today.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from ..extensions import db
from ..models import Combo, Order, OrderLine, Product, Theater
from ..models.catalog import GST_INCLUDE
from ..models.orders import (
    CHANNEL_POS,
    CHANNELS,
    ORDER_STATUSES,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    STATUS_PREPARING,
    STATUS_READY,
    STATUS_SERVED,
    TERMINAL_STATUSES,
)
from ..time_utils import parse_iso_date, utcnow
from ..time_utils import today as utc_today
from ..validation import coerce_decimal, coerce_int, field_error
from . import pricing, settings_service, stock_ledger_service
from .concurrency import run_with_retry
from .sequence_service import format_order_number, next_order_sequence
from .store_service import OP_WRITE, apply_deadline


logger = logging.getLogger(__name__)

MAX_ITEMS = 100
MAX_LINE_QUANTITY = 999

NEXT_STATUS = {
    STATUS_PENDING: {STATUS_CONFIRMED},
    STATUS_CONFIRMED: {STATUS_PREPARING},
    STATUS_PREPARING: {STATUS_READY},
    STATUS_READY: {STATUS_COMPLETED, STATUS_SERVED},
}

_ITEM_ALIASES = {"productId": "product_id", "comboId": "combo_id"}


def _attempts() -> int:
    return int(current_app.config.get("LEDGER_CAS_ATTEMPTS", 5)) + 1


def _backoff() -> float:
    return float(current_app.config.get("LEDGER_CAS_BACKOFF_SECONDS", 0.05))


def request_hash(payload: dict) -> str:
    """Digest of the order-defining parts of a payload (idempotency fields excluded)."""
    body = {k: v for k, v in payload.items() if k not in ("idempotency_key", "idempotencyKey")}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_items(raw_items) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise field_error("items", "must be a non-empty list")
    if len(raw_items) > MAX_ITEMS:
        raise field_error("items", f"cannot exceed {MAX_ITEMS} lines")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise field_error(f"items[{idx}]", "must be an object")
        raw = {_ITEM_ALIASES.get(k, k): v for k, v in raw.items()}
        product_id = raw.get("product_id")
        combo_id = raw.get("combo_id")
        if (product_id is None) == (combo_id is None):
            raise field_error(f"items[{idx}]", "must reference exactly one of product_id or combo_id")
        quantity = coerce_int(f"items[{idx}].quantity", raw.get("quantity", 1))
        if quantity < 1 or quantity > MAX_LINE_QUANTITY:
            raise field_error(f"items[{idx}].quantity", f"must be between 1 and {MAX_LINE_QUANTITY}")
        items.append({
            "product_id": coerce_int(f"items[{idx}].product_id", product_id) if product_id is not None else None,
            "combo_id": coerce_int(f"items[{idx}].combo_id", combo_id) if combo_id is not None else None,
            "quantity": quantity,
        })
    return items


def parse_order_payload(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    channel = str(payload.get("channel") or CHANNEL_POS).lower()
    if channel not in CHANNELS:
        raise field_error("channel", f"must be one of {', '.join(CHANNELS)}")

    customer = payload.get("customer") or {}
    if not isinstance(customer, dict):
        raise field_error("customer", "must be an object")

    payment = payload.get("payment") or {}
    if not isinstance(payment, dict):
        raise field_error("payment", "must be an object")
    method = payment.get("method", payload.get("payment_method"))
    method = str(method).strip().lower() if method else None

    client_total = payload.get("client_total", payload.get("total"))
    if client_total is not None:
        client_total = coerce_decimal("client_total", client_total)

    notes = payload.get("notes")
    if notes is not None and len(str(notes)) > 500:
        raise field_error("notes", "exceeds max length 500")

    return {
        "channel": channel,
        "items": _parse_items(payload.get("items")),
        "customer": {
            "name": (customer.get("name") or None),
            "phone": (customer.get("phone") or None),
            "email": (customer.get("email") or None),
            "seat": (customer.get("seat") or None),
            "screen": (customer.get("screen") or None),
        },
        "payment_method": method,
        "client_total": client_total,
        "notes": str(notes).strip() if notes else None,
    }


def _resolve_lines(theater_id: int, items: list[dict]) -> list[dict]:
    """Resolve catalog references and price each line. Rejects unknown/inactive items."""
    product_ids = {i["product_id"] for i in items if i["product_id"] is not None}
    combo_ids = {i["combo_id"] for i in items if i["combo_id"] is not None}
    products = {
        p.id: p for p in Product.query.filter(Product.theater_id == theater_id, Product.id.in_(product_ids)).all()
    } if product_ids else {}
    combos = {
        c.id: c for c in Combo.query.filter(Combo.theater_id == theater_id, Combo.id.in_(combo_ids)).all()
    } if combo_ids else {}

    resolved = []
    for idx, item in enumerate(items):
        if item["product_id"] is not None:
            product = products.get(item["product_id"])
            if product is None:
                raise field_error(f"items[{idx}].product_id", "unknown product")
            if not product.is_active or not product.is_available:
                raise field_error(f"items[{idx}].product_id", "product is not available")
            price = pricing.price_line(
                product.selling_price,
                item["quantity"],
                tax_rate=product.tax_rate,
                gst_type=product.gst_type,
                discount_percentage=product.discount_percentage,
            )
            consumption = [(product.id, item["quantity"])] if product.track_stock else []
            resolved.append({"name": product.name, "product_id": product.id, "combo_id": None,
                             "price": price, "consumption": consumption})
        else:
            combo = combos.get(item["combo_id"])
            if combo is None:
                raise field_error(f"items[{idx}].combo_id", "unknown combo")
            if not combo.is_active:
                raise field_error(f"items[{idx}].combo_id", "combo is not available")
            consumption = []
            for member in combo.items:
                if member.product is None or not member.product.is_active:
                    raise field_error(f"items[{idx}].combo_id", "combo contains an unavailable product")
                if member.product.track_stock:
                    consumption.append((member.product_id, member.quantity * item["quantity"]))
            # finalPrice already carries the combo's GST
            price = pricing.price_line(
                combo.final_price,
                item["quantity"],
                tax_rate=combo.gst_tax_rate,
                gst_type=GST_INCLUDE,
            )
            resolved.append({"name": combo.name, "product_id": None, "combo_id": combo.id,
                             "price": price, "consumption": consumption})
    return resolved


def _initial_payment_status(channel: str, method: str | None, settings) -> str:
    if channel == CHANNEL_POS and method in settings.pos_paid_methods:
        return PAYMENT_PAID
    return PAYMENT_PENDING


def _replay(existing: Order, digest: str) -> Order:
    if existing.request_hash and existing.request_hash != digest:
        raise ConflictError(
            "Idempotency key was already used with a different order payload",
            details={"order_number": existing.order_number},
        )
    return existing


def _find_by_key(theater_id: int, key: str) -> Order | None:
    return Order.query.filter_by(theater_id=theater_id, idempotency_key=key).first()


def submit_order(
    theater_id: int,
    payload: dict,
    *,
    idempotency_key: str | None = None,
    user_id: int | None = None,
    today: date | None = None,
) -> tuple[Order, bool]:
    """
    Accept an order. Returns (order, created); created is False when an
    earlier submission with the same idempotency key is returned.
    """
    theater = db.session.get(Theater, theater_id)
    if theater is None:
        raise NotFoundError("Theater", theater_id)
    if not theater.is_active:
        raise PreconditionFailedError("Theater is not accepting orders")

    key = idempotency_key
    if key is None and isinstance(payload, dict):
        key = payload.get("idempotency_key") or payload.get("idempotencyKey")
    if key is not None:
        key = str(key).strip()[:128] or None
    parsed = parse_order_payload(payload)
    digest = request_hash(payload)
    today = today or utc_today()

    if key:
        existing = _find_by_key(theater_id, key)
        if existing is not None:
            return _replay(existing, digest), False

    settings = settings_service.get_order_settings()

    def _op():
        apply_deadline(OP_WRITE)
        if key:
            existing = _find_by_key(theater_id, key)
            if existing is not None:
                return _replay(existing, digest), False

        lines = _resolve_lines(theater_id, parsed["items"])
        totals = pricing.total_order(
            [line["price"] for line in lines],
            service_charge_percent=settings.service_charge_percent,
        )
        if parsed["client_total"] is not None and abs(parsed["client_total"] - totals.total) > Decimal("0.01"):
            logger.warning(
                "Client total %s differs from computed total %s for theater=%s (key=%s)",
                parsed["client_total"], totals.total, theater_id, key,
            )

        required: dict[int, int] = defaultdict(int)
        for line in lines:
            for product_id, quantity in line["consumption"]:
                required[product_id] += quantity

        entry_ids = {}
        # Stable order so concurrent orders touch month documents in the same sequence
        for product_id in sorted(required):
            entry = stock_ledger_service.consume_for_order(theater_id, product_id, required[product_id], day=today)
            entry_ids[product_id] = entry

        sequence = next_order_sequence(theater_id)
        payment_status = _initial_payment_status(parsed["channel"], parsed["payment_method"], settings)
        order = Order(
            theater_id=theater_id,
            order_number=format_order_number(theater.order_prefix, theater_id, sequence),
            sequence_number=sequence,
            channel=parsed["channel"],
            status=STATUS_PENDING,
            customer_name=parsed["customer"]["name"],
            customer_phone=parsed["customer"]["phone"],
            customer_email=parsed["customer"]["email"],
            seat=parsed["customer"]["seat"],
            screen=parsed["customer"]["screen"],
            notes=parsed["notes"],
            subtotal=totals.subtotal,
            tax=totals.tax,
            cgst=totals.cgst,
            sgst=totals.sgst,
            service_charge=totals.service_charge,
            discount=totals.discount,
            total=totals.total,
            client_total=parsed["client_total"],
            payment_method=parsed["payment_method"],
            payment_status=payment_status,
            paid_at=utcnow() if payment_status == PAYMENT_PAID else None,
            idempotency_key=key,
            request_hash=digest,
            stock_recorded=bool(required),
            created_by_user_id=user_id,
        )
        db.session.add(order)
        db.session.flush()

        for line_no, line in enumerate(lines, start=1):
            price = line["price"]
            order.lines.append(OrderLine(
                line_no=line_no,
                product_id=line["product_id"],
                combo_id=line["combo_id"],
                name=line["name"],
                unit_price=price.unit_price,
                quantity=price.quantity,
                tax_rate=price.tax_rate,
                gst_type=price.gst_type,
                discount_amount=price.discount,
                tax_amount=price.tax,
                total_price=price.total,
                stock_consumed=[
                    {"product_id": pid, "quantity": qty, "entry_id": entry_ids[pid].id}
                    for pid, qty in line["consumption"]
                ],
            ))
        db.session.commit()
        return order, True

    try:
        order, created = run_with_retry(
            _op,
            attempts=_attempts(),
            backoff_base=_backoff(),
            retry_on=(StaleDataError, OperationalError, IntegrityError),
        )
    except Exception:
        db.session.rollback()
        raise

    if created:
        logger.info("Order %s accepted for theater=%s (%s, total %s)", order.order_number, theater_id, order.channel, order.total)
        _enqueue_print(order)
    return order, created


def _enqueue_print(order: Order) -> None:
    from . import print_service

    try:
        print_service.enqueue_for_order(order)
    except Exception:
        db.session.rollback()
        logger.exception("Failed to enqueue receipt for order %s; backfill will retry", order.order_number)


def get_order(theater_id: int, order_id: int) -> Order:
    order = Order.query.filter_by(id=order_id, theater_id=theater_id).first()
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def _release_stock(order: Order, day: date) -> None:
    returned: dict[int, int] = defaultdict(int)
    for line in order.lines:
        for consumed in line.stock_consumed or []:
            returned[int(consumed["product_id"])] += int(consumed["quantity"])
    for product_id in sorted(returned):
        stock_ledger_service.release_for_order(order.theater_id, product_id, returned[product_id], day=day)


def update_status(
    theater_id: int,
    order_id: int,
    new_status: str,
    *,
    reason: str | None = None,
    today: date | None = None,
) -> Order:
    new_status = str(new_status or "").strip().lower()
    if new_status not in ORDER_STATUSES:
        raise field_error("status", f"must be one of {', '.join(ORDER_STATUSES)}")
    today = today or utc_today()

    def _op():
        order = get_order(theater_id, order_id)
        current = order.status
        if current == new_status:
            return order
        if new_status == STATUS_CANCELLED:
            if current in TERMINAL_STATUSES:
                raise PreconditionFailedError(
                    f"Cannot cancel an order that is {current}",
                    details={"from": current, "to": new_status},
                )
        elif new_status not in NEXT_STATUS.get(current, set()):
            raise PreconditionFailedError(
                f"Invalid status transition {current} -> {new_status}",
                details={"from": current, "to": new_status},
            )

        if new_status == STATUS_CANCELLED:
            if order.stock_recorded:
                _release_stock(order, today)
                order.stock_recorded = False
            order.cancel_reason = (reason or "").strip()[:255] or None
            order.cancelled_at = utcnow()
            if order.payment_status == PAYMENT_PAID:
                order.payment_status = PAYMENT_REFUNDED
        elif new_status in (STATUS_COMPLETED, STATUS_SERVED):
            order.completed_at = utcnow()

        order.status = new_status
        db.session.commit()
        logger.info("Order %s: %s -> %s", order.order_number, current, new_status)
        return order

    try:
        return run_with_retry(_op, attempts=_attempts(), backoff_base=_backoff())
    except Exception:
        db.session.rollback()
        raise


def confirm_payment(
    theater_id: int,
    order_id: int,
    status: str,
    *,
    reference: str | None = None,
    method: str | None = None,
) -> Order:
    """
    Gateway callback for kiosk/online orders. A successful payment on a
    pending order also confirms the order.
    """
    status = str(status or "").strip().lower()
    if status not in (PAYMENT_PAID, PAYMENT_FAILED):
        raise field_error("status", f"must be one of {PAYMENT_PAID}, {PAYMENT_FAILED}")

    def _op():
        order = get_order(theater_id, order_id)
        if order.status == STATUS_CANCELLED:
            raise PreconditionFailedError("Order is cancelled")
        if order.payment_status == PAYMENT_PAID:
            if status == PAYMENT_PAID:
                return order
            raise PreconditionFailedError("Order is already paid")

        order.payment_status = status
        if reference:
            order.payment_reference = str(reference).strip()[:128]
        if method:
            order.payment_method = str(method).strip().lower()[:16]
        if status == PAYMENT_PAID:
            order.paid_at = utcnow()
            if order.status == STATUS_PENDING:
                order.status = STATUS_CONFIRMED
        db.session.commit()
        logger.info("Payment %s for order %s (ref=%s)", status, order.order_number, reference)
        return order

    try:
        return run_with_retry(_op, attempts=_attempts(), backoff_base=_backoff())
    except Exception:
        db.session.rollback()
        raise


def list_orders(
    theater_id: int,
    *,
    status: str | None = None,
    channel: str | None = None,
    date_from=None,
    date_to=None,
    page: int = 1,
    page_size: int = 50,
) -> dict:
    page = max(1, coerce_int("page", page))
    page_size = min(200, max(1, coerce_int("page_size", page_size)))

    query = Order.query.filter(Order.theater_id == theater_id)
    if status:
        if status not in ORDER_STATUSES:
            raise field_error("status", f"must be one of {', '.join(ORDER_STATUSES)}")
        query = query.filter(Order.status == status)
    if channel:
        if channel not in CHANNELS:
            raise field_error("channel", f"must be one of {', '.join(CHANNELS)}")
        query = query.filter(Order.channel == channel)
    if date_from:
        try:
            start = parse_iso_date(date_from)
        except ValueError:
            raise field_error("date_from", "must be a date (YYYY-MM-DD)")
        query = query.filter(Order.created_at >= datetime.combine(start, time.min))
    if date_to:
        try:
            end = parse_iso_date(date_to)
        except ValueError:
            raise field_error("date_to", "must be a date (YYYY-MM-DD)")
        query = query.filter(Order.created_at < datetime.combine(end + timedelta(days=1), time.min))

    total = query.count()
    orders = (
        query.order_by(Order.sequence_number.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "items": [o.to_dict(include_lines=False) for o in orders],
        "page": page,
        "page_size": page_size,
        "total": total,
    }
