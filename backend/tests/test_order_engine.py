"""
Order engine tests: pricing, stock decrement, idempotent replay, numbering,
status machine and payment callbacks.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update

from canteen.errors import ConflictError, PreconditionFailedError, ValidationError
from canteen.extensions import db
from canteen.models import MonthlyStock, Order, PrintJob
from canteen.services import catalog_service, order_service, settings_service
from canteen.services import stock_ledger_service as ledger

from conftest import make_product, stock_cafe


TODAY = date(2024, 1, 15)


def cafe_balance(theater, product):
    return ledger.get_current(theater.id, product.id, ledger="cafe", today=TODAY)["balance"]


def submit(theater, items, key=None, **payload):
    payload.setdefault("payment", {"method": "cash"})
    return order_service.submit_order(theater.id, {"items": items, **payload}, idempotency_key=key, today=TODAY)


def test_order_prices_decrements_and_queues_receipt(theater):
    product = make_product(theater, price="100", tax_rate="18", gst_type="EXCLUDE")
    stock_cafe(theater, product, 10)

    order, created = submit(theater, [{"productId": product.id, "quantity": 3}], key="k-1")

    assert created is True
    assert order.total == Decimal("354.00")
    assert order.subtotal == Decimal("300.00")
    assert order.tax == Decimal("54.00")
    assert order.cgst + order.sgst == order.tax
    assert order.order_number == f"SC-{theater.id:03d}-000001"
    assert order.payment_status == "paid"
    assert order.status == "pending"
    assert cafe_balance(theater, product) == 7

    job = PrintJob.query.filter_by(order_id=order.id).one()
    assert job.status == "QUEUED"
    assert job.header["orderNumber"] == order.order_number
    assert order.order_number in job.rendered_receipt


def test_idempotent_replay_returns_original_without_decrement(theater):
    product = make_product(theater)
    stock_cafe(theater, product, 10)
    items = [{"product_id": product.id, "quantity": 3}]

    first, created = submit(theater, items, key="k-2")
    again, created_again = submit(theater, items, key="k-2")

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert Order.query.count() == 1
    assert PrintJob.query.count() == 1
    assert cafe_balance(theater, product) == 7


def test_reused_key_with_different_payload_conflicts(theater):
    product = make_product(theater)
    stock_cafe(theater, product, 10)
    submit(theater, [{"product_id": product.id, "quantity": 1}], key="k-3")

    with pytest.raises(ConflictError):
        submit(theater, [{"product_id": product.id, "quantity": 2}], key="k-3")
    assert cafe_balance(theater, product) == 9


def test_insufficient_stock_leaves_nothing_behind(theater):
    product = make_product(theater)
    stock_cafe(theater, product, 2)

    with pytest.raises(PreconditionFailedError) as excinfo:
        submit(theater, [{"product_id": product.id, "quantity": 5}], key="k-4")

    assert excinfo.value.status_code == 412
    assert Order.query.count() == 0
    assert PrintJob.query.count() == 0
    assert cafe_balance(theater, product) == 2


def test_multi_line_order_is_all_or_nothing(theater):
    popcorn = make_product(theater)
    cola = make_product(theater, "Cola", price="50")
    stock_cafe(theater, popcorn, 5)
    stock_cafe(theater, cola, 1)

    with pytest.raises(PreconditionFailedError):
        submit(theater, [
            {"product_id": popcorn.id, "quantity": 2},
            {"product_id": cola.id, "quantity": 2},
        ])

    assert cafe_balance(theater, popcorn) == 5
    assert cafe_balance(theater, cola) == 1


def test_untracked_products_need_no_stock(theater):
    water = make_product(theater, "Water", price="20", tax_rate="0", track_stock=False)
    order, _ = submit(theater, [{"product_id": water.id, "quantity": 4}])
    assert order.total == Decimal("80.00")
    assert order.stock_recorded is False


def test_inclusive_gst_and_discount(theater):
    product = make_product(theater, price="118", tax_rate="18", gst_type="INCLUDE", discount="0", track_stock=False)
    order, _ = submit(theater, [{"product_id": product.id, "quantity": 1}])
    assert order.total == Decimal("118.00")
    assert order.tax == Decimal("18.00")

    discounted = make_product(theater, "Nachos", price="200", tax_rate="0", discount="10", track_stock=False)
    order, _ = submit(theater, [{"product_id": discounted.id, "quantity": 1}])
    assert order.discount == Decimal("20.00")
    assert order.total == Decimal("180.00")


def test_service_charge_from_settings(theater):
    settings_service.update_section("orders", {"service_charge_percent": "10"})
    product = make_product(theater, price="100", tax_rate="0", track_stock=False)
    order, _ = submit(theater, [{"product_id": product.id, "quantity": 1}])
    assert order.service_charge == Decimal("10.00")
    assert order.total == Decimal("110.00")


def test_order_numbers_are_sequential_per_theater(theater, other_theater):
    ours = make_product(theater, track_stock=False)
    theirs = make_product(other_theater, track_stock=False)

    first, _ = submit(theater, [{"product_id": ours.id}])
    second, _ = submit(theater, [{"product_id": ours.id}])
    foreign, _ = submit(other_theater, [{"product_id": theirs.id}])

    assert first.sequence_number == 1
    assert second.sequence_number == 2
    assert foreign.sequence_number == 1
    assert foreign.order_number.startswith("GX-")


def test_products_of_other_theaters_are_rejected(theater, other_theater):
    foreign = make_product(other_theater, track_stock=False)
    with pytest.raises(ValidationError):
        submit(theater, [{"product_id": foreign.id, "quantity": 1}])


@pytest.mark.parametrize("items", [
    [],
    [{"quantity": 1}],
    [{"product_id": 1, "combo_id": 1}],
    [{"product_id": 1, "quantity": 0}],
    [{"product_id": 1, "quantity": 1000}],
])
def test_malformed_items_are_rejected(theater, items):
    with pytest.raises(ValidationError):
        submit(theater, items)


def test_combo_consumes_member_stock(theater):
    popcorn = make_product(theater)
    cola = make_product(theater, "Cola", price="60")
    stock_cafe(theater, popcorn, 10)
    stock_cafe(theater, cola, 10)
    combo = catalog_service.create_combo(theater.id, {
        "name": "Movie Pair",
        "actual_price": "250",
        "current_price": "200",
        "gst_type": "INCLUDE",
        "gst_tax_rate": "5",
        "items": [{"product_id": popcorn.id, "quantity": 1}, {"product_id": cola.id, "quantity": 2}],
    })

    order, _ = submit(theater, [{"combo_id": combo.id, "quantity": 2}])

    assert order.total == Decimal("400.00")
    assert cafe_balance(theater, popcorn) == 8
    assert cafe_balance(theater, cola) == 6


def test_status_machine(theater):
    product = make_product(theater, track_stock=False)
    order, _ = submit(theater, [{"product_id": product.id}])

    for status in ("confirmed", "preparing", "ready", "served"):
        order = order_service.update_status(theater.id, order.id, status, today=TODAY)
        assert order.status == status

    with pytest.raises(PreconditionFailedError):
        order_service.update_status(theater.id, order.id, "cancelled", today=TODAY)

    other, _ = submit(theater, [{"product_id": product.id}])
    with pytest.raises(PreconditionFailedError):
        order_service.update_status(theater.id, other.id, "ready", today=TODAY)
    with pytest.raises(ValidationError):
        order_service.update_status(theater.id, other.id, "teleported", today=TODAY)


def test_cancel_returns_stock_and_refunds(theater):
    product = make_product(theater)
    stock_cafe(theater, product, 10)
    order, _ = submit(theater, [{"product_id": product.id, "quantity": 4}])
    assert cafe_balance(theater, product) == 6

    order = order_service.update_status(theater.id, order.id, "cancelled", reason="customer left", today=TODAY)

    assert order.status == "cancelled"
    assert order.payment_status == "refunded"
    assert order.cancel_reason == "customer left"
    assert cafe_balance(theater, product) == 10

    # A second cancel is a no-op, not a second refund of stock
    order_service.update_status(theater.id, order.id, "cancelled", today=TODAY)
    assert cafe_balance(theater, product) == 10


def test_payment_callback_confirms_pending_order(theater):
    product = make_product(theater, track_stock=False)
    order, _ = order_service.submit_order(
        theater.id,
        {"channel": "kiosk", "items": [{"product_id": product.id}], "payment": {"method": "upi"}},
        today=TODAY,
    )
    assert order.payment_status == "pending"

    order = order_service.confirm_payment(theater.id, order.id, "paid", reference="TXN-9")
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.payment_reference == "TXN-9"

    # Gateways redeliver callbacks
    assert order_service.confirm_payment(theater.id, order.id, "paid").status == "confirmed"
    with pytest.raises(PreconditionFailedError):
        order_service.confirm_payment(theater.id, order.id, "failed")


def test_list_orders_filters(theater):
    product = make_product(theater, track_stock=False)
    submit(theater, [{"product_id": product.id}])
    kiosk, _ = order_service.submit_order(theater.id, {"channel": "kiosk", "items": [{"product_id": product.id}]}, today=TODAY)

    listing = order_service.list_orders(theater.id, channel="kiosk")
    assert listing["total"] == 1
    assert listing["items"][0]["id"] == kiosk.id
    assert order_service.list_orders(theater.id)["total"] == 2


def test_print_enqueue_failure_does_not_fail_order(theater, monkeypatch):
    from canteen.services import print_service

    def broken(order, **kwargs):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(print_service, "enqueue_for_order", broken)
    product = make_product(theater, track_stock=False)
    order, created = submit(theater, [{"product_id": product.id}])

    assert created is True
    assert db.session.get(Order, order.id) is not None
    assert PrintJob.query.count() == 0

    monkeypatch.undo()
    assert print_service.backfill_missing_jobs() == 1
    assert PrintJob.query.filter_by(order_id=order.id).count() == 1


def test_order_gives_up_after_repeated_version_conflicts(theater, monkeypatch):
    product = make_product(theater)
    stock_cafe(theater, product, 10)

    real_recalculate = ledger.recalculate_document
    calls = {"n": 0}

    def always_losing(doc, **kwargs):
        calls["n"] += 1
        table = MonthlyStock.__table__
        db.session.connection().execute(
            update(table).where(table.c.id == doc.id).values(version_id=table.c.version_id + 1)
        )
        return real_recalculate(doc, **kwargs)

    monkeypatch.setattr(ledger, "recalculate_document", always_losing)
    with pytest.raises(ConflictError):
        submit(theater, [{"productId": product.id, "quantity": 2}], key="k-race")

    assert calls["n"] == 6
    monkeypatch.undo()
    assert Order.query.count() == 0
    assert PrintJob.query.count() == 0
    assert cafe_balance(theater, product) == 10
