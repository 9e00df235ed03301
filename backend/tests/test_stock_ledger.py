"""
Monthly stock ledger tests: recurrence, dense carry-forward view, clamping,
transfer mirroring, prior-month chain repair, auto-expire and CAS retries.
"""

from datetime import date

import pytest
from sqlalchemy import update

from canteen.errors import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from canteen.extensions import db
from canteen.models import MonthlyStock, StockEntry
from canteen.services import stock_ledger_service as ledger

from conftest import make_product


TODAY = date(2024, 1, 15)


def balances(snapshot):
    return [row["balance"] for row in snapshot["stock_details"]]


def test_dense_history_with_expiry(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "invordStock": 50, "date": "2024-01-10"}, today=TODAY)
    ledger.add_entry(theater.id, product.id, {"expiredStock": 5, "date": "2024-01-12"}, today=TODAY)

    snapshot = ledger.get_monthly(theater.id, product.id, 2024, 1, today=TODAY)

    assert [row["date"] for row in snapshot["stock_details"]] == [
        "2024-01-10", "2024-01-11", "2024-01-12", "2024-01-13", "2024-01-14", "2024-01-15",
    ]
    assert balances(snapshot) == [50, 50, 45, 45, 45, 45]
    assert snapshot["closing_balance"] == 45
    assert snapshot["total_invord_stock"] == 50
    assert snapshot["total_expired_stock"] == 5
    assert snapshot["month_name"] == "January"

    expired = snapshot["stock_details"][2]
    assert expired["type"] == "EXPIRED"
    assert expired["is_auto_generated"] is False
    carry = snapshot["stock_details"][1]
    assert carry["is_auto_generated"] is True
    assert carry["type"] is None
    assert carry["invord_stock"] == 0
    assert carry["notes"] == ledger.CARRY_FORWARD_NOTE
    assert carry["old_stock"] == carry["balance"] == 50


def test_month_without_entries_after_prior_month_is_all_carry_forward(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 12, "date": "2023-12-20"}, today=TODAY)

    snapshot = ledger.get_monthly(theater.id, product.id, 2024, 1, today=TODAY)

    assert snapshot["old_stock"] == 12
    assert len(snapshot["stock_details"]) == 15
    assert set(balances(snapshot)) == {12}
    assert all(row["is_auto_generated"] for row in snapshot["stock_details"])
    assert {row["type"] for row in snapshot["stock_details"]} == {None}


def test_first_ever_month_starts_at_first_entry(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 3, "date": "2024-01-14"}, today=TODAY)

    snapshot = ledger.get_monthly(theater.id, product.id, 2024, 1, today=TODAY)

    assert [row["date"] for row in snapshot["stock_details"]] == ["2024-01-14", "2024-01-15"]


def test_future_month_view_is_empty(theater):
    product = make_product(theater)
    snapshot = ledger.get_monthly(theater.id, product.id, 2024, 3, today=TODAY)
    assert snapshot["stock_details"] == []
    assert snapshot["closing_balance"] == 0


def test_negative_balance_is_clamped_and_annotated(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 10, "date": "2024-01-10"}, today=TODAY)
    doc = ledger.add_entry(theater.id, product.id, {"type": "DAMAGED", "damageStock": 15, "date": "2024-01-11"}, today=TODAY)

    assert doc.closing_balance == 0
    damaged = [e for e in doc.entries if e.type == "DAMAGED"][0]
    assert damaged.balance == 0
    assert "[clamped: short by 5]" in damaged.notes


def test_negative_balance_rejected_when_clamping_disabled(app, theater, monkeypatch):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 10, "date": "2024-01-10"}, today=TODAY)
    monkeypatch.setitem(app.config, "LEDGER_CLAMP_NEGATIVE", False)

    with pytest.raises(PreconditionFailedError):
        ledger.add_entry(theater.id, product.id, {"type": "DAMAGED", "quantity": 15, "date": "2024-01-11"}, today=TODAY)

    assert ledger.get_current(theater.id, product.id, today=TODAY)["balance"] == 10
    assert StockEntry.query.count() == 1


def test_adjustment_is_a_signed_delta(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 10, "date": "2024-01-02"}, today=TODAY)
    ledger.add_entry(theater.id, product.id, {"stockAdjustment": -3, "date": "2024-01-03"}, today=TODAY)
    doc = ledger.add_entry(theater.id, product.id, {"type": "ADJUSTMENT", "stockAdjustment": 1, "date": "2024-01-04"}, today=TODAY)
    assert doc.closing_balance == 8


def test_sales_on_theater_ledger_are_ignored(theater):
    product = make_product(theater)
    doc = ledger.add_entry(
        theater.id, product.id,
        {"type": "ADDED", "invordStock": 10, "sales": 4, "date": "2024-01-05"},
        today=TODAY,
    )
    assert doc.closing_balance == 10
    assert doc.entries[0].sales == 0


def test_entry_validation(theater):
    product = make_product(theater)
    with pytest.raises(ValidationError):
        ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 5, "date": "2024-01-16"}, today=TODAY)
    with pytest.raises(ValidationError):
        ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 5}, today=TODAY)
    with pytest.raises(ValidationError):
        ledger.add_entry(theater.id, product.id, {"date": "2024-01-10"}, today=TODAY)
    with pytest.raises(ValidationError):
        ledger.add_entry(theater.id, product.id, {"type": "SOLD", "quantity": 1, "date": "2024-01-10"}, today=TODAY)
    with pytest.raises(ValidationError):
        ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 1, "unit": "box", "date": "2024-01-10"}, today=TODAY)
    with pytest.raises(ValidationError):
        ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 1, "date": "2024-01-10"}, ledger="warehouse", today=TODAY)


def test_unknown_product_is_not_found(theater, other_theater):
    foreign = make_product(other_theater, "Nachos")
    with pytest.raises(NotFoundError):
        ledger.add_entry(theater.id, foreign.id, {"type": "ADDED", "quantity": 1, "date": "2024-01-10"}, today=TODAY)


def test_unit_prefers_non_default(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 4, "unit": "kg", "date": "2024-01-02"}, today=TODAY)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 1, "unit": "Nos", "date": "2024-01-03"}, today=TODAY)
    current = ledger.get_current(theater.id, product.id, today=TODAY)
    assert current["unit"] == "kg"
    assert current["balance"] == 5
    assert current["total_added"] == 5


def test_cafe_transfer_mirrors_onto_theater_ledger(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 30, "date": "2024-01-05"}, today=TODAY)
    cafe_doc = ledger.add_entry(
        theater.id, product.id, {"type": "TRANSFER", "quantity": 10, "date": "2024-01-06"},
        ledger="cafe", today=TODAY,
    )
    cafe_entry_id = cafe_doc.entries[0].id

    assert ledger.get_current(theater.id, product.id, ledger="cafe", today=TODAY)["balance"] == 10
    assert ledger.get_current(theater.id, product.id, today=TODAY)["balance"] == 20

    mirror = StockEntry.query.filter_by(source="transfer", source_entry_id=cafe_entry_id).one()
    assert mirror.transfer == 10
    with pytest.raises(ConflictError):
        ledger.update_entry(theater.id, product.id, mirror.id, {"quantity": 1}, today=TODAY)

    ledger.update_entry(theater.id, product.id, cafe_entry_id, {"quantity": 12}, ledger="cafe", today=TODAY)
    assert ledger.get_current(theater.id, product.id, today=TODAY)["balance"] == 18

    ledger.delete_entry(theater.id, product.id, cafe_entry_id, ledger="cafe", today=TODAY)
    assert ledger.get_current(theater.id, product.id, today=TODAY)["balance"] == 30
    assert StockEntry.query.filter_by(source="transfer").count() == 0


def test_update_and_delete_recalculate(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 10, "date": "2024-01-02"}, today=TODAY)
    doc = ledger.add_entry(theater.id, product.id, {"type": "DAMAGED", "quantity": 2, "date": "2024-01-04"}, today=TODAY)
    damaged_id = [e.id for e in doc.entries if e.type == "DAMAGED"][0]

    doc = ledger.update_entry(theater.id, product.id, damaged_id, {"quantity": 4, "notes": "dropped tray"}, today=TODAY)
    assert doc.closing_balance == 6

    with pytest.raises(ValidationError):
        ledger.update_entry(theater.id, product.id, damaged_id, {"date": "2023-12-30"}, today=TODAY)

    doc = ledger.delete_entry(theater.id, product.id, damaged_id, today=TODAY)
    assert doc.closing_balance == 10


def test_prior_month_edit_repairs_later_months(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 20, "date": "2023-12-05"}, today=TODAY)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 10, "date": "2024-01-03"}, today=TODAY)
    assert ledger.get_current(theater.id, product.id, today=TODAY)["balance"] == 30

    ledger.add_entry(theater.id, product.id, {"type": "DAMAGED", "quantity": 5, "date": "2023-12-10"}, today=TODAY)

    january = MonthlyStock.query.filter_by(theater_id=theater.id, product_id=product.id, year=2024, month=1).one()
    assert january.old_stock == 15
    assert january.closing_balance == 25
    assert ledger.get_monthly(theater.id, product.id, 2024, 1, today=TODAY)["old_stock"] == 15


def test_repair_chain_fixes_stale_carry_in(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 8, "date": "2023-11-20"}, today=TODAY)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 2, "date": "2024-01-02"}, today=TODAY)
    january = MonthlyStock.query.filter_by(product_id=product.id, year=2024, month=1).one()
    january.old_stock = 0
    db.session.commit()

    changed = ledger.repair_chain(theater.id, product.id, from_year=2023, from_month=11)

    assert changed == 1
    db.session.refresh(january)
    assert january.old_stock == 8
    assert january.closing_balance == 10
    assert ledger.repair_chain(theater.id, product.id, from_year=2023, from_month=11) == 0


def test_get_or_create_carries_in_latest_closing_balance(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 12, "date": "2023-10-03"}, today=TODAY)

    doc = ledger.get_or_create(theater.id, product.id, 2024, 1)

    assert doc.old_stock == 12
    assert doc.closing_balance == 12
    assert doc.month_name == "January"
    assert ledger.get_or_create(theater.id, product.id, 2024, 1).id == doc.id
    assert MonthlyStock.query.filter_by(product_id=product.id, year=2024, month=1).count() == 1

    fresh = make_product(theater, "Nachos")
    assert ledger.get_or_create(theater.id, fresh.id, 2024, 1).old_stock == 0


def test_auto_expire_posts_capped_expiry_once(theater):
    product = make_product(theater)
    ledger.add_entry(
        theater.id, product.id,
        {"type": "ADDED", "quantity": 20, "expireDate": "2024-01-10", "batchNumber": "B1", "date": "2024-01-05"},
        today=TODAY,
    )
    ledger.add_entry(theater.id, product.id, {"type": "DAMAGED", "quantity": 5, "date": "2024-01-08"}, today=TODAY)

    assert ledger.auto_expire(theater.id, product.id, today=TODAY) == 1
    assert ledger.auto_expire(theater.id, product.id, today=TODAY) == 0

    expired = StockEntry.query.filter_by(type="EXPIRED", source="expire").one()
    assert expired.entry_date == date(2024, 1, 11)
    assert expired.expired_stock == 15
    assert expired.batch_number == "B1"
    assert ledger.get_current(theater.id, product.id, today=TODAY)["balance"] == 0


def test_auto_expire_all_sweeps_every_product(theater):
    popcorn = make_product(theater)
    cola = make_product(theater, "Cola")
    for product in (popcorn, cola):
        ledger.add_entry(
            theater.id, product.id,
            {"type": "ADDED", "quantity": 3, "expireDate": "2024-01-12", "date": "2024-01-02"},
            ledger="cafe", today=TODAY,
        )
    assert ledger.auto_expire_all(today=TODAY) == 2
    assert ledger.get_current(theater.id, cola.id, ledger="cafe", today=TODAY)["balance"] == 0


def test_consume_and_release_for_order(theater):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 5, "date": "2024-01-02"}, ledger="cafe", today=TODAY)

    ledger.consume_for_order(theater.id, product.id, 2, day=TODAY)
    ledger.consume_for_order(theater.id, product.id, 1, day=TODAY)
    db.session.commit()
    sold = StockEntry.query.filter_by(type="SOLD").one()
    assert sold.sales == 3
    assert sold.source == "order"

    with pytest.raises(PreconditionFailedError):
        ledger.consume_for_order(theater.id, product.id, 3, day=TODAY)
    db.session.rollback()

    ledger.release_for_order(theater.id, product.id, 1, day=TODAY)
    db.session.commit()
    assert ledger.get_current(theater.id, product.id, ledger="cafe", today=TODAY)["balance"] == 3

    with pytest.raises(ConflictError):
        ledger.delete_entry(theater.id, product.id, sold.id, ledger="cafe", today=TODAY)


def test_version_conflict_is_retried(theater, monkeypatch):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 10, "date": "2024-01-02"}, today=TODAY)

    real_recalculate = ledger.recalculate_document
    calls = {"n": 0}

    def racing_recalculate(doc, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer commits to the same month first
            table = MonthlyStock.__table__
            db.session.connection().execute(
                update(table).where(table.c.id == doc.id).values(version_id=table.c.version_id + 1)
            )
        return real_recalculate(doc, **kwargs)

    monkeypatch.setattr(ledger, "recalculate_document", racing_recalculate)
    doc = ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 5, "date": "2024-01-03"}, today=TODAY)

    assert calls["n"] == 2
    assert doc.closing_balance == 15
    assert StockEntry.query.count() == 2


def test_persistent_version_conflict_gives_up_with_nothing_written(theater, monkeypatch):
    product = make_product(theater)
    ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 10, "date": "2024-01-02"}, today=TODAY)

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
    with pytest.raises(ConflictError) as err:
        ledger.add_entry(theater.id, product.id, {"type": "ADDED", "quantity": 5, "date": "2024-01-03"}, today=TODAY)

    # One try plus five retries
    assert calls["n"] == 6
    assert err.value.details == {"attempts": 6}
    monkeypatch.undo()
    assert StockEntry.query.count() == 1
    assert ledger.get_current(theater.id, product.id, today=TODAY)["balance"] == 10
