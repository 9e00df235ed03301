# Overview: Monthly stock ledger: month documents, entry writes, recalculation and the carry-forward view.

"""
Monthly stock ledger.

Every (theater, product, ledger kind) keeps one MonthlyStock row per
calendar month. Real entries are stored; days without activity are filled
with carry-forward rows when the ledger is read, so the returned history is
dense from the first entry (or the month start, when earlier months exist)
through today.

Balance recurrence per ledger kind:

    theater: balance = prev + invord - transfer - expired - damage + adjustment
    cafe:    balance = prev + invord + addon + cancel - sales - expired - damage + adjustment

Negative results are clamped to zero (and the entry's notes annotated)
unless LEDGER_CLAMP_NEGATIVE is off, in which case the write is rejected.

Writers to one month serialize through MonthlyStock.version_id: every
write bumps it, a concurrent writer fails its flush with StaleDataError and
the whole operation is retried (LEDGER_CAS_ATTEMPTS retries, jittered
backoff) before a ConflictError surfaces.
"""

from __future__ import annotations

import logging
import sys
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, timedelta

from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from ..extensions import db
from ..models import MonthlyStock, Product, StockEntry
from ..models.catalog import DEFAULT_STOCK_UNIT, STOCK_UNITS
from ..models.stock import (
    ENTRY_ADDED,
    ENTRY_ADDON,
    ENTRY_ADJUSTMENT,
    ENTRY_CANCEL,
    ENTRY_DAMAGED,
    ENTRY_EXPIRED,
    ENTRY_RETURNED,
    ENTRY_SOLD,
    ENTRY_TRANSFER,
    ENTRY_TYPES,
    LEDGER_CAFE,
    LEDGER_KINDS,
    LEDGER_THEATER,
)
from ..time_utils import MONTH_NAMES, iter_days, month_end, to_iso_date, utcnow
from ..time_utils import today as utc_today
from ..validation import coerce_date, coerce_int, field_error
from .concurrency import run_with_retry
from .store_service import OP_READ, OP_WRITE, apply_deadline, store_deadline
from .task_runner import defer


logger = logging.getLogger(__name__)

SOURCE_MANUAL = "manual"
SOURCE_ORDER = "order"
SOURCE_TRANSFER = "transfer"
SOURCE_EXPIRE = "expire"

CARRY_FORWARD_NOTE = "Auto-generated: Balance carried forward"
CLAMP_NOTE_PREFIX = "[clamped: short by "
ORDER_SALES_NOTE = "Order sales"
ORDER_CANCEL_NOTE = "Order cancellations"

DELTA_FIELDS = (
    "invord_stock",
    "transfer",
    "sales",
    "addon",
    "cancel_stock",
    "expired_stock",
    "damage_stock",
    "stock_adjustment",
)

# Request aliases used by the kiosk/POS clients
FIELD_ALIASES = {
    "invordStock": "invord_stock",
    "cancelStock": "cancel_stock",
    "expiredStock": "expired_stock",
    "damageStock": "damage_stock",
    "stockAdjustment": "stock_adjustment",
    "expireDate": "expire_date",
    "batchNumber": "batch_number",
}

RECURRENCE = {
    LEDGER_THEATER: {
        "invord_stock": 1,
        "transfer": -1,
        "expired_stock": -1,
        "damage_stock": -1,
        "stock_adjustment": 1,
    },
    LEDGER_CAFE: {
        "invord_stock": 1,
        "addon": 1,
        "cancel_stock": 1,
        "sales": -1,
        "expired_stock": -1,
        "damage_stock": -1,
        "stock_adjustment": 1,
    },
}

# Which delta carries the quantity of each entry type, per ledger kind.
PRIMARY_DELTA = {
    LEDGER_THEATER: {
        ENTRY_ADDED: "invord_stock",
        ENTRY_EXPIRED: "expired_stock",
        ENTRY_DAMAGED: "damage_stock",
        ENTRY_RETURNED: "stock_adjustment",
        ENTRY_ADJUSTMENT: "stock_adjustment",
        ENTRY_TRANSFER: "transfer",
        ENTRY_CANCEL: "stock_adjustment",
    },
    LEDGER_CAFE: {
        ENTRY_ADDED: "invord_stock",
        ENTRY_SOLD: "sales",
        ENTRY_EXPIRED: "expired_stock",
        ENTRY_DAMAGED: "damage_stock",
        ENTRY_RETURNED: "stock_adjustment",
        ENTRY_ADJUSTMENT: "stock_adjustment",
        ENTRY_TRANSFER: "invord_stock",
        ENTRY_ADDON: "addon",
        ENTRY_CANCEL: "cancel_stock",
    },
}

# Type inferred from the first non-zero delta when the caller omits it
INFERENCE_ORDER = (
    ("invord_stock", ENTRY_ADDED),
    ("transfer", ENTRY_TRANSFER),
    ("sales", ENTRY_SOLD),
    ("addon", ENTRY_ADDON),
    ("cancel_stock", ENTRY_CANCEL),
    ("expired_stock", ENTRY_EXPIRED),
    ("damage_stock", ENTRY_DAMAGED),
    ("stock_adjustment", ENTRY_ADJUSTMENT),
)


@dataclass
class EntryInput:
    entry_date: date
    type: str
    unit: str = DEFAULT_STOCK_UNIT
    quantity: int = 0
    deltas: dict = field(default_factory=dict)
    expire_date: date | None = None
    batch_number: str | None = None
    notes: str | None = None


# ---------------------------------------------------------------------------
# Pure recalculation
# ---------------------------------------------------------------------------

def ledger_delta(ledger: str, row) -> int:
    """Net balance change of one entry (dict or StockEntry) under a ledger kind."""
    total = 0
    for name, sign in RECURRENCE[ledger].items():
        value = row.get(name) if isinstance(row, dict) else getattr(row, name)
        total += sign * (value or 0)
    return total


def _strip_clamp_note(notes: str | None) -> str | None:
    if not notes:
        return notes
    idx = notes.find(CLAMP_NOTE_PREFIX)
    if idx < 0:
        return notes
    return notes[:idx].rstrip() or None


def _clamp_note(notes: str | None, shortfall: int) -> str:
    base = _strip_clamp_note(notes)
    note = f"{CLAMP_NOTE_PREFIX}{shortfall}]"
    return f"{base} {note}" if base else note


def recalculate_rows(ledger: str, old_stock: int, rows: list[dict], *, clamp: bool = True) -> int:
    """
    Walk rows (already sorted by date, then insertion) from old_stock and set
    each row's old_stock/balance. Returns the closing balance.
    """
    running = old_stock
    for row in rows:
        row["old_stock"] = running
        raw = running + ledger_delta(ledger, row)
        notes = _strip_clamp_note(row.get("notes"))
        if raw < 0:
            if not clamp:
                raise PreconditionFailedError(
                    "Entry would drive the balance below zero",
                    details={"date": str(row.get("date")), "shortfall": -raw},
                )
            notes = _clamp_note(notes, -raw)
            raw = 0
        row["notes"] = notes
        row["balance"] = raw
        running = raw
    return running


def carry_forward_row(day: date, balance: int) -> dict:
    row = {name: 0 for name in DELTA_FIELDS}
    row.update({
        "id": None,
        "date": to_iso_date(day),
        "type": None,
        "unit": None,
        "quantity": 0,
        "expire_date": None,
        "batch_number": None,
        "notes": CARRY_FORWARD_NOTE,
        "old_stock": balance,
        "balance": balance,
        "source": None,
        "source_order_id": None,
        "is_auto_generated": True,
    })
    return row


def fill_gaps(rows: list[dict], *, old_stock: int, start: date | None, end: date) -> list[dict]:
    """
    Return rows plus one carry-forward row for every day in [start, end]
    that has no real row. Days with real rows keep all of them.
    """
    by_day: "OrderedDict[date, list[dict]]" = OrderedDict()
    for row in rows:
        by_day.setdefault(date.fromisoformat(row["date"]), []).append(row)

    if rows:
        first = next(iter(by_day))
        start = first if start is None else min(start, first)
    if start is None:
        return list(rows)

    dense: list[dict] = []
    running = old_stock
    for day in iter_days(start, end):
        day_rows = by_day.pop(day, None)
        if day_rows:
            dense.extend(day_rows)
            running = day_rows[-1]["balance"]
        else:
            dense.append(carry_forward_row(day, running))
    # Rows after the view end (only possible when today is pinned earlier)
    for day_rows in by_day.values():
        dense.extend(day_rows)
    return dense


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def _normalize_keys(payload: dict) -> dict:
    return {FIELD_ALIASES.get(k, k): v for k, v in payload.items()}


def parse_entry_payload(payload: dict, *, ledger: str, today: date, existing: StockEntry | None = None) -> EntryInput:
    """
    Validate an entry payload for a ledger kind.

    On update (existing given) omitted attributes keep their stored value;
    if the payload touches type, quantity or any delta, the delta set is
    rebuilt from the payload alone.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    data = _normalize_keys(payload)

    if "date" in data:
        entry_date = coerce_date("date", data["date"])
    elif existing is not None:
        entry_date = existing.entry_date
    else:
        raise field_error("date", "is required")
    if entry_date > today:
        raise field_error("date", "cannot be in the future")

    touches_quantity = any(k in data for k in ("type", "quantity", *DELTA_FIELDS))

    entry_type = data.get("type")
    if entry_type is None and existing is not None and not any(k in data for k in DELTA_FIELDS):
        entry_type = existing.type
    if entry_type is not None:
        entry_type = str(entry_type).strip().upper()
        if entry_type not in ENTRY_TYPES:
            raise field_error("type", f"must be one of {', '.join(ENTRY_TYPES)}")
        if entry_type not in PRIMARY_DELTA[ledger]:
            raise field_error("type", f"{entry_type} entries are not accepted on the {ledger} ledger")

    if existing is not None and not touches_quantity:
        deltas = {name: getattr(existing, name) or 0 for name in DELTA_FIELDS}
        quantity = existing.quantity
    else:
        deltas = {}
        for name in DELTA_FIELDS:
            raw = data.get(name)
            value = 0 if raw is None else coerce_int(name, raw)
            if value < 0 and name != "stock_adjustment":
                raise field_error(name, "must be >= 0")
            deltas[name] = value

        if deltas["sales"] and ledger == LEDGER_THEATER:
            logger.warning(
                "Ignoring sales=%s on theater ledger entry dated %s; sales are tracked on the cafe ledger",
                deltas["sales"], entry_date,
            )
            deltas["sales"] = 0

        for name, value in deltas.items():
            if value and name not in RECURRENCE[ledger]:
                raise field_error(name, f"is not tracked on the {ledger} ledger")

        quantity = 0
        if data.get("quantity") is not None:
            quantity = coerce_int("quantity", data["quantity"])
            if quantity < 0:
                raise field_error("quantity", "must be >= 0")

        if entry_type is None:
            for name, inferred in INFERENCE_ORDER:
                if deltas.get(name) and inferred in PRIMARY_DELTA[ledger]:
                    entry_type = inferred
                    break
            if entry_type is None:
                raise ValidationError(
                    "Entry must carry a non-zero quantity",
                    details={"quantity": "must be > 0"},
                )

        primary = PRIMARY_DELTA[ledger][entry_type]
        if not deltas[primary] and quantity:
            deltas[primary] = quantity
        if entry_type == ENTRY_ADJUSTMENT:
            if deltas[primary] == 0:
                raise field_error(primary, f"must be non-zero for {entry_type}")
        elif deltas[primary] <= 0:
            raise field_error(primary, f"must be > 0 for {entry_type}")
        if not quantity:
            quantity = abs(deltas[primary])

    unit = data.get("unit", existing.unit if existing is not None else DEFAULT_STOCK_UNIT) or DEFAULT_STOCK_UNIT
    if unit not in STOCK_UNITS:
        raise field_error("unit", f"must be one of {', '.join(STOCK_UNITS)}")

    if "expire_date" in data:
        expire_date = coerce_date("expire_date", data["expire_date"]) if data["expire_date"] else None
    else:
        expire_date = existing.expire_date if existing is not None else None

    batch_number = data.get("batch_number", existing.batch_number if existing is not None else None)
    if batch_number is not None:
        batch_number = str(batch_number).strip()[:64] or None

    notes = data.get("notes", _strip_clamp_note(existing.notes) if existing is not None else None)
    if notes is not None:
        notes = str(notes).strip()
        if len(notes) > 400:
            raise field_error("notes", "exceeds max length 400")
        notes = notes or None

    return EntryInput(
        entry_date=entry_date,
        type=entry_type,
        unit=unit,
        quantity=quantity,
        deltas=deltas,
        expire_date=expire_date,
        batch_number=batch_number,
        notes=notes,
    )


# ---------------------------------------------------------------------------
# Month documents
# ---------------------------------------------------------------------------

def _check_ledger(ledger: str) -> None:
    if ledger not in LEDGER_KINDS:
        raise field_error("ledger", f"must be one of {', '.join(LEDGER_KINDS)}")


def check_period(year, month) -> tuple[int, int]:
    year = coerce_int("year", year)
    month = coerce_int("month", month)
    if not 1 <= month <= 12:
        raise field_error("month", "must be between 1 and 12")
    if not 2000 <= year <= 2100:
        raise field_error("year", "must be between 2000 and 2100")
    return year, month


def _month_query(theater_id: int, product_id: int, ledger: str):
    return MonthlyStock.query.filter_by(theater_id=theater_id, product_id=product_id, ledger=ledger)


def _get_month(theater_id: int, product_id: int, ledger: str, year: int, month: int) -> MonthlyStock | None:
    return _month_query(theater_id, product_id, ledger).filter_by(year=year, month=month).first()


def _before(year: int, month: int):
    return or_(
        MonthlyStock.year < year,
        and_(MonthlyStock.year == year, MonthlyStock.month < month),
    )


def _not_after(year: int, month: int):
    return or_(
        MonthlyStock.year < year,
        and_(MonthlyStock.year == year, MonthlyStock.month <= month),
    )


def _after(year: int, month: int):
    return or_(
        MonthlyStock.year > year,
        and_(MonthlyStock.year == year, MonthlyStock.month > month),
    )


def _previous_doc(theater_id: int, product_id: int, ledger: str, year: int, month: int) -> MonthlyStock | None:
    return (
        _month_query(theater_id, product_id, ledger)
        .filter(_before(year, month))
        .order_by(MonthlyStock.year.desc(), MonthlyStock.month.desc())
        .first()
    )


def get_or_create_month(theater_id: int, product_id: int, year: int, month: int, *, ledger: str = LEDGER_THEATER) -> MonthlyStock:
    """
    Return the month document, creating it (carrying in the most recent
    prior month's closing balance) if absent. Does not commit.

    Two writers creating the same month race on uq_monthly_stocks_key; the
    loser's flush raises IntegrityError and its whole operation is retried.
    """
    doc = _get_month(theater_id, product_id, ledger, year, month)
    if doc is not None:
        return doc

    prev = _previous_doc(theater_id, product_id, ledger, year, month)
    carried = prev.closing_balance if prev is not None else 0
    doc = MonthlyStock(
        theater_id=theater_id,
        product_id=product_id,
        ledger=ledger,
        year=year,
        month=month,
        month_name=MONTH_NAMES[month - 1],
        old_stock=carried,
        closing_balance=carried,
        last_unit=None,
    )
    db.session.add(doc)
    db.session.flush()
    return doc


def get_or_create(theater_id: int, product_id: int, year: int, month: int, *, ledger: str = LEDGER_THEATER) -> MonthlyStock:
    _check_ledger(ledger)
    year, month = check_period(year, month)
    _require_product(theater_id, product_id)
    return _write(lambda: get_or_create_month(theater_id, product_id, year, month, ledger=ledger), commit=True)


def _entry_sort_key(entry: StockEntry):
    return (entry.entry_date, entry.id if entry.id is not None else sys.maxsize)


def _resolve_unit(entries: list[StockEntry]) -> str | None:
    """Unit of the most recent entry, preferring units other than the default."""
    for entry in reversed(entries):
        if entry.unit and entry.unit != DEFAULT_STOCK_UNIT:
            return entry.unit
    return entries[-1].unit if entries else None


def _clamp_enabled(clamp: bool | None) -> bool:
    if clamp is not None:
        return clamp
    return bool(current_app.config.get("LEDGER_CLAMP_NEGATIVE", True))


def _touch(doc: MonthlyStock) -> None:
    doc.updated_at = utcnow()
    flag_modified(doc, "updated_at")


def recalculate_document(doc: MonthlyStock, *, clamp: bool | None = None) -> int:
    """Re-derive every stored entry's old_stock/balance plus the month totals."""
    entries = sorted(doc.entries, key=_entry_sort_key)
    rows = [
        {name: getattr(e, name) or 0 for name in DELTA_FIELDS} | {"date": e.entry_date, "notes": e.notes}
        for e in entries
    ]
    closing = recalculate_rows(doc.ledger, doc.old_stock, rows, clamp=_clamp_enabled(clamp))
    for entry, row in zip(entries, rows):
        entry.old_stock = row["old_stock"]
        entry.balance = row["balance"]
        if entry.notes != row["notes"]:
            entry.notes = row["notes"]

    doc.closing_balance = closing
    doc.total_invord_stock = sum(e.invord_stock or 0 for e in entries)
    doc.total_sales = sum(e.sales or 0 for e in entries)
    doc.total_expired_stock = sum(e.expired_stock or 0 for e in entries)
    doc.total_damage_stock = sum(e.damage_stock or 0 for e in entries)
    doc.last_unit = _resolve_unit(entries)
    _touch(doc)
    return closing


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _cas_attempts() -> int:
    # First try plus the configured number of retries
    return int(current_app.config.get("LEDGER_CAS_ATTEMPTS", 5)) + 1


def _write(op, *, commit: bool):
    if not commit:
        result = op()
        db.session.flush()
        return result

    def _txn():
        apply_deadline(OP_WRITE)
        result = op()
        db.session.commit()
        return result

    try:
        return run_with_retry(
            _txn,
            attempts=_cas_attempts(),
            backoff_base=float(current_app.config.get("LEDGER_CAS_BACKOFF_SECONDS", 0.05)),
            retry_on=(StaleDataError, OperationalError, IntegrityError),
        )
    except Exception:
        db.session.rollback()
        raise


def _require_product(theater_id: int, product_id: int) -> Product:
    product = Product.query.filter_by(id=product_id, theater_id=theater_id).first()
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def _new_entry(theater_id: int, product_id: int, data: EntryInput, **extra) -> StockEntry:
    entry = StockEntry(
        theater_id=theater_id,
        product_id=product_id,
        entry_date=data.entry_date,
        type=data.type,
        unit=data.unit,
        quantity=data.quantity,
        expire_date=data.expire_date,
        batch_number=data.batch_number,
        notes=data.notes,
        **extra,
    )
    for name in DELTA_FIELDS:
        setattr(entry, name, data.deltas.get(name, 0))
    return entry


def _post_entry(
    theater_id: int,
    product_id: int,
    ledger: str,
    data: EntryInput,
    *,
    user_id: int | None = None,
    source: str = SOURCE_MANUAL,
    source_order_id: int | None = None,
    source_entry_id: int | None = None,
) -> tuple[MonthlyStock, StockEntry]:
    doc = get_or_create_month(theater_id, product_id, data.entry_date.year, data.entry_date.month, ledger=ledger)
    entry = _new_entry(
        theater_id,
        product_id,
        data,
        source=source,
        source_order_id=source_order_id,
        source_entry_id=source_entry_id,
        created_by_user_id=user_id,
    )
    doc.entries.append(entry)
    recalculate_document(doc)
    if ledger == LEDGER_CAFE and data.type == ENTRY_TRANSFER:
        db.session.flush()
        _sync_transfer_mirror(entry, user_id=user_id)
    return doc, entry


def _find_mirror(cafe_entry: StockEntry) -> StockEntry | None:
    return (
        StockEntry.query.join(MonthlyStock)
        .filter(
            MonthlyStock.ledger == LEDGER_THEATER,
            StockEntry.theater_id == cafe_entry.theater_id,
            StockEntry.product_id == cafe_entry.product_id,
            StockEntry.source == SOURCE_TRANSFER,
            StockEntry.source_entry_id == cafe_entry.id,
        )
        .first()
    )


def _sync_transfer_mirror(cafe_entry: StockEntry, *, user_id: int | None = None, deleted: bool = False) -> None:
    """Keep the theater-ledger TRANSFER that mirrors a cafe TRANSFER in step."""
    mirror = _find_mirror(cafe_entry)
    wanted = not deleted and cafe_entry.type == ENTRY_TRANSFER

    if mirror is not None and not wanted:
        mirror_doc = mirror.monthly_stock
        mirror_doc.entries.remove(mirror)
        recalculate_document(mirror_doc)
        return

    if not wanted:
        return

    if mirror is None:
        data = EntryInput(
            entry_date=cafe_entry.entry_date,
            type=ENTRY_TRANSFER,
            unit=cafe_entry.unit,
            quantity=cafe_entry.invord_stock,
            deltas={"transfer": cafe_entry.invord_stock},
            notes="Transferred to cafe",
        )
        _post_entry(
            cafe_entry.theater_id,
            cafe_entry.product_id,
            LEDGER_THEATER,
            data,
            user_id=user_id,
            source=SOURCE_TRANSFER,
            source_entry_id=cafe_entry.id,
        )
        return

    mirror.entry_date = cafe_entry.entry_date
    mirror.unit = cafe_entry.unit
    mirror.transfer = cafe_entry.invord_stock
    mirror.quantity = cafe_entry.invord_stock
    recalculate_document(mirror.monthly_stock)


def _schedule_chain_repair(theater_id: int, product_id: int, ledger: str, day: date, today: date) -> None:
    """A write into a past month invalidates old_stock of every later month."""
    if (day.year, day.month) >= (today.year, today.month):
        return
    later = _month_query(theater_id, product_id, ledger).filter(_after(day.year, day.month)).first()
    if later is None:
        return
    defer(
        "stock.repair_chain",
        theater_id=theater_id,
        product_id=product_id,
        ledger=ledger,
        from_year=day.year,
        from_month=day.month,
    )
    if ledger == LEDGER_CAFE:
        # The transfer mirror may have touched the theater ledger too
        defer(
            "stock.repair_chain",
            theater_id=theater_id,
            product_id=product_id,
            ledger=LEDGER_THEATER,
            from_year=day.year,
            from_month=day.month,
        )


def add_entry(
    theater_id: int,
    product_id: int,
    payload: dict,
    *,
    ledger: str = LEDGER_THEATER,
    user_id: int | None = None,
    today: date | None = None,
    commit: bool = True,
) -> MonthlyStock:
    """
    Insert an entry into the month its date falls in and recalculate.
    Returns the updated month document.
    """
    _check_ledger(ledger)
    today = today or utc_today()
    _require_product(theater_id, product_id)
    data = parse_entry_payload(payload, ledger=ledger, today=today)

    def _op():
        doc, _entry = _post_entry(theater_id, product_id, ledger, data, user_id=user_id)
        return doc

    doc = _write(_op, commit=commit)
    if commit:
        _schedule_chain_repair(theater_id, product_id, ledger, data.entry_date, today)
    return doc


def _find_entry(theater_id: int, product_id: int, ledger: str, entry_id: int) -> StockEntry:
    entry = (
        StockEntry.query.join(MonthlyStock)
        .filter(
            StockEntry.id == entry_id,
            StockEntry.theater_id == theater_id,
            StockEntry.product_id == product_id,
            MonthlyStock.ledger == ledger,
        )
        .first()
    )
    if entry is None:
        raise NotFoundError("Stock entry", entry_id)
    return entry


def _check_editable(entry: StockEntry) -> None:
    if entry.source == SOURCE_ORDER:
        raise ConflictError("Order-posted entries are maintained by the order engine")
    if entry.source == SOURCE_TRANSFER:
        raise ConflictError("Transfer mirror entries follow their cafe transfer entry")


def update_entry(
    theater_id: int,
    product_id: int,
    entry_id: int,
    payload: dict,
    *,
    ledger: str = LEDGER_THEATER,
    user_id: int | None = None,
    today: date | None = None,
) -> MonthlyStock:
    _check_ledger(ledger)
    today = today or utc_today()
    moved_from: list[date] = []

    def _op():
        entry = _find_entry(theater_id, product_id, ledger, entry_id)
        _check_editable(entry)
        data = parse_entry_payload(payload, ledger=ledger, today=today, existing=entry)
        doc = entry.monthly_stock
        if (data.entry_date.year, data.entry_date.month) != (doc.year, doc.month):
            raise field_error("date", "cannot move an entry to another month; delete and re-add it")

        moved_from[:] = [min(entry.entry_date, data.entry_date)]
        entry.entry_date = data.entry_date
        entry.type = data.type
        entry.unit = data.unit
        entry.quantity = data.quantity
        for name in DELTA_FIELDS:
            setattr(entry, name, data.deltas.get(name, 0))
        entry.expire_date = data.expire_date
        entry.batch_number = data.batch_number
        entry.notes = data.notes
        recalculate_document(doc)
        if ledger == LEDGER_CAFE:
            _sync_transfer_mirror(entry, user_id=user_id)
        return doc

    doc = _write(_op, commit=True)
    _schedule_chain_repair(theater_id, product_id, ledger, moved_from[0], today)
    return doc


def delete_entry(
    theater_id: int,
    product_id: int,
    entry_id: int,
    *,
    ledger: str = LEDGER_THEATER,
    today: date | None = None,
) -> MonthlyStock:
    _check_ledger(ledger)
    today = today or utc_today()
    removed_on: list[date] = []

    def _op():
        entry = _find_entry(theater_id, product_id, ledger, entry_id)
        _check_editable(entry)
        doc = entry.monthly_stock
        removed_on[:] = [entry.entry_date]
        if ledger == LEDGER_CAFE:
            _sync_transfer_mirror(entry, deleted=True)
        doc.entries.remove(entry)
        recalculate_document(doc)
        return doc

    doc = _write(_op, commit=True)
    _schedule_chain_repair(theater_id, product_id, ledger, removed_on[0], today)
    return doc


# ---------------------------------------------------------------------------
# Order integration (cafe ledger, caller commits)
# ---------------------------------------------------------------------------

def _daily_order_entry(doc: MonthlyStock, day: date, entry_type: str) -> StockEntry | None:
    for entry in doc.entries:
        if entry.entry_date == day and entry.type == entry_type and entry.source == SOURCE_ORDER:
            return entry
    return None


def consume_for_order(theater_id: int, product_id: int, quantity: int, *, day: date) -> StockEntry:
    """
    Record quantity sold on day in the cafe ledger's daily order-sales entry.

    Raises PreconditionFailedError when the current balance cannot cover it.
    Does not commit; the order transaction owns the commit.
    """
    doc = get_or_create_month(theater_id, product_id, day.year, day.month, ledger=LEDGER_CAFE)
    available = doc.closing_balance
    if quantity > available:
        raise PreconditionFailedError(
            "Insufficient stock",
            details={"product_id": product_id, "available": available, "requested": quantity},
        )
    entry = _daily_order_entry(doc, day, ENTRY_SOLD)
    if entry is None:
        entry = StockEntry(
            theater_id=theater_id,
            product_id=product_id,
            entry_date=day,
            type=ENTRY_SOLD,
            unit=doc.last_unit or DEFAULT_STOCK_UNIT,
            quantity=0,
            sales=0,
            notes=ORDER_SALES_NOTE,
            source=SOURCE_ORDER,
        )
        for name in DELTA_FIELDS:
            if getattr(entry, name) is None:
                setattr(entry, name, 0)
        doc.entries.append(entry)
    entry.sales += quantity
    entry.quantity = entry.sales
    recalculate_document(doc)
    return entry


def release_for_order(theater_id: int, product_id: int, quantity: int, *, day: date) -> StockEntry:
    """Return cancelled order stock through the cafe ledger's daily CANCEL entry. Does not commit."""
    doc = get_or_create_month(theater_id, product_id, day.year, day.month, ledger=LEDGER_CAFE)
    entry = _daily_order_entry(doc, day, ENTRY_CANCEL)
    if entry is None:
        entry = StockEntry(
            theater_id=theater_id,
            product_id=product_id,
            entry_date=day,
            type=ENTRY_CANCEL,
            unit=doc.last_unit or DEFAULT_STOCK_UNIT,
            quantity=0,
            cancel_stock=0,
            notes=ORDER_CANCEL_NOTE,
            source=SOURCE_ORDER,
        )
        for name in DELTA_FIELDS:
            if getattr(entry, name) is None:
                setattr(entry, name, 0)
        doc.entries.append(entry)
    entry.cancel_stock += quantity
    entry.quantity = entry.cancel_stock
    recalculate_document(doc)
    return entry


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_current(theater_id: int, product_id: int, *, ledger: str = LEDGER_THEATER, today: date | None = None) -> dict:
    """
    Current balance, unit in use and month-to-date additions.

    One query: the most recent month document not after today's month.
    """
    _check_ledger(ledger)
    today = today or utc_today()
    doc = (
        _month_query(theater_id, product_id, ledger)
        .filter(_not_after(today.year, today.month))
        .order_by(MonthlyStock.year.desc(), MonthlyStock.month.desc())
        .first()
    )
    is_current = doc is not None and (doc.year, doc.month) == (today.year, today.month)
    return {
        "theater_id": theater_id,
        "product_id": product_id,
        "ledger": ledger,
        "year": today.year,
        "month": today.month,
        "balance": doc.closing_balance if doc is not None else 0,
        "unit": doc.last_unit if doc is not None else None,
        "total_added": doc.total_invord_stock if is_current else 0,
    }


def balance_on(theater_id: int, product_id: int, ledger: str, day: date) -> int:
    """Balance at the end of day."""
    doc = (
        _month_query(theater_id, product_id, ledger)
        .filter(_not_after(day.year, day.month))
        .order_by(MonthlyStock.year.desc(), MonthlyStock.month.desc())
        .first()
    )
    if doc is None:
        return 0
    if (doc.year, doc.month) != (day.year, day.month):
        return doc.closing_balance
    balance = doc.old_stock
    for entry in sorted(doc.entries, key=_entry_sort_key):
        if entry.entry_date > day:
            break
        balance = entry.balance
    return balance


def get_monthly(
    theater_id: int,
    product_id: int,
    year,
    month,
    *,
    ledger: str = LEDGER_THEATER,
    today: date | None = None,
) -> dict:
    """
    Dense monthly snapshot. Read-only: balances are recalculated in memory
    from the predecessor's closing balance; a stale chain is reported to the
    task runner rather than fixed here.
    """
    _check_ledger(ledger)
    year, month = check_period(year, month)
    today = today or utc_today()
    product = _require_product(theater_id, product_id)

    with store_deadline(OP_READ):
        doc = _get_month(theater_id, product_id, ledger, year, month)
        prev = _previous_doc(theater_id, product_id, ledger, year, month)
    old_stock = prev.closing_balance if prev is not None else (doc.old_stock if doc is not None else 0)

    if doc is not None and prev is not None and doc.old_stock != prev.closing_balance:
        logger.info(
            "Stale carry-in for theater=%s product=%s ledger=%s %s-%02d (stored %s, expected %s)",
            theater_id, product_id, ledger, year, month, doc.old_stock, prev.closing_balance,
        )
        defer(
            "stock.repair_chain",
            theater_id=theater_id,
            product_id=product_id,
            ledger=ledger,
            from_year=prev.year,
            from_month=prev.month,
        )

    entries = sorted(doc.entries, key=_entry_sort_key) if doc is not None else []
    rows = [e.to_dict() for e in entries]
    closing = recalculate_rows(ledger, old_stock, rows, clamp=True)

    first_day = date(year, month, 1)
    end = min(today, month_end(year, month))
    start = first_day if prev is not None else None
    dense = fill_gaps(rows, old_stock=old_stock, start=start, end=end) if end >= first_day else rows

    unit = _resolve_unit(entries) or product.stock_unit
    return {
        "id": doc.id if doc is not None else None,
        "theater_id": theater_id,
        "product_id": product_id,
        "ledger": ledger,
        "year": year,
        "month": month,
        "month_name": MONTH_NAMES[month - 1],
        "old_stock": old_stock,
        "closing_balance": closing,
        "total_invord_stock": sum(r["invord_stock"] for r in rows),
        "total_sales": sum(r["sales"] for r in rows),
        "total_expired_stock": sum(r["expired_stock"] for r in rows),
        "total_damage_stock": sum(r["damage_stock"] for r in rows),
        "unit": unit,
        "stock_details": dense,
    }


# ---------------------------------------------------------------------------
# Deferred maintenance
# ---------------------------------------------------------------------------

def repair_chain(theater_id: int, product_id: int, *, ledger: str = LEDGER_THEATER, from_year: int, from_month: int) -> int:
    """
    Re-derive old_stock of every month from (from_year, from_month) on from
    its predecessor's closing balance. Returns the number of months changed.
    """
    _check_ledger(ledger)

    def _op():
        prev = _previous_doc(theater_id, product_id, ledger, from_year, from_month)
        carried = prev.closing_balance if prev is not None else None
        docs = (
            _month_query(theater_id, product_id, ledger)
            .filter(or_(
                _after(from_year, from_month),
                and_(MonthlyStock.year == from_year, MonthlyStock.month == from_month),
            ))
            .order_by(MonthlyStock.year.asc(), MonthlyStock.month.asc())
            .all()
        )
        changed = 0
        for doc in docs:
            if carried is not None and doc.old_stock != carried:
                doc.old_stock = carried
                recalculate_document(doc)
                changed += 1
            carried = doc.closing_balance
        return changed

    changed = _write(_op, commit=True)
    if changed:
        logger.info(
            "Repaired %d month(s) for theater=%s product=%s ledger=%s from %s-%02d",
            changed, theater_id, product_id, ledger, from_year, from_month,
        )
    return changed


def auto_expire(theater_id: int, product_id: int, *, ledger: str = LEDGER_THEATER, today: date | None = None) -> int:
    """
    Post an EXPIRED entry for every ADDED batch whose expire_date has passed.

    The expiry is dated the day after expire_date; its quantity is the batch
    quantity capped at the balance on the expiry date. Returns entries posted.
    """
    _check_ledger(ledger)
    today = today or utc_today()
    batch_ids = [
        row.id
        for row in (
            db.session.query(StockEntry.id)
            .join(MonthlyStock)
            .filter(
                MonthlyStock.ledger == ledger,
                StockEntry.theater_id == theater_id,
                StockEntry.product_id == product_id,
                StockEntry.type == ENTRY_ADDED,
                StockEntry.expire_date.isnot(None),
                StockEntry.expire_date < today,
                StockEntry.expired_processed.is_(False),
            )
            .order_by(StockEntry.expire_date.asc(), StockEntry.id.asc())
            .all()
        )
    ]

    posted = 0
    for batch_id in batch_ids:
        def _op(batch_id=batch_id):
            batch = db.session.get(StockEntry, batch_id)
            if batch is None or batch.expired_processed:
                return None
            batch.expired_processed = True
            quantity = min(batch.invord_stock, balance_on(theater_id, product_id, ledger, batch.expire_date))
            if quantity <= 0:
                return None
            expired_on = batch.expire_date + timedelta(days=1)
            data = EntryInput(
                entry_date=expired_on,
                type=ENTRY_EXPIRED,
                unit=batch.unit,
                quantity=quantity,
                deltas={"expired_stock": quantity},
                batch_number=batch.batch_number,
                notes=f"Auto-expired batch {batch.batch_number or batch.id}",
            )
            _post_entry(theater_id, product_id, ledger, data, source=SOURCE_EXPIRE, source_entry_id=batch.id)
            return expired_on

        expired_on = _write(_op, commit=True)
        if expired_on is not None:
            posted += 1
            _schedule_chain_repair(theater_id, product_id, ledger, expired_on, today)

    if posted:
        logger.info("Auto-expired %d batch(es) for theater=%s product=%s ledger=%s", posted, theater_id, product_id, ledger)
    return posted


def auto_expire_all(today: date | None = None) -> int:
    """Periodic tick: auto-expire every (theater, product, ledger) with pending batches."""
    today = today or utc_today()
    pairs = (
        db.session.query(StockEntry.theater_id, StockEntry.product_id, MonthlyStock.ledger)
        .join(MonthlyStock)
        .filter(
            StockEntry.type == ENTRY_ADDED,
            StockEntry.expire_date.isnot(None),
            StockEntry.expire_date < today,
            StockEntry.expired_processed.is_(False),
        )
        .distinct()
        .all()
    )
    total = 0
    for theater_id, product_id, ledger in pairs:
        try:
            total += auto_expire(theater_id, product_id, ledger=ledger, today=today)
        except Exception:
            db.session.rollback()
            logger.exception("Auto-expire failed for theater=%s product=%s ledger=%s", theater_id, product_id, ledger)
    return total
