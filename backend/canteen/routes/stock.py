# Overview: Monthly stock ledger routes (entries, monthly snapshot, current balance).

from flask import Blueprint, g, request

from ..decorators import require_admin, require_auth, resolve_theater_id
from ..models.stock import LEDGER_THEATER
from ..responses import created, ok
from ..services import stock_ledger_service
from ..time_utils import today as utc_today


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _ledger() -> str:
    return (request.args.get("ledger") or LEDGER_THEATER).strip().lower()


def _snapshot(theater_id: int, product_id: int, doc, ledger: str):
    return stock_ledger_service.get_monthly(theater_id, product_id, doc.year, doc.month, ledger=ledger)


@stock_bp.get("/<int:product_id>/monthly")
@require_auth
def monthly(product_id: int):
    """
    Query params:
    - year, month: period (defaults to the current month)
    - ledger: "theater" (default) or "cafe"
    """
    theater_id = resolve_theater_id()
    today = utc_today()
    snapshot = stock_ledger_service.get_monthly(
        theater_id,
        product_id,
        request.args.get("year", today.year),
        request.args.get("month", today.month),
        ledger=_ledger(),
    )
    return ok(snapshot)


@stock_bp.get("/<int:product_id>/current")
@require_auth
def current(product_id: int):
    return ok(stock_ledger_service.get_current(resolve_theater_id(), product_id, ledger=_ledger()))


@stock_bp.post("/<int:product_id>/entries")
@require_auth
@require_admin
def add_entry(product_id: int):
    theater_id = resolve_theater_id()
    ledger = _ledger()
    doc = stock_ledger_service.add_entry(
        theater_id,
        product_id,
        request.get_json(silent=True),
        ledger=ledger,
        user_id=g.current_user.id,
    )
    return created(_snapshot(theater_id, product_id, doc, ledger), message="Stock entry added")


@stock_bp.put("/<int:product_id>/entries/<int:entry_id>")
@require_auth
@require_admin
def update_entry(product_id: int, entry_id: int):
    theater_id = resolve_theater_id()
    ledger = _ledger()
    doc = stock_ledger_service.update_entry(
        theater_id,
        product_id,
        entry_id,
        request.get_json(silent=True),
        ledger=ledger,
        user_id=g.current_user.id,
    )
    return ok(_snapshot(theater_id, product_id, doc, ledger), message="Stock entry updated")


@stock_bp.delete("/<int:product_id>/entries/<int:entry_id>")
@require_auth
@require_admin
def delete_entry(product_id: int, entry_id: int):
    theater_id = resolve_theater_id()
    ledger = _ledger()
    doc = stock_ledger_service.delete_entry(theater_id, product_id, entry_id, ledger=ledger)
    return ok(_snapshot(theater_id, product_id, doc, ledger), message="Stock entry deleted")
