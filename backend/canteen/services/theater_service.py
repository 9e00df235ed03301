# Overview: Theater (tenant) provisioning and printer setup.

from __future__ import annotations

import logging

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import PrinterSetup, Theater
from ..models.printing import PRINTER_RECEIPT, PRINTER_TYPES
from ..validation import coerce_int, field_error
from . import auth_service, role_service


logger = logging.getLogger(__name__)


def get_theater(theater_id: int) -> Theater:
    theater = db.session.get(Theater, theater_id)
    if theater is None:
        raise NotFoundError("Theater", theater_id)
    return theater


def list_theaters(*, include_inactive: bool = False) -> list[Theater]:
    query = Theater.query
    if not include_inactive:
        query = query.filter(Theater.is_active.is_(True))
    return query.order_by(Theater.id.asc()).all()


def _clean_prefix(value) -> str:
    prefix = str(value or "ORD").strip().upper()
    if not prefix.isalnum() or len(prefix) > 8:
        raise field_error("order_prefix", "must be 1-8 letters or digits")
    return prefix


def create_theater(
    name,
    *,
    code: str | None = None,
    order_prefix: str | None = None,
    admin_username: str | None = None,
    admin_password: str | None = None,
    agent_username: str | None = None,
    agent_password: str | None = None,
) -> Theater:
    """
    Create a theater with its default roles. Optionally provisions the
    theater admin and the POS agent's login (kiosk role).
    """
    if not isinstance(name, str) or not name.strip():
        raise field_error("name", "is required")
    code = code.strip().upper() if code else None
    if code and Theater.query.filter_by(code=code).first() is not None:
        raise ConflictError(f"Theater code '{code}' already exists")
    for username, password in ((admin_username, admin_password), (agent_username, agent_password)):
        if username:
            auth_service.validate_password_strength(password)
            if auth_service.username_taken(username):
                raise ConflictError(f"Username '{username}' already exists")

    theater = Theater(
        name=name.strip(),
        code=code,
        order_prefix=_clean_prefix(order_prefix),
        agent_username=agent_username,
    )
    db.session.add(theater)
    db.session.flush()

    roles = {role.name_key: role for role in role_service.create_default_roles(theater.id)}
    if admin_username:
        auth_service.create_user(admin_username, admin_password, theater_id=theater.id, role_id=roles["admin"].id)
    if agent_username:
        auth_service.create_user(agent_username, agent_password, theater_id=theater.id, role_id=roles["kiosk"].id)

    db.session.commit()
    logger.info("Theater %s created (%s)", theater.id, theater.name)
    return theater


def update_theater(theater_id: int, payload: dict) -> Theater:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    theater = get_theater(theater_id)
    if "name" in payload:
        if not str(payload["name"] or "").strip():
            raise field_error("name", "is required")
        theater.name = str(payload["name"]).strip()
    if "order_prefix" in payload:
        theater.order_prefix = _clean_prefix(payload["order_prefix"])
    if "agent_username" in payload:
        theater.agent_username = payload["agent_username"] or None
    if "is_active" in payload:
        theater.is_active = bool(payload["is_active"])
    db.session.commit()
    return theater


# -- printers --------------------------------------------------------------


def list_printers(theater_id: int) -> list[PrinterSetup]:
    return (
        PrinterSetup.query.filter_by(theater_id=theater_id)
        .order_by(PrinterSetup.printer_type.asc(), PrinterSetup.is_default.desc(), PrinterSetup.id.asc())
        .all()
    )


def get_printer(theater_id: int, printer_id: int) -> PrinterSetup:
    printer = db.session.get(PrinterSetup, printer_id)
    if printer is None or printer.theater_id != theater_id:
        raise NotFoundError("Printer", printer_id)
    return printer


def _clear_default(theater_id: int, printer_type: str, keep_id: int | None) -> None:
    query = PrinterSetup.query.filter_by(theater_id=theater_id, printer_type=printer_type, is_default=True)
    for other in query.all():
        if other.id != keep_id:
            other.is_default = False


def _apply_printer(printer: PrinterSetup, payload: dict) -> None:
    if "name" in payload:
        name = str(payload["name"] or "").strip()
        if not name:
            raise field_error("name", "is required")
        printer.name = name[:128]
    if "printer_type" in payload:
        printer_type = str(payload["printer_type"] or "").strip().lower()
        if printer_type not in PRINTER_TYPES:
            raise field_error("printer_type", f"must be one of {', '.join(PRINTER_TYPES)}")
        printer.printer_type = printer_type
    if "paper_width_mm" in payload:
        width = coerce_int("paper_width_mm", payload["paper_width_mm"])
        if width not in (58, 80):
            raise field_error("paper_width_mm", "must be 58 or 80")
        printer.paper_width_mm = width
    if "is_active" in payload:
        printer.is_active = bool(payload["is_active"])
    if "is_default" in payload:
        printer.is_default = bool(payload["is_default"])


def add_printer(theater_id: int, payload: dict) -> PrinterSetup:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    get_theater(theater_id)
    if not payload.get("name"):
        raise field_error("name", "is required")
    if PrinterSetup.query.filter_by(theater_id=theater_id, name=str(payload["name"]).strip()).first():
        raise ConflictError(f"Printer '{payload['name']}' already exists")

    printer = PrinterSetup(theater_id=theater_id, printer_type=PRINTER_RECEIPT, paper_width_mm=80)
    _apply_printer(printer, payload)
    db.session.add(printer)
    db.session.flush()
    if printer.is_default:
        _clear_default(theater_id, printer.printer_type, printer.id)
    db.session.commit()
    return printer


def update_printer(theater_id: int, printer_id: int, payload: dict) -> PrinterSetup:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    printer = get_printer(theater_id, printer_id)
    _apply_printer(printer, payload)
    if printer.is_default:
        _clear_default(theater_id, printer.printer_type, printer.id)
    db.session.commit()
    return printer


def delete_printer(theater_id: int, printer_id: int) -> None:
    db.session.delete(get_printer(theater_id, printer_id))
    db.session.commit()


def printer_config(theater_id: int) -> dict:
    """What a theater's agent needs to route jobs to its local print service."""
    get_theater(theater_id)
    printers = [p for p in list_printers(theater_id) if p.is_active]
    receipt = next((p for p in printers if p.printer_type == PRINTER_RECEIPT and p.is_default), None)
    if receipt is None:
        receipt = next((p for p in printers if p.printer_type == PRINTER_RECEIPT), None)
    return {
        "theater_id": theater_id,
        "printers": [p.to_dict() for p in printers],
        "default_receipt_printer": receipt.name if receipt else None,
    }
