# Overview: Theater provisioning and printer setup routes.

from flask import Blueprint, current_app, g, request

from ..agents import get_supervisor
from ..decorators import require_admin, require_auth, require_super_admin, resolve_theater_id
from ..errors import ValidationError
from ..responses import created, ok
from ..services import theater_service


theaters_bp = Blueprint("theaters", __name__, url_prefix="/api/theaters")


@theaters_bp.get("")
@require_auth
@require_super_admin
def list_theaters():
    include_inactive = request.args.get("include_inactive") in ("1", "true")
    return ok([t.to_dict() for t in theater_service.list_theaters(include_inactive=include_inactive)])


@theaters_bp.post("")
@require_auth
@require_super_admin
def create_theater():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    theater = theater_service.create_theater(
        data.get("name"),
        code=data.get("code"),
        order_prefix=data.get("order_prefix"),
        admin_username=data.get("admin_username"),
        admin_password=data.get("admin_password"),
        agent_username=data.get("agent_username"),
        agent_password=data.get("agent_password"),
    )
    return created(theater.to_dict(), message="Theater created")


@theaters_bp.get("/<int:theater_id>")
@require_auth
def get_theater(theater_id: int):
    return ok(theater_service.get_theater(resolve_theater_id(theater_id)).to_dict())


@theaters_bp.patch("/<int:theater_id>")
@require_auth
@require_super_admin
def update_theater(theater_id: int):
    theater = theater_service.update_theater(theater_id, request.get_json(silent=True))
    if not theater.is_active:
        supervisor = get_supervisor()
        if supervisor is not None and supervisor.stop(theater.id):
            current_app.logger.info("Stopped agent for deactivated theater %s", theater.id)
    return ok(theater.to_dict(), message="Theater updated")


@theaters_bp.get("/<int:theater_id>/printer")
@require_auth
def printer_config(theater_id: int):
    """Printer routing the theater's agent fetches after login."""
    return ok(theater_service.printer_config(resolve_theater_id(theater_id)))


@theaters_bp.get("/<int:theater_id>/printers")
@require_auth
def list_printers(theater_id: int):
    return ok([p.to_dict() for p in theater_service.list_printers(resolve_theater_id(theater_id))])


@theaters_bp.post("/<int:theater_id>/printers")
@require_auth
@require_admin
def add_printer(theater_id: int):
    printer = theater_service.add_printer(resolve_theater_id(theater_id), request.get_json(silent=True))
    return created(printer.to_dict(), message="Printer added")


@theaters_bp.put("/<int:theater_id>/printers/<int:printer_id>")
@require_auth
@require_admin
def update_printer(theater_id: int, printer_id: int):
    printer = theater_service.update_printer(resolve_theater_id(theater_id), printer_id, request.get_json(silent=True))
    return ok(printer.to_dict(), message="Printer updated")


@theaters_bp.delete("/<int:theater_id>/printers/<int:printer_id>")
@require_auth
@require_admin
def delete_printer(theater_id: int, printer_id: int):
    theater_service.delete_printer(resolve_theater_id(theater_id), printer_id)
    return ok(None, message="Printer removed")
