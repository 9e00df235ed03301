# Overview: Per-theater role management.

from flask import Blueprint, request

from ..decorators import require_admin, require_auth, resolve_theater_id
from ..errors import ValidationError
from ..responses import created, ok
from ..services import role_service


roles_bp = Blueprint("roles", __name__, url_prefix="/api/roles")


@roles_bp.get("")
@require_auth
@require_admin
def list_roles():
    return ok([r.to_dict() for r in role_service.list_roles(resolve_theater_id())])


@roles_bp.post("")
@require_auth
@require_admin
def create_role():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    role = role_service.create_role(
        resolve_theater_id(),
        data.get("name"),
        description=data.get("description"),
        permissions=data.get("permissions"),
    )
    return created(role.to_dict(), message="Role created")


@roles_bp.patch("/<int:role_id>")
@require_auth
@require_admin
def update_role(role_id: int):
    role = role_service.update_role(resolve_theater_id(), role_id, request.get_json(silent=True))
    return ok(role.to_dict(), message="Role updated")


@roles_bp.delete("/<int:role_id>")
@require_auth
@require_admin
def delete_role(role_id: int):
    role_service.delete_role(resolve_theater_id(), role_id)
    return ok(None, message="Role deleted")
