# Overview: Per-theater roles with page permissions; default roles are protected.

from __future__ import annotations

from ..errors import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from ..extensions import db
from ..models import Role, User
from ..validation import field_error


DEFAULT_ROLES = (
    ("admin", "Theater administrator", [
        {"page": "dashboard", "route": "/theater/dashboard", "has_access": True},
        {"page": "orders", "route": "/theater/orders", "has_access": True},
        {"page": "products", "route": "/theater/products", "has_access": True},
        {"page": "stock", "route": "/theater/stock", "has_access": True},
        {"page": "roles", "route": "/theater/roles", "has_access": True},
        {"page": "settings", "route": "/theater/settings", "has_access": True},
    ]),
    ("kiosk", "Self-service kiosk and POS counter", [
        {"page": "pos", "route": "/pos", "has_access": True},
        {"page": "kiosk", "route": "/kiosk", "has_access": True},
    ]),
)


def _name_key(name: str) -> str:
    return name.strip().lower()


def _validate_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise field_error("name", "is required")
    name = name.strip()
    if len(name) > 64:
        raise field_error("name", "exceeds max length 64")
    return name


def _validate_permissions(permissions) -> list[dict]:
    if permissions is None:
        return []
    if not isinstance(permissions, list):
        raise field_error("permissions", "must be a list")
    cleaned = []
    for idx, perm in enumerate(permissions):
        if not isinstance(perm, dict) or not perm.get("page"):
            raise field_error(f"permissions[{idx}]", "must be an object with a page")
        cleaned.append({
            "page": str(perm["page"]),
            "route": str(perm.get("route") or ""),
            "has_access": bool(perm.get("has_access", perm.get("hasAccess", True))),
        })
    return cleaned


def _ensure_unique(theater_id: int, name: str, exclude_id: int | None = None) -> None:
    query = Role.query.filter_by(theater_id=theater_id, name_key=_name_key(name))
    if exclude_id is not None:
        query = query.filter(Role.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"Role '{name}' already exists in this theater")


def get_role(theater_id: int, role_id: int) -> Role:
    role = db.session.get(Role, role_id)
    if role is None or role.theater_id != theater_id:
        raise NotFoundError("Role", role_id)
    return role


def list_roles(theater_id: int) -> list[Role]:
    return Role.query.filter_by(theater_id=theater_id).order_by(Role.is_default.desc(), Role.name_key.asc()).all()


def create_role(theater_id: int, name, *, description: str | None = None, permissions=None,
                is_default: bool = False, commit: bool = True) -> Role:
    name = _validate_name(name)
    _ensure_unique(theater_id, name)
    role = Role(
        theater_id=theater_id,
        name=name,
        name_key=_name_key(name),
        description=description,
        permissions=_validate_permissions(permissions),
        is_default=is_default,
    )
    db.session.add(role)
    if commit:
        db.session.commit()
    return role


def update_role(theater_id: int, role_id: int, payload: dict) -> Role:
    """Rename and/or replace permissions. Default roles keep their name."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    role = get_role(theater_id, role_id)

    if "name" in payload:
        name = _validate_name(payload["name"])
        if name != role.name:
            if role.is_default:
                raise PreconditionFailedError("Default roles cannot be renamed")
            _ensure_unique(theater_id, name, exclude_id=role.id)
            role.name = name
            role.name_key = _name_key(name)
    if "description" in payload:
        role.description = payload["description"]
    if "permissions" in payload:
        role.permissions = _validate_permissions(payload["permissions"])
    if "is_active" in payload:
        if role.is_default and not payload["is_active"]:
            raise PreconditionFailedError("Default roles cannot be deactivated")
        role.is_active = bool(payload["is_active"])

    db.session.commit()
    return role


def rename_role(theater_id: int, role_id: int, name) -> Role:
    return update_role(theater_id, role_id, {"name": name})


def delete_role(theater_id: int, role_id: int) -> None:
    role = get_role(theater_id, role_id)
    if role.is_default:
        raise PreconditionFailedError("Default roles cannot be deleted")
    if User.query.filter_by(role_id=role.id).first() is not None:
        raise PreconditionFailedError("Role is still assigned to users")
    db.session.delete(role)
    db.session.commit()


def create_default_roles(theater_id: int) -> list[Role]:
    """Idempotent: creates the missing default roles for a theater."""
    roles = []
    for name, description, permissions in DEFAULT_ROLES:
        role = Role.query.filter_by(theater_id=theater_id, name_key=name).first()
        if role is None:
            role = create_role(theater_id, name, description=description, permissions=permissions,
                               is_default=True, commit=False)
        roles.append(role)
    db.session.commit()
    return roles
