# Overview: Request authentication and theater-scope decorators for API routes.

from __future__ import annotations

from functools import wraps

from flask import g, request

from .errors import ForbiddenError, UnauthenticatedError, ValidationError
from .services import session_service
from .validation import coerce_int


def bearer_token() -> str | None:
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def load_session():
    """
    Resolve the caller's session once per request (g.auth). The rate limiter
    needs it before any route decorator runs.
    """
    if "auth" not in g:
        token = bearer_token()
        g.auth = session_service.validate_session(token) if token else None
    return g.auth


def require_auth(f):
    """
    Sets:
    - g.current_user: the authenticated User
    - g.theater_id: the session's theater (None for cross-theater operators)
    - g.is_admin: True for cross-theater operators
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        context = load_session()
        if context is None:
            if bearer_token() is None:
                raise UnauthenticatedError("Authentication required")
            raise UnauthenticatedError("Invalid or expired token")

        g.current_user = context.user
        g.theater_id = context.theater_id
        g.is_admin = context.is_admin
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Cross-theater operators and theater administrators. Use after @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not (g.is_admin or g.current_user.is_theater_admin):
            raise ForbiddenError("Administrator access required")
        return f(*args, **kwargs)

    return decorated_function


def require_super_admin(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not g.is_admin:
            raise ForbiddenError("Operator access required")
        return f(*args, **kwargs)

    return decorated_function


def resolve_theater_id(requested=None) -> int:
    """
    Theater scope for this request. Theater users are pinned to their own
    theater; a different explicit theater is Forbidden. Operators must name
    the theater they act on.
    """
    if requested in (None, ""):
        requested = request.args.get("theater") or request.args.get("theater_id")
    if requested in (None, ""):
        if g.theater_id is None:
            raise ValidationError("theater is required", details={"theater": "is required"})
        return g.theater_id

    theater_id = coerce_int("theater", requested)
    if not g.is_admin and theater_id != g.theater_id:
        raise ForbiddenError("Access to this theater is not allowed")
    return theater_id
