# Overview: Login, logout and current-session routes.

from flask import Blueprint, current_app, g, request

from ..agents import AgentCredentials, get_supervisor
from ..decorators import bearer_token, require_auth
from ..errors import ApiError, UnauthenticatedError, ValidationError
from ..responses import ok
from ..services import auth_service, rate_limit_service, session_service


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _autostart_agent(user, username: str, password: str, pin: str | None) -> None:
    if not current_app.config.get("AGENT_AUTOSTART_ON_LOGIN") or user.theater_id is None:
        return
    supervisor = get_supervisor()
    if supervisor is None:
        return
    try:
        supervisor.start(
            user.theater_id,
            AgentCredentials(theater_id=user.theater_id, username=username, password=password, pin=pin),
        )
    except ApiError:
        current_app.logger.exception("Agent autostart failed for theater %s", user.theater_id)


@auth_bp.post("/login")
def login_route():
    """
    Authenticate and issue a bearer token.

    Failed attempts count against the per IP+username login limit;
    successful ones do not.
    """
    data = request.get_json(silent=True) or {}
    username = data.get("username") or data.get("email")
    password = data.get("password")
    pin = data.get("pin")
    if not username or not password:
        raise ValidationError("username and password are required")

    ip_address = request.remote_addr or "unknown"
    rate_limit_service.check_login_allowed(ip_address, username)

    theater_id = data.get("theater_id", data.get("theaterId"))
    user = auth_service.authenticate(
        username,
        password,
        theater_id=int(theater_id) if theater_id not in (None, "") else None,
        pin=str(pin) if pin else None,
    )
    if user is None:
        rate_limit_service.record_login_failure(ip_address, username)
        raise UnauthenticatedError("Invalid credentials")

    _session, token = session_service.create_session(
        user,
        user_agent=request.headers.get("User-Agent"),
        ip_address=ip_address,
    )
    _autostart_agent(user, username, password, str(pin) if pin else None)

    return ok({
        "token": token,
        "user": user.to_dict(),
        "theater_id": user.theater_id,
    }, message="Login successful")


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(bearer_token())
    return ok(None, message="Logged out")


@auth_bp.get("/me")
@require_auth
def me_route():
    return ok({
        "user": g.current_user.to_dict(),
        "theater_id": g.theater_id,
        "is_admin": g.is_admin,
        "permissions": list(g.current_user.role.permissions or []) if g.current_user.role else [],
    })
