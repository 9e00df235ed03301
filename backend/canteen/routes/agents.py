# Overview: Operator control of per-theater POS agent processes.

from flask import Blueprint, request

from ..agents import AgentCredentials, get_supervisor
from ..decorators import require_admin, require_auth, require_super_admin, resolve_theater_id
from ..errors import ServiceUnavailableError, ValidationError
from ..responses import ok
from ..services import theater_service


agents_bp = Blueprint("agents", __name__, url_prefix="/api/agents")

START_MESSAGES = {
    "started": "Agent started",
    "already_running": "Agent already running",
    "pending": "Agent start already in progress",
    "cancelled": "Agent start was cancelled by a stop",
}


def _supervisor():
    supervisor = get_supervisor()
    if supervisor is None:
        raise ServiceUnavailableError("Agent supervisor is not enabled on this server")
    return supervisor


def _credentials_from_body(theater, data: dict) -> AgentCredentials:
    username = data.get("username") or theater.agent_username
    password = data.get("password")
    if not username or not password:
        raise ValidationError(
            "Agent credentials are required",
            details={"username": "is required", "password": "is required"},
        )
    return AgentCredentials(
        theater_id=theater.id,
        username=username,
        password=password,
        pin=str(data["pin"]) if data.get("pin") else None,
        label=data.get("label") or theater.name,
    )


def _active_theater(theater_id: int):
    theater = theater_service.get_theater(resolve_theater_id(theater_id))
    if not theater.is_active:
        raise ValidationError("Theater is inactive")
    return theater


@agents_bp.post("/<int:theater_id>/start")
@require_auth
@require_admin
def start_agent(theater_id: int):
    """
    Body: {username?, password, pin?, label?}. The username defaults to the
    theater's configured agent login. Credentials are kept in memory only,
    for restarts.
    """
    theater = _active_theater(theater_id)
    credentials = _credentials_from_body(theater, request.get_json(silent=True) or {})
    result = _supervisor().start(theater.id, credentials)
    return ok({"theater_id": theater.id, "result": result}, message=START_MESSAGES[result])


@agents_bp.post("/<int:theater_id>/restart")
@require_auth
@require_admin
def restart_agent(theater_id: int):
    """Stop then start. Without a body the credentials of the last start are reused."""
    theater = _active_theater(theater_id)
    data = request.get_json(silent=True) or {}
    credentials = _credentials_from_body(theater, data) if data.get("password") else None

    result = _supervisor().restart(theater.id, credentials)
    if result is None:
        raise ValidationError(
            "No stored credentials for this theater's agent; supply them",
            details={"password": "is required"},
        )
    message = "Agent restarted" if result == "started" else START_MESSAGES[result]
    return ok({"theater_id": theater.id, "result": result}, message=message)


@agents_bp.post("/<int:theater_id>/stop")
@require_auth
@require_admin
def stop_agent(theater_id: int):
    theater_id = resolve_theater_id(theater_id)
    stopped = _supervisor().stop(theater_id)
    return ok({"theater_id": theater_id, "stopped": stopped}, message="Agent stopped" if stopped else "Agent not running")


@agents_bp.get("/<int:theater_id>")
@require_auth
def theater_agent_status(theater_id: int):
    theater_id = resolve_theater_id(theater_id)
    supervisor = _supervisor()
    row = supervisor.status_for(theater_id)
    return ok({
        "theater_id": theater_id,
        "running": row is not None,
        "pending": theater_id in supervisor.pending_starts(),
        "agent": row,
    })


@agents_bp.get("/status")
@require_auth
@require_super_admin
def agent_status():
    supervisor = _supervisor()
    return ok({"agents": supervisor.status(), "pending": supervisor.pending_starts()})
