"""
System health, runtime status and adapter settings endpoints.

/health is exempt from the store readiness gate so it can report an
unreachable store instead of failing with it.
"""

import time

from flask import Blueprint, current_app, g, request

from ..agents import get_supervisor
from ..decorators import require_auth, require_super_admin
from ..errors import ValidationError
from ..responses import ok
from ..services import print_service, settings_service
from ..services.store_service import get_gate
from ..services.task_runner import get_runner
from ..time_utils import utcnow


system_bp = Blueprint("system", __name__)


def check_store_health() -> dict:
    start_time = time.time()
    gate = get_gate()
    healthy = gate.ping()
    elapsed_ms = (time.time() - start_time) * 1000
    result = {
        "status": "healthy" if healthy else "unhealthy",
        "latency_ms": round(elapsed_ms, 2),
    }
    if not healthy:
        result["error"] = gate.last_error
    return result


def check_task_runner_health() -> dict:
    runner = get_runner()
    if runner is None:
        return {"status": "degraded", "warning": "Task runner not configured"}
    details = runner.to_dict()
    if runner.mode == "thread" and not details["running"]:
        return {"status": "degraded", "warning": "Task runner is not running", "details": details}
    return {"status": "healthy", "details": details}


def check_agents_health() -> dict:
    supervisor = get_supervisor()
    if supervisor is None:
        return {"status": "healthy", "details": {"enabled": False}}
    agents = supervisor.status()
    unhealthy = [a["theater_id"] for a in agents if not a["healthy"]]
    result = {
        "status": "degraded" if unhealthy else "healthy",
        "details": {"enabled": True, "running": len(agents)},
    }
    if unhealthy:
        result["warning"] = f"Unhealthy agents for theaters: {', '.join(map(str, unhealthy))}"
    return result


def check_print_health() -> dict:
    dispatcher = print_service.get_dispatcher()
    enabled = current_app.config.get("PRINT_WORKER_ENABLED", True)
    if enabled and not dispatcher.is_running:
        return {"status": "degraded", "warning": "Print worker is not running", "details": dispatcher.snapshot()}
    return {"status": "healthy", "details": dispatcher.snapshot()}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still operational)
    - 503: the data store is unreachable
    """
    start_time = time.time()
    store_health = check_store_health()
    checks = {"store": store_health}
    if store_health["status"] == "healthy":
        checks["task_runner"] = check_task_runner_health()
        checks["print_queue"] = check_print_health()
    checks["agents"] = check_agents_health()

    statuses = {check["status"] for check in checks.values()}
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status


@system_bp.get("/api/system/status")
@require_auth
@require_super_admin
def status():
    runner = get_runner()
    supervisor = get_supervisor()
    return ok({
        "store": get_gate().to_dict(),
        "tasks": runner.to_dict() if runner else None,
        "print": print_service.metrics(),
        "agents": supervisor.status() if supervisor else [],
    })


@system_bp.get("/api/system/settings")
@require_auth
@require_super_admin
def get_settings():
    """Adapter settings with secrets redacted."""
    return ok(settings_service.all_settings_redacted())


@system_bp.put("/api/system/settings/<section>")
@require_auth
@require_super_admin
def update_settings(section: str):
    values = request.get_json(silent=True)
    if not isinstance(values, dict):
        raise ValidationError("Invalid JSON payload")
    typed = settings_service.update_section(section, values, user_id=g.current_user.id)
    return ok(settings_service.redact(typed), message=f"Settings '{section}' updated")


@system_bp.post("/api/system/settings/reload")
@require_auth
@require_super_admin
def reload_settings():
    return ok(settings_service.reload_settings(), message="Settings reloaded")
