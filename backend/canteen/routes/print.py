# Overview: Print queue routes (manual receipts, queue inspection, retries, metrics).

from flask import Blueprint, g, request

from ..decorators import require_admin, require_auth, require_super_admin, resolve_theater_id
from ..errors import ValidationError
from ..models.printing import PRINTER_RECEIPT
from ..responses import created, ok
from ..services import order_service, print_service
from ..validation import coerce_int


print_bp = Blueprint("print", __name__, url_prefix="/api/print")


@print_bp.post("/receipt")
@require_auth
def print_receipt():
    """
    Queue a receipt. Body is either {order_id, printer_hint?} to (re)print an
    order's receipt, or {html, printer_hint?, printer_type?, metadata?} for a
    pre-rendered document.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    theater_id = resolve_theater_id(data.get("theater_id"))

    if data.get("order_id") is not None:
        order = order_service.get_order(theater_id, coerce_int("order_id", data["order_id"]))
        job = print_service.enqueue(
            theater_id,
            print_service.render_receipt(order),
            order_id=order.id,
            printer_hint=data.get("printer_hint"),
            header={"orderNumber": order.order_number, "theaterId": theater_id, "printerType": PRINTER_RECEIPT, "reprint": True},
        )
    elif data.get("html"):
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        printer_type = data.get("printer_type") or PRINTER_RECEIPT
        job = print_service.enqueue(
            theater_id,
            str(data["html"]),
            printer_hint=data.get("printer_hint"),
            printer_type=printer_type,
            header={**metadata, "theaterId": theater_id, "printerType": printer_type},
        )
    else:
        raise ValidationError("order_id or html is required", details={"order_id": "or html is required"})

    return created(job.to_dict(), message="Print job queued")


@print_bp.get("/queue")
@require_auth
@require_admin
def list_queue():
    theater_id = resolve_theater_id() if not g.is_admin or request.args.get("theater") else None
    jobs = print_service.list_jobs(
        theater_id=theater_id,
        status=request.args.get("status"),
        limit=request.args.get("limit", 100, type=int),
    )
    return ok(jobs)


@print_bp.get("/jobs/<int:job_id>")
@require_auth
@require_admin
def get_job(job_id: int):
    theater_id = None if g.is_admin else g.theater_id
    return ok(print_service.get_job(job_id, theater_id=theater_id).to_dict(include_payload=True))


@print_bp.post("/jobs/<int:job_id>/retry")
@require_auth
@require_admin
def retry_job(job_id: int):
    theater_id = None if g.is_admin else g.theater_id
    job = print_service.retry_job(job_id, theater_id=theater_id)
    return ok(job.to_dict(), message="Print job re-queued")


@print_bp.get("/metrics")
@require_auth
@require_super_admin
def print_metrics():
    return ok(print_service.metrics())
