# Overview: Durable per-theater print queue and the dispatcher that pushes receipts to theater agents.

"""
Print dispatcher.

Jobs live in print_jobs and are delivered per theater in id order
(head-of-line blocking: a job waiting for its retry delay holds back the
jobs behind it). Any worker may drain any theater; the head job is claimed
with a compare-and-set UPDATE on (status, version_id), so two workers never
send the same attempt.

Attempt accounting:
- a job gets 1 + PRINT_MAX_RETRIES attempts; nack or ack timeout schedules
  the next one after PRINT_BACKOFF_BASE_SECONDS * 2**(attempt-1)
- the last failed attempt marks the job FAILED (operator-visible queue)
- an offline agent never consumes an attempt; the job simply waits
- a SENDING job whose worker died is returned to QUEUED after the ack
  timeout plus a grace period
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app, render_template
from sqlalchemy import and_, func, update

from ..errors import NotFoundError, PreconditionFailedError, ServiceUnavailableError, ValidationError
from ..extensions import db
from ..models import Order, PrinterSetup, PrintJob
from ..models.printing import (
    JOB_DELIVERED,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_SENDING,
    JOB_STATUSES,
    PRINTER_RECEIPT,
    PRINTER_TYPES,
)
from ..time_utils import to_utc_z, utcnow


logger = logging.getLogger(__name__)

EXTENSION_KEY = "canteen.print"
RECLAIM_GRACE_SECONDS = 30

OPEN_STATUSES = (JOB_QUEUED, JOB_SENDING)

OUTCOME_IDLE = "idle"
OUTCOME_BUSY = "busy"
OUTCOME_WAITING = "waiting"
OUTCOME_OFFLINE = "offline"
OUTCOME_CONTENDED = "contended"
OUTCOME_DELIVERED = "delivered"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"


@dataclass
class DispatchCounters:
    enqueued: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "enqueued": self.enqueued,
            "delivered": self.delivered,
            "retried": self.retried,
            "failed": self.failed,
        }


class PrintDispatcher:
    """Counters plus the optional background worker; state lives in the database."""

    def __init__(self, app=None, *, ack_timeout: float = 10.0, max_retries: int = 3, backoff_base: float = 1.0,
                 max_depth: int = 1000, interval: float = 0.5, max_workers: int = 4):
        self.app = app
        self.ack_timeout = ack_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_depth = max_depth
        self.interval = interval
        self.max_workers = max_workers
        self.counters = DispatchCounters()
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, app) -> "PrintDispatcher":
        cfg = app.config
        return cls(
            app,
            ack_timeout=float(cfg.get("PRINT_ACK_TIMEOUT_SECONDS", 10.0)),
            max_retries=int(cfg.get("PRINT_MAX_RETRIES", 3)),
            backoff_base=float(cfg.get("PRINT_BACKOFF_BASE_SECONDS", 1.0)),
            max_depth=int(cfg.get("PRINT_QUEUE_MAX_DEPTH", 1000)),
            interval=float(cfg.get("PRINT_WORKER_INTERVAL_SECONDS", 0.5)),
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int) -> float:
        return self.backoff_base * (2 ** max(attempt - 1, 0))

    def count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self.counters, name, getattr(self.counters, name) + amount)

    def snapshot(self) -> dict:
        with self._lock:
            return self.counters.to_dict()

    def wake(self) -> None:
        self._wake.set()

    # -- worker ------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        if self.app is None:
            raise RuntimeError("PrintDispatcher.start() needs an app")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="print-dispatcher", daemon=True)
        self._thread.start()
        logger.info("Print dispatcher started")

    def stop(self, timeout: float = 15.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Print dispatcher stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                with self.app.app_context():
                    try:
                        run_once(parallel=True)
                    finally:
                        db.session.remove()
            except Exception:
                logger.exception("Print dispatcher pass failed")
            self._wake.wait(self.interval)
            self._wake.clear()


def get_dispatcher() -> PrintDispatcher:
    dispatcher = current_app.extensions.get(EXTENSION_KEY)
    if dispatcher is None:
        dispatcher = PrintDispatcher.from_config(current_app._get_current_object())
        current_app.extensions[EXTENSION_KEY] = dispatcher
    return dispatcher


def _supervisor():
    from ..agents import get_supervisor

    return get_supervisor()


# -- enqueue -------------------------------------------------------------


def queue_depth(theater_id: int) -> int:
    return (
        db.session.query(func.count(PrintJob.id))
        .filter(PrintJob.theater_id == theater_id, PrintJob.status.in_(OPEN_STATUSES))
        .scalar()
    )


def default_printer(theater_id: int, printer_type: str = PRINTER_RECEIPT) -> PrinterSetup | None:
    return (
        PrinterSetup.query.filter_by(theater_id=theater_id, printer_type=printer_type, is_active=True)
        .order_by(PrinterSetup.is_default.desc(), PrinterSetup.id.asc())
        .first()
    )


def enqueue(
    theater_id: int,
    rendered_receipt: str,
    *,
    order_id: int | None = None,
    printer_hint: str | None = None,
    printer_type: str = PRINTER_RECEIPT,
    header: dict | None = None,
) -> PrintJob:
    """Persist a QUEUED job. Raises ServiceUnavailableError when the theater's queue is full."""
    if printer_type not in PRINTER_TYPES:
        raise ValidationError(f"printer_type must be one of {', '.join(PRINTER_TYPES)}")
    if not rendered_receipt:
        raise ValidationError("rendered receipt is empty")

    dispatcher = get_dispatcher()
    depth = queue_depth(theater_id)
    if depth >= dispatcher.max_depth:
        raise ServiceUnavailableError(
            f"Print queue for theater {theater_id} is full",
            details={"depth": depth, "max_depth": dispatcher.max_depth},
        )

    if printer_hint is None:
        printer = default_printer(theater_id, printer_type)
        printer_hint = printer.name if printer else None

    job = PrintJob(
        theater_id=theater_id,
        order_id=order_id,
        status=JOB_QUEUED,
        printer_hint=printer_hint,
        printer_type=printer_type,
        rendered_receipt=rendered_receipt,
        header=header or {"theaterId": theater_id, "printerType": printer_type},
        attempts=0,
    )
    db.session.add(job)
    db.session.commit()

    dispatcher.count("enqueued")
    dispatcher.wake()
    logger.info("Print job %s queued for theater %s (depth %s)", job.id, theater_id, depth + 1)
    return job


def render_receipt(order: Order) -> str:
    return render_template("receipt.html", order=order, theater=order.theater, lines=order.lines)


def enqueue_for_order(order: Order, *, printer_hint: str | None = None) -> PrintJob:
    """Receipt job for a committed order. An order keeps at most one receipt job."""
    existing = PrintJob.query.filter_by(order_id=order.id, printer_type=PRINTER_RECEIPT).first()
    if existing is not None:
        return existing
    return enqueue(
        order.theater_id,
        render_receipt(order),
        order_id=order.id,
        printer_hint=printer_hint,
        header={"orderNumber": order.order_number, "theaterId": order.theater_id, "printerType": PRINTER_RECEIPT},
    )


def backfill_missing_jobs(*, since_hours: int = 24, limit: int = 100) -> int:
    """Queue receipts for recent orders whose enqueue failed after commit."""
    since = utcnow() - timedelta(hours=since_hours)
    missing = (
        Order.query.outerjoin(
            PrintJob,
            and_(PrintJob.order_id == Order.id, PrintJob.printer_type == PRINTER_RECEIPT),
        )
        .filter(PrintJob.id.is_(None), Order.created_at >= since)
        .order_by(Order.id.asc())
        .limit(limit)
        .all()
    )
    queued = 0
    for order in missing:
        try:
            enqueue_for_order(order)
            queued += 1
        except ServiceUnavailableError:
            logger.warning("Print queue full for theater %s; backfill of %s deferred", order.theater_id, order.order_number)
    if queued:
        logger.info("Backfilled %s receipt job(s)", queued)
    return queued


# -- delivery ------------------------------------------------------------


def reclaim_stuck(theater_id: int, now: datetime | None = None) -> int:
    """Return SENDING jobs abandoned by a dead worker to QUEUED."""
    dispatcher = get_dispatcher()
    now = now or utcnow()
    cutoff = now - timedelta(seconds=dispatcher.ack_timeout + RECLAIM_GRACE_SECONDS)
    result = db.session.execute(
        update(PrintJob)
        .where(
            PrintJob.theater_id == theater_id,
            PrintJob.status == JOB_SENDING,
            PrintJob.claimed_at < cutoff,
        )
        .values(status=JOB_QUEUED, claimed_at=None, version_id=PrintJob.version_id + 1,
                last_error="worker lost while sending")
    )
    db.session.commit()
    if result.rowcount:
        logger.warning("Reclaimed %s stuck print job(s) for theater %s", result.rowcount, theater_id)
    return result.rowcount


def _head(theater_id: int) -> PrintJob | None:
    return (
        PrintJob.query.filter(PrintJob.theater_id == theater_id, PrintJob.status.in_(OPEN_STATUSES))
        .order_by(PrintJob.id.asc())
        .first()
    )


def _claim(job: PrintJob, now: datetime) -> bool:
    result = db.session.execute(
        update(PrintJob)
        .where(
            PrintJob.id == job.id,
            PrintJob.status == JOB_QUEUED,
            PrintJob.version_id == job.version_id,
        )
        .values(
            status=JOB_SENDING,
            claimed_at=now,
            attempts=PrintJob.attempts + 1,
            version_id=PrintJob.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _finish(job_id: int, **values) -> None:
    db.session.execute(
        update(PrintJob)
        .where(PrintJob.id == job_id, PrintJob.status == JOB_SENDING)
        .values(version_id=PrintJob.version_id + 1, **values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def process_theater(theater_id: int, *, now: datetime | None = None) -> str:
    """Try to deliver the head job of one theater's queue. Returns the outcome."""
    dispatcher = get_dispatcher()
    now = now or utcnow()
    reclaim_stuck(theater_id, now)

    head = _head(theater_id)
    if head is None:
        return OUTCOME_IDLE
    if head.status == JOB_SENDING:
        return OUTCOME_BUSY
    if head.next_attempt_at is not None and head.next_attempt_at > now:
        return OUTCOME_WAITING

    supervisor = _supervisor()
    if supervisor is None or not supervisor.is_healthy(theater_id):
        return OUTCOME_OFFLINE

    frame = head.frame()
    job_id = head.id
    if not _claim(head, now):
        return OUTCOME_CONTENDED

    from ..agents import AgentUnavailableError

    try:
        future = supervisor.send(theater_id, frame)
    except AgentUnavailableError:
        # Not an attempt: put it back untouched
        _finish(job_id, status=JOB_QUEUED, claimed_at=None, attempts=PrintJob.attempts - 1)
        return OUTCOME_OFFLINE

    try:
        ack = future.result(timeout=dispatcher.ack_timeout)
        ok, error = ack.ok, ack.error
    except FutureTimeout:
        supervisor.abandon(theater_id, job_id)
        ok, error = False, f"no ack within {dispatcher.ack_timeout:g}s"

    if ok:
        _finish(job_id, status=JOB_DELIVERED, delivered_at=utcnow(), claimed_at=None, last_error=None)
        dispatcher.count("delivered")
        logger.info("Print job %s delivered to theater %s", job_id, theater_id)
        return OUTCOME_DELIVERED

    job = db.session.get(PrintJob, job_id, populate_existing=True)
    attempts = job.attempts if job is not None else dispatcher.max_attempts
    error = (error or "print failed")[:500]
    if attempts >= dispatcher.max_attempts:
        _finish(job_id, status=JOB_FAILED, failed_at=utcnow(), claimed_at=None, last_error=error)
        dispatcher.count("failed")
        logger.error("Print job %s for theater %s failed after %s attempts: %s", job_id, theater_id, attempts, error)
        return OUTCOME_FAILED

    delay = dispatcher.backoff(attempts)
    _finish(
        job_id,
        status=JOB_QUEUED,
        claimed_at=None,
        next_attempt_at=now + timedelta(seconds=delay),
        last_error=error,
    )
    dispatcher.count("retried")
    logger.warning("Print job %s attempt %s failed (%s); retrying in %ss", job_id, attempts, error, delay)
    return OUTCOME_RETRY


def drain_theater(theater_id: int, *, max_jobs: int = 50, now: datetime | None = None) -> list[str]:
    """Deliver jobs until the head is blocked or the queue is empty."""
    outcomes = []
    for _ in range(max_jobs):
        outcome = process_theater(theater_id, now=now)
        outcomes.append(outcome)
        if outcome != OUTCOME_DELIVERED:
            break
    return outcomes


def theaters_with_work() -> list[int]:
    rows = (
        db.session.query(PrintJob.theater_id)
        .filter(PrintJob.status.in_(OPEN_STATUSES))
        .distinct()
        .order_by(PrintJob.theater_id)
        .all()
    )
    return [r[0] for r in rows]


def run_once(*, parallel: bool = False) -> dict:
    """One dispatcher pass over every theater with open jobs."""
    theater_ids = theaters_with_work()
    if not parallel or len(theater_ids) <= 1:
        return {tid: drain_theater(tid) for tid in theater_ids}

    dispatcher = get_dispatcher()
    app = current_app._get_current_object()

    def _drain(tid):
        with app.app_context():
            try:
                return tid, drain_theater(tid)
            finally:
                db.session.remove()

    with ThreadPoolExecutor(max_workers=dispatcher.max_workers, thread_name_prefix="print") as pool:
        return dict(pool.map(_drain, theater_ids))


# -- operator surface ----------------------------------------------------


def list_jobs(*, theater_id: int | None = None, status: str | None = None, limit: int = 100) -> list[dict]:
    query = PrintJob.query
    if theater_id is not None:
        query = query.filter(PrintJob.theater_id == theater_id)
    if status:
        status = status.upper()
        if status not in JOB_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(JOB_STATUSES)}")
        query = query.filter(PrintJob.status == status)
    jobs = query.order_by(PrintJob.id.desc()).limit(min(max(int(limit), 1), 500)).all()
    return [job.to_dict() for job in jobs]


def get_job(job_id: int, *, theater_id: int | None = None) -> PrintJob:
    job = db.session.get(PrintJob, job_id)
    if job is None or (theater_id is not None and job.theater_id != theater_id):
        raise NotFoundError("PrintJob", job_id)
    return job


def retry_job(job_id: int, *, theater_id: int | None = None) -> PrintJob:
    """Re-queue a FAILED job with a fresh attempt budget."""
    job = get_job(job_id, theater_id=theater_id)
    if job.status != JOB_FAILED:
        raise PreconditionFailedError(f"Only failed jobs can be retried (job is {job.status})")
    job.status = JOB_QUEUED
    job.attempts = 0
    job.next_attempt_at = None
    job.failed_at = None
    job.last_error = None
    db.session.commit()
    get_dispatcher().wake()
    logger.info("Print job %s re-queued by operator", job.id)
    return job


def metrics() -> dict:
    """Dispatcher counters plus per-theater queue depth and last-success gauges."""
    dispatcher = get_dispatcher()
    gauges: dict[int, dict] = {}

    def _gauge(tid):
        return gauges.setdefault(tid, {"theater_id": tid, "depth": 0, "failed": 0, "last_success_at": None})

    depth_rows = (
        db.session.query(PrintJob.theater_id, PrintJob.status, func.count(PrintJob.id))
        .filter(PrintJob.status.in_((JOB_QUEUED, JOB_SENDING, JOB_FAILED)))
        .group_by(PrintJob.theater_id, PrintJob.status)
        .all()
    )
    for tid, status, count in depth_rows:
        if status == JOB_FAILED:
            _gauge(tid)["failed"] += count
        else:
            _gauge(tid)["depth"] += count

    success_rows = (
        db.session.query(PrintJob.theater_id, func.max(PrintJob.delivered_at))
        .filter(PrintJob.status == JOB_DELIVERED)
        .group_by(PrintJob.theater_id)
        .all()
    )
    for tid, last in success_rows:
        _gauge(tid)["last_success_at"] = to_utc_z(last) if isinstance(last, datetime) else last

    return {
        "counters": dispatcher.snapshot(),
        "theaters": [gauges[tid] for tid in sorted(gauges)],
        "worker_running": dispatcher.is_running,
    }
