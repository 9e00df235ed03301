"""
Print dispatcher tests against a fake supervisor: offline handling,
retry/backoff accounting, head-of-line ordering and the operator surface.
"""

from concurrent.futures import Future
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from canteen.agents import AgentUnavailableError, PrintAck
from canteen.errors import PreconditionFailedError, ServiceUnavailableError
from canteen.extensions import db
from canteen.models import PrintJob
from canteen.services import print_service, theater_service


T0 = datetime(2024, 1, 15, 12, 0, 0)


class FakeSupervisor:
    def __init__(self, healthy=True):
        self.healthy = healthy
        self.replies = []
        self.sent = []
        self.unavailable = False
        self.abandoned = []

    def is_healthy(self, theater_id):
        return self.healthy

    def send(self, theater_id, frame):
        if self.unavailable:
            raise AgentUnavailableError("agent gone")
        self.sent.append(frame)
        future = Future()
        reply = self.replies.pop(0) if self.replies else "ack"
        if reply == "ack":
            future.set_result(PrintAck(job_id=frame["jobId"], ok=True))
        elif reply == "nack":
            future.set_result(PrintAck(job_id=frame["jobId"], ok=False, error="paper out"))
        return future

    def abandon(self, theater_id, job_id):
        self.abandoned.append((theater_id, job_id))
        return True


@pytest.fixture
def supervisor(app):
    fake = FakeSupervisor()
    app.extensions["canteen.agents"] = fake
    return fake


def job_state(job_id):
    return db.session.get(PrintJob, job_id, populate_existing=True)


def test_offline_agent_keeps_job_queued_without_spending_attempts(theater, supervisor):
    supervisor.healthy = False
    job = print_service.enqueue(theater.id, "<p>receipt</p>")

    assert print_service.process_theater(theater.id, now=T0) == "offline"
    assert job_state(job.id).status == "QUEUED"
    assert job_state(job.id).attempts == 0

    supervisor.healthy = True
    assert print_service.process_theater(theater.id, now=T0) == "delivered"
    delivered = job_state(job.id)
    assert delivered.status == "DELIVERED"
    assert delivered.attempts == 1
    assert delivered.delivered_at is not None
    assert supervisor.sent[0]["type"] == "print"
    assert supervisor.sent[0]["html"] == "<p>receipt</p>"


def test_no_supervisor_means_offline(theater):
    print_service.enqueue(theater.id, "<p>receipt</p>")
    assert print_service.process_theater(theater.id, now=T0) == "offline"


def test_agent_vanishing_mid_send_is_not_an_attempt(theater, supervisor):
    supervisor.unavailable = True
    job = print_service.enqueue(theater.id, "<p>receipt</p>")
    assert print_service.process_theater(theater.id, now=T0) == "offline"
    state = job_state(job.id)
    assert state.status == "QUEUED"
    assert state.attempts == 0


def test_nacks_back_off_then_fail(theater, supervisor):
    supervisor.replies = ["nack"] * 4
    job = print_service.enqueue(theater.id, "<p>receipt</p>")
    dispatcher = print_service.get_dispatcher()
    assert dispatcher.max_attempts == 4
    assert [dispatcher.backoff(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    now = T0
    assert print_service.process_theater(theater.id, now=now) == "retry"
    assert job_state(job.id).next_attempt_at == now + timedelta(seconds=1)
    assert print_service.process_theater(theater.id, now=now) == "waiting"

    now += timedelta(seconds=1.5)
    assert print_service.process_theater(theater.id, now=now) == "retry"
    now += timedelta(seconds=2.5)
    assert print_service.process_theater(theater.id, now=now) == "retry"
    now += timedelta(seconds=4.5)
    assert print_service.process_theater(theater.id, now=now) == "failed"

    state = job_state(job.id)
    assert state.status == "FAILED"
    assert state.attempts == 4
    assert state.last_error == "paper out"
    assert dispatcher.snapshot()["retried"] == 3
    assert dispatcher.snapshot()["failed"] == 1
    assert print_service.process_theater(theater.id, now=now) == "idle"


def test_missing_ack_counts_as_failed_attempt(theater, supervisor, monkeypatch):
    monkeypatch.setattr(print_service.get_dispatcher(), "ack_timeout", 0.01)
    supervisor.replies = ["silence"]
    job = print_service.enqueue(theater.id, "<p>receipt</p>")

    assert print_service.process_theater(theater.id, now=T0) == "retry"
    state = job_state(job.id)
    assert state.attempts == 1
    assert "no ack" in state.last_error
    assert supervisor.abandoned == [(theater.id, job.id)]


def test_head_of_line_blocks_later_jobs(theater, supervisor):
    supervisor.replies = ["nack"]
    first = print_service.enqueue(theater.id, "<p>one</p>")
    second = print_service.enqueue(theater.id, "<p>two</p>")

    assert print_service.drain_theater(theater.id, now=T0) == ["retry"]
    assert job_state(second.id).status == "QUEUED"
    assert job_state(second.id).attempts == 0

    later = T0 + timedelta(seconds=2)
    assert print_service.drain_theater(theater.id, now=later) == ["delivered", "delivered", "idle"]
    assert [frame["jobId"] for frame in supervisor.sent] == [first.id, first.id, second.id]


def test_theaters_drain_independently(theater, other_theater, supervisor):
    print_service.enqueue(theater.id, "<p>a</p>")
    print_service.enqueue(other_theater.id, "<p>b</p>")

    assert print_service.theaters_with_work() == sorted([theater.id, other_theater.id])
    results = print_service.run_once()
    assert results[theater.id] == ["delivered", "idle"]
    assert results[other_theater.id] == ["delivered", "idle"]
    assert print_service.theaters_with_work() == []


def test_full_queue_rejects_enqueue(theater, monkeypatch):
    monkeypatch.setattr(print_service.get_dispatcher(), "max_depth", 2)
    print_service.enqueue(theater.id, "<p>1</p>")
    print_service.enqueue(theater.id, "<p>2</p>")
    with pytest.raises(ServiceUnavailableError):
        print_service.enqueue(theater.id, "<p>3</p>")
    assert print_service.queue_depth(theater.id) == 2


def test_default_printer_becomes_the_hint(theater):
    theater_service.add_printer(theater.id, {"name": "Counter", "is_default": True})
    job = print_service.enqueue(theater.id, "<p>x</p>")
    assert job.printer_hint == "Counter"
    assert job.frame()["printerHint"] == "Counter"

    hinted = print_service.enqueue(theater.id, "<p>y</p>", printer_hint="Bar")
    assert hinted.printer_hint == "Bar"


def test_stuck_sending_job_is_reclaimed(theater):
    job = print_service.enqueue(theater.id, "<p>x</p>")
    db.session.execute(
        update(PrintJob).where(PrintJob.id == job.id).values(status="SENDING", claimed_at=T0)
    )
    db.session.commit()

    assert print_service.process_theater(theater.id, now=T0 + timedelta(seconds=5)) == "busy"
    assert print_service.reclaim_stuck(theater.id, now=T0 + timedelta(minutes=5)) == 1
    assert job_state(job.id).status == "QUEUED"


def test_operator_retry_of_failed_job(theater, supervisor):
    supervisor.replies = ["nack"] * 4
    job = print_service.enqueue(theater.id, "<p>x</p>")
    with pytest.raises(PreconditionFailedError):
        print_service.retry_job(job.id)

    now = T0
    for _ in range(4):
        print_service.process_theater(theater.id, now=now)
        now += timedelta(seconds=10)
    assert job_state(job.id).status == "FAILED"

    retried = print_service.retry_job(job.id, theater_id=theater.id)
    assert retried.status == "QUEUED"
    assert retried.attempts == 0
    assert print_service.process_theater(theater.id, now=now) == "delivered"


def test_metrics_report_depth_failures_and_last_success(theater, other_theater, supervisor):
    print_service.enqueue(theater.id, "<p>x</p>")
    print_service.process_theater(theater.id, now=T0)
    print_service.enqueue(other_theater.id, "<p>y</p>")

    metrics = print_service.metrics()
    by_theater = {row["theater_id"]: row for row in metrics["theaters"]}
    assert by_theater[theater.id]["last_success_at"] is not None
    assert by_theater[theater.id]["depth"] == 0
    assert by_theater[other_theater.id]["depth"] == 1
    assert metrics["counters"]["enqueued"] == 2
    assert metrics["counters"]["delivered"] == 1
    assert metrics["worker_running"] is False
