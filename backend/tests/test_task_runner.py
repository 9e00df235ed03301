import pytest

from canteen.services.task_runner import MODE_INLINE, MODE_THREAD, TaskRunner


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_inline_submit_runs_immediately(app):
    calls = []
    runner = TaskRunner(app, mode=MODE_INLINE)
    runner.register("record", lambda **kw: calls.append(kw))

    runner.submit("record", theater_id=3, product_id=9)

    assert calls == [{"theater_id": 3, "product_id": 9}]
    assert runner.to_dict()["completed"] == 1


def test_unknown_task_is_rejected(app):
    runner = TaskRunner(app, mode=MODE_INLINE)
    with pytest.raises(KeyError):
        runner.submit("nope")


def test_failures_are_counted_not_raised(app):
    def boom():
        raise RuntimeError("disk on fire")

    runner = TaskRunner(app, mode=MODE_INLINE)
    runner.register("boom", boom)
    runner.submit("boom")

    stats = runner.to_dict()
    assert stats["failed"] == 1
    assert stats["completed"] == 0
    assert stats["last_error"] == "boom: disk on fire"


def test_periodic_ticks_follow_the_clock(app, clock):
    ticks = []
    runner = TaskRunner(app, mode=MODE_THREAD, clock=clock)
    runner.every("tick", 30.0, lambda: ticks.append(clock.now))

    assert runner.run_pending() == 0
    clock.now += 30
    assert runner.run_pending() == 1
    clock.now += 10
    assert runner.run_pending() == 0
    clock.now += 20
    assert runner.run_pending() == 1
    assert ticks == [1030.0, 1060.0]


def test_thread_mode_without_worker_runs_in_caller(app):
    calls = []
    runner = TaskRunner(app, mode=MODE_THREAD)
    runner.register("record", lambda: calls.append("ran"))

    runner.submit("record")

    assert calls == ["ran"]
    assert runner.to_dict()["queued"] == 0


def test_unknown_mode():
    with pytest.raises(ValueError):
        TaskRunner(mode="celery")


def test_app_registers_deferred_and_periodic_tasks(app):
    runner = app.extensions["canteen.tasks"]

    assert set(runner._handlers) == {"stock.repair_chain"}
    assert {task.name for task in runner._periodic} == {
        "stock.auto_expire_all", "print.backfill", "sessions.cleanup", "limiter.prune",
    }
