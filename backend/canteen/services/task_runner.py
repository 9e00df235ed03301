# Overview: Supervised background worker for deferred ledger maintenance and periodic ticks.

"""
Deferred work (prior-month chain repair, auto-expire, print draining) never
runs inside a request. Handlers submit named tasks; a single daemon thread
drains the queue and fires periodic ticks. In "inline" mode (tests, CLI one-shots)
submitted tasks run immediately in the caller's app context.

Task failures are logged and never propagate to the submitter.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from flask import current_app, has_app_context

from ..extensions import db


logger = logging.getLogger(__name__)

MODE_THREAD = "thread"
MODE_INLINE = "inline"

EXTENSION_KEY = "canteen.tasks"


@dataclass
class PeriodicTask:
    name: str
    interval: float
    func: Callable[[], None]
    next_run: float = 0.0


@dataclass
class TaskStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    last_error: str | None = None
    by_name: dict = field(default_factory=dict)


class TaskRunner:
    def __init__(self, app=None, *, mode: str = MODE_THREAD, tick_seconds: float = 1.0, clock=time.monotonic):
        if mode not in (MODE_THREAD, MODE_INLINE):
            raise ValueError(f"Unknown task runner mode: {mode}")
        self.app = app
        self.mode = mode
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.stats = TaskStats()

        self._handlers: dict[str, Callable[..., None]] = {}
        self._periodic: list[PeriodicTask] = []
        self._queue: queue.Queue = queue.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def register(self, name: str, func: Callable[..., None]) -> None:
        self._handlers[name] = func

    def every(self, name: str, interval: float, func: Callable[[], None]) -> None:
        """Schedule func to run every interval seconds on the worker thread."""
        self._periodic.append(PeriodicTask(name=name, interval=interval, func=func, next_run=self.clock() + interval))

    def submit(self, name: str, **kwargs) -> None:
        if name not in self._handlers:
            raise KeyError(f"Unknown task: {name}")
        with self._lock:
            self.stats.submitted += 1
        if self.mode == MODE_INLINE or not self.is_running:
            self._execute(name, self._handlers[name], kwargs)
            return
        self._queue.put((name, kwargs))

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.mode == MODE_INLINE or self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="canteen-tasks", daemon=True)
        self._thread.start()
        logger.info("Task runner started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Task runner stopped")

    def run_pending(self) -> int:
        """Drain queued tasks and due periodic ticks once. Returns tasks executed."""
        executed = 0
        while True:
            try:
                name, kwargs = self._queue.get_nowait()
            except queue.Empty:
                break
            self._execute(name, self._handlers[name], kwargs)
            executed += 1
        executed += self._run_due_periodic()
        return executed

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                name, kwargs = self._queue.get(timeout=self.tick_seconds)
            except queue.Empty:
                name = None
            if name is not None:
                self._execute(name, self._handlers[name], kwargs)
            self._run_due_periodic()

    def _run_due_periodic(self) -> int:
        now = self.clock()
        executed = 0
        for task in self._periodic:
            if now >= task.next_run:
                task.next_run = now + task.interval
                self._execute(task.name, task.func, {})
                executed += 1
        return executed

    def _execute(self, name: str, func: Callable[..., None], kwargs: dict) -> None:
        if has_app_context() or self.app is None:
            self._call(name, func, kwargs)
            return
        with self.app.app_context():
            try:
                self._call(name, func, kwargs)
            finally:
                db.session.remove()

    def _call(self, name: str, func: Callable[..., None], kwargs: dict) -> None:
        try:
            func(**kwargs)
        except Exception as exc:
            db.session.rollback()
            logger.exception("Background task %s failed (%s)", name, kwargs)
            with self._lock:
                self.stats.failed += 1
                self.stats.last_error = f"{name}: {exc}"
            return
        with self._lock:
            self.stats.completed += 1
            self.stats.by_name[name] = self.stats.by_name.get(name, 0) + 1

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "mode": self.mode,
                "running": self.is_running,
                "queued": self._queue.qsize(),
                "submitted": self.stats.submitted,
                "completed": self.stats.completed,
                "failed": self.stats.failed,
                "last_error": self.stats.last_error,
            }


def get_runner() -> TaskRunner | None:
    if not has_app_context():
        return None
    return current_app.extensions.get(EXTENSION_KEY)


def defer(name: str, **kwargs) -> None:
    """Hand a named task to the app's runner. Never raises for task failures."""
    runner = get_runner()
    if runner is None:
        logger.warning("No task runner available, dropping task %s", name)
        return
    runner.submit(name, **kwargs)
