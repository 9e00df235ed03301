# Overview: Data-store readiness gate (reconnect with backoff) and per-transaction deadlines.

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError

from ..errors import ServiceUnavailableError
from ..extensions import db


logger = logging.getLogger(__name__)

EXTENSION_KEY = "canteen.store"

OP_READ = "read"
OP_WRITE = "write"


class StoreGate:
    """
    Tracks whether the shared pool can reach the store.

    While not ready, each check pings again; a failed ping disposes the
    pool so connections stuck mid-connect are closed before the next try.
    """

    def __init__(self, *, connect_budget: float = 40.0, request_wait: float = 0.0,
                 sleep=time.sleep, clock=time.monotonic):
        self.connect_budget = connect_budget
        self.request_wait = request_wait
        self.sleep = sleep
        self.clock = clock
        self.ready = False
        self.last_error: str | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "StoreGate":
        return cls(
            connect_budget=float(config.get("STORE_CONNECT_BUDGET_SECONDS", 40.0)),
            request_wait=float(config.get("STORE_READY_WAIT_SECONDS", 0.0)),
        )

    def ping(self) -> bool:
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (OperationalError, DBAPIError) as exc:
            self.last_error = str(exc.orig if getattr(exc, "orig", None) else exc)[:200]
            if self.ready:
                logger.warning("Store became unreachable: %s", self.last_error)
            self.ready = False
            db.engine.dispose()
            return False
        if not self.ready:
            logger.info("Store ready")
        self.ready = True
        self.last_error = None
        return True

    def wait_until_ready(self, budget: float | None = None) -> bool:
        """Ping with exponential backoff (0.25s doubling, capped at 5s) until ready or budget spent."""
        budget = self.connect_budget if budget is None else budget
        deadline = self.clock() + budget
        delay = 0.25
        while True:
            with self._lock:
                if self.ping():
                    return True
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.error("Store not ready after %.1fs: %s", budget, self.last_error)
                return False
            self.sleep(min(delay, remaining))
            delay = min(delay * 2, 5.0)

    def ensure_ready(self) -> None:
        if self.ready:
            return
        if not self.wait_until_ready(self.request_wait):
            raise ServiceUnavailableError("Data store is not ready", details={"reason": self.last_error})

    def to_dict(self) -> dict:
        return {"ready": self.ready, "last_error": self.last_error}


def get_gate() -> StoreGate:
    gate = current_app.extensions.get(EXTENSION_KEY)
    if gate is None:
        gate = StoreGate.from_config(current_app.config)
        current_app.extensions[EXTENSION_KEY] = gate
    return gate


def deadline_seconds(op_class: str) -> float:
    if op_class == OP_WRITE:
        return float(current_app.config.get("STORE_DEADLINE_WRITE_SECONDS", 20.0))
    return float(current_app.config.get("STORE_DEADLINE_READ_SECONDS", 5.0))


def apply_deadline(op_class: str = OP_READ) -> None:
    """Per-transaction statement timeout (PostgreSQL SET LOCAL; no-op elsewhere)."""
    if db.engine.dialect.name == "postgresql":
        millis = int(deadline_seconds(op_class) * 1000)
        db.session.execute(text(f"SET LOCAL statement_timeout = {millis}"))


@contextmanager
def store_deadline(op_class: str = OP_READ):
    apply_deadline(op_class)
    yield
