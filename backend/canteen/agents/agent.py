# Overview: The per-theater POS agent process: bridges backend print frames (stdin) to the local silent-print service.

"""
Run as ``python -m canteen.agents.agent``. Credentials come from the
environment (THEATER_ID, THEATER_USERNAME, THEATER_PASSWORD, THEATER_PIN);
the config file named by AGENT_CONFIG_PATH fills anything missing.

Protocol on stdin/stdout, one JSON object per line:

    in:  {"type": "print", "jobId": 12, "printerHint": "...", "metadata": {...}, "html": "..."}
    out: {"type": "ack", "jobId": 12}
         {"type": "nack", "jobId": 12, "error": "..."}
         {"type": "heartbeat", "theaterId": 7, "at": "..."}

stdin EOF ends the process with exit code 0.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from dataclasses import dataclass

import httpx

from ..time_utils import to_utc_z, utcnow
from .config_file import find_agent, load_agent_config


logger = logging.getLogger("canteen.agents.agent")

HEARTBEAT_SECONDS = 30.0
PRINT_TIMEOUT_SECONDS = 8.0


class AgentConfigError(Exception):
    pass


@dataclass
class AgentSettings:
    theater_id: int
    username: str
    password: str
    pin: str | None
    label: str
    backend_url: str
    local_print_url: str

    @classmethod
    def from_env(cls, env=None) -> "AgentSettings":
        env = os.environ if env is None else env
        config = {"backendUrl": None, "agents": []}
        if env.get("AGENT_CONFIG_PATH"):
            try:
                config = load_agent_config(env["AGENT_CONFIG_PATH"])
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable agent config: %s", exc)

        theater_id = env.get("THEATER_ID")
        if not theater_id:
            raise AgentConfigError("THEATER_ID is required")
        entry = find_agent(config, theater_id) or {}

        username = env.get("THEATER_USERNAME") or entry.get("username")
        password = env.get("THEATER_PASSWORD") or entry.get("password")
        if not username or not password:
            raise AgentConfigError(f"No credentials for theater {theater_id}")

        try:
            theater_id = int(theater_id)
        except ValueError:
            raise AgentConfigError(f"THEATER_ID must be an integer, got {theater_id!r}")

        return cls(
            theater_id=theater_id,
            username=username,
            password=password,
            pin=env.get("THEATER_PIN") or entry.get("pin"),
            label=env.get("AGENT_LABEL") or entry.get("label") or f"theater-{theater_id}",
            backend_url=(env.get("BACKEND_URL") or config.get("backendUrl") or "http://localhost:8080").rstrip("/"),
            local_print_url=(env.get("LOCAL_PRINT_URL") or "http://127.0.0.1:17388").rstrip("/"),
        )


class PosAgent:
    def __init__(self, settings: AgentSettings, *, backend_client: httpx.Client | None = None,
                 print_client: httpx.Client | None = None, out=None):
        self.settings = settings
        self.backend = backend_client or httpx.Client(base_url=settings.backend_url, timeout=10.0)
        self.printer = print_client or httpx.Client(base_url=settings.local_print_url, timeout=PRINT_TIMEOUT_SECONDS)
        self.out = out or sys.stdout
        self.token: str | None = None
        self.printer_config: dict = {}
        self._out_lock = threading.Lock()
        self._stop = threading.Event()

    # -- backend -----------------------------------------------------------

    def login(self) -> str:
        body = {
            "username": self.settings.username,
            "password": self.settings.password,
            "theater_id": self.settings.theater_id,
        }
        if self.settings.pin:
            body["pin"] = self.settings.pin
        resp = self.backend.post("/api/auth/login", json=body)
        resp.raise_for_status()
        self.token = resp.json()["data"]["token"]
        return self.token

    def fetch_printer_config(self) -> dict:
        resp = self.backend.get(
            f"/api/theaters/{self.settings.theater_id}/printer",
            headers={"Authorization": f"Bearer {self.token}"},
        )
        resp.raise_for_status()
        self.printer_config = resp.json().get("data") or {}
        return self.printer_config

    def connect(self) -> None:
        """Authenticate and load printer config. Failures are reported, not fatal."""
        try:
            self.login()
            self.fetch_printer_config()
            self.log(f"connected; printers: {[p.get('name') for p in self.printer_config.get('printers', [])]}")
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            self.log(f"backend connect failed: {exc}", err=True)

    # -- frames ------------------------------------------------------------

    def _default_printer(self) -> str | None:
        return self.printer_config.get("default_receipt_printer") or None

    def handle_frame(self, frame: dict) -> dict:
        job_id = frame.get("jobId")
        if frame.get("type") != "print":
            return {"type": "nack", "jobId": job_id, "error": f"unsupported frame type {frame.get('type')!r}"}
        body = {
            "jobId": job_id,
            "printer": frame.get("printerHint") or self._default_printer(),
            "metadata": frame.get("metadata") or {},
            "html": frame.get("html") or "",
        }
        try:
            resp = self.printer.post("/print", json=body)
        except httpx.HTTPError as exc:
            return {"type": "nack", "jobId": job_id, "error": f"print service unreachable: {exc}"}
        if resp.status_code >= 400:
            return {"type": "nack", "jobId": job_id, "error": f"print service returned {resp.status_code}"}
        return {"type": "ack", "jobId": job_id}

    def handle_line(self, line: str) -> dict | None:
        line = line.strip()
        if not line:
            return None
        try:
            frame = json.loads(line)
        except ValueError:
            self.log(f"dropping malformed frame: {line[:80]}", err=True)
            return None
        if not isinstance(frame, dict):
            return None
        return self.handle_frame(frame)

    # -- output ------------------------------------------------------------

    def emit(self, message: dict) -> None:
        with self._out_lock:
            self.out.write(json.dumps(message, separators=(",", ":")) + "\n")
            self.out.flush()

    def log(self, text: str, *, err: bool = False) -> None:
        stream = sys.stderr if err else self.out
        with self._out_lock:
            stream.write(f"{text}\n")
            stream.flush()

    def heartbeat(self) -> None:
        self.emit({"type": "heartbeat", "theaterId": self.settings.theater_id, "at": to_utc_z(utcnow())})

    def _heartbeat_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            self.heartbeat()

    # -- main loop ---------------------------------------------------------

    def run(self, stdin=None, *, heartbeat_interval: float = HEARTBEAT_SECONDS) -> int:
        stdin = stdin or sys.stdin
        self.connect()
        self.heartbeat()
        beat = threading.Thread(target=self._heartbeat_loop, args=(heartbeat_interval,), daemon=True)
        beat.start()
        try:
            for line in stdin:
                reply = self.handle_line(line)
                if reply is not None:
                    self.emit(reply)
        finally:
            self._stop.set()
            self.backend.close()
            self.printer.close()
        return 0


def main(env=None) -> int:
    try:
        settings = AgentSettings.from_env(env)
    except AgentConfigError as exc:
        sys.stderr.write(f"agent: {exc}\n")
        return 2
    return PosAgent(settings).run()


if __name__ == "__main__":
    sys.exit(main())
