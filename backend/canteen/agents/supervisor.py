# Overview: Supervises one long-lived POS agent subprocess per theater (spawn, heartbeat, restart, stop).

"""
Agent supervisor.

The supervisor is an explicit lifecycle object owned by the app
(app.extensions["canteen.agents"]); nothing here is module-level state.

Registry rules:
- at most one live agent per theater; start() is a no-op while one is
  running or a start for that theater is in flight
- the registry lock guards map reads/writes only; spawning, writing the
  config file and terminating processes happen outside it
- every stdout/stderr line refreshes the agent's heartbeat
- check_health() terminates agents silent for longer than the heartbeat
  timeout and restarts them after the stale delay
- a non-zero exit restarts the agent after the crash delay
- restarts reuse the credentials given to start(); an explicit stop()
  forgets them, so a stopped agent is never restarted
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import sys
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from ..errors import ServiceUnavailableError
from ..time_utils import to_utc_z
from .config_file import agent_entry, write_agent_config


logger = logging.getLogger(__name__)
output_logger = logging.getLogger("canteen.agents")

EXTENSION_KEY = "canteen.agents"


class AgentUnavailableError(ServiceUnavailableError):
    """No healthy agent is attached for the theater."""


@dataclass(frozen=True)
class AgentCredentials:
    theater_id: int
    username: str
    password: str
    pin: str | None = None
    label: str | None = None

    @property
    def display_label(self) -> str:
        return self.label or f"theater-{self.theater_id}"


@dataclass(frozen=True)
class PrintAck:
    job_id: int
    ok: bool
    error: str | None = None


@dataclass
class AgentHandle:
    theater_id: int
    process: object
    credentials: AgentCredentials
    started_at: float
    last_heartbeat: float
    stopping: bool = False
    pending: dict = field(default_factory=dict)
    stdin_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)


def default_spawner(command: list[str], env: dict) -> subprocess.Popen:
    return subprocess.Popen(
        command,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
        text=True,
        bufsize=1,
    )


def default_scheduler(delay: float, func: Callable, *args):
    timer = threading.Timer(delay, func, args=args)
    timer.daemon = True
    timer.start()
    return timer


def _ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class AgentSupervisor:
    def __init__(
        self,
        *,
        command: list[str] | str | None = None,
        config_path: str | None = None,
        backend_url: str = "http://localhost:8080",
        local_print_url: str | None = None,
        heartbeat_timeout: float = 120.0,
        monitor_interval: float = 30.0,
        stale_restart_delay: float = 5.0,
        crash_restart_delay: float = 10.0,
        terminate_grace: float = 5.0,
        spawner: Callable[[list[str], dict], object] | None = None,
        scheduler: Callable | None = None,
        clock: Callable[[], float] = time.time,
        watch_processes: bool = True,
        base_env: dict | None = None,
    ):
        if isinstance(command, str):
            command = shlex.split(command)
        self.command = command or [sys.executable, "-m", "canteen.agents.agent"]
        self.config_path = config_path
        self.backend_url = backend_url
        self.local_print_url = local_print_url
        self.heartbeat_timeout = heartbeat_timeout
        self.monitor_interval = monitor_interval
        self.stale_restart_delay = stale_restart_delay
        self.crash_restart_delay = crash_restart_delay
        self.terminate_grace = terminate_grace
        self.spawner = spawner or default_spawner
        self.scheduler = scheduler or default_scheduler
        self.clock = clock
        self.watch_processes = watch_processes
        self.base_env = base_env

        self._lock = threading.Lock()
        self._agents: dict[int, AgentHandle] = {}
        self._pending_starts: set[int] = set()
        self._cancelled_starts: set[int] = set()
        self._credentials: dict[int, AgentCredentials] = {}
        self._restart_timers: dict[int, object] = {}
        self._shutting_down = False
        self._monitor_stop = threading.Event()
        self._monitor_thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, app) -> "AgentSupervisor":
        cfg = app.config
        return cls(
            command=cfg.get("AGENT_COMMAND"),
            config_path=cfg.get("AGENT_CONFIG_PATH") or os.path.join(app.instance_path, "pos-agent", "config.json"),
            backend_url=cfg.get("BACKEND_URL", "http://localhost:8080"),
            local_print_url=cfg.get("LOCAL_PRINT_URL"),
            heartbeat_timeout=float(cfg.get("AGENT_HEARTBEAT_TIMEOUT_SECONDS", 120.0)),
            monitor_interval=float(cfg.get("AGENT_MONITOR_INTERVAL_SECONDS", 30.0)),
            stale_restart_delay=float(cfg.get("AGENT_STALE_RESTART_DELAY_SECONDS", 5.0)),
            crash_restart_delay=float(cfg.get("AGENT_CRASH_RESTART_DELAY_SECONDS", 10.0)),
        )

    # -- lifecycle ---------------------------------------------------------

    def start(self, theater_id: int, credentials: AgentCredentials) -> str:
        """
        Ensure an agent runs for theater_id. Returns "started",
        "already_running", "pending" or "cancelled" (stop() ran while the
        process was being spawned; the new process is terminated).
        """
        with self._lock:
            if self._shutting_down:
                raise ServiceUnavailableError("Agent supervisor is shutting down")
            handle = self._agents.get(theater_id)
            if handle is not None and not handle.stopping and self._alive(handle):
                return "already_running"
            if theater_id in self._pending_starts:
                if theater_id in self._cancelled_starts:
                    self._cancelled_starts.discard(theater_id)
                    self._credentials[theater_id] = credentials
                return "pending"
            self._pending_starts.add(theater_id)
            self._credentials[theater_id] = credentials
            timer = self._restart_timers.pop(theater_id, None)
            all_credentials = list(self._credentials.values())

        if timer is not None:
            timer.cancel()

        try:
            self._write_config(all_credentials)
            process = self.spawner(self.command, self._child_env(credentials))
        except Exception:
            with self._lock:
                self._pending_starts.discard(theater_id)
                self._cancelled_starts.discard(theater_id)
            logger.exception("Failed to spawn agent for theater %s", theater_id)
            raise ServiceUnavailableError(f"Could not start agent for theater {theater_id}")

        now = self.clock()
        handle = AgentHandle(
            theater_id=theater_id,
            process=process,
            credentials=credentials,
            started_at=now,
            last_heartbeat=now,
        )
        with self._lock:
            self._pending_starts.discard(theater_id)
            cancelled = theater_id in self._cancelled_starts
            self._cancelled_starts.discard(theater_id)
            if not cancelled:
                self._agents[theater_id] = handle

        if cancelled:
            handle.stopping = True
            self._terminate(handle)
            logger.info("Agent for theater %s was stopped while starting; terminated pid=%s", theater_id, handle.pid)
            return "cancelled"

        logger.info("Started agent for theater %s (%s) pid=%s", theater_id, credentials.display_label, handle.pid)
        if self.watch_processes:
            self._watch(handle)
        return "started"

    def stop(self, theater_id: int) -> bool:
        """
        Terminate the theater's agent and forget its credentials. A start
        still spawning is cancelled: its process is terminated on arrival.
        """
        with self._lock:
            handle = self._agents.pop(theater_id, None)
            self._credentials.pop(theater_id, None)
            timer = self._restart_timers.pop(theater_id, None)
            cancelled_start = theater_id in self._pending_starts
            if cancelled_start:
                self._cancelled_starts.add(theater_id)
        if timer is not None:
            timer.cancel()
        if handle is None:
            if cancelled_start:
                logger.info("Cancelled pending start of agent for theater %s", theater_id)
            return cancelled_start
        handle.stopping = True
        self._terminate(handle)
        self._fail_pending(handle, "agent stopped")
        logger.info("Stopped agent for theater %s", theater_id)
        return True

    def restart(self, theater_id: int, credentials: AgentCredentials | None = None) -> str | None:
        """
        Stop then start with the supplied credentials, or the ones the last
        start used. Returns None when no credentials are known.
        """
        with self._lock:
            if credentials is None:
                credentials = self._credentials.get(theater_id)
            if credentials is None:
                handle = self._agents.get(theater_id)
                credentials = handle.credentials if handle is not None else None
        if credentials is None:
            return None
        self.stop(theater_id)
        logger.info("Restarting agent for theater %s", theater_id)
        return self.start(theater_id, credentials)

    def stop_all(self) -> None:
        with self._lock:
            theater_ids = list(self._agents)
        for theater_id in theater_ids:
            self.stop(theater_id)

    def shutdown(self) -> None:
        """Global shutdown: no more restarts, every agent terminated."""
        with self._lock:
            if self._shutting_down:
                return
            self._shutting_down = True
            timers = list(self._restart_timers.values())
            self._restart_timers.clear()
        for timer in timers:
            timer.cancel()
        self.stop_monitor()
        self.stop_all()
        logger.info("Agent supervisor shut down")

    # -- status ------------------------------------------------------------

    def is_healthy(self, theater_id: int) -> bool:
        with self._lock:
            handle = self._agents.get(theater_id)
        if handle is None or handle.stopping or not self._alive(handle):
            return False
        return (self.clock() - handle.last_heartbeat) < self.heartbeat_timeout

    def _row(self, handle: AgentHandle, now: float) -> dict:
        return {
            "theater_id": handle.theater_id,
            "label": handle.credentials.display_label,
            "pid": handle.pid,
            "started_at": to_utc_z(_ts(handle.started_at)),
            "uptime": round(now - handle.started_at, 1),
            "last_heartbeat": to_utc_z(_ts(handle.last_heartbeat)),
            "healthy": (now - handle.last_heartbeat) < self.heartbeat_timeout and self._alive(handle),
        }

    def status(self) -> list[dict]:
        now = self.clock()
        with self._lock:
            handles = list(self._agents.values())
        return [self._row(handle, now) for handle in sorted(handles, key=lambda h: h.theater_id)]

    def status_for(self, theater_id: int) -> dict | None:
        with self._lock:
            handle = self._agents.get(theater_id)
        if handle is None:
            return None
        return self._row(handle, self.clock())

    def pending_starts(self) -> list[int]:
        with self._lock:
            return sorted(self._pending_starts)

    # -- supervision -------------------------------------------------------

    def on_output(self, theater_id: int, line: str, *, stream: str = "stdout", handle: AgentHandle | None = None) -> None:
        """One line of agent output: refreshes the heartbeat, resolves ack/nack frames."""
        if handle is None:
            with self._lock:
                handle = self._agents.get(theater_id)
            if handle is None:
                return
        handle.last_heartbeat = self.clock()
        line = line.rstrip("\n")
        if not line:
            return

        if stream == "stdout" and line.startswith("{"):
            try:
                message = json.loads(line)
            except ValueError:
                message = None
            if isinstance(message, dict) and message.get("type") in ("ack", "nack"):
                self._resolve(handle, message)
                return
            if isinstance(message, dict) and message.get("type") == "heartbeat":
                return

        level = logging.WARNING if stream == "stderr" else logging.INFO
        output_logger.log(level, "[%s] %s", handle.credentials.display_label, line)

    def notify_exit(self, theater_id: int, returncode: int, *, handle: AgentHandle | None = None) -> None:
        """Called when an agent process exits (by the watcher thread or a test)."""
        with self._lock:
            if handle is None:
                handle = self._agents.get(theater_id)
                if handle is None:
                    return
            if self._agents.get(theater_id) is handle:
                del self._agents[theater_id]
            credentials = self._credentials.get(theater_id)
            shutting_down = self._shutting_down

        self._fail_pending(handle, f"agent exited with code {returncode}")
        if handle.stopping or shutting_down:
            return
        if returncode == 0:
            logger.info("Agent for theater %s exited cleanly", theater_id)
            return
        if credentials is None:
            logger.warning("Agent for theater %s exited with code %s; no credentials, not restarting", theater_id, returncode)
            return
        logger.warning(
            "Agent for theater %s exited with code %s; restarting in %ss",
            theater_id, returncode, self.crash_restart_delay,
        )
        self._schedule_restart(theater_id, self.crash_restart_delay)

    def check_health(self) -> list[int]:
        """Terminate agents with stale heartbeats and schedule their restart. Returns affected theaters."""
        now = self.clock()
        with self._lock:
            stale = [
                h for h in self._agents.values()
                if not h.stopping and now - h.last_heartbeat > self.heartbeat_timeout
            ]
            for handle in stale:
                handle.stopping = True
                del self._agents[handle.theater_id]

        restarted = []
        for handle in stale:
            silent_for = round(now - handle.last_heartbeat, 1)
            logger.warning("Agent for theater %s silent for %ss; terminating", handle.theater_id, silent_for)
            self._terminate(handle)
            self._fail_pending(handle, "agent heartbeat lost")
            with self._lock:
                has_credentials = handle.theater_id in self._credentials
            if has_credentials:
                self._schedule_restart(handle.theater_id, self.stale_restart_delay)
                restarted.append(handle.theater_id)
            else:
                logger.warning("No credentials for theater %s; not restarting", handle.theater_id)
        return restarted

    def start_monitor(self) -> None:
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return
        self._monitor_stop.clear()
        self._monitor_thread = threading.Thread(target=self._monitor_loop, name="agent-monitor", daemon=True)
        self._monitor_thread.start()

    def stop_monitor(self) -> None:
        self._monitor_stop.set()
        if self._monitor_thread is not None:
            self._monitor_thread.join(timeout=5)
            self._monitor_thread = None

    def _monitor_loop(self) -> None:
        while not self._monitor_stop.wait(self.monitor_interval):
            try:
                self.check_health()
            except Exception:
                logger.exception("Agent health check failed")

    def _schedule_restart(self, theater_id: int, delay: float) -> None:
        with self._lock:
            if self._shutting_down:
                return
            previous = self._restart_timers.pop(theater_id, None)
        if previous is not None:
            previous.cancel()
        timer = self.scheduler(delay, self._restart, theater_id)
        with self._lock:
            self._restart_timers[theater_id] = timer

    def _restart(self, theater_id: int) -> None:
        with self._lock:
            self._restart_timers.pop(theater_id, None)
            credentials = self._credentials.get(theater_id)
            shutting_down = self._shutting_down
        if shutting_down:
            return
        if credentials is None:
            logger.warning("Restart for theater %s skipped: credentials were removed", theater_id)
            return
        try:
            self.start(theater_id, credentials)
        except ServiceUnavailableError:
            logger.exception("Restart of agent for theater %s failed", theater_id)
            self._schedule_restart(theater_id, self.crash_restart_delay)

    # -- frames ------------------------------------------------------------

    def send(self, theater_id: int, frame: dict) -> Future:
        """Write one JSON frame to the agent's stdin; the future resolves with its PrintAck."""
        with self._lock:
            handle = self._agents.get(theater_id)
        if handle is None or handle.stopping or not self._alive(handle):
            raise AgentUnavailableError(f"No agent running for theater {theater_id}")

        job_id = frame.get("jobId")
        future: Future = Future()
        if job_id is not None:
            handle.pending[job_id] = future
        data = json.dumps(frame, separators=(",", ":")) + "\n"
        try:
            with handle.stdin_lock:
                handle.process.stdin.write(data)
                handle.process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            handle.pending.pop(job_id, None)
            raise AgentUnavailableError(f"Agent for theater {theater_id} is not accepting frames: {exc}")
        return future

    def abandon(self, theater_id: int, job_id) -> bool:
        """Drop the waiter for a frame whose ack timed out. A late ack is then ignored."""
        with self._lock:
            handle = self._agents.get(theater_id)
        if handle is None:
            return False
        future = handle.pending.pop(job_id, None)
        if future is None:
            return False
        future.cancel()
        return True

    def _resolve(self, handle: AgentHandle, message: dict) -> None:
        job_id = message.get("jobId")
        future = handle.pending.pop(job_id, None)
        if future is None:
            logger.debug("Unmatched %s for job %s from theater %s", message.get("type"), job_id, handle.theater_id)
            return
        if not future.done():
            future.set_result(PrintAck(job_id=job_id, ok=message["type"] == "ack", error=message.get("error")))

    def _fail_pending(self, handle: AgentHandle, reason: str) -> None:
        pending, handle.pending = handle.pending, {}
        for job_id, future in pending.items():
            if not future.done():
                future.set_result(PrintAck(job_id=job_id, ok=False, error=reason))

    # -- process plumbing --------------------------------------------------

    def _alive(self, handle: AgentHandle) -> bool:
        poll = getattr(handle.process, "poll", None)
        return poll is None or poll() is None

    def _terminate(self, handle: AgentHandle) -> None:
        process = handle.process
        try:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=self.terminate_grace)
                except subprocess.TimeoutExpired:
                    logger.warning("Agent for theater %s ignored SIGTERM; killing", handle.theater_id)
                    process.kill()
        except OSError:
            logger.exception("Failed to terminate agent for theater %s", handle.theater_id)

    def _child_env(self, credentials: AgentCredentials) -> dict:
        env = dict(self.base_env if self.base_env is not None else os.environ)
        env.update({
            "THEATER_ID": str(credentials.theater_id),
            "THEATER_USERNAME": credentials.username,
            "THEATER_PASSWORD": credentials.password,
            "AGENT_LABEL": credentials.display_label,
            "BACKEND_URL": self.backend_url,
            "PYTHONUNBUFFERED": "1",
        })
        if credentials.pin:
            env["THEATER_PIN"] = credentials.pin
        else:
            env.pop("THEATER_PIN", None)
        if self.local_print_url:
            env["LOCAL_PRINT_URL"] = self.local_print_url
        if self.config_path:
            env["AGENT_CONFIG_PATH"] = str(self.config_path)
        return env

    def _write_config(self, credentials: list[AgentCredentials]) -> None:
        if not self.config_path:
            return
        try:
            write_agent_config(
                self.config_path,
                backend_url=self.backend_url,
                agents=[
                    agent_entry(
                        theater_id=c.theater_id,
                        username=c.username,
                        password=c.password,
                        pin=c.pin,
                        label=c.display_label,
                    )
                    for c in credentials
                ],
            )
        except OSError:
            # Agents read credentials from the environment; the file is a convenience copy
            logger.exception("Failed to write agent config to %s", self.config_path)

    def _watch(self, handle: AgentHandle) -> None:
        process = handle.process
        for stream_name in ("stdout", "stderr"):
            stream = getattr(process, stream_name, None)
            if stream is None:
                continue
            threading.Thread(
                target=self._pump,
                args=(handle, stream, stream_name),
                name=f"agent-{handle.theater_id}-{stream_name}",
                daemon=True,
            ).start()
        threading.Thread(
            target=self._wait,
            args=(handle,),
            name=f"agent-{handle.theater_id}-wait",
            daemon=True,
        ).start()

    def _pump(self, handle: AgentHandle, stream, stream_name: str) -> None:
        try:
            for line in stream:
                self.on_output(handle.theater_id, line, stream=stream_name, handle=handle)
        except (OSError, ValueError):
            logger.debug("Output stream %s closed for theater %s", stream_name, handle.theater_id)

    def _wait(self, handle: AgentHandle) -> None:
        returncode = handle.process.wait()
        self.notify_exit(handle.theater_id, returncode, handle=handle)
