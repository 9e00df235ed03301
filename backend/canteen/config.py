# backend/canteen/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # SQLite DB stored in backend/instance/canteen.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///canteen.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    CORS_ALLOWED_ORIGINS = tuple(
        o.strip() for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",") if o.strip()
    )

    # Connection pool (ignored for SQLite). Max connections = pool size + overflow.
    DB_POOL_MAX_SIZE = _env_int("DB_POOL_MAX_SIZE", 100)
    DB_POOL_RECYCLE_SECONDS = _env_int("DB_POOL_RECYCLE_SECONDS", 300)
    DB_POOL_TIMEOUT_SECONDS = _env_int("DB_POOL_TIMEOUT_SECONDS", 10)

    STORE_CONNECT_BUDGET_SECONDS = _env_float("STORE_CONNECT_BUDGET_SECONDS", 40.0)
    STORE_READY_WAIT_SECONDS = _env_float("STORE_READY_WAIT_SECONDS", 0.0)
    STORE_DEADLINE_READ_SECONDS = _env_float("STORE_DEADLINE_READ_SECONDS", 5.0)
    STORE_DEADLINE_WRITE_SECONDS = _env_float("STORE_DEADLINE_WRITE_SECONDS", 20.0)

    # Monthly stock ledger
    LEDGER_CAS_ATTEMPTS = _env_int("LEDGER_CAS_ATTEMPTS", 5)
    LEDGER_CLAMP_NEGATIVE = _env_bool("LEDGER_CLAMP_NEGATIVE", True)
    LEDGER_CAS_BACKOFF_SECONDS = _env_float("LEDGER_CAS_BACKOFF_SECONDS", 0.05)

    # Agent supervisor
    AGENT_SUPERVISOR_ENABLED = _env_bool("AGENT_SUPERVISOR_ENABLED", False)
    AGENT_CONFIG_PATH = os.environ.get("AGENT_CONFIG_PATH")  # default: <instance>/pos-agent/config.json
    AGENT_COMMAND = os.environ.get("AGENT_COMMAND")  # default: <python> -m canteen.agents.agent
    AGENT_HEARTBEAT_TIMEOUT_SECONDS = _env_float("AGENT_HEARTBEAT_TIMEOUT_SECONDS", 120.0)
    AGENT_MONITOR_INTERVAL_SECONDS = _env_float("AGENT_MONITOR_INTERVAL_SECONDS", 30.0)
    AGENT_STALE_RESTART_DELAY_SECONDS = _env_float("AGENT_STALE_RESTART_DELAY_SECONDS", 5.0)
    AGENT_CRASH_RESTART_DELAY_SECONDS = _env_float("AGENT_CRASH_RESTART_DELAY_SECONDS", 10.0)
    AGENT_AUTOSTART_ON_LOGIN = _env_bool("AGENT_AUTOSTART_ON_LOGIN", False)
    BACKEND_URL = os.environ.get("BACKEND_URL", "http://localhost:8080")
    LOCAL_PRINT_URL = os.environ.get("LOCAL_PRINT_URL", "http://127.0.0.1:17388")

    # Print dispatcher
    PRINT_ACK_TIMEOUT_SECONDS = _env_float("PRINT_ACK_TIMEOUT_SECONDS", 10.0)
    PRINT_MAX_RETRIES = _env_int("PRINT_MAX_RETRIES", 3)
    PRINT_BACKOFF_BASE_SECONDS = _env_float("PRINT_BACKOFF_BASE_SECONDS", 1.0)
    PRINT_QUEUE_MAX_DEPTH = _env_int("PRINT_QUEUE_MAX_DEPTH", 1000)
    PRINT_WORKER_ENABLED = _env_bool("PRINT_WORKER_ENABLED", False)
    PRINT_WORKER_INTERVAL_SECONDS = _env_float("PRINT_WORKER_INTERVAL_SECONDS", 0.5)

    # Background tasks: "thread" runs a supervised worker, "inline" runs at submit time
    TASK_RUNNER_MODE = os.environ.get("TASK_RUNNER_MODE", "thread")
    AUTO_EXPIRE_INTERVAL_SECONDS = _env_float("AUTO_EXPIRE_INTERVAL_SECONDS", 3600.0)

    # Rate limits: (max requests, window seconds). Limits are per process.
    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_UNAUTHENTICATED = (1000, 15 * 60)
    RATE_LIMIT_AUTHENTICATED = (5000, 15 * 60)
    RATE_LIMIT_ADMIN = (10000, 15 * 60)
    RATE_LIMIT_LOGIN = (50, 15 * 60)
    RATE_LIMIT_GENERIC_API = (100, 60)

    SESSION_ABSOLUTE_TIMEOUT_HOURS = _env_int("SESSION_ABSOLUTE_TIMEOUT_HOURS", 24)
    SESSION_IDLE_TIMEOUT_HOURS = _env_int("SESSION_IDLE_TIMEOUT_HOURS", 12)
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    TASK_RUNNER_MODE = "inline"
    AGENT_SUPERVISOR_ENABLED = False
    PRINT_WORKER_ENABLED = False
    RATE_LIMIT_ENABLED = False
    LEDGER_CAS_BACKOFF_SECONDS = 0.0
    BCRYPT_ROUNDS = 4
    LOG_LEVEL = "WARNING"
