# Overview: Tiered fixed-window request limiter and login-failure throttle.

"""
In-memory, per process: with N workers the effective limits are N times
the configured ones.

Tiers (max requests per window):
- unauthenticated: RATE_LIMIT_UNAUTHENTICATED per IP, plus the generic
  RATE_LIMIT_GENERIC_API per IP
- authenticated:   RATE_LIMIT_AUTHENTICATED per user
- admin:           RATE_LIMIT_ADMIN per user
- login:           RATE_LIMIT_LOGIN failed attempts per IP+username;
  successful logins are not counted

OPTIONS (CORS preflight) is never limited.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from flask import current_app

from ..errors import RateLimitedError


EXTENSION_KEY = "canteen.limiter"

TIER_UNAUTHENTICATED = "unauthenticated"
TIER_AUTHENTICATED = "authenticated"
TIER_ADMIN = "admin"
TIER_LOGIN = "login"
TIER_GENERIC = "generic"


@dataclass
class Window:
    started_at: float
    count: int = 0


class RateLimiter:
    def __init__(self, limits: dict[str, tuple[int, int]], *, clock=time.monotonic, enabled: bool = True):
        self.limits = dict(limits)
        self.clock = clock
        self.enabled = enabled
        self._windows: dict[tuple[str, str], Window] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "RateLimiter":
        return cls(
            {
                TIER_UNAUTHENTICATED: tuple(config["RATE_LIMIT_UNAUTHENTICATED"]),
                TIER_AUTHENTICATED: tuple(config["RATE_LIMIT_AUTHENTICATED"]),
                TIER_ADMIN: tuple(config["RATE_LIMIT_ADMIN"]),
                TIER_LOGIN: tuple(config["RATE_LIMIT_LOGIN"]),
                TIER_GENERIC: tuple(config["RATE_LIMIT_GENERIC_API"]),
            },
            enabled=bool(config.get("RATE_LIMIT_ENABLED", True)),
        )

    def _window(self, tier: str, key: str, now: float) -> Window:
        _, period = self.limits[tier]
        window = self._windows.get((tier, key))
        if window is None or now - window.started_at >= period:
            window = Window(started_at=now)
            self._windows[(tier, key)] = window
        return window

    def _retry_after(self, tier: str, window: Window, now: float) -> int:
        _, period = self.limits[tier]
        return max(1, math.ceil(window.started_at + period - now))

    def hit(self, tier: str, key: str) -> tuple[bool, int]:
        """Count one request. Returns (allowed, retry_after_seconds)."""
        if not self.enabled:
            return True, 0
        limit, _ = self.limits[tier]
        now = self.clock()
        with self._lock:
            window = self._window(tier, key, now)
            if window.count >= limit:
                return False, self._retry_after(tier, window, now)
            window.count += 1
            return True, 0

    def peek(self, tier: str, key: str) -> tuple[bool, int]:
        """Check without counting (login throttle: only failures count)."""
        if not self.enabled:
            return True, 0
        limit, _ = self.limits[tier]
        now = self.clock()
        with self._lock:
            window = self._window(tier, key, now)
            if window.count >= limit:
                return False, self._retry_after(tier, window, now)
            return True, 0

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def prune(self) -> int:
        """Drop expired windows."""
        now = self.clock()
        with self._lock:
            expired = [k for k, w in self._windows.items() if now - w.started_at >= self.limits[k[0]][1]]
            for k in expired:
                del self._windows[k]
        return len(expired)


def get_limiter() -> RateLimiter:
    limiter = current_app.extensions.get(EXTENSION_KEY)
    if limiter is None:
        limiter = RateLimiter.from_config(current_app.config)
        current_app.extensions[EXTENSION_KEY] = limiter
    return limiter


def check_request(method: str, ip: str, *, user_id: int | None = None, is_admin: bool = False) -> None:
    """Raise RateLimitedError when the caller's tier is exhausted."""
    if method == "OPTIONS":
        return
    limiter = get_limiter()
    checks = []
    if user_id is None:
        checks = [(TIER_UNAUTHENTICATED, ip), (TIER_GENERIC, ip)]
    elif is_admin:
        checks = [(TIER_ADMIN, f"user:{user_id}")]
    else:
        checks = [(TIER_AUTHENTICATED, f"user:{user_id}")]

    for tier, key in checks:
        allowed, retry_after = limiter.hit(tier, key)
        if not allowed:
            raise RateLimitedError("Too many requests, please try again later", retry_after=retry_after)


def _login_key(ip: str, username: str) -> str:
    return f"{ip}|{(username or '').strip().lower()}"


def check_login_allowed(ip: str, username: str) -> None:
    allowed, retry_after = get_limiter().peek(TIER_LOGIN, _login_key(ip, username))
    if not allowed:
        raise RateLimitedError("Too many failed login attempts, please try again later", retry_after=retry_after)


def record_login_failure(ip: str, username: str) -> None:
    get_limiter().hit(TIER_LOGIN, _login_key(ip, username))
