# Overview: Bearer session tokens: issue, validate (absolute + idle timeout), revoke.

"""
Sessions capture theater_id at creation time; that tenant context is
immutable for the session lifetime.

- 32 random bytes per token, only the SHA-256 is stored
- absolute timeout SESSION_ABSOLUTE_TIMEOUT_HOURS, idle timeout
  SESSION_IDLE_TIMEOUT_HOURS
- revoked on logout, idle expiry, or deactivation of the user/theater
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, Theater, User
from ..time_utils import utcnow


@dataclass
class SessionContext:
    user: User
    session: SessionToken
    theater_id: int | None

    @property
    def is_admin(self) -> bool:
        return bool(self.user.is_super_admin)


def _absolute_timeout() -> timedelta:
    return timedelta(hours=int(current_app.config.get("SESSION_ABSOLUTE_TIMEOUT_HOURS", 24)))


def _idle_timeout() -> timedelta:
    return timedelta(hours=int(current_app.config.get("SESSION_IDLE_TIMEOUT_HOURS", 12)))


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(user: User, *, user_agent: str | None = None, ip_address: str | None = None) -> tuple[SessionToken, str]:
    """Returns (session_record, plaintext_token). Only the hash is stored."""
    plaintext = generate_token()
    now = utcnow()
    session = SessionToken(
        user_id=user.id,
        theater_id=user.theater_id,
        token_hash=hash_token(plaintext),
        created_at=now,
        last_used_at=now,
        expires_at=now + _absolute_timeout(),
        user_agent=user_agent[:255] if user_agent else None,
        ip_address=ip_address,
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()
    return session, plaintext


def _revoke(session: SessionToken, now) -> None:
    session.is_revoked = True
    session.revoked_at = now
    db.session.commit()


def validate_session(token: str) -> SessionContext | None:
    if not token:
        return None
    now = utcnow()
    session = SessionToken.query.filter_by(token_hash=hash_token(token), is_revoked=False).first()
    if session is None:
        return None
    if session.expires_at < now:
        return None
    if now - session.last_used_at > _idle_timeout():
        _revoke(session, now)
        return None

    user = session.user
    if user is None or not user.is_active:
        _revoke(session, now)
        return None
    if session.theater_id is not None:
        theater = db.session.get(Theater, session.theater_id)
        if theater is None or not theater.is_active:
            _revoke(session, now)
            return None

    session.last_used_at = now
    db.session.commit()
    return SessionContext(user=user, session=session, theater_id=session.theater_id)


def revoke_session(token: str) -> bool:
    session = SessionToken.query.filter_by(token_hash=hash_token(token), is_revoked=False).first()
    if session is None:
        return False
    _revoke(session, utcnow())
    return True


def revoke_all_user_sessions(user_id: int) -> int:
    now = utcnow()
    count = (
        SessionToken.query.filter_by(user_id=user_id, is_revoked=False)
        .update({"is_revoked": True, "revoked_at": now}, synchronize_session=False)
    )
    db.session.commit()
    return count


def cleanup_expired_sessions(days: int = 30) -> int:
    """Delete expired or revoked sessions older than `days`."""
    cutoff = utcnow() - timedelta(days=days)
    deleted = SessionToken.query.filter(
        db.or_(SessionToken.expires_at < utcnow(), SessionToken.is_revoked.is_(True)),
        SessionToken.created_at < cutoff,
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
