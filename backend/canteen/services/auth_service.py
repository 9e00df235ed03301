# Overview: Password/PIN hashing and credential checks for theater users.

"""
Theater authentication.

Users belong to exactly one theater (theater_id) unless they are
cross-theater operators (is_super_admin). Usernames are globally unique so
a POS agent can log in with just its theater's username and password.

Passwords are hashed with bcrypt; the cost factor comes from BCRYPT_ROUNDS.
A user may additionally carry a numeric PIN (kiosk/POS unlock) which is
checked when supplied.
"""

from __future__ import annotations

import re

import bcrypt
from flask import current_app

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Role, Theater, User
from ..time_utils import utcnow


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


def validate_password_strength(password: str) -> None:
    """
    Requirements:
    - Minimum 8 characters
    - At least one letter
    - At least one digit
    """
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def _rounds() -> int:
    return int(current_app.config.get("BCRYPT_ROUNDS", 12))


def hash_password(password: str) -> str:
    validate_password_strength(password)
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=_rounds()))
    return hashed.decode("utf-8")


def hash_pin(pin: str) -> str:
    if not isinstance(pin, str) or not re.fullmatch(r"\d{4,8}", pin):
        raise ValidationError("PIN must be 4 to 8 digits", details={"pin": "must be 4 to 8 digits"})
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=_rounds())).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """Timing-safe bcrypt check; malformed hashes never verify."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def username_taken(username: str) -> bool:
    """Usernames are unique across theaters, case-insensitively."""
    return User.query.filter(db.func.lower(User.username) == username.strip().lower()).first() is not None


def create_user(
    username: str,
    password: str,
    *,
    theater_id: int | None,
    role_id: int | None = None,
    email: str | None = None,
    pin: str | None = None,
    is_super_admin: bool = False,
) -> User:
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required", details={"username": "is required"})
    if theater_id is None and not is_super_admin:
        raise ValidationError("theater_id is required for theater users", details={"theater_id": "is required"})

    if theater_id is not None:
        theater = db.session.get(Theater, theater_id)
        if theater is None:
            raise NotFoundError("Theater", theater_id)

    if role_id is not None:
        role = db.session.get(Role, role_id)
        if role is None or role.theater_id != theater_id:
            raise ValidationError("role does not belong to this theater", details={"role_id": "invalid"})

    if username_taken(username):
        raise ConflictError("Username already exists")

    user = User(
        theater_id=theater_id,
        username=username,
        email=(email or None),
        password_hash=hash_password(password),
        pin_hash=hash_pin(pin) if pin else None,
        role_id=role_id,
        is_super_admin=is_super_admin,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str, *, theater_id: int | None = None, pin: str | None = None) -> User | None:
    """
    Returns the user when the credentials are valid and both the account and
    its theater are active; None otherwise. Updates last_login_at.
    """
    if not username or not password:
        return None
    query = User.query.filter(
        db.func.lower(User.username) == username.strip().lower(),
        User.is_active.is_(True),
    )
    if theater_id is not None:
        query = query.filter(User.theater_id == theater_id)
    user = query.first()
    if user is None:
        return None

    if user.theater_id is not None:
        theater = db.session.get(Theater, user.theater_id)
        if theater is None or not theater.is_active:
            return None

    if not verify_password(password, user.password_hash):
        return None
    if pin is not None and user.pin_hash and not verify_password(str(pin), user.pin_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
