# Overview: Typed adapter settings loaded from system_settings, cached per app and hot-reloadable.

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, fields
from decimal import Decimal, InvalidOperation
from typing import Any

from flask import current_app

from ..errors import ValidationError
from ..extensions import db
from ..models import SystemSetting
from ..models.catalog import GST_EXCLUDE, GST_TYPES


logger = logging.getLogger(__name__)

EXTENSION_KEY = "canteen.settings"
REDACTED = "********"


@dataclass(frozen=True)
class OrderSettings:
    service_charge_percent: Decimal = Decimal("0")
    default_gst_type: str = GST_EXCLUDE
    # Payment methods that mark a counter (POS) order paid at submit time
    pos_paid_methods: tuple = ("cash", "card", "upi")

    SECRET_FIELDS = ()

    @classmethod
    def from_dict(cls, data: dict) -> "OrderSettings":
        raw = data.get("service_charge_percent", "0")
        try:
            percent = Decimal(str(raw))
        except InvalidOperation:
            raise ValidationError("service_charge_percent must be a number", details={"service_charge_percent": "must be a number"})
        if percent < 0 or percent > 100:
            raise ValidationError("service_charge_percent must be between 0 and 100", details={"service_charge_percent": "out of range"})
        gst_type = str(data.get("default_gst_type", GST_EXCLUDE)).upper()
        if gst_type not in GST_TYPES:
            raise ValidationError("default_gst_type is invalid", details={"default_gst_type": f"must be one of {', '.join(GST_TYPES)}"})
        methods = data.get("pos_paid_methods", cls.pos_paid_methods)
        if not isinstance(methods, (list, tuple)):
            raise ValidationError("pos_paid_methods must be a list", details={"pos_paid_methods": "must be a list"})
        return cls(
            service_charge_percent=percent,
            default_gst_type=gst_type,
            pos_paid_methods=tuple(str(m).lower() for m in methods),
        )


@dataclass(frozen=True)
class MailSettings:
    host: str | None = None
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    from_address: str | None = None

    SECRET_FIELDS = ("password",)


@dataclass(frozen=True)
class SmsSettings:
    provider: str | None = None
    api_key: str | None = None
    sender_id: str | None = None
    enabled: bool = False

    SECRET_FIELDS = ("api_key",)


@dataclass(frozen=True)
class ObjectStoreSettings:
    bucket: str | None = None
    region: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    SECRET_FIELDS = ("secret_access_key",)


@dataclass(frozen=True)
class FirebaseSettings:
    project_id: str | None = None
    credentials_json: str | None = None
    enabled: bool = False

    SECRET_FIELDS = ("credentials_json",)


SECTIONS = {
    "orders": OrderSettings,
    "mail": MailSettings,
    "sms": SmsSettings,
    "object_store": ObjectStoreSettings,
    "firebase": FirebaseSettings,
}


def _build(section: str, data: dict | None):
    cls = SECTIONS[section]
    data = dict(data or {})
    if hasattr(cls, "from_dict"):
        return cls.from_dict(data)
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(
            f"Unknown {section} settings: {', '.join(unknown)}",
            details={k: "is not a known setting" for k in unknown},
        )
    return cls(**data)


def redact(settings_obj) -> dict:
    data = asdict(settings_obj)
    for name in getattr(settings_obj, "SECRET_FIELDS", ()):
        if data.get(name):
            data[name] = REDACTED
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
        elif isinstance(value, tuple):
            data[key] = list(value)
    return data


class SettingsStore:
    """Per-app cache of typed settings. Reads are lock-free snapshots."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: dict[str, Any] | None = None

    def load(self) -> dict[str, Any]:
        rows = {row.section: row.value for row in db.session.query(SystemSetting).all()}
        values = {}
        for section in SECTIONS:
            try:
                values[section] = _build(section, rows.get(section))
            except (ValidationError, TypeError):
                logger.exception("Invalid stored %s settings, using defaults", section)
                values[section] = SECTIONS[section]()
        with self._lock:
            self._values = values
        return values

    def get(self, section: str):
        values = self._values
        if values is None:
            values = self.load()
        return values[section]


def _store() -> SettingsStore:
    store = current_app.extensions.get(EXTENSION_KEY)
    if store is None:
        store = SettingsStore()
        current_app.extensions[EXTENSION_KEY] = store
    return store


def get_settings(section: str):
    if section not in SECTIONS:
        raise KeyError(section)
    return _store().get(section)


def get_order_settings() -> OrderSettings:
    return get_settings("orders")


def reload_settings() -> dict:
    values = _store().load()
    logger.info("Settings reloaded (%s)", ", ".join(sorted(values)))
    return {section: redact(value) for section, value in values.items()}


def all_settings_redacted() -> dict:
    return {section: redact(get_settings(section)) for section in SECTIONS}


def update_section(section: str, values: dict, *, user_id: int | None = None):
    """Validate and persist one section, then refresh the cache."""
    if section not in SECTIONS:
        raise ValidationError(f"Unknown settings section: {section}", details={"section": "unknown"})
    if not isinstance(values, dict):
        raise ValidationError("Settings must be an object")
    typed = _build(section, values)

    row = db.session.query(SystemSetting).filter_by(section=section).first()
    stored = {k: (str(v) if isinstance(v, Decimal) else list(v) if isinstance(v, tuple) else v) for k, v in asdict(typed).items()}
    if row is None:
        row = SystemSetting(section=section, value=stored, updated_by_user_id=user_id)
        db.session.add(row)
    else:
        row.value = stored
        row.updated_by_user_id = user_id
    db.session.commit()
    _store().load()
    return typed
