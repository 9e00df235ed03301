from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .time_utils import parse_iso_date, parse_iso_datetime


# Upper bound for any price field (99,99,999.99)
MAX_PRICE = Decimal("9999999.99")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def field_error(field: str, problem: str) -> ValidationError:
    return ValidationError(f"{field} {problem}", details={field: problem})


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(field: str, value: Any) -> int:
    """Strict integer: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise field_error(field, "must be an integer")
        if "e" in stripped.lower():
            raise field_error(field, "must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise field_error(field, "must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise field_error(field, "must be an integer")
    if isinstance(value, float):
        raise field_error(field, "must be an integer, not a decimal")
    raise field_error(field, "must be an integer")


def coerce_decimal(field: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise field_error(field, "must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise field_error(field, "must be a number")
    else:
        raise field_error(field, "must be a number")
    if not result.is_finite():
        raise field_error(field, "must be a finite number")
    return result


def coerce_date(field: str, value: Any) -> date:
    try:
        return parse_iso_date(value)
    except (TypeError, ValueError):
        raise field_error(field, "must be a date (YYYY-MM-DD)")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Numeric):
        return coerce_decimal(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise field_error(col.key, "must be a boolean")

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise field_error(col.key, "must be an ISO-8601 datetime")
            if dt is None:
                raise field_error(col.key, "must be an ISO-8601 datetime")
            return dt
        raise field_error(col.key, "must be a datetime")

    if isinstance(coltype, Date):
        return coerce_date(col.key, value)

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={f: "is required" for f in missing},
            )

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields or k not in cols:
            raise field_error(k, "is not allowed")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise field_error(k, "cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise field_error(k, "cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise field_error(k, f"exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_price(patch: dict, field: str) -> None:
    value = patch.get(field)
    if value is None:
        return
    if value < 0:
        raise field_error(field, "must be >= 0")
    if value > MAX_PRICE:
        raise field_error(field, f"cannot exceed {MAX_PRICE}")


def _check_percent(patch: dict, field: str) -> None:
    value = patch.get(field)
    if value is None:
        return
    if value < 0 or value > 100:
        raise field_error(field, "must be between 0 and 100")


def enforce_rules_product(patch: dict, *, current=None) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.

    current is the existing Product on update, so sale <= base is checked
    against the merged state.
    """
    from .models.catalog import GST_TYPES, STOCK_UNITS

    _check_price(patch, "base_price")
    _check_price(patch, "sale_price")
    _check_percent(patch, "tax_rate")
    _check_percent(patch, "discount_percentage")

    if "gst_type" in patch and patch["gst_type"] not in GST_TYPES:
        raise field_error("gst_type", f"must be one of {', '.join(GST_TYPES)}")
    if "stock_unit" in patch and patch["stock_unit"] not in STOCK_UNITS:
        raise field_error("stock_unit", f"must be one of {', '.join(STOCK_UNITS)}")

    base = patch.get("base_price", current.base_price if current is not None else None)
    sale = patch.get("sale_price", current.sale_price if current is not None else None)
    if base is not None and sale is not None and Decimal(sale) > Decimal(base):
        raise field_error("sale_price", "must not exceed base_price")

    min_stock = patch.get("min_stock", current.min_stock if current is not None else None)
    max_stock = patch.get("max_stock", current.max_stock if current is not None else None)
    if min_stock is not None and min_stock < 0:
        raise field_error("min_stock", "must be >= 0")
    if min_stock is not None and max_stock is not None and max_stock < min_stock:
        raise field_error("max_stock", "must be >= min_stock")
