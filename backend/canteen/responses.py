from __future__ import annotations

from flask import jsonify


def ok(data=None, *, message: str | None = None, status: int = 200):
    """Success envelope: {success: true, data, message?}."""
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return jsonify(body), status


def created(data=None, *, message: str | None = None):
    return ok(data, message=message, status=201)


def error_response(exc):
    """Render an ApiError as the error envelope with its HTTP status."""
    response = jsonify(exc.to_dict())
    response.status_code = exc.status_code
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        response.headers["Retry-After"] = str(int(retry_after))
    return response
