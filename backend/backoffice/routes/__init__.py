from flask import current_app, jsonify, request

from ..errors import BackofficeError
from ..extensions import db


def json_body() -> dict:
    """Request JSON object, or {} when the body is absent or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def error_response(e: Exception):
    """Roll back and render an exception raised inside a route as JSON."""
    db.session.rollback()
    if isinstance(e, BackofficeError):
        return jsonify({"error": str(e)}), e.status_code
    if isinstance(e, KeyError):
        return jsonify({"error": f"Missing required field: {e}"}), 400
    if isinstance(e, (TypeError, ValueError)):
        return jsonify({"error": f"Invalid request: {e}"}), 400
    current_app.logger.exception("Unexpected error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500
