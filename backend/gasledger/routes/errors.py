# backend/gasledger/routes/errors.py
"""Shared mapping from service exceptions to JSON error responses."""

from flask import current_app, jsonify

from ..validation import ConflictError, NotFoundError, ValidationError


def error_response(exc: Exception):
    if isinstance(exc, NotFoundError):
        return jsonify({"error": str(exc), "details": exc.details}), 404
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc), "details": exc.details}), 400
    if isinstance(exc, ConflictError):
        return jsonify({"error": str(exc)}), 409
    raise exc


def internal_error(message: str, *args):
    """Log the active exception with its traceback and answer a generic 500."""
    current_app.logger.exception(message, *args)
    return jsonify({"error": "Internal server error"}), 500
