# backend/gasledger/routes/collections.py
from flask import Blueprint, jsonify

from ..services.invoice_service import next_rc_number
from .errors import internal_error


collections_bp = Blueprint("collections", __name__, url_prefix="/api/collections")


@collections_bp.post("/rc-no")
def issue_rc_number_route():
    """Issue the next collection receipt number (RC-NO namespace)."""
    try:
        return jsonify({"rc_no": next_rc_number()}), 201
    except Exception:
        return internal_error("Failed to issue RC-NO")
