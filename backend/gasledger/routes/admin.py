# Overview: Flask API routes for administrative counter and ledger maintenance.

# backend/gasledger/routes/admin.py
"""
Admin maintenance endpoints.

Not part of the normal transaction flow: counter initialisation, rollup
rebuilds and duplicate cleanup are invoked by an operator.
"""

from flask import Blueprint, request, jsonify

from ..services import aggregation_service, reconciliation_service
from ..services.invoice_service import get_registry
from ..time_utils import business_date, parse_iso_date
from ..validation import ValidationError, optional_int, require_positive_int
from .errors import error_response, internal_error


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.post("/initialize-counter")
def initialize_counter_route():
    """
    Seed or raise the unified invoice counter from history / configured start.

    Optional body: {"start_number": 20000} persists a new configured start first.
    """
    try:
        data = request.get_json(silent=True) or {}
        registry = get_registry()
        if data.get("start_number") is not None:
            next_invoice = registry.set_start_number(require_positive_int(data, "start_number"))
        else:
            next_invoice = registry.initialize()
        return jsonify({"next_invoice_sequence": next_invoice, "status": registry.status()}), 200

    except ValidationError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to initialize invoice counter")


@admin_bp.get("/counter-status")
def counter_status_route():
    try:
        return jsonify(get_registry().status()), 200
    except Exception:
        return internal_error("Failed to read invoice counter status")


@admin_bp.post("/rebuild-aggregates")
def rebuild_aggregates_route():
    """
    Rebuild rollups for one (employee, date) slice.

    Request body: {"employee_id": 5, "date": "2024-05-01"}; omit employee_id
    to rebuild the admin-side slice, omit date for today.
    """
    try:
        data = request.get_json(silent=True) or {}
        try:
            day = parse_iso_date(data.get("date")) or business_date()
        except ValueError:
            raise ValidationError("date must be YYYY-MM-DD")
        result = aggregation_service.rebuild_daily_aggregates(optional_int(data, "employee_id"), day)
        return jsonify({"date": day.isoformat(), **result}), 200

    except ValidationError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to rebuild daily aggregates")


@admin_bp.post("/cleanup-duplicates")
def cleanup_duplicates_route():
    """Merge duplicate assignment / inventory rows. Body: {"scope": "assignments"|"inventory"|"all"}."""
    try:
        data = request.get_json(silent=True) or {}
        report = reconciliation_service.merge_duplicates(data.get("scope", reconciliation_service.SCOPE_ALL))
        return jsonify(report.to_dict()), 200

    except ValidationError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to clean up duplicates")
