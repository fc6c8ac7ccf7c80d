# backend/gasledger/routes/aggregates.py
from flask import Blueprint, request, jsonify

from ..services import aggregation_service
from ..time_utils import business_date, parse_iso_date
from ..validation import ValidationError, optional_int
from .errors import error_response


aggregates_bp = Blueprint("daily_aggregates", __name__, url_prefix="/api/daily-aggregates")


@aggregates_bp.get("")
def list_daily_aggregates_route():
    """
    Rollup rows for one day.

    Query params: date (YYYY-MM-DD, default today), employee_id (omit for
    admin-side rows), all=1 for every scope.
    """
    try:
        try:
            day = parse_iso_date(request.args.get("date")) or business_date()
        except ValueError:
            raise ValidationError("date must be YYYY-MM-DD")
        rows = aggregation_service.list_daily_aggregates(
            day,
            optional_int(request.args, "employee_id"),
            all_scopes=request.args.get("all") in ("1", "true"),
        )
        return jsonify({"date": day.isoformat(), "aggregates": [row.to_dict() for row in rows]}), 200

    except ValidationError as e:
        return error_response(e)
