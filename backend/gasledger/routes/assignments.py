# Overview: Flask API routes for stock assignments to employees.

# backend/gasledger/routes/assignments.py
from flask import Blueprint, request, jsonify

from ..services import assignment_service
from ..validation import ConflictError, ValidationError, optional_int, require_positive_int
from .errors import error_response, internal_error


assignments_bp = Blueprint("stock_assignments", __name__, url_prefix="/api/stock-assignments")


@assignments_bp.get("")
def list_assignments_route():
    try:
        employee_id = optional_int(request.args, "employee_id")
        rows = assignment_service.list_assignments(employee_id=employee_id, status=request.args.get("status"))
        return jsonify({"assignments": [row.to_dict() for row in rows]}), 200
    except ValidationError as e:
        return error_response(e)


@assignments_bp.post("")
def create_assignment_route():
    """
    Assign admin stock to an employee (status: assigned).

    Request body:
    {
        "employee_id": 5,
        "product_id": 7,
        "quantity": 10,
        "cylinder_status": "full",     # cylinders only
        "least_price_cents": 4500      # optional, defaults to the product's
    }
    """
    try:
        data = request.get_json() or {}
        least_price = data.get("least_price_cents")
        if least_price is not None and (isinstance(least_price, bool) or not isinstance(least_price, int) or least_price < 0):
            raise ValidationError("least_price_cents must be a non-negative integer")
        assignment = assignment_service.create_assignment(
            require_positive_int(data, "employee_id"),
            require_positive_int(data, "product_id"),
            require_positive_int(data, "quantity"),
            cylinder_status=data.get("cylinder_status"),
            least_price_cents=least_price,
            assigned_by=data.get("assigned_by"),
            notes=data.get("notes"),
        )
        return jsonify({"assignment": assignment.to_dict()}), 201

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create stock assignment")


@assignments_bp.post("/<int:assignment_id>/receive")
def receive_assignment_route(assignment_id: int):
    try:
        assignment = assignment_service.receive_assignment(assignment_id)
        return jsonify({"assignment": assignment.to_dict()}), 200

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to receive stock assignment")


@assignments_bp.post("/<int:assignment_id>/reject")
def reject_assignment_route(assignment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        assignment = assignment_service.reject_assignment(assignment_id, notes=data.get("notes"))
        return jsonify({"assignment": assignment.to_dict()}), 200

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to reject stock assignment")
