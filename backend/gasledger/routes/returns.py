# Overview: Flask API routes for employee send-backs and their admin processing.

# backend/gasledger/routes/returns.py
from flask import Blueprint, request, jsonify

from ..services import return_service
from ..validation import ConflictError, ValidationError, optional_int, require_positive_int
from .errors import error_response, internal_error


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.get("")
def list_returns_route():
    try:
        rows = return_service.list_returns(
            status=request.args.get("status"),
            employee_id=optional_int(request.args, "employee_id"),
        )
        return jsonify({"returns": [row.to_dict() for row in rows]}), 200
    except ValidationError as e:
        return error_response(e)


@returns_bp.post("/send-back")
def send_back_route():
    """
    Employee sends stock back to admin (status: pending).

    Request body:
    {
        "employee_id": 5,
        "product_id": 2,
        "quantity": 3,
        "stock_type": "gas",            # or "empty"
        "cylinder_product_id": 7        # gas only, optional
    }
    """
    try:
        data = request.get_json() or {}
        ret = return_service.send_back(
            require_positive_int(data, "employee_id"),
            require_positive_int(data, "product_id"),
            require_positive_int(data, "quantity"),
            stock_type=data.get("stock_type"),
            cylinder_product_id=optional_int(data, "cylinder_product_id"),
            notes=data.get("notes"),
        )
        return jsonify({"return": ret.to_dict()}), 201

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to send stock back")


@returns_bp.post("/<int:return_id>/accept")
def accept_return_route(return_id: int):
    try:
        ret = return_service.accept_return(return_id)
        return jsonify({"return": ret.to_dict()}), 200

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to accept return")


@returns_bp.post("/<int:return_id>/reject")
def reject_return_route(return_id: int):
    try:
        data = request.get_json(silent=True) or {}
        ret = return_service.reject_return(return_id, notes=data.get("notes"))
        return jsonify({"return": ret.to_dict()}), 200

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to reject return")
