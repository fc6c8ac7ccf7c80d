# Overview: Flask API routes for admin and employee sales; parses input and returns JSON responses.

# backend/gasledger/routes/sales.py
"""Sales API routes (admin-side and employee-side documents)."""

from flask import Blueprint, request, jsonify

from ..services import sales_service
from ..validation import ConflictError, ValidationError, optional_int, optional_str, require_positive_int
from .errors import error_response, internal_error


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")
employee_sales_bp = Blueprint("employee_sales", __name__, url_prefix="/api/employee-sales")


def _payment_fields(data: dict) -> dict:
    received = data.get("received_cents")
    if received is not None and (isinstance(received, bool) or not isinstance(received, int) or received < 0):
        raise ValidationError("received_cents must be a non-negative integer")
    return {
        "customer_id": optional_int(data, "customer_id"),
        "payment_method": optional_str(data, "payment_method") or "cash",
        "received_cents": received,
        "notes": optional_str(data, "notes"),
    }


@sales_bp.post("")
def create_sale_route():
    """
    Create an admin-side sale.

    Request body:
    {
        "customer_id": 3,
        "items": [{"product_id": 1, "quantity": 2, "unit_price_cents": 1500, "cylinder_status": "full"}],
        "payment_method": "cash",
        "received_cents": 3000
    }
    """
    try:
        data = request.get_json() or {}
        sale = sales_service.create_sale(data.get("items"), **_payment_fields(data))
        return jsonify({"sale": sale.to_dict()}), 201

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create sale")


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        return jsonify({"sale": sales_service.get_sale(sale_id).to_dict()}), 200
    except ValidationError as e:
        return error_response(e)


@employee_sales_bp.post("")
def create_employee_sale_route():
    """
    Create an employee sale drawn from the employee's assignment pool.

    Line prices come from the oldest eligible assignment; unit_price_cents
    is ignored here.
    """
    try:
        data = request.get_json() or {}
        employee_id = require_positive_int(data, "employee_id")
        sale = sales_service.create_employee_sale(employee_id, data.get("items"), **_payment_fields(data))
        return jsonify({"sale": sale.to_dict()}), 201

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create employee sale")


@employee_sales_bp.get("/<int:sale_id>")
def get_employee_sale_route(sale_id: int):
    try:
        return jsonify({"sale": sales_service.get_employee_sale(sale_id).to_dict()}), 200
    except ValidationError as e:
        return error_response(e)
