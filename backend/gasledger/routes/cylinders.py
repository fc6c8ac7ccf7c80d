# Overview: Flask API routes for cylinder deposits, refills and returns.

# backend/gasledger/routes/cylinders.py
from flask import Blueprint, request, jsonify

from ..services import cylinder_service
from ..models.transactions import CYLINDER_TX_TYPES
from ..validation import ConflictError, ValidationError, optional_bool, optional_int, optional_str, require_positive_int
from .errors import error_response, internal_error


cylinders_bp = Blueprint("cylinders", __name__, url_prefix="/api/cylinders")


@cylinders_bp.post("/<string:tx_type>")
def create_cylinder_transaction_route(tx_type: str):
    """
    Record a cylinder deposit, refill or return.

    Request body:
    {
        "customer_id": 3,
        "product_id": 7,            # the cylinder
        "gas_product_id": 2,        # optional
        "quantity": 4,
        "amount_cents": 20000,
        "employee_id": 5,           # optional, employee-side document
        "linked_deposit_id": 11,    # returns only
        "legacy_invoice": false
    }
    """
    if tx_type not in CYLINDER_TX_TYPES:
        return jsonify({"error": f"Unknown cylinder transaction type: {tx_type}"}), 404
    try:
        data = request.get_json() or {}
        amount = data.get("amount_cents", 0)
        tx = cylinder_service.create_cylinder_transaction(
            tx_type,
            customer_id=require_positive_int(data, "customer_id"),
            product_id=require_positive_int(data, "product_id"),
            quantity=require_positive_int(data, "quantity"),
            amount_cents=amount,
            gas_product_id=optional_int(data, "gas_product_id"),
            employee_id=optional_int(data, "employee_id"),
            linked_deposit_id=optional_int(data, "linked_deposit_id"),
            status=optional_str(data, "status"),
            notes=optional_str(data, "notes"),
            legacy_invoice=optional_bool(data, "legacy_invoice"),
        )
        return jsonify({"transaction": tx.to_dict()}), 201

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to record cylinder %s", tx_type)
