# Overview: Flask API routes for supplier purchase orders.

# backend/gasledger/routes/purchase_orders.py
from flask import Blueprint, request, jsonify

from ..services import purchase_service
from ..validation import ConflictError, ValidationError, require_positive_int
from .errors import error_response, internal_error


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")


@purchase_orders_bp.post("")
def create_purchase_order_route():
    try:
        data = request.get_json() or {}
        order = purchase_service.create_purchase_order(
            require_positive_int(data, "product_id"),
            require_positive_int(data, "quantity"),
            cylinder_status=data.get("cylinder_status"),
            unit_cost_cents=data.get("unit_cost_cents", 0),
            supplier=data.get("supplier"),
        )
        return jsonify({"purchase_order": order.to_dict()}), 201

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create purchase order")


@purchase_orders_bp.post("/<int:order_id>/receive")
def receive_purchase_order_route(order_id: int):
    try:
        order = purchase_service.receive_purchase_order(order_id)
        return jsonify({"purchase_order": order.to_dict()}), 200

    except (ValidationError, ConflictError) as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to receive purchase order")
