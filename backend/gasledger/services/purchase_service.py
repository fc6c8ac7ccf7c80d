# backend/gasledger/services/purchase_service.py
"""
Supplier purchase orders.

LIFECYCLE: pending -> received. Stock moves exactly once, when the order is
received, in the same unit as the status change.
"""
from __future__ import annotations

import logging

from ..extensions import db
from ..models import PurchaseOrder
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError, ensure_quantity
from .aggregation_service import events_for_purchase, record_events
from .concurrency import lock_for_update, run_with_retry
from .stock_service import KIND_PURCHASE, _load_product, apply_mutation_locked, pool_for

logger = logging.getLogger(__name__)

PO_PENDING = "pending"
PO_RECEIVED = "received"


def create_purchase_order(
    product_id: int,
    quantity: int,
    *,
    cylinder_status: str | None = None,
    unit_cost_cents: int = 0,
    supplier: str | None = None,
) -> PurchaseOrder:
    ensure_quantity(quantity)
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int) or unit_cost_cents < 0:
        raise ValidationError("unit_cost_cents must be a non-negative integer")
    product = _load_product(product_id)
    pool_for(product, KIND_PURCHASE, cylinder_status)

    order = PurchaseOrder(
        product_id=product.id,
        quantity=quantity,
        cylinder_status=cylinder_status if product.is_cylinder else None,
        unit_cost_cents=unit_cost_cents,
        supplier=supplier,
        status=PO_PENDING,
    )
    db.session.add(order)
    db.session.commit()
    return order


def receive_purchase_order(order_id: int) -> PurchaseOrder:
    """Mark received and add the quantity to the declared pool."""
    def _op():
        order = lock_for_update(db.session.query(PurchaseOrder).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Purchase order {order_id} not found")
        if order.status != PO_PENDING:
            raise ConflictError(f"Purchase order {order_id} is already {order.status}")
        product = _load_product(order.product_id, lock=True)
        apply_mutation_locked(product, KIND_PURCHASE, order.quantity, order.cylinder_status)
        order.status = PO_RECEIVED
        order.received_at = utcnow()
        db.session.commit()
        return order, product

    order, product = run_with_retry(_op)
    logger.info("[STOCK] Purchase order %s received: +%d product %s", order.id, order.quantity, order.product_id)
    record_events(events_for_purchase(order, product))
    return order
