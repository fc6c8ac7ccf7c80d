"""
Employee -> admin stock send-back.

LIFECYCLE:
1. Send back (pending) - employee view decremented immediately
2. Accept (pending -> accepted) - admin view incremented, received-back rollup
   or Reject (pending -> rejected) - quantity restored to the employee view

The pending -> accepted/rejected step is a conditional UPDATE on status, so
only one admin action can win for a given return; the loser gets a
ConflictError and moves no stock.
"""

from __future__ import annotations

import logging

from sqlalchemy import update

from ..extensions import db
from ..models import ReturnTransaction
from ..models.stock import RETURN_ACCEPTED, RETURN_PENDING, RETURN_REJECTED, STOCK_TYPE_EMPTY, STOCK_TYPE_GAS
from ..models.catalog import CATEGORY_GAS
from ..models.transactions import CYLINDER_EMPTY, CYLINDER_FULL
from ..time_utils import utcnow
from ..validation import ConflictError, InsufficientStockError, NotFoundError, ValidationError, ensure_quantity
from .aggregation_service import events_for_accepted_return, events_for_send_back, record_events, reverse_events
from .assignment_service import _require_employee
from .concurrency import run_with_retry
from .stock_service import (
    KIND_TRANSFER_IN,
    POOL_FIELDS,
    POOL_STOCK,
    _load_product,
    apply_mutation_locked,
    get_employee_inventory,
    shift_employee_stock,
)

logger = logging.getLogger(__name__)

STOCK_TYPES = (STOCK_TYPE_GAS, STOCK_TYPE_EMPTY)


def _pools(ret: ReturnTransaction, product, cylinder):
    """(view, product, pool) triples a return moves."""
    if ret.stock_type == STOCK_TYPE_EMPTY:
        return [(product, CYLINDER_EMPTY)]
    pools = [(product, POOL_STOCK)]
    if cylinder is not None:
        # Gas travels back inside its full cylinders.
        pools.append((cylinder, CYLINDER_FULL))
    return pools


def _load_pair(ret: ReturnTransaction, *, lock: bool):
    product = _load_product(ret.product_id, lock=lock)
    cylinder = _load_product(ret.cylinder_product_id, lock=lock) if ret.cylinder_product_id else None
    return product, cylinder


def send_back(
    employee_id: int,
    product_id: int,
    quantity: int,
    *,
    stock_type: str,
    cylinder_product_id: int | None = None,
    notes: str | None = None,
) -> ReturnTransaction:
    """
    Employee returns stock to admin; awaits admin acceptance.

    Raises InsufficientStockError when the employee view holds less than quantity.
    """
    ensure_quantity(quantity)
    if stock_type not in STOCK_TYPES:
        raise ValidationError(f"stock_type must be one of: {', '.join(STOCK_TYPES)}")

    def _op():
        _require_employee(employee_id)
        ret = ReturnTransaction(
            employee_id=employee_id,
            product_id=product_id,
            cylinder_product_id=cylinder_product_id if stock_type == STOCK_TYPE_GAS else None,
            stock_type=stock_type,
            quantity=quantity,
            status=RETURN_PENDING,
            notes=notes,
        )
        product, cylinder = _load_pair(ret, lock=True)
        if stock_type == STOCK_TYPE_GAS and product.category != CATEGORY_GAS:
            raise ValidationError(f"Product {product_id} is not a gas product")
        if stock_type == STOCK_TYPE_EMPTY and not product.is_cylinder:
            raise ValidationError(f"Product {product_id} is not a cylinder")
        if cylinder is not None and not cylinder.is_cylinder:
            raise ValidationError(f"Product {cylinder_product_id} is not a cylinder")

        for view_product, pool in _pools(ret, product, cylinder):
            row = get_employee_inventory(employee_id, view_product.id, lock=True)
            held = getattr(row, POOL_FIELDS[pool]) if row is not None else 0
            if held < quantity:
                raise InsufficientStockError(
                    f"Employee holds {held} of {view_product.name} ({pool}), cannot send back {quantity}",
                    details={"product_id": view_product.id, "pool": pool, "available": held, "requested": quantity},
                )
            shift_employee_stock(employee_id, view_product, pool, -quantity, reason="(send back)")

        db.session.add(ret)
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    logger.info("[STOCK] Employee %s sent back %d x product %s (%s)", employee_id, quantity, product_id, stock_type)
    record_events(events_for_send_back(ret))
    return ret


def _claim(return_id: int, new_status: str) -> ReturnTransaction:
    """Conditional pending -> new_status transition inside the current unit."""
    result = db.session.execute(
        update(ReturnTransaction)
        .where(ReturnTransaction.id == return_id, ReturnTransaction.status == RETURN_PENDING)
        .values(status=new_status, processed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    ret = db.session.query(ReturnTransaction).filter_by(id=return_id).populate_existing().first()
    if ret is None:
        raise NotFoundError(f"Return {return_id} not found")
    if result.rowcount != 1:
        raise ConflictError(f"Return {return_id} is already {ret.status}")
    return ret


def accept_return(return_id: int) -> ReturnTransaction:
    def _op():
        ret = _claim(return_id, RETURN_ACCEPTED)
        product, cylinder = _load_pair(ret, lock=True)
        for view_product, pool in _pools(ret, product, cylinder):
            sub_kind = None if pool == POOL_STOCK else pool
            apply_mutation_locked(view_product, KIND_TRANSFER_IN, ret.quantity, sub_kind)
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    logger.info("[STOCK] Return %s accepted: +%d product %s to admin stock", ret.id, ret.quantity, ret.product_id)
    record_events(events_for_accepted_return(ret))
    return ret


def reject_return(return_id: int, *, notes: str | None = None) -> ReturnTransaction:
    def _op():
        ret = _claim(return_id, RETURN_REJECTED)
        product, cylinder = _load_pair(ret, lock=True)
        for view_product, pool in _pools(ret, product, cylinder):
            shift_employee_stock(ret.employee_id, view_product, pool, ret.quantity, reason=f"(return {ret.id} rejected)")
        if notes:
            ret.notes = notes
        db.session.commit()
        return ret

    ret = run_with_retry(_op)
    # Undo the transfer rolled up at send-back time.
    reverse_events(events_for_send_back(ret))
    return ret


def list_returns(*, status: str | None = None, employee_id: int | None = None) -> list[ReturnTransaction]:
    query = db.session.query(ReturnTransaction)
    if status:
        query = query.filter(ReturnTransaction.status == status)
    if employee_id is not None:
        query = query.filter(ReturnTransaction.employee_id == employee_id)
    return query.order_by(ReturnTransaction.created_at.asc(), ReturnTransaction.id.asc()).all()
