# backend/gasledger/services/cylinder_service.py
"""
Cylinder deposit / refill / return documents.

The document is the source of truth and commits first. Stock and rollups
follow as soft side effects: if either fails the document stays and the
failure is logged for reconciliation.

Admin-side documents (no employee) move the admin stock view; employee
documents move that employee's inventory view.
"""
from __future__ import annotations

import logging

from sqlalchemy import func

from ..extensions import db
from ..models import Customer, CylinderTransaction
from ..models.catalog import CATEGORY_GAS
from ..models.transactions import (
    CYLINDER_EMPTY,
    CYLINDER_TX_DEPOSIT,
    CYLINDER_TX_REFILL,
    CYLINDER_TX_RETURN,
    CYLINDER_TX_TYPES,
)
from ..validation import NotFoundError, ValidationError, ensure_quantity
from .aggregation_service import events_for_cylinder_transaction, record_events
from .assignment_service import _require_employee
from .concurrency import run_soft, run_with_retry
from .invoice_service import next_invoice_number, next_legacy_cylinder_invoice
from .stock_service import POOL_STOCK, _load_product, apply_stock_mutation, shift_employee_stock

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_CLEARED = "cleared"


def _employee_mutation(tx: CylinderTransaction) -> None:
    def _op():
        cylinder = _load_product(tx.product_id, lock=True)
        gas = _load_product(tx.gas_product_id, lock=True) if tx.gas_product_id else None
        reason = f"({tx.type} {tx.invoice_number})"
        if tx.type == CYLINDER_TX_DEPOSIT:
            shift_employee_stock(tx.employee_id, cylinder, CYLINDER_EMPTY, -tx.quantity, reason=reason)
            if gas is not None:
                shift_employee_stock(tx.employee_id, gas, POOL_STOCK, -tx.quantity, reason=reason)
        elif tx.type == CYLINDER_TX_RETURN:
            shift_employee_stock(tx.employee_id, cylinder, CYLINDER_EMPTY, tx.quantity, reason=reason)
        elif gas is not None:
            shift_employee_stock(tx.employee_id, gas, POOL_STOCK, -tx.quantity, reason=reason)
        else:
            logger.warning("[STOCK] Refill %s has no gas product linked; no stock moved", tx.invoice_number)
        db.session.commit()

    run_with_retry(_op)


def _apply_stock(tx: CylinderTransaction) -> None:
    if tx.employee_id:
        _employee_mutation(tx)
    else:
        apply_stock_mutation(tx.product_id, tx.type, tx.quantity, gas_product_id=tx.gas_product_id)


def refresh_deposit_status(deposit_id: int) -> CylinderTransaction | None:
    """Cleared once linked returns cover the deposited quantity, pending otherwise."""
    deposit = db.session.query(CylinderTransaction).filter_by(id=deposit_id, type=CYLINDER_TX_DEPOSIT).first()
    if deposit is None:
        return None
    returned = (
        db.session.query(func.coalesce(func.sum(CylinderTransaction.quantity), 0))
        .filter(
            CylinderTransaction.linked_deposit_id == deposit_id,
            CylinderTransaction.type == CYLINDER_TX_RETURN,
        )
        .scalar()
    )
    deposit.status = STATUS_CLEARED if returned >= deposit.quantity else STATUS_PENDING
    db.session.commit()
    return deposit


def create_cylinder_transaction(
    tx_type: str,
    *,
    customer_id: int,
    product_id: int,
    quantity: int,
    amount_cents: int = 0,
    gas_product_id: int | None = None,
    employee_id: int | None = None,
    linked_deposit_id: int | None = None,
    status: str | None = None,
    notes: str | None = None,
    legacy_invoice: bool = False,
) -> CylinderTransaction:
    """
    Record a deposit, refill or return.

    legacy_invoice=True numbers the document in the INV-<year>-CM-<seq>
    namespace instead of the unified invoice space.
    """
    if tx_type not in CYLINDER_TX_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(CYLINDER_TX_TYPES)}")
    if status not in (None, STATUS_PENDING, STATUS_CLEARED):
        raise ValidationError(f"status must be one of: {STATUS_PENDING}, {STATUS_CLEARED}")
    ensure_quantity(quantity)
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents < 0:
        raise ValidationError("amount_cents must be a non-negative integer")
    if db.session.get(Customer, customer_id) is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    cylinder = _load_product(product_id)
    if not cylinder.is_cylinder:
        raise ValidationError(f"Product {product_id} is not a cylinder")
    if gas_product_id is not None and _load_product(gas_product_id).category != CATEGORY_GAS:
        raise ValidationError(f"Product {gas_product_id} is not a gas product")
    if employee_id is not None:
        _require_employee(employee_id)
    if linked_deposit_id is not None:
        if tx_type != CYLINDER_TX_RETURN:
            raise ValidationError("Only returns can be linked to a deposit")
        linked = db.session.get(CylinderTransaction, linked_deposit_id)
        if linked is None or linked.type != CYLINDER_TX_DEPOSIT:
            raise NotFoundError(f"Deposit {linked_deposit_id} not found")

    invoice_number = next_legacy_cylinder_invoice() if legacy_invoice else next_invoice_number()

    def _op():
        tx = CylinderTransaction(
            invoice_number=invoice_number,
            type=tx_type,
            customer_id=customer_id,
            product_id=product_id,
            gas_product_id=gas_product_id,
            employee_id=employee_id,
            quantity=quantity,
            amount_cents=amount_cents,
            status=status or STATUS_PENDING,
            linked_deposit_id=linked_deposit_id,
            notes=notes,
        )
        db.session.add(tx)
        db.session.commit()
        return tx

    tx = run_with_retry(_op)
    logger.info("[INVOICE] Cylinder %s %s recorded (%d x product %s)", tx_type, tx.invoice_number, quantity, product_id)

    run_soft(f"[STOCK] {tx_type} {tx.invoice_number} stock update", _apply_stock, tx)
    record_events(events_for_cylinder_transaction(tx))
    if linked_deposit_id is not None:
        run_soft(f"deposit {linked_deposit_id} status refresh", refresh_deposit_status, linked_deposit_id)
    return tx


def create_deposit(**kwargs) -> CylinderTransaction:
    return create_cylinder_transaction(CYLINDER_TX_DEPOSIT, **kwargs)


def create_refill(**kwargs) -> CylinderTransaction:
    return create_cylinder_transaction(CYLINDER_TX_REFILL, **kwargs)


def create_return(**kwargs) -> CylinderTransaction:
    return create_cylinder_transaction(CYLINDER_TX_RETURN, **kwargs)
