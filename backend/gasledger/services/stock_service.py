# Overview: Service-layer operations for the stock ledger; encapsulates business logic and database work.

# backend/gasledger/services/stock_service.py
from __future__ import annotations

import logging

from ..extensions import db
from ..models import Product, EmployeeInventory
from ..models.transactions import CYLINDER_FULL, CYLINDER_EMPTY
from ..validation import InsufficientStockError, NotFoundError, ValidationError, ensure_quantity
from .concurrency import lock_for_update, run_with_retry
"""
Stock Ledger Invariants (authoritative)

Stock views:
- Product holds the admin-side view; EmployeeInventory holds one employee's view.
- Both are a derived cache of the transaction documents, never the source of truth.
- A view has three pools: 'stock' (current_stock), 'full' and 'empty'.
  Gas products only use 'stock'. Cylinder products use 'full'/'empty' and
  current_stock is re-synchronised to available_full + available_empty after
  every change.

Mutation kinds (admin view):
- purchase:     +q on the declared pool.
- sale:         -q on the declared pool; REJECTED if q exceeds the pool.
- deposit:      -q on 'empty' of the cylinder, and -q on the linked gas product.
- refill:       -q on the gas-equivalent product only; cylinder pools untouched.
- return:       +q on 'empty' (customer hands back the cylinder).
- transfer_out: -q on the declared pool (stock handed to an employee).
- transfer_in:  +q on the declared pool (stock accepted back from an employee).

Negative values are never written. Outside of sales a decrement that would
go negative is clamped at zero and logged: it means an upstream document was
double-counted, not that the mutation should fail.

Concurrency:
- Every mutation runs as one unit under lock_for_update + the optimistic
  version column, inside run_with_retry. A lost race re-reads and re-checks.
"""

logger = logging.getLogger(__name__)

KIND_PURCHASE = "purchase"
KIND_SALE = "sale"
KIND_DEPOSIT = "deposit"
KIND_REFILL = "refill"
KIND_RETURN = "return"
KIND_TRANSFER_OUT = "transfer_out"
KIND_TRANSFER_IN = "transfer_in"

MUTATION_KINDS = (
    KIND_PURCHASE,
    KIND_SALE,
    KIND_DEPOSIT,
    KIND_REFILL,
    KIND_RETURN,
    KIND_TRANSFER_OUT,
    KIND_TRANSFER_IN,
)

POOL_STOCK = "stock"
POOL_FIELDS = {
    POOL_STOCK: "current_stock",
    CYLINDER_FULL: "available_full",
    CYLINDER_EMPTY: "available_empty",
}

_INCREASING = (KIND_PURCHASE, KIND_RETURN, KIND_TRANSFER_IN)


def _load_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _resync(view, product: Product) -> None:
    if product.is_cylinder:
        view.current_stock = (view.available_full or 0) + (view.available_empty or 0)


def pool_for(product: Product, kind: str, sub_kind: str | None = None) -> str:
    """Which pool of the view a mutation of this kind touches."""
    if not product.is_cylinder:
        return POOL_STOCK
    if kind in (KIND_DEPOSIT, KIND_RETURN):
        return CYLINDER_EMPTY
    if sub_kind not in (CYLINDER_FULL, CYLINDER_EMPTY):
        raise ValidationError(
            f"Cylinder {kind} needs cylinder_status 'full' or 'empty'",
            details={"product_id": product.id},
        )
    return sub_kind


def available_quantity(product: Product, sub_kind: str | None = None) -> int:
    """Quantity a sale of this product/pool could draw right now."""
    pool = pool_for(product, KIND_SALE, sub_kind)
    return getattr(product, POOL_FIELDS[pool]) or 0


def shift_pool(view, product: Product, pool: str, delta: int, *, strict: bool = False, reason: str = "") -> int:
    """
    Apply delta to one pool of a stock view (Product or EmployeeInventory).

    strict=True raises InsufficientStockError instead of clamping.
    Returns the delta actually applied.
    """
    field = POOL_FIELDS[pool]
    current = getattr(view, field) or 0
    target = current + delta
    if target < 0:
        if strict:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}. Available: {current}, Requested: {-delta}",
                details={"product_id": product.id, "pool": pool, "available": current, "requested": -delta},
            )
        logger.warning(
            "[STOCK] Clamped %s.%s for product %s at 0 (had %d, delta %d) %s",
            type(view).__name__, field, product.id, current, delta, reason,
        )
        target = 0
    setattr(view, field, target)
    _resync(view, product)
    return target - current


def apply_mutation_locked(
    product: Product,
    kind: str,
    quantity: int,
    sub_kind: str | None = None,
    *,
    gas_product: Product | None = None,
) -> Product:
    """
    Core mutation on already-loaded (locked) rows, without retry or commit.

    Called by apply_stock_mutation() and by services that must change stock
    in the same unit of work as their document (sales).
    """
    if kind not in MUTATION_KINDS:
        raise ValidationError(f"Unknown stock mutation kind: {kind}")
    ensure_quantity(quantity)
    reason = f"({kind})"

    if kind == KIND_REFILL:
        target = gas_product or (product if not product.is_cylinder else None)
        if target is None:
            logger.warning("[STOCK] Refill of cylinder %s has no gas product linked; no stock moved", product.id)
            return product
        shift_pool(target, target, POOL_STOCK, -quantity, reason=reason)
        return product

    pool = pool_for(product, kind, sub_kind)
    delta = quantity if kind in _INCREASING else -quantity
    shift_pool(product, product, pool, delta, strict=(kind == KIND_SALE), reason=reason)

    if kind == KIND_DEPOSIT and gas_product is not None:
        # A deposited cylinder leaves filled, so the gas went with it.
        shift_pool(gas_product, gas_product, POOL_STOCK, -quantity, reason=reason)

    return product


def apply_stock_mutation(
    product_id: int,
    kind: str,
    quantity: int,
    sub_kind: str | None = None,
    *,
    gas_product_id: int | None = None,
) -> Product:
    """
    Apply one ledger mutation to the admin stock view and commit.

    Raises InsufficientStockError for sales that exceed the pool,
    NotFoundError for unknown products.
    """
    def _op():
        product = _load_product(product_id, lock=True)
        gas_product = _load_product(gas_product_id, lock=True) if gas_product_id else None
        apply_mutation_locked(product, kind, quantity, sub_kind, gas_product=gas_product)
        db.session.commit()
        return product

    return run_with_retry(_op)


# =============================================================================
# Employee stock view
# =============================================================================

def get_employee_inventory(employee_id: int, product_id: int, *, lock: bool = False) -> EmployeeInventory | None:
    """Oldest inventory row for the pair; duplicates are left to reconciliation."""
    query = (
        db.session.query(EmployeeInventory)
        .filter_by(employee_id=employee_id, product_id=product_id)
        .order_by(EmployeeInventory.created_at.asc(), EmployeeInventory.id.asc())
    )
    if lock:
        query = lock_for_update(query)
    return query.first()


def shift_employee_stock(
    employee_id: int,
    product: Product,
    pool: str,
    delta: int,
    *,
    assigned_delta: int = 0,
    least_price_cents: int | None = None,
    reason: str = "",
) -> EmployeeInventory:
    """
    Apply delta to an employee's view of product without committing.

    Creates the view row on first increment. Decrements clamp at zero.
    """
    row = get_employee_inventory(employee_id, product.id, lock=True)
    if row is None:
        row = EmployeeInventory(
            employee_id=employee_id,
            product_id=product.id,
            assigned_quantity=0,
            current_stock=0,
            available_full=0,
            available_empty=0,
            least_price_cents=least_price_cents or 0,
        )
        db.session.add(row)
    shift_pool(row, product, pool, delta, reason=reason)
    if assigned_delta:
        row.assigned_quantity = max(0, (row.assigned_quantity or 0) + assigned_delta)
    if least_price_cents is not None:
        row.least_price_cents = least_price_cents
    db.session.flush()
    return row


def convert_employee_cylinders(employee_id: int, cylinder: Product, quantity: int, *, to_empty: bool = True, reason: str = "") -> EmployeeInventory:
    """Move cylinders between the full and empty pools of an employee's view."""
    source, dest = (CYLINDER_FULL, CYLINDER_EMPTY) if to_empty else (CYLINDER_EMPTY, CYLINDER_FULL)
    row = shift_employee_stock(employee_id, cylinder, source, 0)
    moved = -shift_pool(row, cylinder, source, -quantity, reason=reason)
    shift_pool(row, cylinder, dest, moved, reason=reason)
    db.session.flush()
    return row
