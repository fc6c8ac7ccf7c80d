# backend/gasledger/services/assignment_service.py
"""
Employee stock assignments (the assignment pool).

LIFECYCLE:
1. assigned: created by admin, validated against admin stock, nothing moves
2. received: employee accepts; admin stock -q, employee inventory +q
3. consumed: remaining_quantity drawn to zero by employee sales
   (rejected: employee declined before receiving; nothing moves)

FIFO CONSUMPTION:
- Eligible rows: status 'received' and remaining_quantity > 0, oldest
  created_at first (id breaks ties).
- Cylinder batches pool by cylinder_status: an empty-cylinder sale draws
  and prices only from empty batches, a full sale only from full ones.
- Each decrement is a conditional UPDATE guarded by
  remaining_quantity >= amount, so two sellers can never both draw the same
  units. A lost guard re-reads the pool and walks it again.
- Price always comes from the oldest eligible row; no such row is a hard
  error. Running out of quantity mid-walk is governed by
  ASSIGNMENT_OVERSELL_POLICY: 'warn' logs and records the shortfall,
  'reject' refuses the sale before anything is decremented.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app, has_app_context
from sqlalchemy import func, update

from ..extensions import db
from ..models import Employee, StockAssignment
from ..models.stock import ASSIGNMENT_ASSIGNED, ASSIGNMENT_CONSUMED, ASSIGNMENT_RECEIVED, ASSIGNMENT_REJECTED
from ..models.transactions import CYLINDER_EMPTY, CYLINDER_FULL
from ..time_utils import utcnow
from ..validation import (
    AssignmentPoolExhaustedError,
    ConflictError,
    InsufficientStockError,
    MissingAssignmentError,
    NotFoundError,
    ValidationError,
    ensure_quantity,
)
from .concurrency import lock_for_update, run_with_retry
from .stock_service import (
    KIND_TRANSFER_OUT,
    POOL_FIELDS,
    _load_product,
    apply_mutation_locked,
    pool_for,
    shift_employee_stock,
)

logger = logging.getLogger(__name__)

OVERSELL_WARN = "warn"
OVERSELL_REJECT = "reject"
OVERSELL_POLICIES = (OVERSELL_WARN, OVERSELL_REJECT)

# Passes over the pool before giving up on rows that keep losing races
MAX_CONSUME_PASSES = 5


@dataclass
class ConsumptionResult:
    least_price_cents: int
    requested: int
    breakdown: list[tuple[int, int]] = field(default_factory=list)

    @property
    def consumed(self) -> int:
        return sum(amount for _, amount in self.breakdown)

    @property
    def shortfall(self) -> int:
        return self.requested - self.consumed

    @property
    def oversold(self) -> bool:
        return self.shortfall > 0

    def to_dict(self) -> dict:
        return {
            "least_price_cents": self.least_price_cents,
            "requested": self.requested,
            "consumed": self.consumed,
            "shortfall": self.shortfall,
            "breakdown": [{"assignment_id": a_id, "amount": amount} for a_id, amount in self.breakdown],
        }


def _oversell_policy(policy: str | None) -> str:
    if policy is None and has_app_context():
        policy = current_app.config.get("ASSIGNMENT_OVERSELL_POLICY", OVERSELL_WARN)
    policy = policy or OVERSELL_WARN
    if policy not in OVERSELL_POLICIES:
        raise ValidationError(f"Unknown oversell policy: {policy}")
    return policy


def _require_employee(employee_id: int) -> Employee:
    employee = db.session.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError(f"Employee {employee_id} not found")
    return employee


def _load_assignment(assignment_id: int) -> StockAssignment:
    assignment = lock_for_update(db.session.query(StockAssignment).filter_by(id=assignment_id)).first()
    if assignment is None:
        raise NotFoundError(f"Stock assignment {assignment_id} not found")
    return assignment


# =============================================================================
# Lifecycle
# =============================================================================

def create_assignment(
    employee_id: int,
    product_id: int,
    quantity: int,
    *,
    cylinder_status: str | None = None,
    least_price_cents: int | None = None,
    assigned_by: str | None = None,
    notes: str | None = None,
) -> StockAssignment:
    """
    Create a pending assignment (status: assigned).

    Admin stock is checked here but only moves when the employee receives.
    """
    ensure_quantity(quantity)

    def _op():
        _require_employee(employee_id)
        product = _load_product(product_id)
        pool = pool_for(product, KIND_TRANSFER_OUT, cylinder_status)
        available = getattr(product, POOL_FIELDS[pool]) or 0
        if quantity > available:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}. Available: {available}, Requested: {quantity}",
                details={"product_id": product.id, "pool": pool, "available": available, "requested": quantity},
            )

        assignment = StockAssignment(
            employee_id=employee_id,
            product_id=product.id,
            assigned_by=assigned_by,
            quantity=quantity,
            remaining_quantity=quantity,
            least_price_cents=product.least_price_cents if least_price_cents is None else least_price_cents,
            category=product.category,
            cylinder_status=cylinder_status if product.is_cylinder else None,
            status=ASSIGNMENT_ASSIGNED,
            notes=notes,
        )
        db.session.add(assignment)
        db.session.commit()
        return assignment

    return run_with_retry(_op)


def receive_assignment(assignment_id: int) -> StockAssignment:
    """Employee accepts the stock: admin view -q, employee view +q."""
    def _op():
        assignment = _load_assignment(assignment_id)
        if assignment.status != ASSIGNMENT_ASSIGNED:
            raise ConflictError(f"Assignment {assignment_id} is already {assignment.status}")

        product = _load_product(assignment.product_id, lock=True)
        apply_mutation_locked(product, KIND_TRANSFER_OUT, assignment.quantity, assignment.cylinder_status)
        pool = pool_for(product, KIND_TRANSFER_OUT, assignment.cylinder_status)
        shift_employee_stock(
            assignment.employee_id,
            product,
            pool,
            assignment.quantity,
            assigned_delta=assignment.quantity,
            least_price_cents=assignment.least_price_cents,
            reason=f"(assignment {assignment.id} received)",
        )

        assignment.status = ASSIGNMENT_RECEIVED
        assignment.received_at = utcnow()
        db.session.commit()
        return assignment

    assignment = run_with_retry(_op)
    logger.info(
        "[ASSIGNMENT] Employee %s received %d x product %s (assignment %s)",
        assignment.employee_id, assignment.quantity, assignment.product_id, assignment.id,
    )
    return assignment


def reject_assignment(assignment_id: int, *, notes: str | None = None) -> StockAssignment:
    def _op():
        assignment = _load_assignment(assignment_id)
        if assignment.status != ASSIGNMENT_ASSIGNED:
            raise ConflictError(f"Assignment {assignment_id} is already {assignment.status}")
        assignment.status = ASSIGNMENT_REJECTED
        assignment.rejected_at = utcnow()
        if notes:
            assignment.notes = notes
        db.session.commit()
        return assignment

    return run_with_retry(_op)


def list_assignments(*, employee_id: int | None = None, status: str | None = None) -> list[StockAssignment]:
    query = db.session.query(StockAssignment)
    if employee_id is not None:
        query = query.filter(StockAssignment.employee_id == employee_id)
    if status:
        query = query.filter(StockAssignment.status == status)
    return query.order_by(StockAssignment.created_at.asc(), StockAssignment.id.asc()).all()


# =============================================================================
# FIFO pool
# =============================================================================

def _pool_filters(employee_id: int, product_id: int, cylinder_status: str | None) -> list:
    filters = [
        StockAssignment.employee_id == employee_id,
        StockAssignment.product_id == product_id,
        StockAssignment.status == ASSIGNMENT_RECEIVED,
    ]
    # Full and empty cylinder batches are separate pools.
    if cylinder_status is not None:
        filters.append(StockAssignment.cylinder_status == cylinder_status)
    return filters


def _eligible(employee_id: int, product_id: int, cylinder_status: str | None = None):
    return (
        db.session.query(StockAssignment)
        .filter(*_pool_filters(employee_id, product_id, cylinder_status), StockAssignment.remaining_quantity > 0)
        .order_by(StockAssignment.created_at.asc(), StockAssignment.id.asc())
        .populate_existing()
    )


def oldest_assignment(employee_id: int, product_id: int, cylinder_status: str | None = None) -> StockAssignment:
    """Oldest eligible assignment; its least price prices the sale."""
    assignment = _eligible(employee_id, product_id, cylinder_status).first()
    if assignment is None:
        raise MissingAssignmentError(
            f"No received stock assignment with remaining quantity for product {product_id}",
            details={"employee_id": employee_id, "product_id": product_id, "cylinder_status": cylinder_status},
        )
    return assignment


def remaining_in_pool(employee_id: int, product_id: int, cylinder_status: str | None = None) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(StockAssignment.remaining_quantity), 0))
        .filter(*_pool_filters(employee_id, product_id, cylinder_status))
        .scalar()
    )
    return int(total or 0)


def _decrement(assignment_id: int, amount: int) -> bool:
    """Conditional decrement; False when a concurrent consumer got there first."""
    stmt = (
        update(StockAssignment)
        .where(StockAssignment.id == assignment_id, StockAssignment.remaining_quantity >= amount)
        .values(
            remaining_quantity=StockAssignment.remaining_quantity - amount,
            version_id=StockAssignment.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def _close_exhausted(assignment_ids: list[int]) -> None:
    if not assignment_ids:
        return
    db.session.execute(
        update(StockAssignment)
        .where(
            StockAssignment.id.in_(assignment_ids),
            StockAssignment.remaining_quantity == 0,
            StockAssignment.status == ASSIGNMENT_RECEIVED,
        )
        .values(status=ASSIGNMENT_CONSUMED, version_id=StockAssignment.version_id + 1)
        .execution_options(synchronize_session=False)
    )


def consume_assignments_locked(
    employee_id: int,
    product_id: int,
    quantity: int,
    *,
    cylinder_status: str | None = None,
    policy: str | None = None,
) -> ConsumptionResult:
    """
    Draw quantity from the employee's pool FIFO without committing.

    Runs inside the caller's unit of work (employee sale creation).
    """
    ensure_quantity(quantity)
    policy = _oversell_policy(policy)
    least_price = oldest_assignment(employee_id, product_id, cylinder_status).least_price_cents

    if policy == OVERSELL_REJECT:
        remaining = remaining_in_pool(employee_id, product_id, cylinder_status)
        if remaining < quantity:
            raise AssignmentPoolExhaustedError(
                f"Assignment pool for product {product_id} holds {remaining}, requested {quantity}",
                details={"employee_id": employee_id, "product_id": product_id, "remaining": remaining, "requested": quantity},
            )

    result = ConsumptionResult(least_price_cents=least_price, requested=quantity)
    needed = quantity
    for _ in range(MAX_CONSUME_PASSES):
        rows = _eligible(employee_id, product_id, cylinder_status).all()
        lost_race = False
        for row in rows:
            if needed == 0:
                break
            amount = min(row.remaining_quantity, needed)
            if _decrement(row.id, amount):
                result.breakdown.append((row.id, amount))
                needed -= amount
            else:
                lost_race = True
        if needed == 0 or not lost_race:
            break

    _close_exhausted([a_id for a_id, _ in result.breakdown])

    if result.oversold:
        if policy == OVERSELL_REJECT:
            # Pool shrank under us after the up-front check.
            raise AssignmentPoolExhaustedError(
                f"Assignment pool for product {product_id} ran out during consumption",
                details={"employee_id": employee_id, "product_id": product_id, "shortfall": result.shortfall},
            )
        logger.warning(
            "[ASSIGNMENT] Oversell: employee %s product %s requested %d, pool covered %d (shortfall %d)",
            employee_id, product_id, quantity, result.consumed, result.shortfall,
        )
    return result


def consume_assignment(
    employee_id: int,
    product_id: int,
    quantity: int,
    *,
    cylinder_status: str | None = None,
    policy: str | None = None,
) -> ConsumptionResult:
    """Standalone FIFO consumption in its own committed unit of work."""
    def _op():
        result = consume_assignments_locked(
            employee_id, product_id, quantity, cylinder_status=cylinder_status, policy=policy,
        )
        db.session.commit()
        return result

    return run_with_retry(_op)


def convert_cylinder_assignments(employee_id: int, cylinder, quantity: int, *, reason: str = "") -> int:
    """
    Move quantity from the employee's full-cylinder batches to an empty one.

    Gas sold with a linked cylinder leaves the customer's cylinder empty in
    the employee's hands. Full batches are drawn FIFO; the amount drawn is
    added to the oldest received empty batch, or to a new received one.
    Returns the amount moved. Runs inside the caller's unit of work.
    """
    ensure_quantity(quantity)
    moved = 0
    price = None
    for row in _eligible(employee_id, cylinder.id, CYLINDER_FULL).all():
        if moved == quantity:
            break
        amount = min(row.remaining_quantity, quantity - moved)
        if _decrement(row.id, amount):
            moved += amount
            if price is None:
                price = row.least_price_cents
            _close_exhausted([row.id])

    if moved < quantity:
        logger.warning(
            "[ASSIGNMENT] Full cylinder pool short: employee %s cylinder %s needed %d, moved %d %s",
            employee_id, cylinder.id, quantity, moved, reason,
        )
    if moved == 0:
        return 0

    target = (
        db.session.query(StockAssignment)
        .filter(*_pool_filters(employee_id, cylinder.id, CYLINDER_EMPTY))
        .order_by(StockAssignment.created_at.asc(), StockAssignment.id.asc())
        .first()
    )
    if target is not None:
        db.session.execute(
            update(StockAssignment)
            .where(StockAssignment.id == target.id)
            .values(
                quantity=StockAssignment.quantity + moved,
                remaining_quantity=StockAssignment.remaining_quantity + moved,
                version_id=StockAssignment.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
    else:
        now = utcnow()
        db.session.add(StockAssignment(
            employee_id=employee_id,
            product_id=cylinder.id,
            quantity=moved,
            remaining_quantity=moved,
            least_price_cents=cylinder.least_price_cents if price is None else price,
            category=cylinder.category,
            cylinder_status=CYLINDER_EMPTY,
            status=ASSIGNMENT_RECEIVED,
            received_at=now,
            notes=f"Converted from full {reason}".strip(),
        ))
    db.session.flush()
    return moved
