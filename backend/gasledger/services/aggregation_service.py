# backend/gasledger/services/aggregation_service.py
"""
Daily aggregation rollups.

Rollup rows are a projection of the transaction documents:
    documents -> events_for_*() -> RollupEvent -> upsert_daily_aggregate()

Live transaction flows emit events right after their document commits;
rebuild_daily_aggregates() deletes a (scope, date) slice and replays the
same event builders over the stored documents. Both paths share the builders,
so a rebuilt slice equals what the live flow would have produced.

ATOMICITY: an event is applied as one UPDATE ... SET col = col + :delta on
the composite key (date, product_id, employee_id). A missing row is inserted;
an insert that loses the race to the unique key falls back to the UPDATE.
Application code never reads a counter to write it back.

Re-applying the same event adds again: keys are idempotent, values are not.

A reversal (the undo of a rejected send-back) subtracts its delta and takes
its event_count back out; a row left with no events is deleted, since a
rebuild of the same documents would not produce it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    DailyAggregate,
    Product,
    Sale,
    EmployeeSale,
    CylinderTransaction,
    PurchaseOrder,
    ReturnTransaction,
)
from ..models.aggregates import ADMIN_SCOPE
from ..models.catalog import CATEGORY_CYLINDER
from ..models.stock import RETURN_ACCEPTED, RETURN_REJECTED, STOCK_TYPE_GAS
from ..models.transactions import CYLINDER_FULL
from ..time_utils import business_date, day_bounds
from ..validation import ValidationError
from .concurrency import run_soft, run_with_retry

logger = logging.getLogger(__name__)

CATEGORY_GAS_SALE = "gas_sale"
CATEGORY_FULL_CYLINDER_SALE = "full_cylinder_sale"
CATEGORY_EMPTY_CYLINDER_SALE = "empty_cylinder_sale"
CATEGORY_DEPOSIT = "deposit"
CATEGORY_RETURN = "return"
CATEGORY_REFILL = "refill"
CATEGORY_TRANSFER_GAS = "transfer_gas"
CATEGORY_TRANSFER_EMPTY = "transfer_empty"
CATEGORY_RECEIVED_BACK = "received_back"
CATEGORY_PURCHASE_GAS = "purchase_gas"
CATEGORY_PURCHASE_FULL = "purchase_full"
CATEGORY_PURCHASE_EMPTY = "purchase_empty"

# category -> (quantity column, amount column or None)
CATEGORY_FIELDS = {
    CATEGORY_GAS_SALE: ("gas_sales_qty", "gas_sales_cents"),
    CATEGORY_FULL_CYLINDER_SALE: ("full_cylinder_sales_qty", "full_cylinder_sales_cents"),
    CATEGORY_EMPTY_CYLINDER_SALE: ("empty_cylinder_sales_qty", "empty_cylinder_sales_cents"),
    CATEGORY_DEPOSIT: ("deposit_qty", "deposit_cents"),
    CATEGORY_RETURN: ("return_qty", "return_cents"),
    CATEGORY_REFILL: ("refill_qty", "refill_cents"),
    CATEGORY_TRANSFER_GAS: ("transfer_gas_qty", None),
    CATEGORY_TRANSFER_EMPTY: ("transfer_empty_qty", None),
    CATEGORY_RECEIVED_BACK: ("received_back_qty", None),
    CATEGORY_PURCHASE_GAS: ("purchase_gas_qty", None),
    CATEGORY_PURCHASE_FULL: ("purchase_full_qty", None),
    CATEGORY_PURCHASE_EMPTY: ("purchase_empty_qty", None),
}


@dataclass(frozen=True)
class AggregateDelta:
    quantity: int = 0
    amount_cents: int = 0


@dataclass(frozen=True)
class RollupEvent:
    day: date
    product_id: int
    employee_id: int | None
    category: str
    delta: AggregateDelta
    # Undoes an earlier event: takes its event_count back out.
    reversal: bool = False


def _scope(employee_id: int | None) -> int:
    return employee_id or ADMIN_SCOPE


def _increments(category: str, delta: AggregateDelta, *, reversal: bool = False) -> dict:
    if category not in CATEGORY_FIELDS:
        raise ValidationError(f"Unknown aggregation category: {category}")
    qty_field, amount_field = CATEGORY_FIELDS[category]
    values = {
        qty_field: getattr(DailyAggregate, qty_field) + delta.quantity,
        "event_count": DailyAggregate.event_count + (-1 if reversal else 1),
    }
    if amount_field:
        values[amount_field] = getattr(DailyAggregate, amount_field) + delta.amount_cents
    return values


def _drop_if_empty(day: date, product_id: int, scope: int) -> None:
    """Remove a row whose every event has been reversed; a rebuild would not produce it."""
    db.session.execute(
        delete(DailyAggregate)
        .where(
            DailyAggregate.date == day,
            DailyAggregate.product_id == product_id,
            DailyAggregate.employee_id == scope,
            DailyAggregate.event_count <= 0,
        )
        .execution_options(synchronize_session=False)
    )


def _apply(event: RollupEvent, *, product: Product | None = None) -> None:
    """Atomic increment of one rollup row; flushes but does not commit."""
    product = product or db.session.get(Product, event.product_id)
    descriptive = {}
    if product is not None:
        descriptive = {"product_name": product.name, "product_category": product.category}

    scope = _scope(event.employee_id)
    stmt = (
        update(DailyAggregate)
        .where(
            DailyAggregate.date == event.day,
            DailyAggregate.product_id == event.product_id,
            DailyAggregate.employee_id == scope,
        )
        .values(**descriptive, **_increments(event.category, event.delta, reversal=event.reversal))
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount:
        if event.reversal:
            _drop_if_empty(event.day, event.product_id, scope)
        return
    if event.reversal:
        logger.warning(
            "[AGGREGATE] Nothing to reverse for %s on %s product %s scope %s",
            event.category, event.day, event.product_id, scope,
        )
        return

    qty_field, amount_field = CATEGORY_FIELDS[event.category]
    row = DailyAggregate(
        date=event.day,
        product_id=event.product_id,
        employee_id=scope,
        event_count=1,
        **descriptive,
    )
    setattr(row, qty_field, event.delta.quantity)
    if amount_field:
        setattr(row, amount_field, event.delta.amount_cents)
    db.session.add(row)
    db.session.flush()


def upsert_daily_aggregate(
    day: date,
    product_id: int,
    employee_id: int | None,
    category: str,
    delta: AggregateDelta,
    *,
    reversal: bool = False,
) -> DailyAggregate | None:
    """
    Apply one event in its own unit of work and return the updated row.

    A reversal that empties its row deletes it and returns None.
    """
    event = RollupEvent(day, product_id, employee_id, category, delta, reversal)

    def _op():
        try:
            _apply(event)
        except IntegrityError:
            # Lost the insert race; the row exists now, so increment it.
            db.session.rollback()
            _apply(event)
        db.session.commit()
        return get_daily_aggregate(day, product_id, employee_id)

    return run_with_retry(_op)


def get_daily_aggregate(day: date, product_id: int, employee_id: int | None = None) -> DailyAggregate | None:
    return (
        db.session.query(DailyAggregate)
        .filter_by(date=day, product_id=product_id, employee_id=_scope(employee_id))
        .populate_existing()
        .first()
    )


def list_daily_aggregates(day: date, employee_id: int | None = None, *, all_scopes: bool = False) -> list[DailyAggregate]:
    query = db.session.query(DailyAggregate).filter(DailyAggregate.date == day)
    if not all_scopes:
        query = query.filter(DailyAggregate.employee_id == _scope(employee_id))
    return query.order_by(DailyAggregate.employee_id, DailyAggregate.product_id).all()


def record_events(events: list[RollupEvent]) -> int:
    """
    Soft side effect of a committed transaction: apply events, never raise.

    Returns how many events were applied.
    """
    def _one(event: RollupEvent) -> bool:
        upsert_daily_aggregate(
            event.day, event.product_id, event.employee_id, event.category, event.delta, reversal=event.reversal,
        )
        return True

    applied = 0
    for event in events:
        if event.delta.quantity == 0 and event.delta.amount_cents == 0:
            continue
        if run_soft(f"[AGGREGATE] {event.category} rollup", _one, event):
            applied += 1
    return applied


def reverse_events(events: list[RollupEvent]) -> int:
    """Take previously recorded events back out of the live rollups."""
    return record_events([
        RollupEvent(
            e.day,
            e.product_id,
            e.employee_id,
            e.category,
            AggregateDelta(-e.delta.quantity, -e.delta.amount_cents),
            reversal=True,
        )
        for e in events
    ])


# =============================================================================
# Event builders (documents -> rollup events)
# =============================================================================

def sale_line_category(category: str, cylinder_status: str | None) -> str:
    if category == CATEGORY_CYLINDER:
        return CATEGORY_FULL_CYLINDER_SALE if cylinder_status == CYLINDER_FULL else CATEGORY_EMPTY_CYLINDER_SALE
    return CATEGORY_GAS_SALE


def events_for_sale(sale: Sale) -> list[RollupEvent]:
    day = business_date(sale.created_at)
    return [
        RollupEvent(
            day,
            item.product_id,
            None,
            sale_line_category(item.category, item.cylinder_status),
            AggregateDelta(item.quantity, item.line_total_cents),
        )
        for item in sale.items
    ]


def events_for_employee_sale(sale: EmployeeSale) -> list[RollupEvent]:
    day = business_date(sale.created_at)
    return [
        RollupEvent(
            day,
            item.product_id,
            sale.employee_id,
            sale_line_category(item.category, item.cylinder_status),
            AggregateDelta(item.quantity, item.line_total_cents),
        )
        for item in sale.items
    ]


def events_for_cylinder_transaction(tx: CylinderTransaction) -> list[RollupEvent]:
    return [
        RollupEvent(
            business_date(tx.created_at),
            tx.product_id,
            tx.employee_id,
            tx.type,
            AggregateDelta(tx.quantity, tx.amount_cents),
        )
    ]


def events_for_purchase(order: PurchaseOrder, product: Product) -> list[RollupEvent]:
    if product.category == CATEGORY_CYLINDER:
        category = CATEGORY_PURCHASE_FULL if order.cylinder_status == CYLINDER_FULL else CATEGORY_PURCHASE_EMPTY
    else:
        category = CATEGORY_PURCHASE_GAS
    return [RollupEvent(business_date(order.received_at), order.product_id, None, category, AggregateDelta(order.quantity))]


def events_for_send_back(ret: ReturnTransaction) -> list[RollupEvent]:
    category = CATEGORY_TRANSFER_GAS if ret.stock_type == STOCK_TYPE_GAS else CATEGORY_TRANSFER_EMPTY
    return [RollupEvent(business_date(ret.created_at), ret.product_id, ret.employee_id, category, AggregateDelta(ret.quantity))]


def events_for_accepted_return(ret: ReturnTransaction) -> list[RollupEvent]:
    return [
        RollupEvent(
            business_date(ret.processed_at),
            ret.product_id,
            None,
            CATEGORY_RECEIVED_BACK,
            AggregateDelta(ret.quantity),
        )
    ]


# =============================================================================
# Rebuild
# =============================================================================

def _employee_events(employee_id: int, start, end) -> list[RollupEvent]:
    events: list[RollupEvent] = []
    sales = (
        db.session.query(EmployeeSale)
        .filter(EmployeeSale.employee_id == employee_id, EmployeeSale.created_at >= start, EmployeeSale.created_at < end)
        .order_by(EmployeeSale.id)
        .all()
    )
    for sale in sales:
        events.extend(events_for_employee_sale(sale))

    cylinder_txs = (
        db.session.query(CylinderTransaction)
        .filter(
            CylinderTransaction.employee_id == employee_id,
            CylinderTransaction.created_at >= start,
            CylinderTransaction.created_at < end,
        )
        .order_by(CylinderTransaction.id)
        .all()
    )
    for tx in cylinder_txs:
        events.extend(events_for_cylinder_transaction(tx))

    returns = (
        db.session.query(ReturnTransaction)
        .filter(
            ReturnTransaction.employee_id == employee_id,
            ReturnTransaction.status != RETURN_REJECTED,
            ReturnTransaction.created_at >= start,
            ReturnTransaction.created_at < end,
        )
        .order_by(ReturnTransaction.id)
        .all()
    )
    for ret in returns:
        events.extend(events_for_send_back(ret))
    return events


def _admin_events(start, end) -> list[RollupEvent]:
    events: list[RollupEvent] = []
    for sale in db.session.query(Sale).filter(Sale.created_at >= start, Sale.created_at < end).order_by(Sale.id):
        events.extend(events_for_sale(sale))

    cylinder_txs = (
        db.session.query(CylinderTransaction)
        .filter(
            CylinderTransaction.employee_id.is_(None),
            CylinderTransaction.created_at >= start,
            CylinderTransaction.created_at < end,
        )
        .order_by(CylinderTransaction.id)
    )
    for tx in cylinder_txs:
        events.extend(events_for_cylinder_transaction(tx))

    orders = (
        db.session.query(PurchaseOrder, Product)
        .join(Product, Product.id == PurchaseOrder.product_id)
        .filter(PurchaseOrder.received_at >= start, PurchaseOrder.received_at < end)
        .order_by(PurchaseOrder.id)
    )
    for order, product in orders:
        events.extend(events_for_purchase(order, product))

    accepted = (
        db.session.query(ReturnTransaction)
        .filter(
            ReturnTransaction.status == RETURN_ACCEPTED,
            ReturnTransaction.processed_at >= start,
            ReturnTransaction.processed_at < end,
        )
        .order_by(ReturnTransaction.id)
    )
    for ret in accepted:
        events.extend(events_for_accepted_return(ret))
    return events


def rebuild_daily_aggregates(employee_id: int | None, day: date) -> dict:
    """
    Delete the (scope, day) slice and replay it from stored documents.

    employee_id=None rebuilds the admin-side slice. Runs as one unit of
    work, so readers see either the old slice or the rebuilt one.
    """
    start, end = day_bounds(day)
    scope = _scope(employee_id)

    def _op():
        deleted = (
            db.session.query(DailyAggregate)
            .filter(DailyAggregate.employee_id == scope, DailyAggregate.date == day)
            .delete(synchronize_session=False)
        )
        events = _employee_events(employee_id, start, end) if employee_id else _admin_events(start, end)
        replayed = 0
        for event in events:
            _apply(event)
            replayed += 1
        db.session.commit()
        return {"deleted": deleted, "replayed": replayed}

    result = run_with_retry(_op)
    logger.info(
        "[AGGREGATE] Rebuilt %s for %s: %d rows deleted, %d events replayed",
        f"employee {employee_id}" if employee_id else "admin scope",
        day.isoformat(),
        result["deleted"],
        result["replayed"],
    )
    return result
