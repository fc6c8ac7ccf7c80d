"""
Sales: admin-side Sale and employee-side EmployeeSale documents.

Document-first, but stock is reserved in the same unit of work as the
document: the sale row, its lines and the stock decrement commit together
or not at all. Rollups follow as a soft side effect once the sale is durable.

Invoice numbers come from the unified registry before the unit starts; a
sale that fails afterwards leaves a gap in the sequence, never a duplicate.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Sale, SaleItem, EmployeeSale, EmployeeSaleItem, Customer
from ..models.catalog import CATEGORY_GAS
from ..models.transactions import CYLINDER_FULL, CYLINDER_EMPTY
from ..validation import InsufficientStockError, NotFoundError, ValidationError, optional_int, require_positive_int
from .aggregation_service import events_for_employee_sale, events_for_sale, record_events
from .assignment_service import (
    _require_employee,
    consume_assignments_locked,
    convert_cylinder_assignments,
    oldest_assignment,
)
from .concurrency import run_with_retry
from .invoice_service import next_invoice_number
from .stock_service import (
    KIND_SALE,
    _load_product,
    apply_mutation_locked,
    available_quantity,
    convert_employee_cylinders,
    pool_for,
    shift_employee_stock,
)

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cash", "cheque", "credit", "debit")


def _optional_cents(payload: dict, key: str) -> int | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{key} must be a non-negative integer amount in cents")
    return value


def normalize_lines(lines) -> list[dict]:
    """Validate raw item payloads; raises ValidationError before anything is written."""
    if not isinstance(lines, list) or not lines:
        raise ValidationError("Sale needs at least one item")
    normalized = []
    for index, line in enumerate(lines):
        if not isinstance(line, dict):
            raise ValidationError(f"Item {index} must be an object")
        status = line.get("cylinder_status")
        if status not in (None, CYLINDER_FULL, CYLINDER_EMPTY):
            raise ValidationError(f"Item {index}: cylinder_status must be 'full' or 'empty'")
        normalized.append({
            "product_id": require_positive_int(line, "product_id"),
            "quantity": require_positive_int(line, "quantity"),
            "unit_price_cents": _optional_cents(line, "unit_price_cents"),
            "cylinder_status": status,
            "cylinder_product_id": optional_int(line, "cylinder_product_id"),
        })
    return normalized


def _check_customer(customer_id: int | None) -> None:
    if customer_id is not None and db.session.get(Customer, customer_id) is None:
        raise NotFoundError(f"Customer {customer_id} not found")


def _payment_status(total_cents: int, received_cents: int) -> str:
    return "cleared" if received_cents >= total_cents else "pending"


def _assignment_status(product, line: dict) -> str | None:
    return line["cylinder_status"] if product.is_cylinder else None


def _precheck_admin_stock(lines: list[dict]) -> None:
    """Optimistic read-time check; the locked unit re-checks authoritatively."""
    wanted: dict[tuple[int, str], int] = {}
    for line in lines:
        product = _load_product(line["product_id"])
        pool = pool_for(product, KIND_SALE, line["cylinder_status"])
        key = (product.id, pool)
        wanted[key] = wanted.get(key, 0) + line["quantity"]
        available = available_quantity(product, line["cylinder_status"])
        if wanted[key] > available:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}. Available: {available}, Requested: {wanted[key]}",
                details={"product_id": product.id, "pool": pool, "available": available, "requested": wanted[key]},
            )


def create_sale(
    lines,
    *,
    customer_id: int | None = None,
    payment_method: str = "cash",
    received_cents: int | None = None,
    notes: str | None = None,
) -> Sale:
    """
    Create an admin-side sale and reserve its stock.

    Raises:
        ValidationError / NotFoundError: malformed input, unknown references
        InsufficientStockError: a line exceeds its pool (at read time or under lock)
    """
    lines = normalize_lines(lines)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    _check_customer(customer_id)
    _precheck_admin_stock(lines)

    invoice_number = next_invoice_number()

    def _op():
        sale = Sale(
            invoice_number=invoice_number,
            customer_id=customer_id,
            payment_method=payment_method,
            notes=notes,
        )
        total = 0
        for line in lines:
            product = _load_product(line["product_id"], lock=True)
            apply_mutation_locked(product, KIND_SALE, line["quantity"], line["cylinder_status"])
            unit_price = line["unit_price_cents"]
            if unit_price is None:
                unit_price = product.least_price_cents
            line_total = unit_price * line["quantity"]
            total += line_total
            sale.items.append(SaleItem(
                product_id=product.id,
                category=product.category,
                cylinder_status=line["cylinder_status"] if product.is_cylinder else None,
                quantity=line["quantity"],
                unit_price_cents=unit_price,
                line_total_cents=line_total,
            ))
        sale.total_cents = total
        sale.received_cents = total if received_cents is None else received_cents
        sale.payment_status = _payment_status(total, sale.received_cents)
        db.session.add(sale)
        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info("[INVOICE] Sale %s created with %d item(s)", sale.invoice_number, len(sale.items))
    record_events(events_for_sale(sale))
    return sale


def create_employee_sale(
    employee_id: int,
    lines,
    *,
    customer_id: int | None = None,
    payment_method: str = "cash",
    received_cents: int | None = None,
    notes: str | None = None,
    oversell_policy: str | None = None,
) -> EmployeeSale:
    """
    Create an employee sale priced and drawn from the employee's assignment pool.

    Every line needs an eligible assignment to price it (MissingAssignmentError
    otherwise, before any write). Quantity past the pool is recorded on the
    line as unassigned_quantity under the 'warn' policy.
    """
    lines = normalize_lines(lines)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    _require_employee(employee_id)
    _check_customer(customer_id)
    for line in lines:
        product = _load_product(line["product_id"])
        pool_for(product, KIND_SALE, line["cylinder_status"])
        oldest_assignment(employee_id, product.id, _assignment_status(product, line))

    invoice_number = next_invoice_number()

    def _op():
        sale = EmployeeSale(
            invoice_number=invoice_number,
            employee_id=employee_id,
            customer_id=customer_id,
            payment_method=payment_method,
            notes=notes,
        )
        total = 0
        for line in lines:
            product = _load_product(line["product_id"], lock=True)
            consumption = consume_assignments_locked(
                employee_id,
                product.id,
                line["quantity"],
                cylinder_status=_assignment_status(product, line),
                policy=oversell_policy,
            )
            pool = pool_for(product, KIND_SALE, line["cylinder_status"])
            shift_employee_stock(employee_id, product, pool, -line["quantity"], reason=f"(sale {invoice_number})")

            cylinder_id = line["cylinder_product_id"] if product.category == CATEGORY_GAS else None
            if cylinder_id:
                cylinder = _load_product(cylinder_id, lock=True)
                if not cylinder.is_cylinder:
                    raise ValidationError(f"Product {cylinder_id} is not a cylinder")
                convert_employee_cylinders(
                    employee_id, cylinder, line["quantity"], to_empty=True, reason=f"(sale {invoice_number})",
                )
                convert_cylinder_assignments(employee_id, cylinder, line["quantity"], reason=f"(sale {invoice_number})")

            unit_price = consumption.least_price_cents
            line_total = unit_price * line["quantity"]
            total += line_total
            sale.items.append(EmployeeSaleItem(
                product_id=product.id,
                category=product.category,
                cylinder_status=line["cylinder_status"] if product.is_cylinder else None,
                cylinder_product_id=cylinder_id,
                quantity=line["quantity"],
                unit_price_cents=unit_price,
                line_total_cents=line_total,
                unassigned_quantity=consumption.shortfall,
            ))
        sale.total_cents = total
        sale.received_cents = total if received_cents is None else received_cents
        sale.payment_status = _payment_status(total, sale.received_cents)
        db.session.add(sale)
        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info(
        "[INVOICE] Employee sale %s created for employee %s with %d item(s)",
        sale.invoice_number, employee_id, len(sale.items),
    )
    record_events(events_for_employee_sale(sale))
    return sale


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def get_employee_sale(sale_id: int) -> EmployeeSale:
    sale = db.session.get(EmployeeSale, sale_id)
    if sale is None:
        raise NotFoundError(f"Employee sale {sale_id} not found")
    return sale
