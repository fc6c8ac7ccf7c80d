import logging

import pytest

from gasledger.models import (
    Counter,
    CylinderTransaction,
    EmployeeSale,
    Product,
    ReturnTransaction,
    Sale,
    StockAssignment,
)
from gasledger.services import (
    assignment_service,
    cylinder_service,
    purchase_service,
    return_service,
    sales_service,
)
from gasledger.services.aggregation_service import get_daily_aggregate
from gasledger.services.stock_service import get_employee_inventory, shift_employee_stock
from gasledger.time_utils import business_date, utcnow
from gasledger.validation import (
    AssignmentPoolExhaustedError,
    ConflictError,
    InsufficientStockError,
    MissingAssignmentError,
    NotFoundError,
    ValidationError,
)


def _product(db_session, product_id):
    db_session.expire_all()
    return db_session.get(Product, product_id)


def _assign(employee, product, quantity, **kwargs):
    assignment = assignment_service.create_assignment(employee.id, product.id, quantity, **kwargs)
    return assignment_service.receive_assignment(assignment.id)


# =============================================================================
# Admin sales
# =============================================================================

def test_admin_sale_reserves_stock_and_rolls_up(db_session, gas, customer):
    sale = sales_service.create_sale(
        [{"product_id": gas.id, "quantity": 3}],
        customer_id=customer.id,
    )

    assert sale.invoice_number == "10000"
    assert (sale.total_cents, sale.received_cents, sale.payment_status) == (13500, 13500, "cleared")
    assert sale.items[0].unit_price_cents == gas.least_price_cents
    assert _product(db_session, gas.id).current_stock == 7

    row = get_daily_aggregate(business_date(), gas.id)
    assert (row.gas_sales_qty, row.gas_sales_cents) == (3, 13500)


def test_admin_cylinder_sale_uses_line_status(db_session, cylinder):
    sale = sales_service.create_sale(
        [{"product_id": cylinder.id, "quantity": 2, "cylinder_status": "full", "unit_price_cents": 16000}],
        received_cents=10000,
    )

    assert sale.payment_status == "pending"
    cyl = _product(db_session, cylinder.id)
    assert (cyl.available_full, cyl.current_stock) == (4, 8)
    assert get_daily_aggregate(business_date(), cylinder.id).full_cylinder_sales_cents == 32000


def test_admin_sale_over_stock_writes_nothing(db_session, gas):
    with pytest.raises(InsufficientStockError):
        sales_service.create_sale([
            {"product_id": gas.id, "quantity": 6},
            {"product_id": gas.id, "quantity": 6},
        ])

    assert db_session.query(Sale).count() == 0
    assert db_session.query(Counter).count() == 0
    assert _product(db_session, gas.id).current_stock == 10


@pytest.mark.parametrize("items", [
    [],
    None,
    [{"product_id": 1, "quantity": 0}],
    [{"product_id": 1, "quantity": "2.5"}],
    [{"product_id": 1, "quantity": True}],
    [{"product_id": 1, "quantity": 1, "cylinder_status": "half"}],
    [{"product_id": 1, "quantity": 1, "unit_price_cents": -5}],
])
def test_malformed_sale_items_are_rejected(db_session, items):
    with pytest.raises(ValidationError):
        sales_service.create_sale(items)


def test_unknown_customer(db_session, gas):
    with pytest.raises(NotFoundError):
        sales_service.create_sale([{"product_id": gas.id, "quantity": 1}], customer_id=404)


# =============================================================================
# Employee sales
# =============================================================================

def test_employee_sale_prices_from_oldest_assignment(db_session, employee, gas, cylinder):
    _assign(employee, gas, 5, least_price_cents=4000)
    _assign(employee, cylinder, 2, cylinder_status="full")

    sale = sales_service.create_employee_sale(
        employee.id,
        [{"product_id": gas.id, "quantity": 2, "unit_price_cents": 1, "cylinder_product_id": cylinder.id}],
    )

    item = sale.items[0]
    assert (item.unit_price_cents, item.line_total_cents, item.unassigned_quantity) == (4000, 8000, 0)
    assert db_session.query(StockAssignment).filter_by(product_id=gas.id).one().remaining_quantity == 3
    assert get_employee_inventory(employee.id, gas.id).current_stock == 3

    cyl_view = get_employee_inventory(employee.id, cylinder.id)
    assert (cyl_view.available_full, cyl_view.available_empty) == (0, 2)

    row = get_daily_aggregate(business_date(), gas.id, employee.id)
    assert (row.gas_sales_qty, row.gas_sales_cents) == (2, 8000)
    # Admin stock moved when the assignment was received, not at sale time
    assert _product(db_session, gas.id).current_stock == 5


def _cylinder_batches(db_session, employee, cylinder, status):
    db_session.expire_all()
    return (
        db_session.query(StockAssignment)
        .filter_by(employee_id=employee.id, product_id=cylinder.id, cylinder_status=status)
        .order_by(StockAssignment.id)
        .all()
    )


def test_employee_empty_cylinder_sale_prices_from_empty_batch(db_session, employee, cylinder):
    _assign(employee, cylinder, 2, cylinder_status="full", least_price_cents=15000)
    _assign(employee, cylinder, 3, cylinder_status="empty", least_price_cents=3000)

    sale = sales_service.create_employee_sale(
        employee.id,
        [{"product_id": cylinder.id, "quantity": 1, "cylinder_status": "empty"}],
    )

    assert sale.items[0].unit_price_cents == 3000
    assert [a.remaining_quantity for a in _cylinder_batches(db_session, employee, cylinder, "full")] == [2]
    assert [a.remaining_quantity for a in _cylinder_batches(db_session, employee, cylinder, "empty")] == [2]


def test_gas_sale_moves_linked_cylinder_batch_to_empty(db_session, employee, gas, cylinder):
    _assign(employee, gas, 5, least_price_cents=4000)
    _assign(employee, cylinder, 3, cylinder_status="full", least_price_cents=15000)

    sales_service.create_employee_sale(
        employee.id,
        [{"product_id": gas.id, "quantity": 2, "cylinder_product_id": cylinder.id}],
    )

    assert [a.remaining_quantity for a in _cylinder_batches(db_session, employee, cylinder, "full")] == [1]
    empty = _cylinder_batches(db_session, employee, cylinder, "empty")
    assert [(a.remaining_quantity, a.status, a.least_price_cents) for a in empty] == [(2, "received", 15000)]

    sale = sales_service.create_employee_sale(
        employee.id,
        [{"product_id": cylinder.id, "quantity": 1, "cylinder_status": "empty"}],
    )
    assert sale.items[0].unit_price_cents == 15000
    assert [a.remaining_quantity for a in _cylinder_batches(db_session, employee, cylinder, "full")] == [1]


def test_employee_sale_oversell_records_shortfall(db_session, employee, gas, caplog):
    _assign(employee, gas, 5)

    with caplog.at_level(logging.WARNING):
        sale = sales_service.create_employee_sale(employee.id, [{"product_id": gas.id, "quantity": 7}])

    assert sale.items[0].unassigned_quantity == 2
    assert get_employee_inventory(employee.id, gas.id).current_stock == 0
    assert "Oversell" in caplog.text


def test_employee_sale_without_assignment_is_rejected_before_numbering(db_session, employee, gas):
    with pytest.raises(MissingAssignmentError):
        sales_service.create_employee_sale(employee.id, [{"product_id": gas.id, "quantity": 1}])

    assert db_session.query(EmployeeSale).count() == 0
    assert db_session.query(Counter).count() == 0


def test_employee_sale_reject_policy_rolls_back(db_session, employee, gas):
    _assign(employee, gas, 2)

    with pytest.raises(AssignmentPoolExhaustedError):
        sales_service.create_employee_sale(
            employee.id, [{"product_id": gas.id, "quantity": 3}], oversell_policy="reject",
        )

    assert db_session.query(EmployeeSale).count() == 0
    assert db_session.query(StockAssignment).one().remaining_quantity == 2
    assert get_employee_inventory(employee.id, gas.id).current_stock == 2


def test_sales_share_one_invoice_space(db_session, employee, gas, cylinder, customer):
    _assign(employee, gas, 2)
    numbers = [
        sales_service.create_sale([{"product_id": gas.id, "quantity": 1}]).invoice_number,
        sales_service.create_employee_sale(employee.id, [{"product_id": gas.id, "quantity": 1}]).invoice_number,
        cylinder_service.create_deposit(customer_id=customer.id, product_id=cylinder.id, quantity=1).invoice_number,
    ]

    # The counter issued 10000 when nothing existed yet
    assert numbers == ["10000", "10001", "10002"]


# =============================================================================
# Cylinder transactions
# =============================================================================

def test_deposit_draws_empty_and_linked_gas(db_session, customer, cylinder, gas):
    tx = cylinder_service.create_deposit(
        customer_id=customer.id, product_id=cylinder.id, gas_product_id=gas.id, quantity=2, amount_cents=20000,
    )

    assert tx.status == "pending"
    cyl = _product(db_session, cylinder.id)
    assert (cyl.available_empty, cyl.current_stock) == (2, 8)
    assert _product(db_session, gas.id).current_stock == 8
    row = get_daily_aggregate(business_date(), cylinder.id)
    assert (row.deposit_qty, row.deposit_cents) == (2, 20000)


def test_linked_returns_clear_the_deposit(db_session, customer, cylinder):
    deposit = cylinder_service.create_deposit(customer_id=customer.id, product_id=cylinder.id, quantity=3)

    cylinder_service.create_return(
        customer_id=customer.id, product_id=cylinder.id, quantity=1, linked_deposit_id=deposit.id,
    )
    assert db_session.get(CylinderTransaction, deposit.id).status == "pending"

    cylinder_service.create_return(
        customer_id=customer.id, product_id=cylinder.id, quantity=2, linked_deposit_id=deposit.id,
    )
    db_session.expire_all()
    assert db_session.get(CylinderTransaction, deposit.id).status == "cleared"
    # 4 empty - 3 deposited + 3 returned
    assert _product(db_session, cylinder.id).available_empty == 4


def test_refill_rolls_up_and_moves_gas(db_session, customer, cylinder, gas):
    cylinder_service.create_refill(customer_id=customer.id, product_id=cylinder.id, gas_product_id=gas.id, quantity=4)

    assert _product(db_session, gas.id).current_stock == 6
    assert get_daily_aggregate(business_date(), cylinder.id).refill_qty == 4


def test_legacy_invoice_format(db_session, customer, cylinder):
    tx = cylinder_service.create_deposit(
        customer_id=customer.id, product_id=cylinder.id, quantity=1, legacy_invoice=True,
    )
    assert tx.invoice_number == f"INV-{utcnow().year}-CM-1"


def test_stock_failure_after_commit_keeps_document(db_session, customer, cylinder, monkeypatch, caplog):
    def broken(*args, **kwargs):
        raise RuntimeError("stock store down")

    monkeypatch.setattr(cylinder_service, "apply_stock_mutation", broken)
    with caplog.at_level(logging.ERROR):
        tx = cylinder_service.create_deposit(customer_id=customer.id, product_id=cylinder.id, quantity=2)

    assert db_session.get(CylinderTransaction, tx.id) is not None
    assert _product(db_session, cylinder.id).available_empty == 4
    assert "Soft failure" in caplog.text
    # Rollups are independent of the stock update
    assert get_daily_aggregate(business_date(), cylinder.id).deposit_qty == 2


def test_employee_deposit_moves_employee_view(db_session, customer, employee, cylinder):
    shift_employee_stock(employee.id, db_session.get(Product, cylinder.id), "empty", 3)
    db_session.commit()

    cylinder_service.create_deposit(customer_id=customer.id, product_id=cylinder.id, quantity=2, employee_id=employee.id)

    assert get_employee_inventory(employee.id, cylinder.id).available_empty == 1
    assert _product(db_session, cylinder.id).available_empty == 4
    assert get_daily_aggregate(business_date(), cylinder.id, employee.id).deposit_qty == 2


def test_cylinder_validation(db_session, customer, cylinder, gas):
    with pytest.raises(ValidationError):
        cylinder_service.create_deposit(customer_id=customer.id, product_id=gas.id, quantity=1)
    deposit = cylinder_service.create_deposit(customer_id=customer.id, product_id=cylinder.id, quantity=1)
    with pytest.raises(ValidationError):
        cylinder_service.create_refill(
            customer_id=customer.id, product_id=cylinder.id, quantity=1, linked_deposit_id=deposit.id,
        )
    with pytest.raises(NotFoundError):
        cylinder_service.create_return(customer_id=customer.id, product_id=cylinder.id, quantity=1, linked_deposit_id=999)


# =============================================================================
# Purchase orders
# =============================================================================

def test_purchase_order_moves_stock_once(db_session, cylinder):
    order = purchase_service.create_purchase_order(cylinder.id, 5, cylinder_status="full", unit_cost_cents=9000)
    assert _product(db_session, cylinder.id).available_full == 6

    purchase_service.receive_purchase_order(order.id)
    with pytest.raises(ConflictError):
        purchase_service.receive_purchase_order(order.id)

    assert _product(db_session, cylinder.id).available_full == 11
    assert get_daily_aggregate(business_date(), cylinder.id).purchase_full_qty == 5


# =============================================================================
# Employee send-backs
# =============================================================================

def test_send_back_then_accept(db_session, employee, gas):
    _assign(employee, gas, 4)

    ret = return_service.send_back(employee.id, gas.id, 3, stock_type="gas")
    assert ret.status == "pending"
    assert get_employee_inventory(employee.id, gas.id).current_stock == 1
    assert get_daily_aggregate(business_date(), gas.id, employee.id).transfer_gas_qty == 3

    accepted = return_service.accept_return(ret.id)
    assert accepted.status == "accepted"
    assert accepted.processed_at is not None
    assert _product(db_session, gas.id).current_stock == 9
    assert get_daily_aggregate(business_date(), gas.id).received_back_qty == 3

    with pytest.raises(ConflictError):
        return_service.accept_return(ret.id)
    with pytest.raises(ConflictError):
        return_service.reject_return(ret.id)
    assert _product(db_session, gas.id).current_stock == 9


def test_send_back_then_reject_restores_employee(db_session, employee, gas):
    _assign(employee, gas, 4)
    ret = return_service.send_back(employee.id, gas.id, 3, stock_type="gas")

    rejected = return_service.reject_return(ret.id, notes="count mismatch")

    assert rejected.status == "rejected"
    assert get_employee_inventory(employee.id, gas.id).current_stock == 4
    assert _product(db_session, gas.id).current_stock == 6
    assert get_daily_aggregate(business_date(), gas.id, employee.id) is None


def test_gas_send_back_carries_full_cylinders(db_session, employee, gas, cylinder):
    _assign(employee, gas, 2)
    _assign(employee, cylinder, 2, cylinder_status="full")

    ret = return_service.send_back(employee.id, gas.id, 2, stock_type="gas", cylinder_product_id=cylinder.id)
    assert get_employee_inventory(employee.id, cylinder.id).available_full == 0

    return_service.accept_return(ret.id)
    assert _product(db_session, cylinder.id).available_full == 6


def test_send_back_empty_cylinders(db_session, employee, cylinder):
    shift_employee_stock(employee.id, db_session.get(Product, cylinder.id), "empty", 2)
    db_session.commit()

    ret = return_service.send_back(employee.id, cylinder.id, 2, stock_type="empty")
    return_service.accept_return(ret.id)

    assert get_employee_inventory(employee.id, cylinder.id).available_empty == 0
    assert _product(db_session, cylinder.id).available_empty == 6
    assert get_daily_aggregate(business_date(), cylinder.id, employee.id).transfer_empty_qty == 2


def test_send_back_more_than_held(db_session, employee, gas):
    _assign(employee, gas, 1)

    with pytest.raises(InsufficientStockError):
        return_service.send_back(employee.id, gas.id, 2, stock_type="gas")
    assert db_session.query(ReturnTransaction).count() == 0
    assert get_employee_inventory(employee.id, gas.id).current_stock == 1


def test_unknown_return(db_session):
    with pytest.raises(NotFoundError):
        return_service.accept_return(404)
