import logging

import pytest

from gasledger.models import Product
from gasledger.services.stock_service import (
    KIND_DEPOSIT,
    KIND_PURCHASE,
    KIND_REFILL,
    KIND_RETURN,
    KIND_SALE,
    KIND_TRANSFER_IN,
    KIND_TRANSFER_OUT,
    apply_stock_mutation,
    convert_employee_cylinders,
    get_employee_inventory,
    shift_employee_stock,
)
from gasledger.validation import InsufficientStockError, NotFoundError, ValidationError


def _reload(db_session, product_id):
    db_session.expire_all()
    return db_session.get(Product, product_id)


def test_purchase_adds_to_declared_pool(db_session, gas, cylinder):
    apply_stock_mutation(gas.id, KIND_PURCHASE, 5)
    apply_stock_mutation(cylinder.id, KIND_PURCHASE, 3, "empty")

    assert _reload(db_session, gas.id).current_stock == 15
    cyl = _reload(db_session, cylinder.id)
    assert (cyl.available_full, cyl.available_empty, cyl.current_stock) == (6, 7, 13)


def test_sale_rejects_more_than_available(db_session, gas):
    with pytest.raises(InsufficientStockError) as exc_info:
        apply_stock_mutation(gas.id, KIND_SALE, 11)

    assert exc_info.value.details["available"] == 10
    assert _reload(db_session, gas.id).current_stock == 10


def test_cylinder_sale_draws_from_requested_pool(db_session, cylinder):
    apply_stock_mutation(cylinder.id, KIND_SALE, 2, "full")

    cyl = _reload(db_session, cylinder.id)
    assert (cyl.available_full, cyl.available_empty, cyl.current_stock) == (4, 4, 8)


def test_cylinder_mutation_needs_a_status(db_session, cylinder):
    with pytest.raises(ValidationError):
        apply_stock_mutation(cylinder.id, KIND_SALE, 1)


@pytest.mark.parametrize("quantity, expected_empty", [(3, 1), (4, 0), (9, 0)])
def test_deposit_clamps_empty_pool_and_resyncs_total(db_session, cylinder, quantity, expected_empty):
    apply_stock_mutation(cylinder.id, KIND_DEPOSIT, quantity)

    cyl = _reload(db_session, cylinder.id)
    assert cyl.available_empty == expected_empty
    assert cyl.available_full == 6
    assert cyl.current_stock == cyl.available_full + cyl.available_empty


def test_deposit_with_gas_link_also_draws_gas(db_session, gas, cylinder):
    apply_stock_mutation(cylinder.id, KIND_DEPOSIT, 2, gas_product_id=gas.id)

    assert _reload(db_session, gas.id).current_stock == 8
    assert _reload(db_session, cylinder.id).available_empty == 2


def test_refill_moves_only_gas(db_session, gas, cylinder):
    apply_stock_mutation(cylinder.id, KIND_REFILL, 3, gas_product_id=gas.id)

    assert _reload(db_session, gas.id).current_stock == 7
    cyl = _reload(db_session, cylinder.id)
    assert (cyl.available_full, cyl.available_empty) == (6, 4)


def test_refill_without_gas_link_moves_nothing(db_session, cylinder, caplog):
    with caplog.at_level(logging.WARNING, logger="gasledger.services.stock_service"):
        apply_stock_mutation(cylinder.id, KIND_REFILL, 3)

    assert _reload(db_session, cylinder.id).current_stock == 10
    assert "no gas product linked" in caplog.text


def test_return_adds_empty_cylinders(db_session, cylinder):
    apply_stock_mutation(cylinder.id, KIND_RETURN, 2)

    cyl = _reload(db_session, cylinder.id)
    assert (cyl.available_empty, cyl.current_stock) == (6, 12)


def test_transfer_out_clamps_and_logs(db_session, gas, caplog):
    with caplog.at_level(logging.WARNING, logger="gasledger.services.stock_service"):
        apply_stock_mutation(gas.id, KIND_TRANSFER_OUT, 12)

    assert _reload(db_session, gas.id).current_stock == 0
    assert "Clamped" in caplog.text


def test_transfer_in_restores_stock(db_session, gas):
    apply_stock_mutation(gas.id, KIND_TRANSFER_OUT, 4)
    apply_stock_mutation(gas.id, KIND_TRANSFER_IN, 4)

    assert _reload(db_session, gas.id).current_stock == 10


def test_unknown_product_and_kind(db_session, gas):
    with pytest.raises(NotFoundError):
        apply_stock_mutation(9999, KIND_PURCHASE, 1)
    with pytest.raises(ValidationError):
        apply_stock_mutation(gas.id, "shrinkage", 1)
    with pytest.raises(ValidationError):
        apply_stock_mutation(gas.id, KIND_PURCHASE, 0)


def test_sale_bumps_version_column(db_session, gas):
    before = gas.version_id
    apply_stock_mutation(gas.id, KIND_SALE, 1)

    assert _reload(db_session, gas.id).version_id == before + 1


def test_employee_view_created_on_first_increment(db_session, employee, gas):
    row = shift_employee_stock(employee.id, gas, "stock", 5, assigned_delta=5, least_price_cents=4000)
    db_session.commit()

    row = get_employee_inventory(employee.id, gas.id)
    assert (row.current_stock, row.assigned_quantity, row.least_price_cents) == (5, 5, 4000)

    shift_employee_stock(employee.id, gas, "stock", -8)
    db_session.commit()
    assert get_employee_inventory(employee.id, gas.id).current_stock == 0


def test_convert_employee_cylinders_moves_only_what_is_full(db_session, employee, cylinder):
    shift_employee_stock(employee.id, cylinder, "full", 2)
    row = convert_employee_cylinders(employee.id, cylinder, 3, to_empty=True)
    db_session.commit()

    assert (row.available_full, row.available_empty, row.current_stock) == (0, 2, 2)
