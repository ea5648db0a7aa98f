import pytest

from shiftledger.models import StockMovement
from shiftledger.services import inventory_service
from shiftledger.services.inventory_service import InventoryError


def test_decrement_with_enough_stock(db_session, store, product):
    movement = inventory_service.decrement_stock(store_id=store.id, product_id=product.id, quantity=4)
    db_session.commit()

    assert movement.quantity_applied == 4
    assert movement.stock_after == 46
    assert movement.oversold is False
    db_session.refresh(product)
    assert product.stock_quantity == 46


def test_decrement_clamps_at_zero_and_flags_oversell(db_session, store, make_product):
    scarce = make_product(sku="LOW", price_cents=100, stock_quantity=3)

    movement = inventory_service.decrement_stock(store_id=store.id, product_id=scarce.id, quantity=5)
    db_session.commit()

    assert movement.quantity_applied == 3
    assert movement.stock_after == 0
    assert movement.oversold is True
    db_session.refresh(scarce)
    assert scarce.stock_quantity == 0

    assert [m.id for m in inventory_service.get_oversold_movements(store.id)] == [movement.id]


def test_decrement_on_empty_stock_applies_nothing(db_session, store, make_product):
    empty = make_product(sku="EMPTY", price_cents=100, stock_quantity=0)

    movement = inventory_service.decrement_stock(store_id=store.id, product_id=empty.id, quantity=2)

    assert movement.quantity_applied == 0
    assert movement.stock_after == 0
    assert movement.oversold is True


def test_adjust_product_stock_never_goes_negative(db_session, product):
    assert inventory_service.adjust_product_stock(product.id, -80) == 0
    assert inventory_service.adjust_product_stock(product.id, 7) == 7


def test_decrement_rejects_bad_input(db_session, store, product):
    with pytest.raises(InventoryError):
        inventory_service.decrement_stock(store_id=store.id, product_id=product.id, quantity=0)
    with pytest.raises(InventoryError):
        inventory_service.decrement_stock(store_id=store.id, product_id=987654, quantity=1)
    with pytest.raises(InventoryError):
        inventory_service.decrement_stock(store_id=store.id + 1, product_id=product.id, quantity=1)

    assert db_session.query(StockMovement).count() == 0
