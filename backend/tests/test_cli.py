# Overview: Pytest coverage for the flask CLI command groups.

import pytest

from shiftledger.models import Store, User, PaymentMethod, Shift
from shiftledger.services import sales_ledger_service


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def offline_storage(app, tmp_path, monkeypatch):
    path = tmp_path / "offline_store.json"
    monkeypatch.setitem(app.config, "OFFLINE_STORAGE_PATH", str(path))
    monkeypatch.setitem(app.config, "OFFLINE_SYNC_URL", "")
    return path


def test_system_init_is_idempotent(runner, db_session):
    first = runner.invoke(args=["system", "init", "--store", "Khartoum Branch", "--store-code", "KRT"])
    assert first.exit_code == 0, first.output
    assert "Created store: Khartoum Branch" in first.output

    second = runner.invoke(args=["system", "init", "--store", "Khartoum Branch", "--store-code", "KRT"])
    assert second.exit_code == 0, second.output
    assert "Using existing store" in second.output

    store = db_session.query(Store).filter_by(code="KRT").one()
    assert store.tax_rate_bps == 1500
    assert db_session.query(User).filter_by(username="cashier").count() == 1

    methods = db_session.query(PaymentMethod).filter_by(store_id=store.id).order_by(PaymentMethod.sort_order).all()
    assert [m.kind for m in methods] == ["CASH", "BANK_TRANSFER", "MOBILE_MONEY"]
    assert [m.requires_reference for m in methods] == [False, True, True]


def test_shift_open_close_cycle(runner, db_session, store, operator):
    opened = runner.invoke(args=[
        "shifts", "open", "--store-id", str(store.id), "--operator-id", str(operator.id),
        "--opening-balance-cents", "50000",
    ])
    assert opened.exit_code == 0, opened.output
    assert "float 500.00" in opened.output

    duplicate = runner.invoke(args=[
        "shifts", "open", "--store-id", str(store.id), "--operator-id", str(operator.id),
        "--opening-balance-cents", "100",
    ])
    assert duplicate.exit_code == 1
    assert "FAIL" in duplicate.output

    shift = db_session.query(Shift).filter_by(store_id=store.id).one()
    closed = runner.invoke(args=["shifts", "close", "--shift-id", str(shift.id), "--closing-balance-cents", "49000"])
    assert closed.exit_code == 0, closed.output
    assert "difference:  -10.00" in closed.output


def test_shift_verify(runner, db_session, open_shift, product, cash_method, sell):
    sell(open_shift, product, cash_method)

    result = runner.invoke(args=["shifts", "verify", "--shift-id", str(open_shift.id)])

    assert result.exit_code == 0, result.output
    assert "aggregates match" in result.output


def test_offline_capture_then_sync(runner, db_session, open_shift, product, cash_method, offline_storage):
    captured = runner.invoke(args=[
        "offline", "capture", "--shift-id", str(open_shift.id),
        "--payment-method-id", str(cash_method.id), "--item", f"{product.id}:2",
    ])
    assert captured.exit_code == 0, captured.output
    assert "Captured OFF-" in captured.output

    status = runner.invoke(args=["offline", "status"])
    assert "Pending sales: 1" in status.output

    synced = runner.invoke(args=["offline", "sync"])
    assert synced.exit_code == 0, synced.output
    assert "1 synced, 0 failed, 0 pending" in synced.output

    db_session.refresh(open_shift)
    assert open_shift.transactions_count == 1


def test_offline_capture_rejects_malformed_item(runner, db_session, offline_storage):
    result = runner.invoke(args=["offline", "capture", "--shift-id", "1", "--payment-method-id", "1", "--item", "3x2"])

    assert result.exit_code == 1
    assert not offline_storage.exists()


def test_offline_clear_needs_confirmation(runner, db_session, offline_storage):
    runner.invoke(args=["offline", "toggle"])

    refused = runner.invoke(args=["offline", "clear"])
    assert refused.exit_code == 1

    cleared = runner.invoke(args=["offline", "clear", "--yes"])
    assert cleared.exit_code == 0
    assert "Offline mode: OFF" in runner.invoke(args=["offline", "status"]).output


def test_inventory_oversold_lists_clamped_decrements(runner, db_session, store, open_shift, product, cash_method, make_product, sell):
    assert "No oversold movements" in runner.invoke(args=["inventory", "oversold", "--store-id", str(store.id)]).output

    sell(open_shift, product, cash_method)
    scarce = make_product(sku="SCARCE", price_cents=500, stock_quantity=3)
    sale = sell(open_shift, scarce, cash_method, quantity=5)

    result = runner.invoke(args=["inventory", "oversold", "--store-id", str(store.id)])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert len(lines) == 1
    assert lines[0].startswith(f"{sale.invoice_number} product={scarce.id} requested=5 applied=3")


def test_reconcile_list_and_resume(runner, db_session, open_shift, product, cash_method, monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("stock table locked")

    monkeypatch.setattr(sales_ledger_service, "decrement_stock", _boom)
    with pytest.raises(sales_ledger_service.SaleSagaError) as exc_info:
        sales_ledger_service.create_sale(
            open_shift, [{"product_id": product.id, "quantity": 1}], {"payment_method_id": cash_method.id},
        )
    monkeypatch.undo()

    listed = runner.invoke(args=["reconcile", "list"])
    assert exc_info.value.invoice_number in listed.output
    assert "failed=STOCK last_completed=LINES" in listed.output

    resumed = runner.invoke(args=["reconcile", "resume", "--invoice", exc_info.value.invoice_number])
    assert resumed.exit_code == 0, resumed.output
    assert "is COMPLETED" in resumed.output

    assert "No reconciliation tasks" in runner.invoke(args=["reconcile", "list"]).output
    assert runner.invoke(args=["reconcile", "resume"]).exit_code == 1
