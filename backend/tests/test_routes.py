# Overview: Pytest coverage for the HTTP API (shifts, sales, reconciliation, health).

import pytest

from shiftledger.models import Sale
from shiftledger.services import sales_ledger_service


def _boom(*args, **kwargs):
    raise RuntimeError("stock table locked")


def _sale_body(shift_id, product, method, quantity=1, **extra):
    body = {
        "shift_id": shift_id,
        "cart": [{"product_id": product.id, "quantity": quantity}],
        "payment": {"payment_method_id": method.id},
    }
    body.update(extra)
    return body


class TestHealth:
    def test_health_reports_counts(self, client, db_session, open_shift):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["details"]["open_shifts"] == 1
        assert data["checks"]["database"]["details"]["open_reconciliation_tasks"] == 0


class TestShiftRoutes:
    def test_open_and_fetch_current(self, client, db_session, store, operator):
        response = client.post("/api/shifts", json={
            "store_id": store.id,
            "operator_id": operator.id,
            "opening_balance_cents": 50000,
        })

        assert response.status_code == 201
        shift = response.get_json()["shift"]
        assert shift["status"] == "OPEN"
        assert shift["opening_balance_cents"] == 50000

        current = client.get(f"/api/shifts/current?operator_id={operator.id}&store_id={store.id}")
        assert current.status_code == 200
        assert current.get_json()["shift"]["id"] == shift["id"]

    def test_second_open_shift_conflicts(self, client, db_session, store, operator, open_shift):
        response = client.post("/api/shifts", json={
            "store_id": store.id,
            "operator_id": operator.id,
            "opening_balance_cents": 1000,
        })

        assert response.status_code == 409
        assert response.get_json()["details"]["shift_id"] == open_shift.id

    def test_open_rejects_bad_amounts(self, client, db_session, store, operator):
        for amount in (-1, "12.50", True):
            response = client.post("/api/shifts", json={
                "store_id": store.id,
                "operator_id": operator.id,
                "opening_balance_cents": amount,
            })
            assert response.status_code == 400

    def test_current_without_open_shift_is_404(self, client, db_session, store, operator):
        response = client.get(f"/api/shifts/current?operator_id={operator.id}&store_id={store.id}")
        assert response.status_code == 404

    def test_close_returns_difference(self, client, db_session, open_shift, product, cash_method):
        client.post("/api/sales", json=_sale_body(open_shift.id, product, cash_method))

        response = client.post(f"/api/shifts/{open_shift.id}/close", json={"closing_balance_cents": 61000})

        assert response.status_code == 200
        data = response.get_json()
        assert data["expected_balance_cents"] == 61500
        assert data["difference_cents"] == -500
        assert data["shift"]["status"] == "CLOSED"

        again = client.post(f"/api/shifts/{open_shift.id}/close", json={"closing_balance_cents": 61500})
        assert again.status_code == 409

    def test_close_unknown_shift_is_404(self, client, db_session):
        response = client.post("/api/shifts/4242/close", json={"closing_balance_cents": 0})
        assert response.status_code == 404

    def test_expense_reduces_expected_cash(self, client, db_session, open_shift, operator):
        response = client.post(f"/api/shifts/{open_shift.id}/expenses", json={
            "operator_id": operator.id,
            "amount_cents": 2500,
            "category": "Supplies",
        })
        assert response.status_code == 201
        assert response.get_json()["expense"]["amount_cents"] == 2500

        summary = client.get(f"/api/shifts/{open_shift.id}/summary?verify=1").get_json()
        assert summary["expected_balance_cents"] == 47500
        assert summary["expenses_count"] == 1
        assert summary["verification"]["consistent"] is True

        expenses = client.get(f"/api/shifts/{open_shift.id}/expenses").get_json()["expenses"]
        assert [e["category"] for e in expenses] == ["Supplies"]

    def test_list_shifts_by_status(self, client, db_session, store, open_shift):
        client.post(f"/api/shifts/{open_shift.id}/close", json={"closing_balance_cents": 50000})

        closed = client.get(f"/api/shifts?store_id={store.id}&status=closed").get_json()["shifts"]
        assert [s["id"] for s in closed] == [open_shift.id]
        assert client.get(f"/api/shifts?store_id={store.id}&status=OPEN").get_json()["shifts"] == []
        assert client.get("/api/shifts").status_code == 400

    def test_zero_expense_is_rejected(self, client, db_session, open_shift, operator):
        response = client.post(f"/api/shifts/{open_shift.id}/expenses", json={
            "operator_id": operator.id,
            "amount_cents": 0,
            "category": "Supplies",
        })
        assert response.status_code == 400

    def test_shift_events_trace_the_shift(self, client, db_session, open_shift, product, cash_method):
        client.post("/api/sales", json=_sale_body(open_shift.id, product, cash_method))
        client.post(f"/api/shifts/{open_shift.id}/close", json={"closing_balance_cents": 61500})

        events = client.get(f"/api/shifts/{open_shift.id}/events").get_json()["events"]
        assert [e["event_type"] for e in events] == ["shift.opened", "sale.started", "sale.completed", "shift.closed"]

        sales_only = client.get(f"/api/shifts/{open_shift.id}/events?category=sales").get_json()["events"]
        assert [e["event_type"] for e in sales_only] == ["sale.started", "sale.completed"]

        assert client.get("/api/shifts/4242/events").status_code == 404


class TestSaleRoutes:
    def test_create_sale(self, client, db_session, open_shift, product, cash_method):
        response = client.post("/api/sales", json=_sale_body(open_shift.id, product, cash_method, quantity=2))

        assert response.status_code == 201
        sale = response.get_json()["sale"]
        assert sale["status"] == "COMPLETED"
        assert sale["total_cents"] == 23000
        assert len(sale["lines"]) == 1

        fetched = client.get(f"/api/sales/{sale['invoice_number']}")
        assert fetched.status_code == 200
        assert fetched.get_json()["sale"]["id"] == sale["id"]

    def test_validation_failure_is_400_with_details(self, client, db_session, open_shift, product, cash_method):
        response = client.post("/api/sales", json=_sale_body(
            open_shift.id, product, cash_method, payment={"payment_method_id": cash_method.id, "amount_paid_cents": 100},
        ))

        assert response.status_code == 400
        assert response.get_json()["details"]["total_cents"] == 11500
        assert db_session.query(Sale).count() == 0

    def test_empty_body_is_400(self, client, db_session):
        response = client.post("/api/sales", data="not json", content_type="application/json")
        assert response.status_code == 400

    def test_closed_shift_is_409(self, client, db_session, open_shift, product, cash_method):
        client.post(f"/api/shifts/{open_shift.id}/close", json={"closing_balance_cents": 50000})

        response = client.post("/api/sales", json=_sale_body(open_shift.id, product, cash_method))

        assert response.status_code == 409
        assert db_session.query(Sale).count() == 0

    def test_idempotency_key_replay_returns_same_invoice(self, client, db_session, open_shift, product, cash_method):
        body = _sale_body(open_shift.id, product, cash_method, idempotency_key="OFF-route-1")

        first = client.post("/api/sales", json=body).get_json()["sale"]
        second = client.post("/api/sales", json=body).get_json()["sale"]

        assert first["invoice_number"] == second["invoice_number"]
        assert db_session.query(Sale).count() == 1

    def test_unknown_invoice_is_404(self, client, db_session):
        assert client.get("/api/sales/INV-999-20260101-000001").status_code == 404
        assert client.post("/api/sales/INV-999-20260101-000001/resume").status_code == 404


class TestReconciliationRoutes:
    """A sale that fails mid-saga surfaces as a task that can be resumed over HTTP."""

    @pytest.fixture
    def partial_sale(self, client, db_session, open_shift, product, cash_method, monkeypatch):
        monkeypatch.setattr(sales_ledger_service, "decrement_stock", _boom)
        response = client.post("/api/sales", json=_sale_body(open_shift.id, product, cash_method))
        monkeypatch.undo()
        return response

    def test_partial_sale_is_500_with_saga_details(self, partial_sale):
        assert partial_sale.status_code == 500
        details = partial_sale.get_json()["details"]
        assert details["failed_step"] == "STOCK"
        assert details["last_completed_step"] == "LINES"
        assert details["reconciliation_task_id"] is not None

    def test_list_and_resume_task(self, client, db_session, store, open_shift, product, partial_sale):
        tasks = client.get(f"/api/reconciliation/tasks?store_id={store.id}").get_json()["tasks"]
        assert len(tasks) == 1
        task_id = tasks[0]["id"]

        response = client.post(f"/api/reconciliation/tasks/{task_id}/resume")

        assert response.status_code == 200
        data = response.get_json()
        assert data["sale"]["status"] == "COMPLETED"
        assert data["task"]["status"] == "RESOLVED"

        assert client.get("/api/reconciliation/tasks").get_json()["tasks"] == []
        assert len(client.get("/api/reconciliation/tasks?status=all").get_json()["tasks"]) == 1

        again = client.post(f"/api/reconciliation/tasks/{task_id}/resume")
        assert again.status_code == 409

        db_session.refresh(product)
        assert product.stock_quantity == 49

    def test_resume_unknown_task_is_404(self, client, db_session):
        assert client.post("/api/reconciliation/tasks/999/resume").status_code == 404
