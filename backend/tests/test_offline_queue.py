import json

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from shiftledger.models import Sale
from shiftledger.offline import (
    HttpLedgerTransport,
    JsonFileStorage,
    LocalLedgerTransport,
    OfflineQueue,
    OfflineSyncError,
    TransportError,
)
from shiftledger.offline.queue import DATA_KEY, MODE_KEY, LEGACY_DATA_KEY, LEGACY_MODE_KEY
from shiftledger.services import sales_ledger_service


class SwitchableTransport:
    """Wraps a real transport with a connectivity switch."""

    def __init__(self, inner, online=True):
        self.inner = inner
        self.online = online

    def is_online(self):
        return self.online

    def submit_sale(self, payload):
        if not self.online:
            raise TransportError("offline")
        return self.inner.submit_sale(payload)


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "device" / "offline_store.json"


@pytest.fixture
def transport(app):
    return SwitchableTransport(LocalLedgerTransport(app))


@pytest.fixture
def queue(store_path, transport):
    return OfflineQueue(JsonFileStorage(store_path), transport)


def _request(shift, product, method, quantity=1):
    return {
        "shift_id": shift.id,
        "cart": [{"product_id": product.id, "quantity": quantity}],
        "payment": {"payment_method_id": method.id},
    }


def test_capture_persists_across_restarts(db_session, open_shift, product, cash_method, queue, store_path, transport):
    entry = queue.capture(_request(open_shift, product, cash_method))

    assert entry.temp_id.startswith("OFF-")
    assert entry.payload["idempotency_key"] == entry.temp_id
    assert queue.pending_count == 1

    reloaded = OfflineQueue(JsonFileStorage(store_path), transport)
    assert reloaded.pending_count == 1
    assert reloaded.entries[0].temp_id == entry.temp_id
    assert db_session.query(Sale).count() == 0


def test_sync_replays_through_the_ledger(db_session, open_shift, product, cash_method, card_method, queue):
    first = queue.capture(_request(open_shift, product, cash_method))
    second = queue.capture(_request(open_shift, product, card_method, quantity=2))

    result = queue.sync()

    assert result.ok
    assert [s["temp_id"] for s in result.synced] == [first.temp_id, second.temp_id]
    assert all(s["invoice_number"].startswith("INV-") for s in result.synced)
    assert queue.pending_count == 0
    assert queue.last_sync_at is not None

    db_session.refresh(open_shift)
    assert open_shift.transactions_count == 2
    assert open_shift.cash_sales_cents == 11500
    assert open_shift.card_sales_cents == 23000


def test_replaying_an_entry_twice_counts_it_once(db_session, open_shift, product, cash_method, queue, store_path, transport):
    queue.capture(_request(open_shift, product, cash_method, quantity=3))
    snapshot = store_path.read_text(encoding="utf-8")

    first = queue.sync()

    # Crash before the removal was persisted: the entry comes back
    store_path.write_text(snapshot, encoding="utf-8")
    restarted = OfflineQueue(JsonFileStorage(store_path), transport)
    assert restarted.pending_count == 1

    second = restarted.sync()

    assert second.synced[0]["invoice_number"] == first.synced[0]["invoice_number"]
    assert restarted.pending_count == 0
    assert db_session.query(Sale).count() == 1
    db_session.refresh(open_shift)
    assert open_shift.transactions_count == 1
    db_session.refresh(product)
    assert product.stock_quantity == 47


def test_failed_entry_stays_queued(db_session, open_shift, product, cash_method, queue):
    bad = queue.capture({
        "shift_id": open_shift.id,
        "cart": [{"product_id": 424242, "quantity": 1}],
        "payment": {"payment_method_id": cash_method.id},
    })
    good = queue.capture(_request(open_shift, product, cash_method))

    result = queue.sync()

    assert not result.ok
    assert [f["temp_id"] for f in result.failed] == [bad.temp_id]
    assert [s["temp_id"] for s in result.synced] == [good.temp_id]
    assert queue.pending_count == 1

    kept = queue.entries[0]
    assert kept.temp_id == bad.temp_id
    assert kept.attempts == 1
    assert "Product not found" in kept.last_error


def test_database_error_on_one_entry_does_not_stop_the_batch(db_session, open_shift, product, cash_method, queue, store_path, transport, monkeypatch):
    real_create_sale = sales_ledger_service.create_sale
    calls = []

    def locked_once(*args, **kwargs):
        calls.append(kwargs.get("idempotency_key"))
        if len(calls) == 1:
            raise OperationalError("INSERT INTO sales", {}, Exception("database is locked"))
        return real_create_sale(*args, **kwargs)

    monkeypatch.setattr(sales_ledger_service, "create_sale", locked_once)
    first = queue.capture(_request(open_shift, product, cash_method))
    second = queue.capture(_request(open_shift, product, cash_method))

    result = queue.sync()

    assert [f["temp_id"] for f in result.failed] == [first.temp_id]
    assert [s["temp_id"] for s in result.synced] == [second.temp_id]
    assert queue.last_sync_at is not None

    reloaded = OfflineQueue(JsonFileStorage(store_path), transport)
    assert [e.temp_id for e in reloaded.entries] == [first.temp_id]
    assert reloaded.entries[0].attempts == 1
    assert "database is locked" in reloaded.entries[0].last_error

    assert queue.sync().ok
    db_session.refresh(open_shift)
    assert open_shift.transactions_count == 2


def test_unexpected_transport_failure_is_recorded_per_entry(db_session, open_shift, product, cash_method, store_path, app):
    class FlakyTransport:
        def __init__(self, inner):
            self.inner = inner
            self.calls = 0

        def is_online(self):
            return True

        def submit_sale(self, payload):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("classifier exploded")
            return self.inner.submit_sale(payload)

    queue = OfflineQueue(JsonFileStorage(store_path), FlakyTransport(LocalLedgerTransport(app)))
    snapshots = []
    queue.add_listener(snapshots.append)
    first = queue.capture(_request(open_shift, product, cash_method))
    second = queue.capture(_request(open_shift, product, cash_method))
    snapshots.clear()

    result = queue.sync()

    assert result.failed == [{"temp_id": first.temp_id, "error": "RuntimeError: classifier exploded"}]
    assert [s["temp_id"] for s in result.synced] == [second.temp_id]
    assert queue.entries[0].last_error == "RuntimeError: classifier exploded"
    assert snapshots and snapshots[-1]["pending_count"] == 1


def test_sync_without_connectivity_raises_and_keeps_entries(db_session, open_shift, product, cash_method, queue, transport):
    queue.capture(_request(open_shift, product, cash_method))
    transport.online = False

    with pytest.raises(OfflineSyncError):
        queue.sync()

    assert queue.pending_count == 1
    assert queue.last_sync_at is None


def test_submit_goes_live_unless_offline(db_session, open_shift, product, cash_method, queue, transport):
    live = queue.submit(_request(open_shift, product, cash_method))
    assert live["queued"] is False
    assert live["sale"]["status"] == "COMPLETED"

    transport.online = False
    dropped_link = queue.submit(_request(open_shift, product, cash_method))
    assert dropped_link["queued"] is True

    transport.online = True
    queue.toggle_offline_mode()
    forced = queue.submit(_request(open_shift, product, cash_method))
    assert forced["queued"] is True

    assert queue.pending_count == 2
    assert db_session.query(Sale).count() == 1


def test_toggle_and_clear(db_session, open_shift, product, cash_method, queue, store_path, transport):
    assert queue.toggle_offline_mode() is True
    assert OfflineQueue(JsonFileStorage(store_path), transport).offline_mode is True

    queue.capture(_request(open_shift, product, cash_method))
    dropped = queue.clear()

    assert dropped == 1
    assert queue.pending_count == 0
    assert queue.offline_mode is False

    stored = json.loads(store_path.read_text(encoding="utf-8"))
    assert DATA_KEY not in stored
    assert MODE_KEY not in stored


def test_listeners_receive_status_snapshots(db_session, open_shift, product, cash_method, queue):
    seen = []
    unsubscribe = queue.add_listener(seen.append)

    queue.capture(_request(open_shift, product, cash_method))
    queue.sync()
    unsubscribe()
    queue.toggle_offline_mode()

    assert [s["pending_count"] for s in seen] == [1, 0]
    assert seen[-1]["last_sync_at"] is not None
    assert all(s["offline_mode"] is False for s in seen)


def test_legacy_keys_are_migrated(db_session, open_shift, product, cash_method, store_path, transport):
    legacy_sale = dict(_request(open_shift, product, cash_method), offlineId=1737000000000)
    store_path.parent.mkdir(parents=True)
    store_path.write_text(json.dumps({
        LEGACY_DATA_KEY: json.dumps({
            "products": [],
            "categories": [],
            "customers": [],
            "pendingSales": [legacy_sale],
            "inventory": [],
            "lastSync": None,
        }),
        LEGACY_MODE_KEY: "true",
    }), encoding="utf-8")

    queue = OfflineQueue(JsonFileStorage(store_path), transport)

    assert queue.pending_count == 1
    assert queue.offline_mode is True
    entry = queue.entries[0]
    assert entry.temp_id == "OFF-1737000000000"
    assert entry.captured_at == "2025-01-16T04:00:00Z"
    assert "offlineId" not in entry.payload
    assert entry.payload["idempotency_key"] == entry.temp_id

    stored = json.loads(store_path.read_text(encoding="utf-8"))
    assert LEGACY_DATA_KEY not in stored
    assert LEGACY_MODE_KEY not in stored

    assert queue.sync().ok
    assert db_session.query(Sale).count() == 1


# =============================================================================
# HTTP TRANSPORT
# =============================================================================

def test_http_transport_against_the_app(app, db_session, open_shift, product, cash_method, store_path):
    http = HttpLedgerTransport("http://ledger.test", transport=httpx.WSGITransport(app=app))
    queue = OfflineQueue(JsonFileStorage(store_path), http)

    assert http.is_online() is True
    queue.capture(_request(open_shift, product, cash_method))
    result = queue.sync()

    assert result.ok
    assert result.synced[0]["invoice_number"].startswith("INV-")
    db_session.refresh(open_shift)
    assert open_shift.transactions_count == 1


def test_http_transport_reports_rejections_and_outages():
    def handler(request):
        if request.url.path == "/api/health":
            return httpx.Response(200, json={"status": "healthy"})
        return httpx.Response(400, json={"error": "Cart is empty", "details": {}})

    http = HttpLedgerTransport("http://ledger.test", transport=httpx.MockTransport(handler))
    assert http.is_online() is True
    with pytest.raises(TransportError) as exc_info:
        http.submit_sale({"shift_id": 1, "cart": []})
    assert exc_info.value.status_code == 400
    assert str(exc_info.value) == "Cart is empty"
    assert exc_info.value.retryable is False

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    down = HttpLedgerTransport("http://ledger.test", transport=httpx.MockTransport(unreachable))
    assert down.is_online() is False
    with pytest.raises(TransportError) as exc_info:
        down.submit_sale({"shift_id": 1})
    assert exc_info.value.retryable is True


class DropFirstSaleResponse(httpx.BaseTransport):
    """Lets the first POST /api/sales reach the app, then loses its response."""

    def __init__(self, app):
        self.inner = httpx.WSGITransport(app=app)
        self.dropped = False

    def handle_request(self, request):
        response = self.inner.handle_request(request)
        if request.method == "POST" and request.url.path == "/api/sales" and not self.dropped:
            self.dropped = True
            raise httpx.ReadTimeout("timed out", request=request)
        return response


def test_dropped_response_is_queued_under_the_same_key(app, db_session, open_shift, product, cash_method, store_path):
    http = HttpLedgerTransport("http://ledger.test", transport=DropFirstSaleResponse(app))
    queue = OfflineQueue(JsonFileStorage(store_path), http)

    outcome = queue.submit(_request(open_shift, product, cash_method))

    assert outcome["queued"] is True
    entry = queue.entries[0]
    assert entry.payload["idempotency_key"] == outcome["temp_id"]
    recorded = db_session.query(Sale).one()
    assert recorded.idempotency_key == outcome["temp_id"]

    result = queue.sync()

    assert result.ok
    assert result.synced[0]["invoice_number"] == recorded.invoice_number
    assert db_session.query(Sale).count() == 1
    db_session.refresh(open_shift)
    assert open_shift.transactions_count == 1


def test_server_error_is_queued_but_rejection_is_raised(db_session, store_path):
    def handler(request):
        if request.url.path == "/api/health":
            return httpx.Response(200, json={"status": "healthy"})
        if request.headers.get("x-mode") == "reject":
            return httpx.Response(400, json={"error": "Cart is empty"})
        return httpx.Response(503, json={"error": "Ledger busy"})

    http = HttpLedgerTransport("http://ledger.test", transport=httpx.MockTransport(handler))
    queue = OfflineQueue(JsonFileStorage(store_path), http)

    busy = queue.submit({"shift_id": 1, "cart": [{"product_id": 1, "quantity": 1}]})
    assert busy["queued"] is True
    assert queue.entries[0].payload["idempotency_key"] == busy["temp_id"]

    http.client.headers["x-mode"] = "reject"
    with pytest.raises(TransportError) as exc_info:
        queue.submit({"shift_id": 1, "cart": []})
    assert exc_info.value.retryable is False
    assert queue.pending_count == 1
