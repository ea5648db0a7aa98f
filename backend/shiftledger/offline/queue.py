"""
Offline sale queue

Buffers sale requests on the device while the ledger is unreachable (or
offline mode is switched on) and replays them through the same ledger entry
point once connectivity returns.

QUEUE INVARIANTS:
- An entry leaves the queue only after the ledger confirmed the sale
- Each removal is persisted before the next entry is replayed
- Every payload carries an idempotency key (the entry's temp id), so
  replaying an entry that already landed returns the recorded sale instead
  of counting it twice
- A failed replay keeps the entry, with its attempt count and last error
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from shiftledger.time_utils import from_epoch_ms, to_utc_z, utcnow
from .storage import JsonFileStorage
from .transport import TransportError

logger = logging.getLogger(__name__)

DATA_KEY = "pos_offline_data:v1"
MODE_KEY = "pos_offline_mode_enabled:v1"

# Unversioned keys written by earlier clients
LEGACY_DATA_KEY = "pos_offline_data"
LEGACY_MODE_KEY = "pos_offline_mode_enabled"

TEMP_ID_PREFIX = "OFF-"


class OfflineSyncError(Exception):
    """Sync was requested while the ledger is unreachable."""
    pass


@dataclass
class OfflineEntry:
    temp_id: str
    payload: dict
    captured_at: str
    attempts: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "temp_id": self.temp_id,
            "payload": self.payload,
            "captured_at": self.captured_at,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OfflineEntry":
        return cls(
            temp_id=data["temp_id"],
            payload=data.get("payload") or {},
            captured_at=data.get("captured_at") or to_utc_z(utcnow()),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("last_error"),
        )


@dataclass
class SyncResult:
    synced: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {"synced": self.synced, "failed": self.failed, "ok": self.ok}


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class OfflineQueue:
    def __init__(self, storage: JsonFileStorage, transport):
        self.storage = storage
        self.transport = transport
        self._listeners: list[Callable[[dict], None]] = []

        self._migrate_legacy()
        state = self.storage.get(DATA_KEY) or {}
        self._entries = [OfflineEntry.from_dict(e) for e in state.get("pending_sales", [])]
        self._last_sync_at = state.get("last_sync_at")
        self._offline_mode = bool(self.storage.get(MODE_KEY, False))

    # ------------------------------------------------------------------
    # Observables
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._entries)

    @property
    def last_sync_at(self) -> str | None:
        return self._last_sync_at

    @property
    def offline_mode(self) -> bool:
        return self._offline_mode

    @property
    def entries(self) -> list[OfflineEntry]:
        return list(self._entries)

    def status(self) -> dict:
        return {
            "offline_mode": self._offline_mode,
            "pending_count": self.pending_count,
            "last_sync_at": self._last_sync_at,
        }

    def add_listener(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        """Register a callback receiving status() after every change. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def _remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        snapshot = self.status()
        for callback in list(self._listeners):
            callback(snapshot)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def capture(self, sale_request: dict, *, temp_id: str | None = None) -> OfflineEntry:
        """Buffer a sale request locally and persist the queue."""
        if not isinstance(sale_request, dict):
            raise TypeError("sale_request must be a dict")

        temp_id = temp_id or new_temp_id()
        payload = copy.deepcopy(sale_request)
        payload.setdefault("idempotency_key", temp_id)

        entry = OfflineEntry(temp_id=temp_id, payload=payload, captured_at=to_utc_z(utcnow()))
        self._entries.append(entry)
        self._persist()

        logger.info("Captured offline sale %s (%d pending)", temp_id, self.pending_count)
        self._notify()
        return entry

    def submit(self, sale_request: dict) -> dict:
        """
        Send a sale live, or capture it when offline mode is on or the
        ledger is unreachable.

        Returns {"queued": False, "sale": {...}} or {"queued": True, "temp_id": ...}.
        The request carries an idempotency key before the live attempt, so a
        send whose outcome is unknown (dropped response, server error) is
        captured under the same key and replaying it cannot record the sale
        twice. A sale the ledger rejects while reachable is raised, not queued.
        """
        if not isinstance(sale_request, dict):
            raise TypeError("sale_request must be a dict")

        temp_id = new_temp_id()
        request = copy.deepcopy(sale_request)
        request.setdefault("idempotency_key", temp_id)

        if self._offline_mode or not self.transport.is_online():
            entry = self.capture(request, temp_id=temp_id)
            return {"queued": True, "temp_id": entry.temp_id}

        try:
            sale = self.transport.submit_sale(request)
        except TransportError as exc:
            if not exc.retryable:
                raise
            logger.warning("Live sale %s outcome unknown, queueing for replay: %s", temp_id, exc)
            entry = self.capture(request, temp_id=temp_id)
            return {"queued": True, "temp_id": entry.temp_id}
        return {"queued": False, "sale": sale}

    def sync(self) -> SyncResult:
        """Replay every queued entry in capture order."""
        if not self.transport.is_online():
            raise OfflineSyncError("No connection to the ledger; sync later")

        result = SyncResult()
        for entry in list(self._entries):
            entry.attempts += 1
            try:
                sale = self.transport.submit_sale(entry.payload)
            except TransportError as exc:
                entry.last_error = str(exc)
                self._persist()
                logger.warning("Offline sale %s failed to sync (attempt %d): %s", entry.temp_id, entry.attempts, exc)
                result.failed.append({"temp_id": entry.temp_id, "error": str(exc)})
                continue
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                entry.last_error = error
                self._persist()
                logger.exception("Offline sale %s hit an unexpected error while syncing", entry.temp_id)
                result.failed.append({"temp_id": entry.temp_id, "error": error})
                continue

            self._entries.remove(entry)
            self._persist()
            result.synced.append({"temp_id": entry.temp_id, "invoice_number": sale.get("invoice_number")})

        self._last_sync_at = to_utc_z(utcnow())
        self._persist()

        logger.info(
            "Offline sync finished: %d synced, %d failed, %d pending",
            len(result.synced),
            len(result.failed),
            self.pending_count,
        )
        self._notify()
        return result

    def toggle_offline_mode(self) -> bool:
        self._offline_mode = not self._offline_mode
        self.storage.set(MODE_KEY, self._offline_mode)
        self._notify()
        return self._offline_mode

    def clear(self) -> int:
        """Wipe every buffered entry and the offline-mode flag. Returns how many entries were dropped."""
        dropped = self.pending_count
        self._entries = []
        self._last_sync_at = None
        self._offline_mode = False
        self.storage.remove(DATA_KEY)
        self.storage.remove(MODE_KEY)

        if dropped:
            logger.warning("Cleared %d unsynced offline sales", dropped)
        self._notify()
        return dropped

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        self.storage.set(DATA_KEY, {
            "pending_sales": [e.to_dict() for e in self._entries],
            "last_sync_at": self._last_sync_at,
        })

    def _migrate_legacy(self) -> None:
        if LEGACY_DATA_KEY in self.storage and DATA_KEY not in self.storage:
            legacy = _decode(self.storage.get(LEGACY_DATA_KEY)) or {}
            entries = [_entry_from_legacy(sale) for sale in legacy.get("pendingSales") or []]
            self.storage.set(DATA_KEY, {
                "pending_sales": [e.to_dict() for e in entries],
                "last_sync_at": legacy.get("lastSync"),
            })
            logger.info("Migrated %d offline sales from %s", len(entries), LEGACY_DATA_KEY)
        if LEGACY_DATA_KEY in self.storage:
            self.storage.remove(LEGACY_DATA_KEY)

        if LEGACY_MODE_KEY in self.storage:
            if MODE_KEY not in self.storage:
                self.storage.set(MODE_KEY, bool(_decode(self.storage.get(LEGACY_MODE_KEY))))
            self.storage.remove(LEGACY_MODE_KEY)


def _decode(value: Any) -> Any:
    # Legacy values were stored as JSON strings
    if isinstance(value, str):
        return json.loads(value)
    return value


def _entry_from_legacy(sale: dict) -> OfflineEntry:
    payload = {k: v for k, v in sale.items() if k != "offlineId"}
    offline_id = sale.get("offlineId")

    temp_id = f"{TEMP_ID_PREFIX}{offline_id}" if offline_id is not None else new_temp_id()
    payload.setdefault("idempotency_key", temp_id)

    captured_at = to_utc_z(utcnow())
    if isinstance(offline_id, (int, float)):
        # offlineId was a millisecond epoch timestamp
        captured_at = to_utc_z(from_epoch_ms(offline_id))

    return OfflineEntry(temp_id=temp_id, payload=payload, captured_at=captured_at)
