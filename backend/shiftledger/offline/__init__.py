from .queue import OfflineQueue, OfflineEntry, OfflineSyncError, SyncResult
from .storage import JsonFileStorage, LocalStorageError
from .transport import HttpLedgerTransport, LocalLedgerTransport, TransportError

__all__ = [
    "OfflineQueue",
    "OfflineEntry",
    "OfflineSyncError",
    "SyncResult",
    "JsonFileStorage",
    "LocalStorageError",
    "HttpLedgerTransport",
    "LocalLedgerTransport",
    "TransportError",
]
