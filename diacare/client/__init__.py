"""Client-side sync for DiaCare installations.

Modules:
    storage   — Installation-local key-value persistence (single JSON file)
    transport — httpx client for the sync API
    engine    — Local domain state, mutations and the sync cycle
"""

from diacare.client.engine import SyncEngine, SyncReport
from diacare.client.storage import LocalStorage
from diacare.client.transport import (
    SyncClientError,
    SyncRequestRejected,
    SyncTransport,
    SyncTransportError,
)

__all__ = [
    "LocalStorage",
    "SyncClientError",
    "SyncEngine",
    "SyncReport",
    "SyncRequestRejected",
    "SyncTransport",
    "SyncTransportError",
]
