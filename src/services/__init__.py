"""Service layer for LayerSync."""

from .sync_service import SyncFailure, SyncRequest, SyncService, SyncSummary, loopback_transfer
from .worker import SyncWorker

__all__ = ["SyncFailure", "SyncRequest", "SyncService", "SyncSummary", "SyncWorker", "loopback_transfer"]
