"""
Storage Package for LayerSync.

Provides the storage backends consumed by the sync core.
"""

from database.base import StorageBackend
from database.factory import get_storage_backend
from database.memory import MemoryManager

__all__ = [
    'MemoryManager',
    'StorageBackend',
    'get_storage_backend',
]
