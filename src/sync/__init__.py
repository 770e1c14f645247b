"""
LayerSync queue package.

Provides the sync queue state machine, conflict strategies and the listener
interface used to observe terminal transitions.
"""

from sync.conflicts import Resolution, settle
from sync.listeners import ListenerGroup, SyncListener
from sync.queue import SyncQueue

__all__ = [
    'ListenerGroup',
    'Resolution',
    'SyncListener',
    'SyncQueue',
    'settle',
]
