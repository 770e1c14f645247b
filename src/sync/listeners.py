import logging
from typing import Iterable, List, Optional

from models.records import CompletionEvent, SyncableItem, SyncQueueEntry

logger = logging.getLogger(__name__)


class SyncListener:
    """Observer notified by the sync queue.

    Subclasses override what they need; every hook defaults to a no-op.
    """

    def on_entry_completed(self, entry: SyncQueueEntry, item: SyncableItem) -> None:
        pass

    def on_entry_failed(self, entry: SyncQueueEntry, item: Optional[SyncableItem]) -> None:
        pass

    def on_completion_event(self, event: CompletionEvent) -> None:
        pass

    def on_conflict(self, entry: SyncQueueEntry, item: SyncableItem, resolution) -> None:
        pass


class ListenerGroup:
    """Fans a notification out to every registered listener.

    A failing listener is logged and skipped: observers never decide the
    outcome of a queue transition.
    """

    def __init__(self, listeners: Iterable[object] = ()):
        self._listeners: List[object] = list(listeners)

    def add(self, listener: object) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove(self, listener: object) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def notify(self, hook: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, hook)(*args)
            except Exception as e:
                logger.error(f"Listener {type(listener).__name__}.{hook} failed: {e}")
