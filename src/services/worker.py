import logging
import threading
from typing import Callable, List, Optional

from models.errors import InvalidTransition
from models.records import FailureKind, SyncQueueEntry
from sync.queue import SyncQueue

logger = logging.getLogger(__name__)


class SyncWorker:
    """Pool of daemon threads draining the sync queue.

    Each thread takes the next schedulable entry, hands it to ``transfer``
    (the excluded transport layer) and settles it. A transfer error fails the
    entry; an IN_PROGRESS entry always reaches a terminal state before the
    thread picks up more work.
    """

    def __init__(
        self,
        queue: SyncQueue,
        transfer: Optional[Callable[[SyncQueueEntry], None]] = None,
        workers: int = 2,
        poll_interval: float = 0.25,
        auto_start: bool = False,
    ) -> None:
        self.queue = queue
        self.transfer = transfer or self._default_transfer
        self.workers = workers
        self.poll_interval = poll_interval
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._is_running = False
        self.processed = 0

        if auto_start:
            self.start()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        with self._lock:
            if self._is_running:
                logger.debug("SyncWorker already running")
                return

            self._stop_event.clear()
            self._is_running = True
            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._worker_loop, name=f"sync-worker-{index}", daemon=True)
                thread.start()
                self._threads.append(thread)
            logger.info(f"SyncWorker started with {self.workers} thread(s)")

    def stop(self) -> None:
        with self._lock:
            if not self._is_running:
                return

            self._is_running = False
            self._stop_event.set()

        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []
        logger.info("SyncWorker stopped")

    def run_forever(self) -> None:
        try:
            if not self._is_running:
                self.start()

            while not self._stop_event.wait(timeout=self.poll_interval):
                continue
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def run_once(self) -> Optional[SyncQueueEntry]:
        """Process at most one entry on the calling thread."""
        entry = self.queue.dequeue_next()
        if entry is not None:
            self._handle(entry)
        return entry

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                entry = self.run_once()
            except Exception as e:
                logger.exception(f"Sync worker error: {e}")
                entry = None

            if entry is None:
                self._stop_event.wait(self.poll_interval)

    def _handle(self, entry: SyncQueueEntry) -> None:
        try:
            self.transfer(entry)
        except Exception as e:
            logger.error(f"Transfer failed for {entry.entry_id}: {e}")
            self._abandon(entry, e)
        else:
            try:
                resolution = self.queue.process(entry.entry_id)
            except Exception as e:
                logger.exception(f"Settling {entry.entry_id} failed: {e}")
                self._abandon(entry, e)
            else:
                logger.debug(f"Settled {entry.entry_id}: {resolution.outcome.value}")
        with self._lock:
            self.processed += 1

    def _abandon(self, entry: SyncQueueEntry, error: Exception) -> None:
        """Fail an entry this worker could not settle, unless it already was."""
        try:
            self.queue.mark_failed(entry.entry_id, FailureKind.TRANSFER, str(error))
        except InvalidTransition:
            logger.debug(f"{entry.entry_id} already settled")
        except Exception as e:
            logger.error(f"Could not fail {entry.entry_id}: {e}")

    @staticmethod
    def _default_transfer(entry: SyncQueueEntry) -> None:
        pass

    def __enter__(self) -> "SyncWorker":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
