import json
import logging
import threading
from typing import Optional

import mysql.connector
from mysql.connector import Error

from models.records import AuditEntry, CompletionEvent, SyncableItem, SyncQueueEntry
from sync.listeners import SyncListener

logger = logging.getLogger(__name__)


class MySQLOps(SyncListener):
    """Append-only archive of completion events and item audit entries.

    Subscribes to the sync queue; a failed insert is rolled back and logged
    by the listener group without affecting the queue.
    """

    def __init__(self, host: str, user: str, password: str, database: str, port: int = 3306) -> None:
        self.conn = mysql.connector.connect(
            host=host, user=user, password=password, database=database, port=port
        )
        self.cursor = self.conn.cursor(buffered=True)
        # One connection serves every notifying thread.
        self._lock = threading.Lock()

    def close(self) -> None:
        try:
            if self.cursor:
                self.cursor.close()
            if self.conn:
                self.conn.close()
        except Error as e:
            logger.warning(f"Error closing MySQL connection: {e}")

    def insert_completion_event(self, event: CompletionEvent) -> None:
        """
        Insert into completion_event.
        Expects table columns: eventId, itemId, missionId, userId, action, timestamp, metadata
        """
        sql = """
            INSERT INTO completion_event
            (eventId, itemId, missionId, userId, action, timestamp, metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            event.event_id,
            event.item_id,
            event.mission_id,
            event.user_id,
            event.action.value,
            event.timestamp,
            json.dumps(event.metadata),
        )
        self._execute(sql, params)

    def insert_audit_entry(self, item_id: str, audit: AuditEntry) -> None:
        """
        Insert into item_audit.
        Expects table columns: itemId, entryId, action, message, timestamp
        """
        sql = """
            INSERT INTO item_audit
            (itemId, entryId, action, message, timestamp)
            VALUES (%s, %s, %s, %s, %s)
        """
        params = (item_id, audit.entry_id, audit.action, audit.message, audit.timestamp)
        self._execute(sql, params)

    def _execute(self, sql: str, params: tuple) -> None:
        with self._lock:
            try:
                self.cursor.execute(sql, params)
                self.conn.commit()
            except Error:
                self.conn.rollback()
                raise

    # ---- SyncListener ----

    def on_completion_event(self, event: CompletionEvent) -> None:
        self.insert_completion_event(event)

    def on_entry_completed(self, entry: SyncQueueEntry, item: SyncableItem) -> None:
        self._archive_last_audit(item)

    def on_entry_failed(self, entry: SyncQueueEntry, item: Optional[SyncableItem]) -> None:
        self._archive_last_audit(item)

    def _archive_last_audit(self, item: Optional[SyncableItem]) -> None:
        if item is not None and item.audit:
            self.insert_audit_entry(item.item_id, item.audit[-1])
