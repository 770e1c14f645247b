"""
Sync queue state machine.

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED

Every scheduling decision, terminal transition, conflict resolution and
version bump runs under the store's "queue" lock, which is what guarantees at
most one IN_PROGRESS entry per item across every process sharing the store.
The lock is not re-entrant, so public methods take it once and work through
the underscored helpers. Listeners are notified after the lock is released.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple, Union

from database.base import StorageBackend
from models.errors import (
    ConflictDetected,
    InvalidTransition,
    PermissionDenied,
    ResolutionPending,
    UnknownDevice,
    UnknownEntry,
    UnknownItem,
    UnknownUser,
)
from models.records import (
    AuditEntry,
    CompletionAction,
    CompletionEvent,
    ConflictDecision,
    EntryStatus,
    FailureKind,
    Identity,
    ItemStatus,
    ResolutionOutcome,
    SyncableItem,
    SyncQueueEntry,
    User,
)
from roles.config import (
    ConflictStrategy,
    Permission,
    Role,
    authorize,
    compare_roles,
    get_role_profile,
    has_permission,
)
from sync.conflicts import Resolution, settle
from sync.listeners import ListenerGroup, SyncListener

logger = logging.getLogger(__name__)

Notification = Tuple[str, tuple]


class SyncQueue:

    def __init__(self, store: StorageBackend, listeners: Iterable[SyncListener] = ()):
        self.store = store
        self.listeners = ListenerGroup(listeners)
        self._lock = store.lock("queue")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_entry(self, entry_id: str) -> SyncQueueEntry:
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise UnknownEntry(entry_id)
        return entry

    def _require_item(self, item_id: str) -> SyncableItem:
        item = self.store.get_item(item_id)
        if item is None:
            raise UnknownItem(item_id)
        return item

    def _device_owner(self, device_id: str) -> User:
        device = self.store.get_device(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        user = self.store.get_user(device.user_id)
        if user is None:
            raise UnknownUser(device.user_id)
        return user

    def _source_role(self, entry: SyncQueueEntry) -> Optional[Role]:
        device = self.store.get_device(entry.source_device_id)
        user = self.store.get_user(device.user_id) if device else None
        return user.role if user else None

    def _priority(self, entry: SyncQueueEntry) -> int:
        role = self._source_role(entry)
        return get_role_profile(role).sync_priority if role else 0

    def get_entry(self, entry_id: str) -> SyncQueueEntry:
        return self._require_entry(entry_id)

    def get_item(self, item_id: str) -> SyncableItem:
        return self._require_item(item_id)

    def get_audit(self, item_id: str) -> List[AuditEntry]:
        return list(self._require_item(item_id).audit)

    def entries(self, status: Optional[EntryStatus] = None) -> List[SyncQueueEntry]:
        return self.store.get_entries(status)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def enqueue(
        self,
        item_id: str,
        source_device_id: str,
        target_device_id: Optional[str] = None,
        base_version: Optional[int] = None,
        action: Union[CompletionAction, str] = CompletionAction.MODIFIED,
    ) -> SyncQueueEntry:
        """Queue a write from ``source_device_id`` as a PENDING entry.

        The device owner needs SYNC permission and must either own the item or
        outrank its owner. ``base_version`` is the item version the device
        last saw; it defaults to the current version.
        """
        with self._lock:
            entry, _ = self._add_entry(item_id, source_device_id, target_device_id, base_version, action)
        logger.info(f"Queued {entry.entry_id} for item {item_id} from {source_device_id}")
        return entry

    def enqueue_and_claim(
        self,
        item_id: str,
        source_device_id: str,
        target_device_id: Optional[str] = None,
        base_version: Optional[int] = None,
        action: Union[CompletionAction, str] = CompletionAction.MODIFIED,
    ) -> Optional[SyncQueueEntry]:
        """Queue a write and start it in the same critical section.

        No consumer can take the entry in between. Returns None, with nothing
        left queued, when the item has an entry in flight or awaits a manual
        decision.
        """
        with self._lock:
            entry, item = self._add_entry(item_id, source_device_id, target_device_id, base_version, action)
            if self._is_blocked(item):
                self._remove_pending(entry)
                logger.info(f"Item {item_id} is busy; nothing queued")
                return None
            self._start(entry, item)
        logger.info(f"Queued and started {entry.entry_id} for item {item_id} from {source_device_id}")
        return entry

    def withdraw(self, entry_id: str) -> SyncQueueEntry:
        """Remove a PENDING entry.

        When it was the item's last queued entry the item goes back to the
        status it had before being queued.
        """
        with self._lock:
            entry = self._require_entry(entry_id)
            if entry.status != EntryStatus.PENDING:
                raise InvalidTransition(entry_id, entry.status.value, "WITHDRAWN")
            self._remove_pending(entry)
        logger.info(f"Withdrew {entry_id}")
        return entry

    def retry(self, entry_id: str) -> SyncQueueEntry:
        """Queue a FAILED entry again with its original base version."""
        with self._lock:
            entry = self._require_entry(entry_id)
            if entry.status != EntryStatus.FAILED:
                raise InvalidTransition(entry_id, entry.status.value, EntryStatus.PENDING.value)
            item = self._require_item(entry.item_id)
            if item.status == ItemStatus.CONFLICT:
                raise ResolutionPending(item.item_id, item.pending_conflict_entry_id)
            retried, _ = self._add_entry(
                entry.item_id,
                entry.source_device_id,
                entry.target_device_id,
                entry.base_version,
                entry.action,
            )
        logger.info(f"Retrying {entry_id} as {retried.entry_id}")
        return retried

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def dequeue_next(self) -> Optional[SyncQueueEntry]:
        """Start the highest-priority schedulable entry.

        Priority is the source owner's role sync priority, ties broken by
        creation order. Items with an entry in flight or awaiting a manual
        decision are skipped. Entries whose item has disappeared are failed
        with a not-found error on the way.
        """
        notes: List[Notification] = []
        started = None
        with self._lock:
            pending = self.store.get_entries(EntryStatus.PENDING)
            busy = {e.item_id for e in self.store.get_entries(EntryStatus.IN_PROGRESS)}
            pending.sort(key=lambda e: (-self._priority(e), e.sequence))

            for entry in pending:
                if entry.item_id in busy:
                    continue
                item = self.store.get_item(entry.item_id)
                if item is None:
                    self._start(entry, None)
                    self._fail(entry, None, FailureKind.NOT_FOUND, f"item {entry.item_id} not found", notes)
                    continue
                if item.status == ItemStatus.CONFLICT:
                    continue
                self._start(entry, item)
                started = entry
                break
        self._flush(notes)
        return started

    def claim(self, entry_id: str) -> Optional[SyncQueueEntry]:
        """Start one specific PENDING entry.

        Returns None when its item already has an entry in flight or awaits a
        manual decision. An entry whose item has disappeared comes back FAILED.
        """
        notes: List[Notification] = []
        with self._lock:
            entry = self._require_entry(entry_id)
            if entry.status != EntryStatus.PENDING:
                raise InvalidTransition(entry_id, entry.status.value, EntryStatus.IN_PROGRESS.value)
            if any(e.item_id == entry.item_id for e in self.store.get_entries(EntryStatus.IN_PROGRESS)):
                return None
            item = self.store.get_item(entry.item_id)
            if item is not None and item.status == ItemStatus.CONFLICT:
                return None
            self._start(entry, item)
            if item is None:
                self._fail(entry, None, FailureKind.NOT_FOUND, f"item {entry.item_id} not found", notes)
        self._flush(notes)
        return entry

    def detect_conflict(self, entry_id: str) -> bool:
        """True when the item moved on since the version the source device saw."""
        with self._lock:
            entry = self._require_entry(entry_id)
            item = self._require_item(entry.item_id)
            return entry.base_version != item.version

    def mark_completed(self, entry_id: str) -> SyncQueueEntry:
        """Finish an IN_PROGRESS entry.

        Raises ``ConflictDetected`` when the write is stale; the entry stays
        IN_PROGRESS so the caller can run ``resolve_conflict``.
        """
        notes: List[Notification] = []
        with self._lock:
            entry = self._require_in_progress(entry_id, EntryStatus.COMPLETED)
            item = self._item_or_fail(entry, notes)
            if item is not None:
                if entry.base_version != item.version:
                    raise ConflictDetected(item.item_id, entry.base_version, item.version)
                self._complete(entry, item, notes)
        self._flush(notes)
        if item is None:
            raise UnknownItem(entry.item_id)
        return entry

    def mark_failed(
        self,
        entry_id: str,
        error_kind: Union[FailureKind, str] = FailureKind.TRANSFER,
        error: Optional[str] = None,
    ) -> SyncQueueEntry:
        notes: List[Notification] = []
        with self._lock:
            entry = self._require_in_progress(entry_id, EntryStatus.FAILED)
            item = self.store.get_item(entry.item_id)
            self._fail(entry, item, FailureKind(error_kind), error, notes)
        self._flush(notes)
        return entry

    def resolve_conflict(
        self,
        entry_id: str,
        strategy_override: Optional[Union[ConflictStrategy, str]] = None,
    ) -> Resolution:
        """Settle a stale IN_PROGRESS entry.

        The strategy is the item owner's unless overridden. An accepted write
        completes the entry; a rejected one fails it and keeps the stored
        version; a pending one fails it and parks the item in CONFLICT until
        ``resolve_layer_conflict`` is called.
        """
        notes: List[Notification] = []
        with self._lock:
            entry = self._require_in_progress(entry_id, "RESOLVED")
            item = self._item_or_fail(entry, notes)
            if item is None:
                resolution = None
            else:
                resolution = self._settle(entry, item, strategy_override, notes)
        self._flush(notes)
        if resolution is None:
            raise UnknownItem(entry.item_id)
        return resolution


    def process(self, entry_id: str) -> Resolution:
        """Complete an IN_PROGRESS entry, resolving a conflict first if needed."""
        # An IN_PROGRESS entry is the only writer of its item, so the
        # staleness check cannot go out of date before the call below.
        with self._lock:
            entry = self._require_in_progress(entry_id, EntryStatus.COMPLETED)
            item = self.store.get_item(entry.item_id)
            stale = item is not None and entry.base_version != item.version

        if stale:
            return self.resolve_conflict(entry_id)
        entry = self.mark_completed(entry_id)
        return Resolution(entry.resolution or ResolutionOutcome.ACCEPTED, None,
                          self._source_role(entry), "no conflict")

    def resolve_layer_conflict(
        self,
        item_id: str,
        decision: Union[ConflictDecision, str],
        decided_by: Optional[Identity] = None,
    ) -> Optional[SyncQueueEntry]:
        """Apply a human decision to an item parked in CONFLICT.

        ``keepLocal`` keeps the stored version. ``useRemote`` and ``merge``
        queue the conflicting write again against the current version and
        return the new entry.
        """
        decision = ConflictDecision(decision)
        if decided_by is not None:
            authorize(decided_by, Permission.WRITE)

        with self._lock:
            item = self._require_item(item_id)
            if item.status != ItemStatus.CONFLICT or not item.pending_conflict_entry_id:
                raise InvalidTransition(item_id, item.status.value, f"decision {decision.value}")
            conflicted = self._require_entry(item.pending_conflict_entry_id)

            item.pending_conflict_entry_id = None
            item.add_audit("conflict_decision", f"Conflict resolved using strategy: {decision.value}",
                           conflicted.entry_id)

            if decision == ConflictDecision.KEEP_LOCAL:
                item.status = ItemStatus.SYNCED
                self.store.save_item(item)
                logger.info(f"Item {item_id}: kept stored version {item.version}")
                return None

            retry = SyncQueueEntry(
                item_id=item_id,
                source_device_id=conflicted.source_device_id,
                target_device_id=conflicted.target_device_id,
                base_version=item.version,
                sequence=self.store.next_sequence(),
                action=CompletionAction.MERGED if decision == ConflictDecision.MERGE else conflicted.action,
            )
            item.status = ItemStatus.PENDING
            item.queued_from = ItemStatus.SYNCED
            self.store.save_entry(retry)
            self.store.save_item(item)

        logger.info(f"Item {item_id}: {decision.value} queued as {retry.entry_id}")
        return retry

    # ------------------------------------------------------------------
    # Transitions (lock held)
    # ------------------------------------------------------------------

    def _require_in_progress(self, entry_id: str, requested) -> SyncQueueEntry:
        entry = self._require_entry(entry_id)
        if entry.status != EntryStatus.IN_PROGRESS:
            raise InvalidTransition(entry_id, entry.status.value, getattr(requested, "value", requested))
        return entry

    def _add_entry(
        self,
        item_id: str,
        source_device_id: str,
        target_device_id: Optional[str],
        base_version: Optional[int],
        action: Union[CompletionAction, str],
    ) -> Tuple[SyncQueueEntry, SyncableItem]:
        user = self._device_owner(source_device_id)
        if target_device_id is not None and self.store.get_device(target_device_id) is None:
            raise UnknownDevice(target_device_id)
        item = self._require_item(item_id)

        if not has_permission(user.role, Permission.SYNC):
            raise PermissionDenied(f"Role {user.role.value} lacks SYNC permission")
        if item.owner_id != user.user_id:
            owner = self.store.get_user(item.owner_id)
            if owner is not None and compare_roles(user.role, owner.role) <= 0:
                raise PermissionDenied(
                    f"User {user.user_id} cannot sync item {item_id} owned by {item.owner_id}")

        entry = SyncQueueEntry(
            item_id=item_id,
            source_device_id=source_device_id,
            target_device_id=target_device_id,
            base_version=item.version if base_version is None else base_version,
            sequence=self.store.next_sequence(),
            action=CompletionAction(action),
        )
        self.store.save_entry(entry)

        if item.status in (ItemStatus.SYNCED, ItemStatus.ERROR):
            item.queued_from = item.status
            item.status = ItemStatus.PENDING
        item.add_audit("queued", "File added to sync queue", entry.entry_id)
        self.store.save_item(item)
        return entry, item

    def _is_blocked(self, item: SyncableItem) -> bool:
        if item.status == ItemStatus.CONFLICT:
            return True
        return any(e.item_id == item.item_id for e in self.store.get_entries(EntryStatus.IN_PROGRESS))

    def _remove_pending(self, entry: SyncQueueEntry) -> None:
        self.store.delete_entry(entry.entry_id)
        item = self.store.get_item(entry.item_id)
        if item is None:
            return
        queued = any(e.item_id == item.item_id for e in self.store.get_entries(EntryStatus.PENDING))
        if item.status == ItemStatus.PENDING and not queued and item.queued_from is not None:
            item.status = item.queued_from
            item.queued_from = None
        item.add_audit("withdrawn", f"Removed from sync queue, status {item.status.value}", entry.entry_id)
        self.store.save_item(item)

    def _item_or_fail(self, entry: SyncQueueEntry, notes: List[Notification]) -> Optional[SyncableItem]:
        """The entry's item, or None after failing the entry with not-found."""
        item = self.store.get_item(entry.item_id)
        if item is None:
            self._fail(entry, None, FailureKind.NOT_FOUND, f"item {entry.item_id} not found", notes)
        return item

    def _settle(
        self,
        entry: SyncQueueEntry,
        item: SyncableItem,
        strategy_override: Optional[Union[ConflictStrategy, str]],
        notes: List[Notification],
    ) -> Resolution:
        incoming_role = self._source_role(entry) or Role.USER
        if entry.base_version == item.version:
            resolution = Resolution(ResolutionOutcome.ACCEPTED, None, incoming_role, "no conflict")
            self._complete(entry, item, notes)
            return resolution

        owner = self.store.get_user(item.owner_id)
        owner_role = owner.role if owner else Role.USER
        if strategy_override is not None:
            strategy = ConflictStrategy(strategy_override)
        else:
            strategy = get_role_profile(owner_role).conflict_strategy
        stored_role = item.last_author_role or owner_role
        # Both sides are dated by when their write was queued.
        stored_at = item.last_written_at or item.last_modified_at

        resolution = settle(strategy, incoming_role, entry.created_at, stored_role, stored_at)
        entry.resolution = resolution.outcome
        message = f"Conflict ({strategy.value}): {resolution.outcome.value}, {resolution.reason}"

        if resolution.outcome == ResolutionOutcome.ACCEPTED:
            item.add_audit("conflict_resolved", message, entry.entry_id)
            self._complete(entry, item, notes)
        elif resolution.outcome == ResolutionOutcome.REJECTED:
            self._fail(entry, item, FailureKind.CONFLICT_REJECTED, message, notes)
        else:
            self._fail(entry, item, FailureKind.CONFLICT, message, notes)

        logger.info(f"Item {item.item_id}: {message}")
        notes.append(("on_conflict", (entry, item, resolution)))
        return resolution

    def _start(self, entry: SyncQueueEntry, item: Optional[SyncableItem]) -> None:
        entry.status = EntryStatus.IN_PROGRESS
        entry.started_at = datetime.now()
        self.store.save_entry(entry)
        if item is not None:
            item.status = ItemStatus.SYNCING
            item.queued_from = None
            self.store.save_item(item)
        logger.debug(f"Started {entry.entry_id} for item {entry.item_id}")

    def _complete(self, entry: SyncQueueEntry, item: SyncableItem, notes: List[Notification]) -> None:
        now = datetime.now()
        source = self.store.get_device(entry.source_device_id)

        item.version += 1
        item.status = ItemStatus.SYNCED
        item.last_author_device_id = entry.source_device_id
        item.last_author_role = self._source_role(entry)
        item.last_modified_at = now
        item.last_written_at = entry.created_at
        item.add_audit("completed", f"File synchronized (version {item.version})", entry.entry_id)

        entry.status = EntryStatus.COMPLETED
        entry.completed_at = now
        if entry.resolution is None:
            entry.resolution = ResolutionOutcome.ACCEPTED

        self.store.save_item(item)
        self.store.save_entry(entry)

        event = CompletionEvent(
            item_id=item.item_id,
            mission_id=item.mission_id,
            user_id=source.user_id if source else "",
            action=entry.action,
            timestamp=now,
            metadata={
                "entryId": entry.entry_id,
                "version": item.version,
                "sourceDeviceId": entry.source_device_id,
                "targetDeviceId": entry.target_device_id,
            },
        )
        logger.info(f"Completed {entry.entry_id}: item {item.item_id} now at version {item.version}")
        notes.append(("on_entry_completed", (entry, item)))
        notes.append(("on_completion_event", (event,)))

    def _fail(self, entry: SyncQueueEntry, item: Optional[SyncableItem], kind: FailureKind,
              error: Optional[str], notes: List[Notification]) -> None:
        entry.status = EntryStatus.FAILED
        entry.completed_at = datetime.now()
        entry.error_kind = kind
        entry.error = error or kind.value
        self.store.save_entry(entry)

        if item is not None:
            if kind == FailureKind.CONFLICT:
                item.status = ItemStatus.CONFLICT
                item.pending_conflict_entry_id = entry.entry_id
            elif kind == FailureKind.CONFLICT_REJECTED:
                item.status = ItemStatus.SYNCED
            else:
                item.status = ItemStatus.ERROR
            item.add_audit("failed", f"Status changed to {item.status.value}: {entry.error}", entry.entry_id)
            self.store.save_item(item)

        logger.warning(f"Failed {entry.entry_id} ({kind.value}): {entry.error}")
        notes.append(("on_entry_failed", (entry, item)))

    def _flush(self, notes: List[Notification]) -> None:
        for hook, args in notes:
            self.listeners.notify(hook, *args)
