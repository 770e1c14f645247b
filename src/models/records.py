from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from ulid import ULID

from roles.config import DeviceType, MobilityClass, Role


class ItemStatus(str, Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    CONFLICT = "CONFLICT"
    ERROR = "ERROR"


class EntryStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CompletionAction(str, Enum):
    VALIDATED = "validated"
    MERGED = "merged"
    ENRICHED = "enriched"
    MODIFIED = "modified"


class FailureKind(str, Enum):
    TRANSFER = "transfer"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"  # awaiting a manual decision
    CONFLICT_REJECTED = "conflict_rejected"  # stored version kept
    PERMISSION = "permission"


class ConflictDecision(str, Enum):
    KEEP_LOCAL = "keepLocal"
    USE_REMOTE = "useRemote"
    MERGE = "merge"


class ResolutionOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PENDING = "pending"


class Record(BaseModel):
    # Stored and served with camelCase keys, used with snake_case in Python.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Identity(Record):
    user_id: str
    role: Role


class User(Record):
    user_id: str = Field(default_factory=lambda: f"u_{ULID.from_datetime(datetime.now())}")
    role: Role = Role.USER
    created_at: datetime = Field(default_factory=lambda: datetime.now())

    def identity(self) -> Identity:
        return Identity(user_id=self.user_id, role=self.role)


class Device(Record):
    device_id: str = Field(default_factory=lambda: f"d_{ULID.from_datetime(datetime.now())}")
    user_id: str
    device_name: str = ""
    device_type: DeviceType
    mobility: MobilityClass  # copied from the owner's role at registration
    is_online: bool = True
    is_approved: bool = True
    last_seen: datetime = Field(default_factory=lambda: datetime.now())
    created_at: datetime = Field(default_factory=lambda: datetime.now())


class AuditEntry(Record):
    timestamp: datetime = Field(default_factory=lambda: datetime.now())
    action: str
    message: str
    entry_id: Optional[str] = None


class SyncableItem(Record):
    item_id: str = Field(default_factory=lambda: f"i_{ULID.from_datetime(datetime.now())}")
    owner_id: str
    name: str = ""
    mission_id: Optional[str] = None
    version: int = 1
    status: ItemStatus = ItemStatus.PENDING
    last_author_device_id: Optional[str] = None
    last_author_role: Optional[Role] = None
    last_modified_at: datetime = Field(default_factory=lambda: datetime.now())
    last_written_at: Optional[datetime] = None  # when the stored version was authored
    pending_conflict_entry_id: Optional[str] = None
    queued_from: Optional[ItemStatus] = None  # status to restore if the queue empties
    audit: List[AuditEntry] = Field(default_factory=list)

    def add_audit(self, action: str, message: str, entry_id: Optional[str] = None) -> AuditEntry:
        entry = AuditEntry(action=action, message=message, entry_id=entry_id)
        self.audit.append(entry)
        return entry


class SyncQueueEntry(Record):
    entry_id: str = Field(default_factory=lambda: f"q_{ULID.from_datetime(datetime.now())}")
    item_id: str
    source_device_id: str
    target_device_id: Optional[str] = None
    status: EntryStatus = EntryStatus.PENDING
    base_version: int
    sequence: int = 0
    action: CompletionAction = CompletionAction.MODIFIED
    created_at: datetime = Field(default_factory=lambda: datetime.now())
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    resolution: Optional[ResolutionOutcome] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (EntryStatus.COMPLETED, EntryStatus.FAILED)


class CompletionEvent(Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    event_id: str = Field(default_factory=lambda: f"e_{ULID.from_datetime(datetime.now())}")
    item_id: str
    mission_id: Optional[str] = None
    user_id: str
    action: CompletionAction
    timestamp: datetime = Field(default_factory=lambda: datetime.now())
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def identity(self) -> Tuple[str, str, str]:
        """Duplicate deliveries share this key and are recorded once."""
        return (self.item_id, self.action.value, self.timestamp.isoformat())
