"""Error taxonomy for LayerSync.

Admission rejections are not part of this module: ``can_add_device`` returns
a structured ``AdmissionResult`` instead of raising.
"""

from typing import Optional


class LayerSyncError(Exception):
    """Base class for every error raised by the sync core."""


class Unauthenticated(LayerSyncError):
    """No authenticated identity was supplied."""


class PermissionDenied(LayerSyncError):
    """The identity lacks the permission or role required."""


class UnknownRole(LayerSyncError, ValueError):

    def __init__(self, role: object):
        super().__init__(f"Unknown role: {role!r}")
        self.role = role


class _UnknownReference(LayerSyncError, LookupError):
    kind = "record"

    def __init__(self, ref_id: str):
        super().__init__(f"Unknown {self.kind}: {ref_id}")
        self.ref_id = ref_id


class UnknownUser(_UnknownReference):
    kind = "user"


class UnknownDevice(_UnknownReference):
    kind = "device"


class UnknownItem(_UnknownReference):
    kind = "item"


class UnknownEntry(_UnknownReference):
    kind = "queue entry"


class InvalidTransition(LayerSyncError):
    """A queue entry was asked to move to a state it cannot reach."""

    def __init__(self, entry_id: str, current: str, requested: str):
        super().__init__(
            f"Entry {entry_id} cannot go from {current} to {requested}")
        self.entry_id = entry_id
        self.current = current
        self.requested = requested


class ConflictDetected(LayerSyncError):
    """The source device wrote against a stale version of the item.

    Not fatal: the caller is expected to run conflict resolution.
    """

    def __init__(self, item_id: str, base_version: int, current_version: int):
        super().__init__(
            f"Item {item_id} changed since version {base_version} "
            f"(now {current_version})")
        self.item_id = item_id
        self.base_version = base_version
        self.current_version = current_version


class ResolutionPending(LayerSyncError):
    """The item waits for a manual conflict decision."""

    def __init__(self, item_id: str, entry_id: Optional[str] = None):
        super().__init__(f"Item {item_id} awaits a manual conflict decision")
        self.item_id = item_id
        self.entry_id = entry_id
