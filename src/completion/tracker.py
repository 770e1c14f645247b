"""
Completion tracking for LayerSync.

Read-side aggregator over the completion event stream. Statistics are always
recomputed from the stored events; there are no counters to drift.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from database.base import StorageBackend
from models.records import CompletionAction, CompletionEvent
from sync.listeners import SyncListener

logger = logging.getLogger(__name__)

_VALUE_ACTIONS = (CompletionAction.VALIDATED, CompletionAction.MERGED, CompletionAction.ENRICHED)


@dataclass(frozen=True)
class MissionStats:
    mission_id: str
    validated: int = 0
    merged: int = 0
    enriched: int = 0
    total_features: int = 0
    contributors: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class HistoryBucket:
    date: str
    completed: int = 0
    validated: int = 0
    merged: int = 0
    enriched: int = 0


def completion_rate(count: int, total: int) -> float:
    """``count / total``, with an empty total giving 0 rather than an error."""
    return count / max(total, 1)


class CompletionTracker(SyncListener):

    def __init__(self, store: StorageBackend):
        self.store = store

    def on_completion_event(self, event: CompletionEvent) -> None:
        self.record_event(event)

    def record_event(self, event: CompletionEvent) -> bool:
        """Append an event. Returns False for a duplicate delivery."""
        recorded = self.store.append_event(event)
        if recorded:
            logger.debug(f"Recorded {event.action.value} for item {event.item_id}")
        else:
            logger.info(f"Ignored duplicate completion event for item {event.item_id}")
        return recorded

    def get_stats_by_mission(self, mission_id: str) -> MissionStats:
        counts = {action: 0 for action in _VALUE_ACTIONS}
        contributors: Dict[str, int] = {}
        features = set()

        for event in self.store.get_events(mission_id):
            features.add(event.item_id)
            contributors[event.user_id] = contributors.get(event.user_id, 0) + 1
            if event.action in counts:
                counts[event.action] += 1

        return MissionStats(
            mission_id=mission_id,
            validated=counts[CompletionAction.VALIDATED],
            merged=counts[CompletionAction.MERGED],
            enriched=counts[CompletionAction.ENRICHED],
            total_features=len(features),
            contributors=contributors,
        )

    def get_completion_stats(self, mission_id: str) -> Dict[str, Union[int, float]]:
        stats = self.get_stats_by_mission(mission_id)
        completed = stats.validated + stats.merged + stats.enriched
        total = stats.total_features
        return {
            "completed": completed,
            "validated": stats.validated,
            "merged": stats.merged,
            "enriched": stats.enriched,
            "completionRate": completion_rate(completed, total),
            "validationRate": completion_rate(stats.validated, total),
            "mergeRate": completion_rate(stats.merged, total),
            "enrichmentRate": completion_rate(stats.enriched, total),
        }

    def get_completion_history(self, mission_id: str, days: int = 30,
                               now: Optional[datetime] = None) -> List[HistoryBucket]:
        """Exactly ``days`` 24-hour buckets ending at ``now``, oldest first.

        A bucket covers ``(end - 24h, end]`` and is labelled with the date its
        window starts on.
        """
        if days < 0:
            raise ValueError("days must not be negative")

        now = now or datetime.now()
        day = timedelta(days=1)
        events = self.store.get_events(mission_id)
        history = []

        for i in range(days - 1, -1, -1):
            end = now - i * day
            start = end - day
            counts = {action: 0 for action in _VALUE_ACTIONS}
            completed = 0
            for event in events:
                if not start < event.timestamp <= end:
                    continue
                if event.action in counts:
                    counts[event.action] += 1
                if event.action != CompletionAction.MODIFIED:
                    completed += 1
            history.append(HistoryBucket(
                date=start.date().isoformat(),
                completed=completed,
                validated=counts[CompletionAction.VALIDATED],
                merged=counts[CompletionAction.MERGED],
                enriched=counts[CompletionAction.ENRICHED],
            ))

        return history

    def get_feature_history(self, item_id: str) -> List[CompletionEvent]:
        return [e for e in self.store.get_events() if e.item_id == item_id]

    def get_feature_status(self, item_id: str) -> Optional[CompletionEvent]:
        history = self.get_feature_history(item_id)
        return history[-1] if history else None

    def get_features_by_status(self, action: Union[CompletionAction, str],
                               mission_id: Optional[str] = None) -> List[str]:
        """Items whose latest recorded action is ``action``."""
        action = CompletionAction(action)
        latest: Dict[str, CompletionAction] = {}
        for event in self.store.get_events(mission_id):
            latest[event.item_id] = event.action
        return [item_id for item_id, last in latest.items() if last == action]
