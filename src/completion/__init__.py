from completion.tracker import CompletionTracker, HistoryBucket, MissionStats, completion_rate

__all__ = [
    'CompletionTracker',
    'HistoryBucket',
    'MissionStats',
    'completion_rate',
]
