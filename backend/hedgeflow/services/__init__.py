"""
Services Layer
Hedgeflow Options Engine

Time source and storage around the strategy engines:
    - SchedulerService / due_entry_points: minute cadence dispatch
    - WriteBehindQueue: throttled trade ledger persistence
"""

from hedgeflow.services.persistence import (
    InMemoryPersistenceSink,
    PersistenceSink,
    SqlPersistenceSink,
    WriteBehindQueue,
)
from hedgeflow.services.scheduler import EntryPoint, SchedulerService, due_entry_points


__all__ = [
    "PersistenceSink",
    "InMemoryPersistenceSink",
    "SqlPersistenceSink",
    "WriteBehindQueue",
    "EntryPoint",
    "SchedulerService",
    "due_entry_points",
]
