"""
Mailbox synchronization.

Provides the sync engine and the components it composes: retry handling,
folder ordering, checkpoints, materialization and reconciliation.
"""

from mailmirror.sync.engine import SyncEngine, SyncOptions, SyncResult, SyncStatus
from mailmirror.sync.retry import RetryHandler, RetryPolicy, SyncCancelledError

__all__ = [
    "SyncEngine",
    "SyncOptions",
    "SyncResult",
    "SyncStatus",
    "RetryHandler",
    "RetryPolicy",
    "SyncCancelledError",
]
