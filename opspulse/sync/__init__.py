"""Connector synchronization engine: stores, guards, orchestration, and scheduling."""

from .locks import InProcessLockRegistry, LockRegistry, RedisLockRegistry, build_lock_registry
from .orchestrator import SyncOrchestrator
from .scheduler import ScheduledSyncDriver, is_due
from .stores import CanonicalStore, CredentialStore, SyncHistoryStore

__all__ = [
    "CanonicalStore",
    "CredentialStore",
    "InProcessLockRegistry",
    "LockRegistry",
    "RedisLockRegistry",
    "ScheduledSyncDriver",
    "SyncHistoryStore",
    "SyncOrchestrator",
    "build_lock_registry",
    "is_due",
]
