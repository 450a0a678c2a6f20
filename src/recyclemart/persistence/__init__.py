"""Persistence — the local store and the append-only audit log."""

from recyclemart.persistence.event_log import AuditEvent, EventKind, EventLog
from recyclemart.persistence.store import FileBackend, LocalStore, MemoryBackend

__all__ = [
    "AuditEvent",
    "EventKind",
    "EventLog",
    "FileBackend",
    "LocalStore",
    "MemoryBackend",
]
