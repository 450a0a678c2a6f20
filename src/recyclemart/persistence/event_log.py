"""Audit log of marketplace actions, kept beside the store.

The store holds current state; the audit log records how it got there.
Each job transition, ledger movement and reputation change becomes one
AuditEvent, written as a JSON line. Lines are never rewritten.

Every event carries a SHA-256 digest of its own content. Reopening a
log recomputes the digests, so an edited line or a line pasted in twice
stops the log from loading instead of silently corrupting history.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class EventKind(str, enum.Enum):
    """What happened."""
    JOB_CREATED = "job_created"
    JOB_CLAIMED = "job_claimed"
    JOB_COMPLETED = "job_completed"
    JOB_DISPUTED = "job_disputed"
    DISPUTE_RESPONDED = "dispute_responded"
    DISPUTE_ESCALATED = "dispute_escalated"
    DISPUTE_RESOLVED = "dispute_resolved"
    ESCROW_LOCKED = "escrow_locked"
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_FAILED = "payment_failed"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"
    IDENTITY_CREATED = "identity_created"
    CREDENTIAL_ISSUED = "credential_issued"
    REPUTATION_UPDATED = "reputation_updated"
    DATA_IMPORTED = "data_imported"
    DATA_CLEARED = "data_cleared"


def _digest(body: dict[str, Any]) -> str:
    encoded = json.dumps(body, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return "sha256:" + hashlib.sha256(encoded).hexdigest()


@dataclass(frozen=True)
class AuditEvent:
    """One recorded action. Build with AuditEvent.record()."""
    event_id: str
    kind: EventKind
    actor: str
    occurred_utc: str
    payload: dict[str, Any] = field(default_factory=dict)
    digest: str = ""

    @classmethod
    def record(
        cls,
        kind: EventKind,
        actor: str,
        payload: dict[str, Any],
        occurred: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> AuditEvent:
        stamp = (occurred or datetime.now(timezone.utc)).strftime(_TIMESTAMP_FORMAT)
        event = cls(
            event_id=event_id or f"evt_{uuid.uuid4().hex}",
            kind=kind,
            actor=actor,
            occurred_utc=stamp,
            payload=dict(payload),
        )
        return replace(event, digest=_digest(event._body()))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        """Rebuild a stored event. Raises ValueError if its digest is wrong."""
        event = cls(
            event_id=data["event_id"],
            kind=EventKind(data["kind"]),
            actor=data["actor"],
            occurred_utc=data["occurred_utc"],
            payload=data.get("payload") or {},
            digest=data.get("digest", ""),
        )
        expected = _digest(event._body())
        if event.digest != expected:
            raise ValueError(
                f"Audit event {event.event_id} was altered "
                f"(digest {event.digest or 'missing'}, content hashes to {expected})"
            )
        return event

    def _body(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "actor": self.actor,
            "occurred_utc": self.occurred_utc,
            "payload": self.payload,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self._body(), "digest": self.digest}


class EventLog:
    """Thread-safe audit log, in memory or backed by a JSONL file.

    Usage:
        log = EventLog(Path("data/events.jsonl"))
        log.append(AuditEvent.record(EventKind.JOB_CREATED, poster, {"job_id": job_id}))
        claimed = log.events(kind=EventKind.JOB_CLAIMED)
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._entries: list[AuditEvent] = []
        self._seen: set[str] = set()
        if self._path is not None and self._path.exists():
            for event in self._replay(self._path):
                self._remember(event)

    def append(self, event: AuditEvent) -> None:
        """Record event. Raises ValueError if its id was already logged."""
        with self._lock:
            if event.event_id in self._seen:
                raise ValueError(f"Duplicate audit event: {event.event_id}")
            if self._path is not None:
                line = json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            self._remember(event)

    def events(
        self,
        kind: Optional[EventKind] = None,
        job_id: Optional[str] = None,
    ) -> list[AuditEvent]:
        return [
            e for e in self._entries
            if (kind is None or e.kind == kind)
            and (job_id is None or e.payload.get("job_id") == job_id)
        ]

    def recent(self, limit: int = 10) -> list[AuditEvent]:
        """The newest `limit` events, oldest first."""
        if limit <= 0:
            return []
        return self._entries[-limit:]

    def latest(self) -> Optional[AuditEvent]:
        return self._entries[-1] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    def _remember(self, event: AuditEvent) -> None:
        self._entries.append(event)
        self._seen.add(event.event_id)

    def _replay(self, path: Path) -> Iterator[AuditEvent]:
        seen: set[str] = set()
        with path.open("r", encoding="utf-8") as f:
            for number, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    event = AuditEvent.from_dict(json.loads(raw))
                except ValueError as e:
                    raise ValueError(f"{path}:{number}: {e}") from e
                if event.event_id in seen:
                    raise ValueError(
                        f"{path}:{number}: audit event {event.event_id} appears twice"
                    )
                seen.add(event.event_id)
                yield event
