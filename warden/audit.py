"""
WARDEN Audit Trail

Tamper-evident record of everything published on an EventBus. Each entry
commits to the digest of the entry before it, so editing, dropping or
reordering any entry breaks the chain from that point on.

The trail is an observer: it never feeds back into the governance core.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from warden.core import canonical_digest
from warden.events import Event, EventBus
from warden.hardening import AtomicCounter
from warden.observability import WardenLayer, get_logger

log = get_logger("audit", WardenLayer.AUDIT)

# Fields every event carries that identify who acted and on what.
_ACTOR_FIELDS = ("actor", "controller", "sender", "holder")
_SUBJECT_FIELDS = ("identity", "operation_id", "asset_id", "target")


@dataclass
class AuditEntry:
    """One link in the audit chain."""
    sequence: int
    event_type: str
    event_id: str
    timestamp: str
    actor: str
    subject: str
    payload: Dict[str, Any]
    previous_digest: Optional[str] = None
    entry_digest: str = field(default="")

    def __post_init__(self):
        if not self.entry_digest:
            self.entry_digest = self.compute_digest()

    def compute_digest(self) -> str:
        return canonical_digest({
            "sequence": self.sequence,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "subject": self.subject,
            "payload": self.payload,
            "previous_digest": self.previous_digest,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "subject": self.subject,
            "payload": self.payload,
            "previous_digest": self.previous_digest,
            "entry_digest": self.entry_digest,
        }


def _first_present(payload: Dict[str, Any], names: Tuple[str, ...]) -> str:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return str(value)
    return ""


class AuditTrail:
    """
    Hash-chained log of bus events.

    Example:
        trail = AuditTrail(engine.bus)
        ...
        ok, bad_index = trail.verify_chain()
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()
        self._counter = AtomicCounter(0)
        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        # Lowest priority so application handlers see events first.
        bus.subscribe(priority=-100)(self.record)

    def record(self, event: Event) -> AuditEntry:
        payload = event.to_dict()
        with self._lock:
            previous = self._entries[-1].entry_digest if self._entries else None
            entry = AuditEntry(
                sequence=self._counter.increment(),
                event_type=event.event_type,
                event_id=event.event_id,
                timestamp=event.event_timestamp,
                actor=_first_present(payload, _ACTOR_FIELDS),
                subject=_first_present(payload, _SUBJECT_FIELDS),
                payload=payload,
                previous_digest=previous,
            )
            self._entries.append(entry)
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def head(self) -> Optional[str]:
        """Digest of the newest entry."""
        with self._lock:
            return self._entries[-1].entry_digest if self._entries else None

    def verify_chain(self) -> Tuple[bool, Optional[int]]:
        """
        Check every digest and back-link.

        Returns (valid, first_invalid_index).
        """
        with self._lock:
            entries = list(self._entries)

        for i, entry in enumerate(entries):
            if entry.compute_digest() != entry.entry_digest:
                log.warning("Audit digest mismatch", operation="verify_chain", index=i)
                return (False, i)
            expected_prev = entries[i - 1].entry_digest if i > 0 else None
            if entry.previous_digest != expected_prev:
                log.warning("Audit chain broken", operation="verify_chain", index=i)
                return (False, i)
        return (True, None)

    def entries(
        self,
        event_type: Optional[str] = None,
        actor: Optional[str] = None,
        subject: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Query entries, oldest first."""
        with self._lock:
            result = list(self._entries)
        if event_type:
            result = [e for e in result if e.event_type == event_type]
        if actor:
            result = [e for e in result if e.actor == actor]
        if subject:
            result = [e for e in result if e.subject == subject]
        if limit is not None:
            result = result[-limit:]
        return result

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in self._entries]
