"""
WARDEN Event Infrastructure

Typed notifications emitted by the core and consumed by external observers
(UIs, audit trails). The core never subscribes to its own events.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          EVENT INFRASTRUCTURE                            │
    │                                                                          │
    │  Ledger Events        Governance Events      Asset Events                │
    │  ├─ IdentityVerified  ├─ OperationProposed   ├─ AssetCreated            │
    │  ├─ IdentityRevoked   ├─ OperationSigned     ├─ TokensTransferred       │
    │  ├─ CapabilityGranted ├─ OperationExecuted   ├─ TokensBurned            │
    │  └─ CapabilityRevoked └─ QuorumChanged       ├─ ValuationUpdated        │
    │                                              ├─ DocumentUpdated         │
    │                                              └─ LedgerRebound           │
    │                                                                          │
    │  EventBus: typed pub/sub, priorities, filters, handler isolation        │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Immutable Events: Events are immutable facts about what happened.

    Post-commit Delivery: Components publish only after the state change
    is committed and their locks are released.

    Handler Isolation: A failing handler never affects the publisher or
    other handlers; failures are counted and reported to ``on_error``.

Usage
─────

    bus = EventBus()

    @bus.subscribe(IdentityVerified)
    def on_verified(event: IdentityVerified):
        print(f"{event.identity} verified by {event.actor}")

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

from warden.core import canonical_digest, canonical_json_bytes

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Event:
    """
    Base class for all events in the system.

    Each event has a unique ID and timestamp. Identities are carried as
    their address strings so events serialize without custom encoders.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def event_type(self) -> str:
        """Get the event type name."""
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        """Serialize event to canonical JSON."""
        return canonical_json_bytes(self.to_dict()).decode("utf-8")

    def digest(self) -> str:
        """Deterministic digest of event content."""
        return canonical_digest(self.to_dict())


# ════════════════════════════════════════════════════════════════════════════
# LEDGER EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class IdentityVerified(Event):
    """An identity was added to the verification ledger."""
    identity: str = ""
    actor: str = ""


@dataclass(frozen=True)
class IdentityRevoked(Event):
    """An identity lost its verified status."""
    identity: str = ""
    actor: str = ""


@dataclass(frozen=True)
class CapabilityGranted(Event):
    identity: str = ""
    capability: str = ""
    actor: str = ""


@dataclass(frozen=True)
class CapabilityRevoked(Event):
    identity: str = ""
    capability: str = ""
    actor: str = ""


# ════════════════════════════════════════════════════════════════════════════
# GOVERNANCE EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class OperationProposed(Event):
    """A threshold signer proposed a privileged action."""
    operation_id: int = 0
    kind: str = ""
    target: str = ""
    actor: str = ""


@dataclass(frozen=True)
class OperationSigned(Event):
    operation_id: int = 0
    actor: str = ""
    signature_count: int = 0


@dataclass(frozen=True)
class OperationExecuted(Event):
    """Quorum reached; the action was dispatched to the ledger."""
    operation_id: int = 0
    kind: str = ""
    target: str = ""
    actor: str = ""


@dataclass(frozen=True)
class QuorumChanged(Event):
    """Required signatures changed, either explicitly or by clamping."""
    old_required: int = 0
    new_required: int = 0
    signer_count: int = 0
    actor: str = ""


# ════════════════════════════════════════════════════════════════════════════
# ASSET EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AssetCreated(Event):
    asset_id: str = ""
    controller: str = ""
    initial_supply: int = 0
    ledger_id: str = ""


@dataclass(frozen=True)
class TokensTransferred(Event):
    asset_id: str = ""
    sender: str = ""
    recipient: str = ""
    amount: int = 0


@dataclass(frozen=True)
class TokensBurned(Event):
    asset_id: str = ""
    holder: str = ""
    amount: int = 0


@dataclass(frozen=True)
class ValuationUpdated(Event):
    asset_id: str = ""
    old_valuation: str = ""
    new_valuation: str = ""
    actor: str = ""


@dataclass(frozen=True)
class DocumentUpdated(Event):
    asset_id: str = ""
    old_document_hash: str = ""
    new_document_hash: str = ""
    actor: str = ""


@dataclass(frozen=True)
class LedgerRebound(Event):
    """An asset's transfer guard was pointed at a different ledger."""
    asset_id: str = ""
    old_ledger_id: str = ""
    new_ledger_id: str = ""
    actor: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT HANDLER
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


class EventBus:
    """
    In-memory event bus for pub/sub communication.

    Supports typed subscriptions, filters and priorities.
    Thread-safe for concurrent publishing and subscribing.

    Example:
        bus = EventBus()

        @bus.subscribe(IdentityVerified, IdentityRevoked)
        def handle_ledger_events(event):
            print(f"Ledger event: {event.event_type}")
    """

    def __init__(
        self,
        on_error: Optional[Callable[[EventHandlerError], None]] = None,
    ):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        With no event types the handler receives every event.
        Higher priority handlers are called first.
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        """Unsubscribe a handler."""
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers, in priority order."""
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
                and (r.filter_func is None or r.filter_func(event))
            ]

        # Call handlers (outside lock)
        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def publish_all(self, events: List[Event]) -> None:
        for event in events:
            self.publish(event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        """Call a handler with error handling."""
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.warning("%s", error)
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        """Get event bus metrics."""
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


class EventRecorder:
    """Collects every published event in order. Handy for observers and tests."""

    def __init__(self, bus: EventBus):
        self.events: List[Event] = []
        self._lock = threading.Lock()
        bus.subscribe()(self._record)

    def _record(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: Type[Event]) -> List[Event]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]

    def types(self) -> List[str]:
        with self._lock:
            return [e.event_type for e in self.events]
