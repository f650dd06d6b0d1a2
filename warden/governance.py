"""
WARDEN Threshold-Approval Engine

Multi-party approval of privileged ledger actions. A threshold signer
proposes an action; other signers add their signatures; the signature that
reaches quorum dispatches the action to the verification ledger in the
same call.

Operation Lifecycle
───────────────────

    ┌──────────┐   k-th distinct signature   ┌──────────┐
    │ PROPOSED │ ──────────────────────────▶ │ EXECUTED │  (terminal)
    └──────────┘                             └──────────┘

    There is no rejected, expired or cancelled state. An operation that
    never reaches quorum stays PROPOSED. Executed operations are kept as
    immutable audit records.

Encoding
────────

    An operation stores its action as two separate fields, ``kind`` and
    ``target``. Dispatch switches on ``kind`` directly; nothing is ever
    recovered from a digest.

Concurrency
───────────

    engine lock      id allocation and the operation table
    operation lock   AlreadySigned check, signature append, quorum
                     comparison, dispatch and the executed flip
    quorum lock      required signatures and the signer set

    Lock order is engine → operation → ledger identity. Events are
    published after every lock is released.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from warden.config import WardenConfig, get_config
from warden.core import now_iso8601
from warden.events import (
    CapabilityGranted,
    CapabilityRevoked,
    Event,
    EventBus,
    OperationExecuted,
    OperationProposed,
    OperationSigned,
    QuorumChanged,
)
from warden.hardening import (
    AlreadyExecuted,
    AlreadySigned,
    InvalidArgument,
    InvariantChecker,
    KeyedLock,
    UnknownOperation,
    WardenError,
)
from warden.identity import Identity, IdentityLike, require_identity
from warden.ledger import VerificationLedger
from warden.observability import WardenLayer, get_logger, timed_operation
from warden.roles import ALL_CAPABILITIES, Capability, RoleStore

log = get_logger("engine", WardenLayer.GOVERNANCE)


# =============================================================================
# OPERATION MODEL
# =============================================================================

class OperationKind(Enum):
    """Privileged actions a threshold signer may propose."""
    VERIFY_IDENTITY = "verify_identity"
    REVOKE_IDENTITY = "revoke_identity"

    @classmethod
    def parse(cls, value: Any) -> "OperationKind":
        """Accept an OperationKind, its value, or its name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            token = value.strip()
            for kind in cls:
                if token == kind.value or token.upper() == kind.name:
                    return kind
        raise InvalidArgument("kind", f"Unknown operation kind: {value!r}", value)


class OperationState(Enum):
    PROPOSED = "proposed"
    EXECUTED = "executed"


VALID_TRANSITIONS = {
    OperationState.PROPOSED: {OperationState.EXECUTED},
    OperationState.EXECUTED: set(),
}


@dataclass
class PendingOperation:
    """
    A proposed privileged action.

    ``signers`` is append-only and starts with the proposer. Once
    ``executed`` is set the record is never modified again.
    """
    operation_id: int
    kind: OperationKind
    target: Identity
    created_by: Identity
    signers: List[Identity] = field(default_factory=list)
    executed: bool = False
    created_at: str = field(default_factory=now_iso8601)
    executed_at: Optional[str] = None

    @property
    def state(self) -> OperationState:
        return OperationState.EXECUTED if self.executed else OperationState.PROPOSED

    @property
    def signature_count(self) -> int:
        return len(self.signers)

    def has_signed(self, identity: Identity) -> bool:
        return identity in self.signers

    def copy(self) -> "PendingOperation":
        return PendingOperation(
            operation_id=self.operation_id,
            kind=self.kind,
            target=self.target,
            created_by=self.created_by,
            signers=list(self.signers),
            executed=self.executed,
            created_at=self.created_at,
            executed_at=self.executed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value,
            "target": str(self.target),
            "created_by": str(self.created_by),
            "signers": [str(s) for s in self.signers],
            "state": self.state.value,
            "created_at": self.created_at,
            "executed_at": self.executed_at,
        }


# =============================================================================
# OPERATION ENGINE
# =============================================================================

class OperationEngine:
    """
    Governance deployment: owns a RoleStore and a VerificationLedger and
    runs the threshold-approval state machine over them.

    The deployer starts with every capability. The engine acts on the
    ledger under its own identity, which holds VERIFIER.

    Example:
        engine = OperationEngine(deployer=a, signers=[b, c], required_signatures=2)
        op_id = engine.propose(a, OperationKind.VERIFY_IDENTITY, x)
        engine.sign(b, op_id)          # quorum reached, x is now verified
        assert engine.ledger.is_verified(x)
    """

    def __init__(
        self,
        deployer: IdentityLike,
        signers: Iterable[IdentityLike] = (),
        required_signatures: Optional[int] = None,
        bus: Optional[EventBus] = None,
        config: Optional[WardenConfig] = None,
        identity: Optional[IdentityLike] = None,
    ):
        self._config = config or get_config()
        self.bus = bus or EventBus()
        self.identity = require_identity(identity, "identity") if identity else Identity.random()
        self.deployer = require_identity(deployer, "deployer")

        self.roles = RoleStore()
        self.ledger = VerificationLedger(self.roles, self.bus, self._config, protected=(self.identity,))

        initial_signers = [self.deployer]
        for s in signers:
            s = require_identity(s, "signers")
            if s not in initial_signers:
                initial_signers.append(s)

        max_signers = self._config.governance.max_signers.get()
        if len(initial_signers) > max_signers:
            raise InvalidArgument("signers", f"Too many signers (max {max_signers})", len(initial_signers))

        if required_signatures is None:
            required_signatures = min(
                self._config.governance.default_required_signatures.get(),
                len(initial_signers),
            )
        self._validate_required(required_signatures, len(initial_signers))

        self._operations: Dict[int, PendingOperation] = {}
        self._next_id = 0
        self._lock = threading.RLock()
        self._op_locks = KeyedLock()
        self._quorum_lock = threading.RLock()
        self._required = required_signatures

        events: List[Event] = []
        for cap in sorted(ALL_CAPABILITIES, key=lambda c: c.value):
            self.roles.grant(self.deployer, cap)
            events.append(self._granted_event(self.deployer, cap, self.deployer))
        for s in initial_signers[1:]:
            self.roles.grant(s, Capability.THRESHOLD_SIGNER)
            events.append(self._granted_event(s, Capability.THRESHOLD_SIGNER, self.deployer))
        self.roles.grant(self.identity, Capability.VERIFIER)
        events.append(self._granted_event(self.identity, Capability.VERIFIER, self.deployer))

        log.info(
            "Governance deployed",
            operation="deploy",
            engine=str(self.identity),
            deployer=str(self.deployer),
            signers=len(initial_signers),
            required_signatures=required_signatures,
        )
        self.bus.publish_all(events)

    # ─────────────────────────────────────────────────────────────────────
    # Quorum configuration
    # ─────────────────────────────────────────────────────────────────────

    @property
    def required_signatures(self) -> int:
        with self._quorum_lock:
            return self._required

    @property
    def signers(self) -> FrozenSet[Identity]:
        return self.roles.holders(Capability.THRESHOLD_SIGNER)

    @staticmethod
    def _validate_required(value: Any, signer_count: int) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgument("required_signatures", "Expected integer", value)
        if value < 1:
            raise InvalidArgument("required_signatures", "Must be at least 1", value)
        if value > signer_count:
            raise InvalidArgument(
                "required_signatures",
                f"Cannot exceed the number of signers ({signer_count})",
                value,
            )
        return value

    # ─────────────────────────────────────────────────────────────────────
    # Authorization
    # ─────────────────────────────────────────────────────────────────────

    def _authorize(self, caller: IdentityLike, capability: Capability, operation: str) -> Identity:
        caller = Identity.parse(caller, "caller")
        try:
            return self.roles.authorize(caller, capability).require()
        except WardenError as e:
            log.denied(operation, e, caller=str(caller))
            raise

    # ─────────────────────────────────────────────────────────────────────
    # Propose / sign
    # ─────────────────────────────────────────────────────────────────────

    def _dispatcher(self, kind: OperationKind) -> Callable[[Identity, Identity], Event]:
        return {
            OperationKind.VERIFY_IDENTITY: self.ledger.apply_verify,
            OperationKind.REVOKE_IDENTITY: self.ledger.apply_revoke,
        }[kind]

    def _execute(self, op: PendingOperation) -> Event:
        """Dispatch and mark executed. Caller holds the operation lock.

        Returns the ledger event for publication once locks are released.
        If the ledger rejects the action nothing about ``op`` changes.
        """
        InvariantChecker.check_state_transition(op.state, OperationState.EXECUTED, VALID_TRANSITIONS)
        ledger_event = self._dispatcher(op.kind)(self.identity, op.target)
        op.executed = True
        op.executed_at = now_iso8601()
        return ledger_event

    def _executed_event(self, op: PendingOperation, actor: Identity) -> OperationExecuted:
        return OperationExecuted(
            operation_id=op.operation_id,
            kind=op.kind.value,
            target=str(op.target),
            actor=str(actor),
        )

    @timed_operation(log, "governance.propose")
    def propose(self, caller: IdentityLike, kind: Any, target: IdentityLike) -> int:
        """
        Propose an action; the proposer's signature is recorded automatically.

        With a quorum of one the action executes before this returns.
        Returns the new operation id.
        """
        actor = self._authorize(caller, Capability.THRESHOLD_SIGNER, "propose")
        kind = OperationKind.parse(kind)
        target = require_identity(target, "target")

        ledger_event: Optional[Event] = None
        with self._lock:
            op_id = self._next_id
            op = PendingOperation(
                operation_id=op_id,
                kind=kind,
                target=target,
                created_by=actor,
                signers=[actor],
            )
            with self._op_locks.hold(op_id):
                reached = op.signature_count >= self.required_signatures
                if reached:
                    ledger_event = self._execute(op)
                self._operations[op_id] = op
                self._next_id += 1

        events: List[Event] = [
            OperationProposed(operation_id=op_id, kind=kind.value, target=str(target), actor=str(actor)),
            OperationSigned(operation_id=op_id, actor=str(actor), signature_count=1),
        ]
        if ledger_event is not None:
            events.append(ledger_event)
            events.append(self._executed_event(op, actor))

        log.info(
            "Operation proposed",
            operation="propose",
            operation_id=op_id,
            kind=kind.value,
            target=str(target),
            actor=str(actor),
            executed=reached,
        )
        self.bus.publish_all(events)
        return op_id

    @timed_operation(log, "governance.sign")
    def sign(self, caller: IdentityLike, operation_id: int) -> bool:
        """
        Add the caller's signature. Returns True iff this call executed the operation.

        Raises InvalidArgument for a non-integer id, then UnknownOperation,
        AlreadySigned or AlreadyExecuted. A signer repeating a signature
        always gets AlreadySigned, whether or not the operation has executed
        since.
        """
        actor = self._authorize(caller, Capability.THRESHOLD_SIGNER, "sign")
        if not _is_operation_id(operation_id):
            invalid = InvalidArgument("operation_id", "Expected integer", operation_id)
            log.denied("sign", invalid, caller=str(actor))
            raise invalid

        op = self._lookup(operation_id)
        if op is None:
            unknown = UnknownOperation(operation_id)
            log.denied("sign", unknown, caller=str(actor))
            raise unknown

        ledger_event: Optional[Event] = None
        with self._op_locks.hold(op.operation_id):
            error: Optional[WardenError] = None
            if op.has_signed(actor):
                error = AlreadySigned(op.operation_id, actor)
            elif op.executed:
                error = AlreadyExecuted(op.operation_id)
            if error is not None:
                log.denied("sign", error, caller=str(actor), operation_id=op.operation_id)
                raise error

            count = op.signature_count + 1
            reached = count >= self.required_signatures
            if reached:
                ledger_event = self._execute(op)
            op.signers.append(actor)

        events: List[Event] = [
            OperationSigned(operation_id=op.operation_id, actor=str(actor), signature_count=count)
        ]
        if ledger_event is not None:
            events.append(ledger_event)
            events.append(self._executed_event(op, actor))

        log.info(
            "Operation signed",
            operation="sign",
            operation_id=op.operation_id,
            actor=str(actor),
            signature_count=count,
            executed=reached,
        )
        self.bus.publish_all(events)
        return reached

    # ─────────────────────────────────────────────────────────────────────
    # Reads (lenient: unknown ids give zero/False/None)
    # ─────────────────────────────────────────────────────────────────────

    def _lookup(self, operation_id: Any) -> Optional[PendingOperation]:
        if not _is_operation_id(operation_id):
            return None
        with self._lock:
            return self._operations.get(operation_id)

    def operation_exists(self, operation_id: int) -> bool:
        return self._lookup(operation_id) is not None

    def is_executed(self, operation_id: int) -> bool:
        op = self._lookup(operation_id)
        return op is not None and op.executed

    def signature_count(self, operation_id: int) -> int:
        op = self._lookup(operation_id)
        return op.signature_count if op else 0

    def has_signed(self, operation_id: int, identity: IdentityLike) -> bool:
        op = self._lookup(operation_id)
        return op is not None and op.has_signed(Identity.parse(identity))

    def get_operation(self, operation_id: int) -> Optional[PendingOperation]:
        """A copy of the operation record, or None."""
        op = self._lookup(operation_id)
        if op is None:
            return None
        with self._op_locks.hold(op.operation_id):
            return op.copy()

    def list_operations(self, executed: Optional[bool] = None) -> List[PendingOperation]:
        with self._lock:
            ids = sorted(self._operations)
        ops = [self.get_operation(i) for i in ids]
        return [op for op in ops if op is not None and (executed is None or op.executed == executed)]

    def export_operations(self) -> List[Dict[str, Any]]:
        return [op.to_dict() for op in self.list_operations()]

    @property
    def operation_count(self) -> int:
        with self._lock:
            return len(self._operations)

    # ─────────────────────────────────────────────────────────────────────
    # Capability and signer administration (ADMIN only)
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _granted_event(identity: Identity, capability: Capability, actor: Identity) -> CapabilityGranted:
        return CapabilityGranted(identity=str(identity), capability=capability.value, actor=str(actor))

    def grant_capability(self, caller: IdentityLike, identity: IdentityLike, capability: Any) -> bool:
        """Grant ``capability``. Returns False if already held."""
        actor = self._authorize(caller, Capability.ADMIN, "grant_capability")
        target = require_identity(identity)
        capability = _parse_capability(capability)

        with self._quorum_lock:
            if capability is Capability.THRESHOLD_SIGNER and not self.roles.has(target, capability):
                max_signers = self._config.governance.max_signers.get()
                if len(self.signers) >= max_signers:
                    raise InvalidArgument("signers", f"Signer set is full (max {max_signers})", str(target))
            changed = self.roles.grant(target, capability)

        if changed:
            log.info(
                "Capability granted",
                operation="grant_capability",
                identity=str(target),
                capability=capability.value,
                actor=str(actor),
            )
            self.bus.publish(self._granted_event(target, capability, actor))
        return changed

    def revoke_capability(self, caller: IdentityLike, identity: IdentityLike, capability: Any) -> bool:
        """
        Revoke ``capability``. Revoking an unheld capability returns False.

        Removing a threshold signer clamps the required signatures down to
        the new signer count. The last signer cannot be removed.
        Signatures already recorded on pending operations are kept, and
        operations that meet the clamped quorum execute in this call.
        The engine's own VERIFIER capability cannot be revoked.
        """
        actor = self._authorize(caller, Capability.ADMIN, "revoke_capability")
        target = require_identity(identity)
        capability = _parse_capability(capability)
        if target == self.identity and capability is Capability.VERIFIER:
            error = InvalidArgument("identity", "The engine identity must keep VERIFIER", str(target))
            log.denied("revoke_capability", error, caller=str(actor))
            raise error

        events: List[Event] = []
        with self._quorum_lock:
            if not self.roles.has(target, capability):
                return False
            if capability is Capability.THRESHOLD_SIGNER:
                remaining = len(self.signers) - 1
                if remaining < 1:
                    raise InvalidArgument("identity", "Cannot remove the last threshold signer", str(target))
                self.roles.revoke(target, capability)
                if self._required > remaining:
                    old = self._required
                    self._required = remaining
                    events.append(QuorumChanged(
                        old_required=old, new_required=remaining,
                        signer_count=remaining, actor=str(actor),
                    ))
                InvariantChecker.check_quorum(self._required, remaining)
            else:
                self.roles.revoke(target, capability)

        if events:
            events.extend(self._execute_ready(actor))
        events.insert(0, CapabilityRevoked(
            identity=str(target), capability=capability.value, actor=str(actor),
        ))
        log.info(
            "Capability revoked",
            operation="revoke_capability",
            identity=str(target),
            capability=capability.value,
            actor=str(actor),
            required_signatures=self.required_signatures,
        )
        self.bus.publish_all(events)
        return True

    def add_signer(self, caller: IdentityLike, identity: IdentityLike) -> bool:
        return self.grant_capability(caller, identity, Capability.THRESHOLD_SIGNER)

    def remove_signer(self, caller: IdentityLike, identity: IdentityLike) -> bool:
        return self.revoke_capability(caller, identity, Capability.THRESHOLD_SIGNER)

    def set_required_signatures(self, caller: IdentityLike, required: int) -> None:
        """
        Set the quorum; must be between 1 and the current signer count.

        Lowering it executes pending operations that already carry enough
        signatures.
        """
        actor = self._authorize(caller, Capability.ADMIN, "set_required_signatures")

        with self._quorum_lock:
            signer_count = len(self.signers)
            self._validate_required(required, signer_count)
            old = self._required
            self._required = required

        if old == required:
            return
        log.info(
            "Quorum changed",
            operation="set_required_signatures",
            old_required=old,
            new_required=required,
            actor=str(actor),
        )
        events: List[Event] = [QuorumChanged(
            old_required=old, new_required=required,
            signer_count=signer_count, actor=str(actor),
        )]
        if required < old:
            events.extend(self._execute_ready(actor))
        self.bus.publish_all(events)

    def _execute_ready(self, actor: Identity) -> List[Event]:
        """
        Execute pending operations that meet the current quorum.

        Runs after the quorum was lowered, with no lock held on entry. Each
        operation is rechecked under its own lock. An operation whose
        dispatch the ledger rejects stays PROPOSED. Returns the events to
        publish.
        """
        with self._lock:
            pending = [self._operations[i] for i in sorted(self._operations)]

        events: List[Event] = []
        for op in pending:
            with self._op_locks.hold(op.operation_id):
                if op.executed or op.signature_count < self.required_signatures:
                    continue
                try:
                    ledger_event = self._execute(op)
                except WardenError as e:
                    log.denied("execute", e, operation_id=op.operation_id, actor=str(actor))
                    continue
            log.info(
                "Operation executed after quorum change",
                operation="execute",
                operation_id=op.operation_id,
                actor=str(actor),
            )
            events.append(ledger_event)
            events.append(self._executed_event(op, actor))
        return events

    def summary(self) -> Dict[str, Any]:
        """Plain-data view of the deployment."""
        return {
            "engine": str(self.identity),
            "deployer": str(self.deployer),
            "ledger_id": self.ledger.ledger_id,
            "required_signatures": self.required_signatures,
            "signers": sorted(str(s) for s in self.signers),
            "verified": sorted(str(i) for i in self.ledger.verified_identities()),
            "operations": {
                "total": self.operation_count,
                "executed": len(self.list_operations(executed=True)),
            },
            "roles": self.roles.to_dict(),
        }


def _parse_capability(value: Any) -> Capability:
    if isinstance(value, Capability):
        return value
    if isinstance(value, str):
        token = value.strip()
        for cap in Capability:
            if token == cap.value or token.upper() == cap.name:
                return cap
    raise InvalidArgument("capability", f"Unknown capability: {value!r}", value)


def _is_operation_id(value: Any) -> bool:
    # bool is an int subclass and True would alias operation 1
    return isinstance(value, int) and not isinstance(value, bool)
