"""
WARDEN Verification Ledger

Identity → verified flag, mutated only by VERIFIER capability holders.

Entry points and their conflict policies:

    verify(identity)          strict   AlreadyInState if already verified
    revoke(identity)          strict   NotInState if not verified
    batch_verify(identities)  lenient  skips null / already-verified entries

Absent identities are unverified. Records are created on first write and
never deleted, only flipped. Mutations of the same identity are serialized
by a per-identity lock; distinct identities proceed independently.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import ExitStack, contextmanager
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional

from warden.config import WardenConfig, get_config
from warden.events import (
    CapabilityGranted,
    CapabilityRevoked,
    Event,
    EventBus,
    IdentityRevoked,
    IdentityVerified,
)
from warden.hardening import (
    AlreadyInState,
    InvalidArgument,
    KeyedLock,
    NotInState,
    WardenError,
)
from warden.identity import Identity, IdentityLike, require_identity
from warden.observability import WardenLayer, get_logger, timed_operation
from warden.roles import Capability, RoleStore

log = get_logger("ledger", WardenLayer.LEDGER)


class VerificationLedger:
    """
    Verification list consulted by every guarded transfer.

    The ledger does not own its RoleStore; it is handed the store of the
    governance deployment that created it.
    """

    def __init__(
        self,
        roles: RoleStore,
        bus: Optional[EventBus] = None,
        config: Optional[WardenConfig] = None,
        ledger_id: Optional[str] = None,
        protected: Iterable[IdentityLike] = (),
    ):
        self.ledger_id = ledger_id or f"ledger-{uuid.uuid4().hex[:12]}"
        self._roles = roles
        self._bus = bus or EventBus()
        self._config = config or get_config()
        self._records: Dict[Identity, bool] = {}
        self._records_lock = threading.Lock()
        self._identity_locks = KeyedLock()
        self._protected = frozenset(require_identity(p, "protected") for p in protected)

    def __repr__(self) -> str:
        return f"VerificationLedger({self.ledger_id!r})"

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    def is_verified(self, identity: IdentityLike) -> bool:
        """Current status; absent identities are unverified."""
        identity = Identity.parse(identity)
        with self._records_lock:
            return self._records.get(identity, False)

    def verified_identities(self) -> FrozenSet[Identity]:
        with self._records_lock:
            return frozenset(i for i, v in self._records.items() if v)

    def __len__(self) -> int:
        """Number of records ever written (verified or not)."""
        with self._records_lock:
            return len(self._records)

    # ─────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────

    @contextmanager
    def hold(self, *identities: IdentityLike) -> Iterator[None]:
        """
        Hold the per-identity locks of ``identities`` for the duration of
        the block, so no verify or revoke of those identities interleaves.

        Locks are taken in sorted order. They are reentrant, so the holding
        thread may still mutate the held identities.
        """
        with ExitStack() as stack:
            for identity in sorted({Identity.parse(i) for i in identities}):
                stack.enter_context(self._identity_locks.hold(identity))
            yield

    def _authorize(self, caller: IdentityLike, capability: Capability, operation: str) -> Identity:
        caller = Identity.parse(caller, "caller")
        try:
            return self._roles.authorize(caller, capability).require()
        except WardenError as e:
            log.denied(operation, e, caller=str(caller))
            raise

    def _write(self, identity: Identity, value: bool) -> None:
        with self._records_lock:
            self._records[identity] = value

    @timed_operation(log, "ledger.verify")
    def verify(self, caller: IdentityLike, identity: IdentityLike) -> None:
        """Mark ``identity`` verified. Strict: duplicates raise AlreadyInState."""
        self._bus.publish(self.apply_verify(caller, identity))

    @timed_operation(log, "ledger.revoke")
    def revoke(self, caller: IdentityLike, identity: IdentityLike) -> None:
        """Clear ``identity``'s verified flag. Strict: raises NotInState if unverified."""
        self._bus.publish(self.apply_revoke(caller, identity))

    def apply_verify(self, caller: IdentityLike, identity: IdentityLike) -> IdentityVerified:
        """Same checks and write as ``verify``; the event is returned instead of published."""
        actor = self._authorize(caller, Capability.VERIFIER, "verify")
        target = require_identity(identity)

        with self._identity_locks.hold(target):
            if self.is_verified(target):
                error = AlreadyInState(target, "verified")
                log.denied("verify", error, caller=str(actor))
                raise error
            self._write(target, True)

        log.info("Identity verified", operation="verify", identity=str(target), actor=str(actor))
        return IdentityVerified(identity=str(target), actor=str(actor))

    def apply_revoke(self, caller: IdentityLike, identity: IdentityLike) -> IdentityRevoked:
        """Same checks and write as ``revoke``; the event is returned instead of published."""
        actor = self._authorize(caller, Capability.VERIFIER, "revoke")
        target = require_identity(identity)

        with self._identity_locks.hold(target):
            if not self.is_verified(target):
                error = NotInState(target, "verified")
                log.denied("revoke", error, caller=str(actor))
                raise error
            self._write(target, False)

        log.info("Identity revoked", operation="revoke", identity=str(target), actor=str(actor))
        return IdentityRevoked(identity=str(target), actor=str(actor))

    @timed_operation(log, "ledger.batch_verify")
    def batch_verify(self, caller: IdentityLike, identities: Iterable[Any]) -> List[Identity]:
        """
        Verify many identities at once.

        Null and already-verified entries are skipped without error.
        Malformed entries reject the whole batch before anything is written.
        Returns the identities this call verified, in input order.
        """
        actor = self._authorize(caller, Capability.VERIFIER, "batch_verify")

        parsed = [Identity.parse(i, "identities") for i in identities]
        max_batch = self._config.ledger.max_batch_size.get()
        if len(parsed) > max_batch:
            raise InvalidArgument("identities", f"Batch too large (max {max_batch})", len(parsed))

        verified: List[Identity] = []
        events: List[Event] = []
        for target in parsed:
            if target.is_null:
                continue
            with self._identity_locks.hold(target):
                if self.is_verified(target):
                    continue
                self._write(target, True)
            verified.append(target)
            events.append(IdentityVerified(identity=str(target), actor=str(actor)))

        log.info(
            "Batch verification applied",
            operation="batch_verify",
            requested=len(parsed),
            verified=len(verified),
            actor=str(actor),
        )
        self._bus.publish_all(events)
        return verified

    # ─────────────────────────────────────────────────────────────────────
    # Verifier capability management
    # ─────────────────────────────────────────────────────────────────────

    def grant_verifier(self, caller: IdentityLike, identity: IdentityLike) -> bool:
        """ADMIN only. Returns False if ``identity`` already was a verifier."""
        actor = self._authorize(caller, Capability.ADMIN, "grant_verifier")
        target = require_identity(identity)

        changed = self._roles.grant(target, Capability.VERIFIER)
        if changed:
            log.info("Verifier granted", operation="grant_verifier", identity=str(target), actor=str(actor))
            self._bus.publish(CapabilityGranted(
                identity=str(target), capability=Capability.VERIFIER.value, actor=str(actor),
            ))
        return changed

    def revoke_verifier(self, caller: IdentityLike, identity: IdentityLike) -> bool:
        """
        ADMIN only. Revoking from a non-verifier is a no-op returning False.

        Protected identities (the governance engine) cannot lose VERIFIER.
        """
        actor = self._authorize(caller, Capability.ADMIN, "revoke_verifier")
        target = require_identity(identity)
        if target in self._protected:
            error = InvalidArgument("identity", "Protected verifier cannot be revoked", str(target))
            log.denied("revoke_verifier", error, caller=str(actor))
            raise error

        changed = self._roles.revoke(target, Capability.VERIFIER)
        if changed:
            log.info("Verifier revoked", operation="revoke_verifier", identity=str(target), actor=str(actor))
            self._bus.publish(CapabilityRevoked(
                identity=str(target), capability=Capability.VERIFIER.value, actor=str(actor),
            ))
        return changed
