"""
WARDEN Transfer Guard

Compliance precondition in front of an asset-movement primitive. The guard
never moves balances itself: it checks both parties against the bound
verification ledger and then hands control to the caller-supplied
``execute`` callback, whose result or exception passes through unchanged.

Verification status is read from the ledger on every call. A party that
was verified a moment ago may have been revoked since. The check and the
``execute`` callback run while both parties' ledger locks are held, so a
revoke of either party lands before the check or after settlement.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from warden.hardening import ComplianceRejected, InvalidArgument, Validators
from warden.identity import Identity, IdentityLike, require_identity
from warden.ledger import VerificationLedger
from warden.observability import WardenLayer, get_logger

log = get_logger("guard", WardenLayer.GUARD)

R = TypeVar("R")


@dataclass(frozen=True)
class TransferResult(Generic[R]):
    """Outcome of a transfer that passed the compliance check."""
    sender: Identity
    recipient: Identity
    amount: int
    ledger_id: str
    value: Optional[R] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": str(self.sender),
            "recipient": str(self.recipient),
            "amount": self.amount,
            "ledger_id": self.ledger_id,
        }


class TransferGuard:
    """Verification-list gate bound to exactly one ledger at a time."""

    def __init__(self, ledger: VerificationLedger):
        self._lock = threading.Lock()
        self._ledger = self._require_ledger(ledger)

    @staticmethod
    def _require_ledger(ledger: Any) -> VerificationLedger:
        if not isinstance(ledger, VerificationLedger):
            raise InvalidArgument("ledger", "A verification ledger is required", ledger)
        return ledger

    @property
    def ledger(self) -> VerificationLedger:
        with self._lock:
            return self._ledger

    def rebind(self, ledger: VerificationLedger) -> VerificationLedger:
        """Point the guard at another ledger. Returns the previous one."""
        ledger = self._require_ledger(ledger)
        with self._lock:
            previous, self._ledger = self._ledger, ledger
        return previous

    @staticmethod
    def _check(ledger: VerificationLedger, sender: IdentityLike, recipient: IdentityLike) -> None:
        """Raise ComplianceRejected naming the first unverified party."""
        for party, role in ((sender, "sender"), (recipient, "recipient")):
            if not ledger.is_verified(party):
                error = ComplianceRejected(party, role)
                log.denied("transfer", error, party=str(party), role=role, ledger_id=ledger.ledger_id)
                raise error

    def guarded_transfer(
        self,
        sender: IdentityLike,
        recipient: IdentityLike,
        amount: int,
        execute: Callable[[], R],
    ) -> TransferResult[R]:
        """
        Run ``execute`` only if both parties are verified.

        Raises:
            InvalidArgument: amount is not a positive integer, or a party is null
            ComplianceRejected: sender (checked first) or recipient is unverified
        """
        sender = require_identity(sender, "sender")
        recipient = require_identity(recipient, "recipient")
        amount = Validators.validate_amount(amount).unwrap()

        ledger = self.ledger
        # a concurrent revoke of either party waits until settlement returns
        with ledger.hold(sender, recipient):
            self._check(ledger, sender, recipient)
            value = execute()
        log.debug(
            "Transfer cleared",
            operation="transfer",
            sender=str(sender),
            recipient=str(recipient),
            amount=amount,
            ledger_id=ledger.ledger_id,
        )
        return TransferResult(
            sender=sender,
            recipient=recipient,
            amount=amount,
            ledger_id=ledger.ledger_id,
            value=value,
        )
