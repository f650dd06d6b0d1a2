"""
WARDEN Guarded Assets

A guarded asset is a plain record (identifying metadata, a valuation and a
document hash) with a single controller, a fungible balance book, and a
TransferGuard bound to a verification ledger.

Controller-only actions:

    set_valuation(value)       positive Decimal, bounded by assets.max_valuation
    set_document_hash(digest)  64 hex chars (SHA-256)
    set_ledger(ledger)         rebind the transfer guard
    burn(amount)               destroy controller-held supply

Any holder may ``transfer``; every transfer goes through the guard.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from warden.config import WardenConfig, get_config
from warden.events import (
    DocumentUpdated,
    EventBus,
    LedgerRebound,
    TokensBurned,
    TokensTransferred,
    ValuationUpdated,
)
from warden.guard import TransferGuard, TransferResult
from warden.hardening import InsufficientBalance, InvalidArgument, Unauthorized, Validators
from warden.identity import Identity, IdentityLike, require_identity
from warden.ledger import VerificationLedger
from warden.observability import WardenLayer, get_logger

log = get_logger("asset", WardenLayer.ASSET)


# =============================================================================
# BALANCE BOOK
# =============================================================================

class TokenBalances:
    """
    In-memory fungible balance book.

    Stands in for the settlement primitive the transfer guard wraps. Every
    method is atomic: a failed call changes nothing.
    """

    def __init__(self):
        self._balances: Dict[Identity, int] = {}
        self._total_supply = 0
        self._lock = threading.Lock()

    def balance_of(self, holder: IdentityLike) -> int:
        holder = Identity.parse(holder, "holder")
        with self._lock:
            return self._balances.get(holder, 0)

    @property
    def total_supply(self) -> int:
        with self._lock:
            return self._total_supply

    def mint(self, holder: Identity, amount: int) -> None:
        with self._lock:
            self._balances[holder] = self._balances.get(holder, 0) + amount
            self._total_supply += amount

    def transfer(self, sender: Identity, recipient: Identity, amount: int) -> None:
        with self._lock:
            available = self._balances.get(sender, 0)
            if available < amount:
                raise InsufficientBalance(sender, available, amount)
            self._balances[sender] = available - amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount

    def burn(self, holder: Identity, amount: int) -> None:
        with self._lock:
            available = self._balances.get(holder, 0)
            if available < amount:
                raise InsufficientBalance(holder, available, amount)
            self._balances[holder] = available - amount
            self._total_supply -= amount

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {str(h): b for h, b in sorted(self._balances.items()) if b}


# =============================================================================
# ASSET RECORD
# =============================================================================

@dataclass(frozen=True)
class AssetMetadata:
    """Identifying fields; fixed for the life of the asset."""
    asset_id: str
    name: str
    symbol: str
    decimals: int = 18
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetMetadata":
        return cls(
            asset_id=Validators.validate_asset_id(data.get("asset_id")).unwrap(),
            name=Validators.validate_string(data.get("name"), "name", max_length=256).unwrap(),
            symbol=Validators.validate_string(
                data.get("symbol"), "symbol", pattern=Validators.SYMBOL_PATTERN,
            ).unwrap(),
            decimals=data.get("decimals", 18),
            description=data.get("description", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "description": self.description,
        }


@dataclass
class GuardedAsset:
    """
    A restricted fungible asset.

    Created through ``AssetFactory.create_guarded_asset`` so that a guard is
    bound before the first transfer is possible.
    """
    metadata: AssetMetadata
    controller: Identity
    guard: TransferGuard
    valuation: Decimal
    document_hash: str
    bus: EventBus = field(default_factory=EventBus)
    config: Optional[WardenConfig] = None
    balances: TokenBalances = field(default_factory=TokenBalances)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def asset_id(self) -> str:
        return self.metadata.asset_id

    @property
    def ledger(self) -> VerificationLedger:
        return self.guard.ledger

    @property
    def total_supply(self) -> int:
        return self.balances.total_supply

    def balance_of(self, holder: IdentityLike) -> int:
        return self.balances.balance_of(holder)

    def _require_controller(self, caller: IdentityLike, operation: str) -> Identity:
        caller = Identity.parse(caller, "caller")
        if caller != self.controller:
            error = Unauthorized(caller, "controller")
            log.denied(operation, error, caller=str(caller), asset_id=self.asset_id)
            raise error
        return caller

    def _max_valuation(self) -> Decimal:
        return (self.config or get_config()).assets.max_valuation.get()

    # ─────────────────────────────────────────────────────────────────────
    # Controller-only record updates
    # ─────────────────────────────────────────────────────────────────────

    def set_valuation(self, caller: IdentityLike, value: Any) -> Decimal:
        actor = self._require_controller(caller, "set_valuation")
        new = Validators.validate_valuation(value, max_value=self._max_valuation()).unwrap()
        with self._lock:
            old, self.valuation = self.valuation, new
        log.info(
            "Valuation updated",
            operation="set_valuation",
            asset_id=self.asset_id,
            valuation=str(new),
        )
        self.bus.publish(ValuationUpdated(
            asset_id=self.asset_id, old_valuation=str(old), new_valuation=str(new), actor=str(actor),
        ))
        return new

    def set_document_hash(self, caller: IdentityLike, digest: Any) -> str:
        actor = self._require_controller(caller, "set_document_hash")
        new = Validators.validate_digest(digest, "document_hash").unwrap()
        with self._lock:
            old, self.document_hash = self.document_hash, new
        log.info("Document hash updated", operation="set_document_hash", asset_id=self.asset_id)
        self.bus.publish(DocumentUpdated(
            asset_id=self.asset_id, old_document_hash=old, new_document_hash=new, actor=str(actor),
        ))
        return new

    def set_ledger(self, caller: IdentityLike, ledger: VerificationLedger) -> None:
        actor = self._require_controller(caller, "set_ledger")
        previous = self.guard.rebind(ledger)
        log.info(
            "Ledger rebound",
            operation="set_ledger",
            asset_id=self.asset_id,
            old_ledger_id=previous.ledger_id,
            new_ledger_id=ledger.ledger_id,
        )
        self.bus.publish(LedgerRebound(
            asset_id=self.asset_id,
            old_ledger_id=previous.ledger_id,
            new_ledger_id=ledger.ledger_id,
            actor=str(actor),
        ))

    def burn(self, caller: IdentityLike, amount: int) -> None:
        """Destroy ``amount`` of the controller's own balance."""
        actor = self._require_controller(caller, "burn")
        amount = Validators.validate_amount(amount).unwrap()
        self.balances.burn(actor, amount)
        log.info("Tokens burned", operation="burn", asset_id=self.asset_id, amount=amount)
        self.bus.publish(TokensBurned(asset_id=self.asset_id, holder=str(actor), amount=amount))

    # ─────────────────────────────────────────────────────────────────────
    # Guarded movement
    # ─────────────────────────────────────────────────────────────────────

    def transfer(self, caller: IdentityLike, recipient: IdentityLike, amount: int) -> TransferResult[None]:
        """Move tokens from ``caller`` to ``recipient`` if both are verified."""
        sender = require_identity(caller, "sender")
        recipient = require_identity(recipient, "recipient")

        result = self.guard.guarded_transfer(
            sender,
            recipient,
            amount,
            lambda: self.balances.transfer(sender, recipient, amount),
        )
        self.bus.publish(TokensTransferred(
            asset_id=self.asset_id, sender=str(sender), recipient=str(recipient), amount=amount,
        ))
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.metadata.to_dict(),
            "controller": str(self.controller),
            "valuation": str(self.valuation),
            "document_hash": self.document_hash,
            "ledger_id": self.ledger.ledger_id,
            "total_supply": self.total_supply,
            "balances": self.balances.snapshot(),
        }
