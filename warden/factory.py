"""
WARDEN Asset Factory

Creates guarded assets and keeps a registry of them. Every asset leaves
the factory with its transfer guard already bound to a ledger, so no
transfer can run unguarded.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any, Dict, List, Optional

from warden.asset import AssetMetadata, GuardedAsset
from warden.config import WardenConfig, get_config
from warden.events import AssetCreated, EventBus
from warden.guard import TransferGuard
from warden.hardening import InvalidArgument, Validators
from warden.identity import IdentityLike, require_identity
from warden.ledger import VerificationLedger
from warden.observability import WardenLayer, get_logger, timed_operation
from warden.schema import ASSET_METADATA_SCHEMA, require_valid

log = get_logger("factory", WardenLayer.FACTORY)


class AssetFactory:
    """Registry of guarded assets keyed by asset id."""

    def __init__(self, bus: Optional[EventBus] = None, config: Optional[WardenConfig] = None):
        self.bus = bus or EventBus()
        self._config = config or get_config()
        self._assets: Dict[str, GuardedAsset] = {}
        self._lock = threading.Lock()

    @timed_operation(log, "factory.create_guarded_asset")
    def create_guarded_asset(
        self,
        creator: IdentityLike,
        metadata: Dict[str, Any],
        initial_supply: int,
        ledger: VerificationLedger,
    ) -> GuardedAsset:
        """
        Deploy a guarded asset controlled by ``creator``.

        ``metadata`` must match ``asset-metadata.schema.json``. The initial
        supply is minted to the creator. Duplicate asset ids are rejected.
        """
        controller = require_identity(creator, "creator")
        if ledger is None:
            raise InvalidArgument("ledger", "A verification ledger is required")
        require_valid(metadata, ASSET_METADATA_SCHEMA, "metadata")
        supply = Validators.validate_amount(initial_supply, "initial_supply").unwrap()

        record = AssetMetadata.from_dict(metadata)
        valuation: Decimal = Validators.validate_valuation(
            metadata["valuation"], max_value=self._config.assets.max_valuation.get(),
        ).unwrap()
        document_hash = Validators.validate_digest(metadata["document_hash"], "document_hash").unwrap()

        asset = GuardedAsset(
            metadata=record,
            controller=controller,
            guard=TransferGuard(ledger),
            valuation=valuation,
            document_hash=document_hash,
            bus=self.bus,
            config=self._config,
        )

        with self._lock:
            if record.asset_id in self._assets:
                raise InvalidArgument("asset_id", "Asset already exists", record.asset_id)
            asset.balances.mint(controller, supply)
            self._assets[record.asset_id] = asset

        log.info(
            "Guarded asset created",
            operation="create_guarded_asset",
            asset_id=record.asset_id,
            controller=str(controller),
            initial_supply=supply,
            ledger_id=ledger.ledger_id,
        )
        self.bus.publish(AssetCreated(
            asset_id=record.asset_id,
            controller=str(controller),
            initial_supply=supply,
            ledger_id=ledger.ledger_id,
        ))
        return asset

    def get_asset(self, asset_id: str) -> Optional[GuardedAsset]:
        with self._lock:
            return self._assets.get(asset_id)

    def list_assets(self) -> List[GuardedAsset]:
        with self._lock:
            return [self._assets[k] for k in sorted(self._assets)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._assets)
