"""
WARDEN Deployment Manifests

A manifest is a YAML document that bootstraps one governance deployment:

    deployment_id: treasury-main
    deployer: "0x1111111111111111111111111111111111111111"
    signers:
      - "0x2222222222222222222222222222222222222222"
      - "0x3333333333333333333333333333333333333333"
    required_signatures: 2
    verified:
      - "0x1111111111111111111111111111111111111111"
    assets:
      - initial_supply: 1000000
        metadata:
          asset_id: bond-2031
          name: Municipal Bond 2031
          symbol: MB31
          valuation: "1000000.00"
          document_hash: "<64 hex>"

Addresses must be quoted: YAML reads a bare ``0x...`` as an integer.

Manifests are validated against ``deployment.schema.json`` before anything
is built. Deployment happens in memory; nothing is persisted.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from warden.asset import GuardedAsset
from warden.audit import AuditTrail
from warden.config import WardenConfig, get_config
from warden.core import canonical_digest, load_yaml
from warden.events import EventBus
from warden.factory import AssetFactory
from warden.governance import OperationEngine
from warden.hardening import InvalidArgument
from warden.observability import WardenLayer, get_logger, timed_operation
from warden.schema import DEPLOYMENT_SCHEMA, validate_against_schema

log = get_logger("manifest", WardenLayer.MANIFEST)


class ManifestError(InvalidArgument):
    """Manifest could not be read or failed validation."""

    def __init__(self, source: str, message: str, errors: Optional[List[str]] = None):
        self.source = source
        self.errors = errors or []
        super().__init__("manifest", f"{source}: {message}", source)


def validate_manifest(data: Any) -> List[str]:
    """Schema errors for ``data``; empty when valid."""
    errors = validate_against_schema(data, DEPLOYMENT_SCHEMA)
    if errors or not isinstance(data, dict):
        return errors

    signers = [s.lower() for s in data.get("signers", [])]
    signer_count = len(set(signers) | {data["deployer"].lower()})
    required = data.get("required_signatures")
    if required is not None and required > signer_count:
        errors.append(
            f"$.required_signatures: {required} exceeds the number of signers ({signer_count})"
        )

    asset_ids = [a["metadata"]["asset_id"] for a in data.get("assets", [])]
    duplicates = sorted({a for a in asset_ids if asset_ids.count(a) > 1})
    for asset_id in duplicates:
        errors.append(f"$.assets: duplicate asset_id '{asset_id}'")
    return errors


def load_manifest(path: Union[str, Path]) -> Dict[str, Any]:
    """Read and validate a manifest file."""
    path = Path(path)
    if not path.is_file():
        raise ManifestError(str(path), "file not found")
    try:
        data = load_yaml(path)
    except yaml.YAMLError as e:
        raise ManifestError(str(path), f"invalid YAML: {e}") from e

    errors = validate_manifest(data)
    if errors:
        log.warning(
            "Manifest rejected",
            operation="load_manifest",
            path=str(path),
            error_count=len(errors),
        )
        raise ManifestError(str(path), "; ".join(errors[:5]), errors)
    return data


@dataclass
class Deployment:
    """Everything a manifest builds, sharing one event bus."""
    deployment_id: str
    engine: OperationEngine
    factory: AssetFactory
    bus: EventBus
    audit: AuditTrail
    manifest_digest: str
    assets: Dict[str, GuardedAsset] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        ok, bad_index = self.audit.verify_chain()
        return {
            "deployment_id": self.deployment_id,
            "manifest_digest": self.manifest_digest,
            "governance": self.engine.summary(),
            "assets": [a.to_dict() for a in self.factory.list_assets()],
            "audit": {
                "entries": len(self.audit),
                "head": self.audit.head,
                "valid": ok,
                "first_invalid_index": bad_index,
            },
        }


@timed_operation(log, "manifest.deploy")
def deploy_manifest(
    manifest: Dict[str, Any],
    bus: Optional[EventBus] = None,
    config: Optional[WardenConfig] = None,
) -> Deployment:
    """
    Build an engine, factory and assets from a validated manifest.

    The audit trail is attached before the engine is created so that the
    bootstrap grants are the first entries of the chain.
    """
    errors = validate_manifest(manifest)
    if errors:
        source = manifest.get("deployment_id", "<manifest>") if isinstance(manifest, dict) else "<manifest>"
        raise ManifestError(source, "; ".join(errors[:5]), errors)

    config = config or get_config()
    bus = bus or EventBus()
    audit = AuditTrail(bus)

    deployer = manifest["deployer"]
    engine = OperationEngine(
        deployer=deployer,
        signers=manifest.get("signers", []),
        required_signatures=manifest.get("required_signatures"),
        bus=bus,
        config=config,
        identity=manifest.get("engine_identity"),
    )
    for verifier in manifest.get("verifiers", []):
        engine.ledger.grant_verifier(deployer, verifier)
    if manifest.get("verified"):
        engine.ledger.batch_verify(deployer, manifest["verified"])

    factory = AssetFactory(bus, config)
    deployment = Deployment(
        deployment_id=manifest["deployment_id"],
        engine=engine,
        factory=factory,
        bus=bus,
        audit=audit,
        manifest_digest=canonical_digest(manifest),
    )
    for entry in manifest.get("assets", []):
        asset = factory.create_guarded_asset(
            entry.get("controller", deployer),
            entry["metadata"],
            entry["initial_supply"],
            engine.ledger,
        )
        deployment.assets[asset.asset_id] = asset

    log.info(
        "Manifest deployed",
        operation="deploy",
        deployment_id=deployment.deployment_id,
        assets=len(deployment.assets),
        ledger_id=engine.ledger.ledger_id,
    )
    return deployment
