"""
WARDEN — Restricted Asset Governance Engine

Gates transfers of a fungible asset behind a verification list, and gates
changes to that list behind threshold (multi-party) approval.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         GOVERNANCE DEPLOYMENT                            │
    │                                                                          │
    │  CORE                                                                    │
    │    governance.py  Threshold-approval state machine (propose / sign)     │
    │    ledger.py      Verification list, verifier-gated, strict + batch    │
    │    roles.py       Capability sets and typed authorization results       │
    │    guard.py       Transfer precondition over a settlement callback      │
    │                                                                          │
    │  COLLABORATORS                                                           │
    │    asset.py       Guarded asset record and balance book                 │
    │    factory.py     Creates assets and binds them to a ledger             │
    │    manifest.py    YAML deployment manifests (JSON Schema validated)     │
    │                                                                          │
    │  INFRASTRUCTURE                                                          │
    │    events.py      Typed event bus           audit.py   Hash-chained log │
    │    config.py      YAML + env configuration  observability.py  Logging   │
    │    hardening.py   Errors, validators, locks cli.py     `warden` command │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Data Flow
─────────

    signer ──propose──▶ OperationEngine ◀──sign── signers
                              │ quorum reached
                              ▼
                     VerificationLedger.verify / revoke
                              │
                              ▼
    holder ──transfer──▶ TransferGuard ──both verified──▶ balance book

Design Principles
─────────────────

    Fail Closed: Unknown identities are unverified. Every privileged call
    checks a capability first; there is no superuser bypass.

    No Partial Writes: All checks run before any state changes. A failed
    call leaves the deployment exactly as it was.

    Explicit Encoding: Operations store ``kind`` and ``target`` as separate
    fields and dispatch on ``kind`` directly.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import WARDEN components on first access."""

    if name in ("Identity", "NULL_IDENTITY", "require_identity"):
        from warden import identity
        return getattr(identity, name)

    if name in ("Capability", "Authorization", "RoleStore"):
        from warden import roles
        return getattr(roles, name)

    if name == "VerificationLedger":
        from warden.ledger import VerificationLedger
        return VerificationLedger

    if name in ("TransferGuard", "TransferResult"):
        from warden import guard
        return getattr(guard, name)

    if name in ("OperationEngine", "OperationKind", "OperationState", "PendingOperation"):
        from warden import governance
        return getattr(governance, name)

    if name in ("GuardedAsset", "AssetMetadata", "TokenBalances"):
        from warden import asset
        return getattr(asset, name)

    if name == "AssetFactory":
        from warden.factory import AssetFactory
        return AssetFactory

    if name in ("EventBus", "EventRecorder"):
        from warden import events
        return getattr(events, name)

    if name == "AuditTrail":
        from warden.audit import AuditTrail
        return AuditTrail

    if name in ("load_manifest", "deploy_manifest", "Deployment"):
        from warden import manifest
        return getattr(manifest, name)

    if name in ("WardenError", "Unauthorized", "InvalidArgument", "AlreadyInState",
                "NotInState", "UnknownOperation", "AlreadyExecuted", "AlreadySigned",
                "ComplianceRejected", "InsufficientBalance"):
        from warden import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'warden' has no attribute '{name}'")
