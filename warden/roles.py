"""
WARDEN Role Store

Capability bookkeeping for a governance deployment.

Capabilities:

    ADMIN             manage capabilities and the signer set
    VERIFIER          mutate the verification ledger
    THRESHOLD_SIGNER  propose and sign governance operations

The store only records assignments. Authorization is the caller's job:
every privileged entry point calls ``authorize(...).require()`` before it
reads any state it intends to change. There is no superuser bypass; the
bootstrap admin is checked like everyone else.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Set

from warden.hardening import Unauthorized
from warden.identity import Identity


class Capability(Enum):
    ADMIN = "admin"
    VERIFIER = "verifier"
    THRESHOLD_SIGNER = "threshold_signer"


ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)


@dataclass(frozen=True)
class Authorization:
    """Outcome of a capability check."""
    identity: Identity
    capability: Capability
    granted: bool

    def require(self) -> Identity:
        """Return the authorized identity or raise Unauthorized."""
        if not self.granted:
            raise Unauthorized(self.identity, self.capability)
        return self.identity


class RoleStore:
    """Identity → capability set. Thread-safe."""

    def __init__(self):
        self._assignments: Dict[Identity, Set[Capability]] = defaultdict(set)
        self._lock = threading.RLock()

    def grant(self, identity: Identity, capability: Capability) -> bool:
        """Grant a capability. Returns False if it was already held."""
        with self._lock:
            held = self._assignments[identity]
            if capability in held:
                return False
            held.add(capability)
            return True

    def revoke(self, identity: Identity, capability: Capability) -> bool:
        """Revoke a capability. Revoking an unheld capability is a no-op returning False."""
        with self._lock:
            held = self._assignments.get(identity)
            if not held or capability not in held:
                return False
            held.discard(capability)
            return True

    def has(self, identity: Identity, capability: Capability) -> bool:
        with self._lock:
            return capability in self._assignments.get(identity, ())

    def authorize(self, identity: Identity, capability: Capability) -> Authorization:
        return Authorization(identity, capability, self.has(identity, capability))

    def holders(self, capability: Capability) -> FrozenSet[Identity]:
        with self._lock:
            return frozenset(i for i, caps in self._assignments.items() if capability in caps)

    def capabilities_of(self, identity: Identity) -> FrozenSet[Capability]:
        with self._lock:
            return frozenset(self._assignments.get(identity, ()))

    def to_dict(self) -> Dict[str, list]:
        with self._lock:
            return {
                str(i): sorted(c.value for c in caps)
                for i, caps in sorted(self._assignments.items())
                if caps
            }
