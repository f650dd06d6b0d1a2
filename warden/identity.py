"""Participant identities.

An Identity is an opaque, address-equivalent handle. The core only relies
on equality and hashing; the zero address is the reserved null sentinel and
is rejected wherever an identity is taken as an argument.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Union

from warden.hardening import InvalidArgument, Validators


@dataclass(frozen=True, order=True)
class Identity:
    """A participant handle (lowercase ``0x`` + 40 hex)."""
    address: str

    def __str__(self) -> str:
        return self.address

    @property
    def is_null(self) -> bool:
        return self.address == NULL_ADDRESS

    @classmethod
    def parse(cls, value: Any, field_name: str = "identity") -> "Identity":
        """Normalize a string or Identity, raising InvalidArgument if malformed."""
        if isinstance(value, Identity):
            return value
        return cls(Validators.validate_address(value, field_name).unwrap())

    @classmethod
    def random(cls) -> "Identity":
        return cls("0x" + secrets.token_hex(20))


NULL_ADDRESS = "0x" + "0" * 40
NULL_IDENTITY = Identity(NULL_ADDRESS)

IdentityLike = Union[Identity, str]


def require_identity(value: Any, field_name: str = "identity") -> Identity:
    """Parse ``value`` and reject the null sentinel."""
    identity = Identity.parse(value, field_name)
    if identity.is_null:
        raise InvalidArgument(field_name, "null identity is not allowed", value)
    return identity
