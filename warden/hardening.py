"""
WARDEN Validation and Hardening Module

Error taxonomy, input validation, and thread-safety primitives shared by
every WARDEN component. It addresses:

1. A single exception hierarchy with stable error codes
2. Input validation with sanitization
3. Thread-safety primitives (counters, per-key locks)

Security Model:
    - All inputs are untrusted until validated
    - All checks run before any write is committed
    - Every failure is raised to the immediate caller; nothing is retried

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Hashable, Iterator, List, Optional, Set


# =============================================================================
# ERROR TYPES
# =============================================================================

class WardenError(Exception):
    """Base exception for all WARDEN failures."""

    code = "error"


class Unauthorized(WardenError):
    """Caller does not hold the capability the operation requires."""

    code = "unauthorized"

    def __init__(self, identity: Any, capability: Any):
        self.identity = identity
        self.capability = capability
        cap = getattr(capability, "value", capability)
        super().__init__(f"{identity} lacks capability '{cap}'")


class InvalidArgument(WardenError):
    """An argument failed validation."""

    code = "invalid_argument"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class StateConflict(WardenError):
    """Strict ledger entry point hit an identity in the wrong state."""

    code = "state_conflict"

    def __init__(self, identity: Any, state: str):
        self.identity = identity
        self.state = state
        super().__init__(self._describe())

    def _describe(self) -> str:
        return f"{self.identity}: state conflict ({self.state})"


class AlreadyInState(StateConflict):
    code = "already_in_state"

    def _describe(self) -> str:
        return f"{self.identity} is already {self.state}"


class NotInState(StateConflict):
    code = "not_in_state"

    def _describe(self) -> str:
        return f"{self.identity} is not {self.state}"


class OperationError(WardenError):
    """Threshold-approval state conflict."""

    code = "operation_error"

    def __init__(self, operation_id: int, message: str):
        self.operation_id = operation_id
        super().__init__(f"operation {operation_id}: {message}")


class UnknownOperation(OperationError):
    code = "unknown_operation"

    def __init__(self, operation_id: int):
        super().__init__(operation_id, "does not exist")


class AlreadyExecuted(OperationError):
    code = "already_executed"

    def __init__(self, operation_id: int):
        super().__init__(operation_id, "already executed")


class AlreadySigned(OperationError):
    code = "already_signed"

    def __init__(self, operation_id: int, identity: Any):
        self.identity = identity
        super().__init__(operation_id, f"already signed by {identity}")


class ComplianceRejected(WardenError):
    """Transfer blocked because a party is not verified."""

    code = "compliance_rejected"

    def __init__(self, party: Any, role: str):
        self.party = party
        self.role = role
        super().__init__(f"transfer rejected: {role} {party} is not verified")


class InsufficientBalance(WardenError):
    code = "insufficient_balance"

    def __init__(self, holder: Any, available: int, required: int):
        self.holder = holder
        self.available = available
        self.required = required
        super().__init__(
            f"insufficient balance for {holder}: have {available}, need {required}"
        )


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[InvalidArgument] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first InvalidArgument if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    def unwrap(self) -> Any:
        """Return the sanitized value or raise."""
        self.raise_if_invalid()
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[InvalidArgument]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Patterns
    HEX64_PATTERN = re.compile(r'^[a-f0-9]{64}$')
    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')
    ASSET_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{1,128}$')
    SYMBOL_PATTERN = re.compile(r'^[A-Z0-9]{1,11}$')

    # Limits
    MAX_STRING_LENGTH = 4096
    MAX_VALUATION = Decimal("1000000000000")  # 1 trillion

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(InvalidArgument(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(InvalidArgument(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(InvalidArgument(field_name, f"Too long (max {max_length} chars)", value))

        if pattern and not pattern.match(sanitized):
            errors.append(InvalidArgument(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate an address-style identity (0x + 40 hex)."""
        result = cls.validate_string(value, field_name, min_length=42, max_length=42)
        if not result.is_valid:
            return result

        lower = result.sanitized_value.lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure([
                InvalidArgument(field_name, "Must be a valid address (0x + 40 hex)", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_asset_id(cls, value: Any) -> ValidationResult:
        return cls.validate_string(
            value, "asset_id",
            min_length=1, max_length=128,
            pattern=cls.ASSET_ID_PATTERN,
        )

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a SHA256 digest (64 hex chars)."""
        result = cls.validate_string(value, field_name, min_length=64, max_length=64)
        if not result.is_valid:
            return result

        if not cls.HEX64_PATTERN.match(result.sanitized_value.lower()):
            return ValidationResult.failure([
                InvalidArgument(field_name, "Must be 64 lowercase hex characters", value)
            ])

        return ValidationResult.success(result.sanitized_value.lower())

    @classmethod
    def validate_amount(cls, value: Any, field_name: str = "amount") -> ValidationResult:
        """Validate a positive integer token amount."""
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                InvalidArgument(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])
        if value <= 0:
            return ValidationResult.failure([
                InvalidArgument(field_name, "Must be positive", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_valuation(
        cls,
        value: Any,
        field_name: str = "valuation",
        max_value: Optional[Decimal] = None,
    ) -> ValidationResult:
        """Validate a positive monetary valuation."""
        max_value = max_value if max_value is not None else cls.MAX_VALUATION
        errors = []

        try:
            if isinstance(value, str):
                amount = Decimal(value)
            elif isinstance(value, bool):
                raise InvalidOperation
            elif isinstance(value, (int, float)):
                amount = Decimal(str(value))
            elif isinstance(value, Decimal):
                amount = value
            else:
                errors.append(InvalidArgument(field_name, f"Cannot convert {type(value).__name__} to Decimal", value))
                return ValidationResult.failure(errors)
        except InvalidOperation:
            errors.append(InvalidArgument(field_name, "Invalid decimal value", value))
            return ValidationResult.failure(errors)

        if not amount.is_finite():
            errors.append(InvalidArgument(field_name, "Must be a finite number", value))
            return ValidationResult.failure(errors)

        if amount <= 0:
            errors.append(InvalidArgument(field_name, "Must be positive", value))

        if amount > max_value:
            errors.append(InvalidArgument(field_name, f"Exceeds maximum ({max_value})", value))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(amount)


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        """Get current value."""
        with self._lock:
            return self._value


class KeyedLock:
    """
    One re-entrant lock per key.

    Operations on the same key are serialized; operations on distinct
    keys proceed independently. Locks are created lazily and kept for
    the lifetime of the owner.
    """

    def __init__(self):
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantViolation(WardenError):
    """State machine invariant violated. Indicates a bug, not a caller error."""

    code = "invariant_violation"


class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {[s.value for s in valid_targets]}"
            )

    @staticmethod
    def check_quorum(required: int, signer_count: int) -> None:
        """Ensure 1 <= required <= signer_count."""
        if required < 1 or required > signer_count:
            raise InvariantViolation(
                f"required signatures {required} outside 1..{signer_count}"
            )
