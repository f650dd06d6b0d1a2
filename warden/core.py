"""Core primitives for WARDEN.

This module provides the foundational utilities used throughout the package:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- YAML/JSON loading with consistent encoding

Design principles:
- Pure functions where possible
- No global mutable state
"""

from __future__ import annotations

import hashlib
import json
import pathlib
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

import yaml

PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent
SCHEMAS_DIR = PACKAGE_ROOT / "schemas"


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def _coerce_json_types(obj: Any) -> Any:
    """Coerce Python objects into strict JSON types.

    - Decimals become strings, enums their values.
    - datetime/date objects become ISO strings.
    - Floats are rejected (use strings or integers for amounts).
    """
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError("Floats are not allowed in canonical JSON. Use strings or integers.")
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return _coerce_json_types(obj.value)
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.astimezone(timezone.utc).isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x) for x in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted(_coerce_json_types(x) for x in obj)
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            out[str(k)] = _coerce_json_types(v)
        return out
    return str(obj)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected

    This ensures byte-for-byte reproducibility for digests.
    """
    return json.dumps(
        _coerce_json_types(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_digest(obj: Any) -> str:
    """sha256(canonical_json_bytes(obj))."""
    return sha256_bytes(canonical_json_bytes(obj))


def now_iso8601() -> str:
    """Return current UTC time in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat()
