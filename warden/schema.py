"""JSON Schema validation for WARDEN documents.

Schemas live in ``warden/schemas`` and are registered by ``$id`` so that
cross-schema ``$ref`` resolves without network access. Validators are
cached per schema name.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from warden.core import SCHEMAS_DIR, load_json
from warden.hardening import InvalidArgument

logger = logging.getLogger(__name__)

DEPLOYMENT_SCHEMA = "deployment.schema.json"
ASSET_METADATA_SCHEMA = "asset-metadata.schema.json"


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Registry of every bundled schema, keyed by ``$id``."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.schema.json")):
        schema = load_json(schema_path)
        schema_id = schema.get("$id") or f"https://schemas.momentum.inc/warden/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Validator for a bundled schema file name."""
    path = SCHEMAS_DIR / name
    if not path.is_file():
        raise FileNotFoundError(f"Unknown schema: {name}")
    return Draft202012Validator(load_json(path), registry=_schema_registry())


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """Validation error messages, sorted; empty when ``obj`` is valid."""
    validator = schema_validator(name)
    return sorted(
        f"{error.json_path}: {error.message}"
        for error in validator.iter_errors(obj)
    )


def require_valid(obj: Any, name: str, field_name: str) -> None:
    """Raise InvalidArgument carrying the first few schema errors."""
    errors = validate_against_schema(obj, name)
    if errors:
        logger.debug("Schema %s rejected %s: %s", name, field_name, errors)
        raise InvalidArgument(field_name, "; ".join(errors[:5]), obj)
