from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


@dataclass(frozen=True)
class CanonicalHash:
    canonical: str
    hash_hex: str


def _normalize_for_jcs(
    value: Any,
    _active: set[int] | None = None,
) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert Python/Pydantic types into JSON-primitive types.

    rfc8785.dumps only accepts: bool, int, float, str, None, list/tuple, dict.
    This function converts Pydantic models, datetime, UUID, Decimal, and Enum
    values into their JSON-compatible representations before serialization.

    Args:
        value: Any Python value to normalize for JCS serialization.

    Returns:
        A JSON-primitive structure suitable for rfc8785.dumps.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
        ValueError: If value contains a reference cycle.
    """
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value, _active)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json", by_alias=True), _active)

    if isinstance(value, (dict, list, tuple)):
        active = _active if _active is not None else set()
        marker = id(value)
        if marker in active:
            raise ValueError(f"Cannot canonicalize cyclic structure ({type(value).__name__} refers to itself)")
        active.add(marker)
        try:
            if isinstance(value, dict):
                return {str(k): _normalize_for_jcs(v, active) for k, v in value.items()}
            return [_normalize_for_jcs(item, active) for item in value]
        finally:
            active.discard(marker)

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, time):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, Decimal):
        # Decimal -> float for JCS. Finite decimals only.
        if not value.is_finite():
            raise TypeError(f"Cannot serialize non-finite Decimal to JSON: {value!r}")
        return float(value)

    if isinstance(value, bytes):
        raise TypeError(
            f"Cannot serialize bytes to canonical JSON. "
            f"Encode to base64 or hex string first: {value!r:.64}"
        )

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def canonicalize(value: Any) -> bytes:
    """Serialize a value to deterministic canonical bytes per RFC 8785.

    Object keys are sorted; array order is preserved.  Two records that differ
    only in key insertion order always produce identical bytes.

    Raises:
        TypeError: If value contains an unsupported type.
        ValueError: If value contains a reference cycle.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized)


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    return canonicalize(value).decode("utf-8")


def hash_canonical_json(value: Any) -> CanonicalHash:
    """Return the canonical form of *value* and its SHA-256 hex digest."""
    canonical = canonicalize(value)
    return CanonicalHash(canonical=canonical.decode("utf-8"), hash_hex=hashlib.sha256(canonical).hexdigest())


def sha256_content_hash(content: str | bytes) -> str:
    """Return the ``sha256-<hex>`` content hash used in mod packages."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    return f"sha256-{hashlib.sha256(data).hexdigest()}"
