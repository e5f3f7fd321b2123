"""
Canonical bundle serialization.

The same bundle must always serialize to the same bytes, because those
bytes are what gets signed. Rules:
- Object keys sorted by Unicode code point
- No whitespace between tokens
- UTF-8 output, non-ASCII characters kept as-is
- NaN and infinities rejected (they have no JSON representation)
"""

import json
import math
from typing import Any


def canonical_json(value: Any) -> str:
    """
    Serialize a JSON-compatible value to its canonical text form.

    Raises:
        ValueError: If the value contains a non-finite float
    """
    _reject_non_finite(value)
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_bytes(value: Any) -> bytes:
    """Canonical form encoded as UTF-8."""
    return canonical_json(value).encode("utf-8")


def _reject_non_finite(value: Any) -> None:
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"non-finite number {value!r} cannot be serialized")
    elif isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"object keys must be strings, got {type(key).__name__}")
            _reject_non_finite(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _reject_non_finite(item)
