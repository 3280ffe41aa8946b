"""
OpenTruth Canonical JSON Encoding

Semantically identical values produce identical bytes, so that two
implementations sign and verify exactly the same payload.
"""

import json
from typing import Any, Dict, List, Union

from .errors import CanonicalizationError


def canonicalize(obj: Any) -> bytes:
    """
    Convert an object to canonical JSON bytes.

    Rules:
    - Object keys sorted lexicographically (Unicode code point order)
    - No whitespace between tokens (compact form)
    - UTF-8 encoding, no BOM
    - Integers and strings only; floats are rejected
    - Lowercase true/false
    - Arrays preserve order

    Returns:
        UTF-8 encoded bytes of canonical JSON
    """
    canonical = _canonicalize_value(obj)
    return json.dumps(canonical, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return canonicalize(obj).decode('utf-8')


def _canonicalize_value(value: Any) -> Any:
    """Recursively canonicalize a value."""
    if value is None:
        return None
    elif isinstance(value, bool):
        return value
    elif isinstance(value, int):
        return value
    elif isinstance(value, float):
        # Float formatting differs between JSON encoders.
        raise CanonicalizationError(f"Cannot canonicalize float: {value!r}")
    elif isinstance(value, str):
        return value
    elif isinstance(value, dict):
        return _canonicalize_object(value)
    elif isinstance(value, (list, tuple)):
        return _canonicalize_array(value)
    else:
        raise CanonicalizationError(f"Cannot canonicalize type: {type(value)}")


def _canonicalize_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Canonicalize an object by sorting keys lexicographically."""
    for key in obj:
        if not isinstance(key, str):
            raise CanonicalizationError(f"Object keys must be strings, got {type(key)}")
    sorted_keys = sorted(obj.keys())
    return {k: _canonicalize_value(obj[k]) for k in sorted_keys}


def _canonicalize_array(arr: Union[List, tuple]) -> List:
    """Canonicalize an array, preserving order."""
    return [_canonicalize_value(item) for item in arr]
