"""
MedGate Canonical JSON Encoding

Every signed payload (grant requests, revocations, upload manifests, audit
entries) is reduced to one byte representation before signing or hashing,
so that a signature produced by a client verifies on the server regardless
of key order or whitespace.
"""

import json
from typing import Any, Dict, List, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert an object to canonical JSON bytes.

    Rules:
    - Object keys sorted lexicographically (Unicode code point order)
    - No whitespace between tokens
    - UTF-8 encoding, no BOM
    - Arrays preserve order
    - Only JSON-native types (dict, list/tuple, str, int, float, bool, None)

    Raises:
        ValueError: if a value has no JSON representation
    """
    canonical = _canonicalize_value(obj)
    return json.dumps(canonical, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return canonicalize(obj).decode('utf-8')


def _canonicalize_value(value: Any) -> Any:
    if value is None:
        return None
    elif isinstance(value, bool):
        return value
    elif isinstance(value, (int, float)):
        return value
    elif isinstance(value, str):
        return value
    elif isinstance(value, dict):
        return _canonicalize_object(value)
    elif isinstance(value, (list, tuple)):
        return _canonicalize_array(value)
    else:
        raise ValueError(f"Cannot canonicalize type: {type(value)}")


def _canonicalize_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    for key in obj:
        if not isinstance(key, str):
            raise ValueError(f"Object keys must be strings, got {type(key)}")
    return {k: _canonicalize_value(obj[k]) for k in sorted(obj.keys())}


def _canonicalize_array(arr: Union[List, tuple]) -> List:
    return [_canonicalize_value(item) for item in arr]
