"""
dataplane_orchestrator/utils/hashing.py

Deterministic content hashes. Every digest is computed over a canonical JSON
rendering (sorted keys, no whitespace) so that dict ordering never changes
the result.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

from pydantic import BaseModel


def _canonical(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True)
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")
    if isinstance(obj, Mapping):
        return {str(k): _canonical(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_canonical(v) for v in obj]
    return obj


def object_hash(obj: Any) -> str:
    """
    Return a short, stable digest of any JSON-compatible value or pydantic model.

    Args:
        obj (Any): Value to hash.

    Returns:
        str: Hex-encoded sha256 digest.
    """
    rendered = json.dumps(
        _canonical(obj), sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha256(rendered.encode("utf-8")).hexdigest()
