"""
Canonical JSON hashing.

Request hashes must not depend on key order or whitespace, so payloads are
serialized canonically before digesting.
"""

import hashlib
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Serialize ``payload`` with sorted keys and no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def hash_canonical_payload(payload: Any) -> str:
    """Return ``sha256:<hex>`` for the canonical form of ``payload``."""
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
