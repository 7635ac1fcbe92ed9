import hashlib
from typing import Any, Dict

from approval_core.history.crypto import canonical_json

GENESIS_HASH = "0" * 64


def calculate_entry_hash(entry: Dict[str, Any], prev_hash: str) -> str:
    """SHA-256 of the entry (minus its own hash) chained to the previous hash."""
    body = {k: v for k, v in entry.items() if k != "hash"}
    hasher = hashlib.sha256()
    hasher.update(prev_hash.encode("utf-8"))
    hasher.update(canonical_json(body).encode("utf-8"))
    return hasher.hexdigest()
