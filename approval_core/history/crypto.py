import hashlib
import json
from typing import Any

COMMIT_ID_LENGTH = 40
SHORT_ID_LENGTH = 12


def canonical_json(data: Any) -> str:
    """Key-sorted, whitespace-free JSON. Same data always yields the same text."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(data: Any) -> str:
    """SHA-256 hex digest of the canonical form of data."""
    hasher = hashlib.sha256()
    hasher.update(canonical_json(data).encode("utf-8"))
    return hasher.hexdigest()


def commit_id(data: Any) -> str:
    return content_hash(data)[:COMMIT_ID_LENGTH]
