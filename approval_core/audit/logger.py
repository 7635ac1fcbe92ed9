import fcntl
import json
import logging
import os
from typing import Any, Dict, Iterator, List, Optional, Tuple

from approval_core.events import ALL, Event, EventBus, ResponseRecorded
from .crypto import GENESIS_HASH, calculate_entry_hash
from .schema import AuditEventSchema

logger = logging.getLogger(__name__)

TAIL_CHUNK = 4096


def actor_for(event: Event) -> str:
    """HUMAN for responses a person gave to a pending request, SYSTEM otherwise."""
    if isinstance(event, ResponseRecorded) and event.request is not None:
        if event.response.request_id == event.request.id:
            return "HUMAN"
    return "SYSTEM"


def _entry_problems(entry: Dict[str, Any], prev_hash: str) -> Iterator[str]:
    expected = calculate_entry_hash(entry, prev_hash)
    if entry.get("hash") != expected:
        yield f"Invalid hash (expected {expected})"
    if entry.get("prev_hash") != prev_hash:
        yield f"Broken chain link (expected prev_hash {prev_hash})"
    body = {k: v for k, v in entry.items() if k not in ("hash", "prev_hash")}
    if not AuditEventSchema.validate(body):
        yield "Entry does not match schema"


def verify_audit_log(file_path: str) -> Tuple[bool, List[str]]:
    """Walks the log from the genesis hash and reports every defect per line.

    An entry is sound when its hash covers its content and predecessor, its
    prev_hash names the line before it, and it still satisfies the schema.
    Blank lines are skipped.
    """
    if not os.path.exists(file_path):
        return False, ["Audit log not found"]

    errors = []
    prev_hash = GENESIS_HASH
    with open(file_path, "r") as f:
        for line_num, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                errors.append(f"Line {line_num}: Invalid JSON")
                continue
            errors.extend(f"Line {line_num}: {problem}" for problem in _entry_problems(entry, prev_hash))
            prev_hash = entry.get("hash", "")

    if errors:
        logger.warning("Audit log %s failed verification with %d error(s)", file_path, len(errors))
    return not errors, errors


class AuditLog:
    """Append-only, hash-chained JSONL record of every notification."""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        directory = os.path.dirname(self.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.file_path):
            with open(self.file_path, "w"):
                pass

    def _get_last_entry(self) -> Optional[Dict[str, Any]]:
        """Reads backwards from the end of the file until the last line is whole."""
        size = os.path.getsize(self.file_path)
        if size == 0:
            return None

        with open(self.file_path, "rb") as f:
            pos = size
            tail = b""
            while pos > 0:
                step = min(TAIL_CHUNK, pos)
                pos -= step
                f.seek(pos)
                tail = f.read(step) + tail
                if b"\n" in tail.rstrip():
                    break

        line = tail.rstrip().rsplit(b"\n", 1)[-1]
        if not line.strip():
            return None
        try:
            return json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Failed to read last audit entry from %s", self.file_path)
            return None

    def log(self, entry: Dict[str, Any]) -> str:
        """
        Validates, hashes, and appends an entry atomically.
        Returns the event_id.
        """
        if not AuditEventSchema.validate(entry):
            raise ValueError("Audit entry does not match schema")

        with open(self.file_path, "a+") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                last_entry = self._get_last_entry()
                prev_hash = last_entry.get("hash", GENESIS_HASH) if last_entry else GENESIS_HASH

                entry["prev_hash"] = prev_hash
                entry["hash"] = calculate_entry_hash(entry, prev_hash)

                f.write(json.dumps(entry) + "\n")
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)

        return entry["event_id"]

    def record(self, event: Event) -> str:
        entry = AuditEventSchema.create_event(
            kind=event.kind,
            description=event.describe(),
            payload=event.to_dict(),
            actor=actor_for(event),
        )
        return self.log(entry)

    def verify(self) -> Tuple[bool, List[str]]:
        return verify_audit_log(self.file_path)

    def attach(self, bus: EventBus) -> "AuditLog":
        bus.subscribe(ALL, self.record)
        return self
