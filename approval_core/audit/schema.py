import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from approval_core.events import (
    AutoApprovalTriggered,
    BranchCreated,
    BranchDeleted,
    CommitCreated,
    MergeCompleted,
    MergeRequestCreated,
    MergeRequestUpdated,
    RequestCancelled,
    RequestCreated,
    RequestTimedOut,
    ResponseRecorded,
    TagCreated,
    TrustRankChanged,
)

logger = logging.getLogger(__name__)


class AuditEventSchema:
    """Schema definition and validation for audit log entries."""

    REQUIRED_FIELDS = [
        "event_id",
        "ts",
        "kind",
        "actor",
        "description",
        "payload",
    ]

    KNOWN_KINDS = [
        cls.kind for cls in (
            RequestCreated, ResponseRecorded, TrustRankChanged, AutoApprovalTriggered,
            RequestTimedOut, RequestCancelled, CommitCreated, BranchCreated, BranchDeleted,
            MergeRequestCreated, MergeRequestUpdated, MergeCompleted, TagCreated,
        )
    ]

    ACTORS = ["HUMAN", "SYSTEM"]

    @staticmethod
    def generate_id(kind: str) -> str:
        """Generates a unique entry ID based on kind and timestamp."""
        ts_str = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        return f"evt_{ts_str}_{kind[:12]}"

    @staticmethod
    def validate(entry: Dict[str, Any]) -> bool:
        for field in AuditEventSchema.REQUIRED_FIELDS:
            if field not in entry:
                return False

        if entry["kind"] not in AuditEventSchema.KNOWN_KINDS:
            logger.warning("Audit: unknown event kind '%s'", entry["kind"])

        if entry["actor"] not in AuditEventSchema.ACTORS:
            return False
        if not isinstance(entry["payload"], dict):
            return False

        try:
            datetime.fromisoformat(entry["ts"].replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            return False

        return True

    @staticmethod
    def create_event(kind: str,
                     description: str,
                     payload: Optional[Dict[str, Any]] = None,
                     actor: str = "SYSTEM",
                     event_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "event_id": event_id or AuditEventSchema.generate_id(kind),
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "kind": kind,
            "actor": actor.upper(),
            "description": description,
            "payload": payload or {},
        }
