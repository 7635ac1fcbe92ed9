"""
Typed publish/subscribe notifications.

Every state change in the coordinator and the history store is announced on an
EventBus. Consumers (audit log, history recorder, UI) subscribe by kind, or to
"*" for everything. Handlers run synchronously after the mutation they describe
has completed; a handler that raises is logged and does not affect the caller
or the remaining handlers.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Optional

from approval_core.engine.types import ApprovalRequest, ApprovalResponse

logger = logging.getLogger(__name__)

ALL = "*"


@dataclass(frozen=True)
class Event:
    kind: ClassVar[str] = "event"

    def describe(self) -> str:
        return self.kind

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class RequestCreated(Event):
    kind: ClassVar[str] = "request-created"
    request: ApprovalRequest

    def describe(self) -> str:
        return f"Approval request {self.request.id} created ({self.request.risk_level.value} risk)"

    def to_dict(self) -> Dict[str, Any]:
        return {"request": self.request.to_dict()}


@dataclass(frozen=True)
class ResponseRecorded(Event):
    """Published for every decision outcome, human or automatic."""

    kind: ClassVar[str] = "response-recorded"
    response: ApprovalResponse
    request: Optional[ApprovalRequest] = None
    risk_level: Optional[str] = None
    category: Optional[str] = None

    def describe(self) -> str:
        status = "approved" if self.response.approved else "rejected"
        return f"Request {self.response.request_id} {status} via {self.response.action.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response.to_dict(),
            "request_id": self.request.id if self.request else None,
            "risk_level": self.risk_level,
            "category": self.category,
        }


@dataclass(frozen=True)
class TrustRankChanged(Event):
    kind: ClassVar[str] = "trust-rank-changed"
    old_rank: str
    new_rank: str
    reason: str

    def describe(self) -> str:
        return f"Trust rank {self.old_rank} -> {self.new_rank}: {self.reason}"

    def to_dict(self) -> Dict[str, Any]:
        return {"old_rank": self.old_rank, "new_rank": self.new_rank, "reason": self.reason}


@dataclass(frozen=True)
class AutoApprovalTriggered(Event):
    kind: ClassVar[str] = "auto-approval-triggered"
    request_id: str
    reason: str

    def describe(self) -> str:
        return f"Auto-approved {self.request_id}: {self.reason}"

    def to_dict(self) -> Dict[str, Any]:
        return {"request_id": self.request_id, "reason": self.reason}


@dataclass(frozen=True)
class RequestTimedOut(Event):
    kind: ClassVar[str] = "request-timed-out"
    request_id: str

    def describe(self) -> str:
        return f"Approval request {self.request_id} timed out"

    def to_dict(self) -> Dict[str, Any]:
        return {"request_id": self.request_id}


@dataclass(frozen=True)
class RequestCancelled(Event):
    kind: ClassVar[str] = "request-cancelled"
    request_id: str
    reason: str

    def describe(self) -> str:
        return f"Approval request {self.request_id} cancelled: {self.reason}"

    def to_dict(self) -> Dict[str, Any]:
        return {"request_id": self.request_id, "reason": self.reason}


@dataclass(frozen=True)
class CommitCreated(Event):
    kind: ClassVar[str] = "commit-created"
    commit_id: str
    branch: str
    message: str

    def describe(self) -> str:
        return f"Commit {self.commit_id[:12]} on {self.branch}: {self.message.splitlines()[0]}"

    def to_dict(self) -> Dict[str, Any]:
        return {"commit_id": self.commit_id, "branch": self.branch, "message": self.message}


@dataclass(frozen=True)
class BranchCreated(Event):
    kind: ClassVar[str] = "branch-created"
    name: str
    base: Optional[str]

    def describe(self) -> str:
        return f"Branch {self.name} created"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "base": self.base}


@dataclass(frozen=True)
class BranchDeleted(Event):
    kind: ClassVar[str] = "branch-deleted"
    name: str

    def describe(self) -> str:
        return f"Branch {self.name} deleted"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class MergeRequestCreated(Event):
    kind: ClassVar[str] = "merge-request-created"
    merge_request_id: str
    source: str
    target: str

    def describe(self) -> str:
        return f"Merge request {self.merge_request_id} ({self.source} -> {self.target})"

    def to_dict(self) -> Dict[str, Any]:
        return {"merge_request_id": self.merge_request_id, "source": self.source, "target": self.target}


@dataclass(frozen=True)
class MergeRequestUpdated(Event):
    kind: ClassVar[str] = "merge-request-updated"
    merge_request_id: str
    status: str

    def describe(self) -> str:
        return f"Merge request {self.merge_request_id} is now {self.status}"

    def to_dict(self) -> Dict[str, Any]:
        return {"merge_request_id": self.merge_request_id, "status": self.status}


@dataclass(frozen=True)
class MergeCompleted(Event):
    kind: ClassVar[str] = "merge-completed"
    source: str
    target: str
    merge_commit: str

    def describe(self) -> str:
        return f"Merged {self.source} into {self.target} ({self.merge_commit[:12]})"

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "target": self.target, "merge_commit": self.merge_commit}


@dataclass(frozen=True)
class TagCreated(Event):
    kind: ClassVar[str] = "tag-created"
    name: str
    commit_id: str

    def describe(self) -> str:
        return f"Tag {self.name} -> {self.commit_id[:12]}"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "commit_id": self.commit_id}


Handler = Callable[[Event], Any]


class EventBus:
    """In-process fan-out of typed events."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, kind: str, handler: Handler) -> Handler:
        self._handlers[kind].append(handler)
        return handler

    def unsubscribe(self, kind: str, handler: Handler) -> bool:
        handlers = self._handlers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def publish(self, event: Event) -> int:
        """Delivers event to its subscribers. Returns the number of handlers that succeeded."""
        delivered = 0
        for handler in list(self._handlers.get(event.kind, [])) + list(self._handlers.get(ALL, [])):
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.warning("Listener %r failed on %s: %s", handler, event.kind, e)
        return delivered


def event_record(event: Event) -> Dict[str, Any]:
    """Flat dict form used by the audit log and the HTTP service."""
    return {"kind": event.kind, "description": event.describe(), "payload": event.to_dict()}


__all__ = [
    "ALL", "Event", "EventBus", "event_record",
    "RequestCreated", "ResponseRecorded", "TrustRankChanged", "AutoApprovalTriggered",
    "RequestTimedOut", "RequestCancelled", "CommitCreated", "BranchCreated",
    "BranchDeleted", "MergeRequestCreated", "MergeRequestUpdated", "MergeCompleted", "TagCreated",
]
