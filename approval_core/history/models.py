import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from approval_core.engine.types import (
    ApprovalCategory,
    ApprovalResponse,
    RiskLevel,
    format_ts,
    parse_ts,
    utc_now,
)
from .crypto import SHORT_ID_LENGTH


def _ts(value: Optional[datetime]) -> Optional[str]:
    return format_ts(value) if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return parse_ts(value) if value else None


class DiffType(str, Enum):
    APPROVAL = "approval"
    REJECTION = "rejection"
    TRUST_CHANGE = "trust-change"


class MergeStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MERGED = "merged"
    CLOSED = "closed"

    @property
    def is_open(self) -> bool:
        return self in (MergeStatus.DRAFT, MergeStatus.PENDING, MergeStatus.APPROVED, MergeStatus.REJECTED)


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes-requested"
    COMMENTED = "commented"


@dataclass(frozen=True)
class ApprovalState:
    """Reduced projection of the approval state that commits are diffed against."""

    trust_rank: str = "learning"
    auto_approval_categories: Tuple[str, ...] = ()
    approved_requests: Tuple[str, ...] = ()
    rejected_requests: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trust_rank": self.trust_rank,
            "auto_approval_categories": list(self.auto_approval_categories),
            "approved_requests": list(self.approved_requests),
            "rejected_requests": list(self.rejected_requests),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalState":
        return cls(
            trust_rank=data.get("trust_rank", "learning"),
            auto_approval_categories=tuple(data.get("auto_approval_categories", [])),
            approved_requests=tuple(data.get("approved_requests", [])),
            rejected_requests=tuple(data.get("rejected_requests", [])),
        )


@dataclass(frozen=True)
class Change:
    path: str
    operation: str  # add | remove | modify
    description: str
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "operation": self.operation,
            "description": self.description,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Change":
        return cls(
            path=data["path"],
            operation=data["operation"],
            description=data.get("description", ""),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
        )


@dataclass(frozen=True)
class Diff:
    type: DiffType
    before: Optional[ApprovalState]
    after: ApprovalState
    changes: Tuple[Change, ...]
    summary: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "before": self.before.to_dict() if self.before else None,
            "after": self.after.to_dict(),
            "changes": [c.to_dict() for c in self.changes],
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Diff":
        before = data.get("before")
        return cls(
            type=DiffType(data["type"]),
            before=ApprovalState.from_dict(before) if before else None,
            after=ApprovalState.from_dict(data.get("after", {})),
            changes=tuple(Change.from_dict(c) for c in data.get("changes", [])),
            summary=data.get("summary", ""),
        )


@dataclass(frozen=True)
class CommitMetadata:
    author: str
    email: str
    message: str
    tags: Tuple[str, ...]
    risk_level: RiskLevel
    category: ApprovalCategory
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "email": self.email,
            "message": self.message,
            "tags": list(self.tags),
            "risk_level": self.risk_level.value,
            "category": self.category.value,
            "timestamp": format_ts(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommitMetadata":
        return cls(
            author=data["author"],
            email=data.get("email", ""),
            message=data["message"],
            tags=tuple(data.get("tags", [])),
            risk_level=RiskLevel(data.get("risk_level", "low")),
            category=ApprovalCategory(data.get("category", "implementation")),
            timestamp=parse_ts(data["timestamp"]),
        )


@dataclass(frozen=True)
class Commit:
    id: str
    parents: Tuple[str, ...]
    response: ApprovalResponse
    metadata: CommitMetadata
    diff: Diff
    tree_hash: str

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]

    @property
    def approved(self) -> bool:
        return self.response.approved

    @property
    def subject(self) -> str:
        return self.metadata.message.split("\n", 1)[0]

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parents": list(self.parents),
            "response": self.response.to_dict(),
            "metadata": self.metadata.to_dict(),
            "diff": self.diff.to_dict(),
            "tree_hash": self.tree_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Commit":
        return cls(
            id=data["id"],
            parents=tuple(data.get("parents", [])),
            response=ApprovalResponse.from_dict(data["response"]),
            metadata=CommitMetadata.from_dict(data["metadata"]),
            diff=Diff.from_dict(data["diff"]),
            tree_hash=data["tree_hash"],
        )


@dataclass
class Branch:
    name: str
    head: Optional[str] = None
    base: Optional[str] = None
    path: List[str] = field(default_factory=list)
    merge_requests: List[str] = field(default_factory=list)
    protected: bool = False
    created_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)

    def touch(self):
        self.last_activity = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "head": self.head,
            "base": self.base,
            "path": list(self.path),
            "merge_requests": list(self.merge_requests),
            "protected": self.protected,
            "created_at": format_ts(self.created_at),
            "last_activity": format_ts(self.last_activity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Branch":
        return cls(
            name=data["name"],
            head=data.get("head") or None,
            base=data.get("base") or None,
            path=list(data.get("path", [])),
            merge_requests=list(data.get("merge_requests", [])),
            protected=bool(data.get("protected", False)),
            created_at=parse_ts(data["created_at"]),
            last_activity=parse_ts(data["last_activity"]),
        )


@dataclass
class Comment:
    author: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utc_now)
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "content": self.content,
            "timestamp": format_ts(self.timestamp),
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Comment":
        return cls(
            author=data["author"],
            content=data["content"],
            id=data["id"],
            timestamp=parse_ts(data["timestamp"]),
            resolved=bool(data.get("resolved", False)),
        )


@dataclass
class Review:
    reviewer: str
    status: ReviewStatus
    comments: List[Comment] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reviewer": self.reviewer,
            "status": self.status.value,
            "comments": [c.to_dict() for c in self.comments],
            "timestamp": format_ts(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Review":
        return cls(
            reviewer=data["reviewer"],
            status=ReviewStatus(data["status"]),
            comments=[Comment.from_dict(c) for c in data.get("comments", [])],
            id=data["id"],
            timestamp=parse_ts(data["timestamp"]),
        )


@dataclass
class MergeRequest:
    title: str
    source: str
    target: str
    author: str
    description: str = ""
    commits: List[str] = field(default_factory=list)
    reviews: List[Review] = field(default_factory=list)
    status: MergeStatus = MergeStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    merged_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "source": self.source,
            "target": self.target,
            "author": self.author,
            "commits": list(self.commits),
            "reviews": [r.to_dict() for r in self.reviews],
            "status": self.status.value,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "merged_at": _ts(self.merged_at),
            "closed_at": _ts(self.closed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MergeRequest":
        return cls(
            title=data["title"],
            source=data["source"],
            target=data["target"],
            author=data.get("author", ""),
            description=data.get("description", ""),
            commits=list(data.get("commits", [])),
            reviews=[Review.from_dict(r) for r in data.get("reviews", [])],
            status=MergeStatus(data.get("status", "pending")),
            id=data["id"],
            created_at=parse_ts(data["created_at"]),
            updated_at=parse_ts(data["updated_at"]),
            merged_at=_parse(data.get("merged_at")),
            closed_at=_parse(data.get("closed_at")),
        )


@dataclass
class Repository:
    """Aggregate root: every branch, commit, tag and merge request, keyed by id."""

    name: str = "approvals"
    default_branch: str = "main"
    current_branch: str = "main"
    branches: Dict[str, Branch] = field(default_factory=dict)
    commits: Dict[str, Commit] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    merge_requests: Dict[str, MergeRequest] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "default_branch": self.default_branch,
            "current_branch": self.current_branch,
            "branches": {name: b.to_dict() for name, b in self.branches.items()},
            "commits": [c.to_dict() for c in self.commits.values()],
            "tags": dict(self.tags),
            "merge_requests": [mr.to_dict() for mr in self.merge_requests.values()],
            "created_at": format_ts(self.created_at),
            "last_activity": format_ts(self.last_activity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Repository":
        commits = [Commit.from_dict(c) for c in data.get("commits", [])]
        mrs = [MergeRequest.from_dict(m) for m in data.get("merge_requests", [])]
        return cls(
            name=data.get("name", "approvals"),
            default_branch=data["default_branch"],
            current_branch=data.get("current_branch", data["default_branch"]),
            branches={name: Branch.from_dict(b) for name, b in data.get("branches", {}).items()},
            commits={c.id: c for c in commits},
            tags=dict(data.get("tags", {})),
            merge_requests={mr.id: mr for mr in mrs},
            id=data.get("id") or str(uuid.uuid4()),
            created_at=parse_ts(data["created_at"]),
            last_activity=parse_ts(data["last_activity"]),
        )
