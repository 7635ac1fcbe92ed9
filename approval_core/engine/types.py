import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: datetime) -> str:
    """ISO-8601 UTC timestamp with a trailing Z."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def index(self) -> int:
        return _RISK_ORDER.index(self)

    def at_least(self, other: "RiskLevel") -> bool:
        return self.index >= other.index

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda level: level.index)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class TrustRank(str, Enum):
    """Ordered trust ranks, lowest first. Compare with compare_ranks or at_least."""

    NOVICE = "novice"
    LEARNING = "learning"
    COLLABORATIVE = "collaborative"
    TRUSTED = "trusted"
    AUTONOMOUS = "autonomous"

    @property
    def index(self) -> int:
        return _RANK_ORDER.index(self)

    def at_least(self, other: "TrustRank") -> bool:
        return compare_ranks(self, other) >= 0


_RANK_ORDER = [
    TrustRank.NOVICE,
    TrustRank.LEARNING,
    TrustRank.COLLABORATIVE,
    TrustRank.TRUSTED,
    TrustRank.AUTONOMOUS,
]


def compare_ranks(a: TrustRank, b: TrustRank) -> int:
    """Returns -1, 0 or 1 as a is below, equal to or above b."""
    diff = TrustRank(a).index - TrustRank(b).index
    return (diff > 0) - (diff < 0)


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    TRUST = "trust"
    REVIEW = "review"


class ApprovalCategory(str, Enum):
    ARCHITECTURE = "architecture"
    IMPLEMENTATION = "implementation"
    REFACTORING = "refactoring"
    SECURITY = "security"
    PERFORMANCE = "performance"

    @classmethod
    def parse(cls, value: Any) -> Optional["ApprovalCategory"]:
        """Returns the category for value, or None when it is missing or unknown."""
        if value is None or isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ProposedAction:
    kind: str
    description: str = ""
    files: Tuple[str, ...] = ()
    risk_hint: RiskLevel = RiskLevel.LOW
    reversible: bool = True

    def __post_init__(self):
        object.__setattr__(self, "files", tuple(self.files))
        object.__setattr__(self, "risk_hint", RiskLevel(self.risk_hint))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "description": self.description,
            "files": list(self.files),
            "risk_hint": self.risk_hint.value,
            "reversible": self.reversible,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposedAction":
        return cls(
            kind=data.get("kind", "edit"),
            description=data.get("description", ""),
            files=tuple(data.get("files", [])),
            risk_hint=RiskLevel(data.get("risk_hint", "low")),
            reversible=bool(data.get("reversible", True)),
        )


@dataclass
class TaskContext:
    """What the requester asked for. trust_rank=None means the coordinator's current rank."""

    intent: str
    trust_rank: Optional[TrustRank] = None
    session_history: List[str] = field(default_factory=list)
    project: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "trust_rank": self.trust_rank.value if self.trust_rank else None,
            "session_history": list(self.session_history),
            "project": dict(self.project),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskContext":
        rank = data.get("trust_rank")
        return cls(
            intent=data.get("intent", ""),
            trust_rank=TrustRank(rank) if rank else None,
            session_history=list(data.get("session_history", [])),
            project=dict(data.get("project", {})),
        )


@dataclass(frozen=True)
class RiskFactor:
    category: str
    score: float
    risk: RiskLevel
    weight: float
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "score": self.score,
            "risk": self.risk.value,
            "weight": self.weight,
            "description": self.description,
        }


@dataclass(frozen=True)
class RiskAssessmentResult:
    overall_risk: RiskLevel
    score: float
    factors: Tuple[RiskFactor, ...]
    recommendations: Tuple[str, ...]
    requires_approval: bool
    auto_approval_eligible: bool

    def factor(self, category: str) -> Optional[RiskFactor]:
        for f in self.factors:
            if f.category == category:
                return f
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_risk": self.overall_risk.value,
            "score": round(self.score, 4),
            "factors": [f.to_dict() for f in self.factors],
            "recommendations": list(self.recommendations),
            "requires_approval": self.requires_approval,
            "auto_approval_eligible": self.auto_approval_eligible,
        }


@dataclass(frozen=True)
class ApprovalRequest:
    id: str
    theme_id: str
    context: TaskContext
    proposed_actions: Tuple[ProposedAction, ...]
    rationale: str
    risk_level: RiskLevel
    security_impact: bool
    category: Optional[ApprovalCategory] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "theme_id": self.theme_id,
            "context": self.context.to_dict(),
            "proposed_actions": [a.to_dict() for a in self.proposed_actions],
            "rationale": self.rationale,
            "risk_level": self.risk_level.value,
            "security_impact": self.security_impact,
            "category": self.category.value if self.category else None,
            "created_at": format_ts(self.created_at),
        }


@dataclass(frozen=True)
class ApprovalResponse:
    request_id: str
    action: ApprovalAction
    approved: bool
    comment: Optional[str] = None
    trust_rank: Optional[TrustRank] = None
    timestamp: datetime = field(default_factory=utc_now)
    quick_decision: bool = False

    @classmethod
    def auto(cls, reason: str, prefix: str = "auto") -> "ApprovalResponse":
        """An approval that no human made."""
        return cls(
            request_id=f"{prefix}-{uuid.uuid4()}",
            action=ApprovalAction.APPROVE,
            approved=True,
            comment=reason,
            quick_decision=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "action": self.action.value,
            "approved": self.approved,
            "comment": self.comment,
            "trust_rank": self.trust_rank.value if self.trust_rank else None,
            "timestamp": format_ts(self.timestamp),
            "quick_decision": self.quick_decision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalResponse":
        rank = data.get("trust_rank")
        return cls(
            request_id=data["request_id"],
            action=ApprovalAction(data["action"]),
            approved=bool(data["approved"]),
            comment=data.get("comment"),
            trust_rank=TrustRank(rank) if rank else None,
            timestamp=parse_ts(data["timestamp"]),
            quick_decision=bool(data.get("quick_decision", False)),
        )
