import logging
from collections import deque
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from approval_core.engine.policy import TrustPolicy
from approval_core.engine.types import (
    ApprovalAction,
    ApprovalCategory,
    ApprovalResponse,
    RiskLevel,
    format_ts,
)
from .crypto import commit_id, content_hash
from .models import ApprovalState, Change, Commit, CommitMetadata, Diff, DiffType

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR = "Approval User"
DEFAULT_EMAIL = "user@approvals.local"

# comment keyword -> inferred value, first match wins
RISK_HINTS: List[Tuple[Tuple[str, ...], RiskLevel]] = [
    (("critical", "security"), RiskLevel.CRITICAL),
    (("high",), RiskLevel.HIGH),
    (("medium",), RiskLevel.MEDIUM),
]
CATEGORY_HINTS: List[Tuple[str, ApprovalCategory]] = [
    ("security", ApprovalCategory.SECURITY),
    ("architecture", ApprovalCategory.ARCHITECTURE),
    ("performance", ApprovalCategory.PERFORMANCE),
    ("refactor", ApprovalCategory.REFACTORING),
]


class CommitFactory:
    """Builds immutable, content-addressed commits from approval responses.

    The commit id is a hash of the tree hash, parents, author, message, action,
    approval status and diff summary. The commit's wall-clock timestamp is
    recorded in its metadata but is not part of the id, so rebuilding a commit
    from the same inputs yields the same id.
    """

    @classmethod
    def create(cls,
               response: ApprovalResponse,
               parents: Sequence[str] = (),
               author: str = DEFAULT_AUTHOR,
               email: str = DEFAULT_EMAIL,
               message: Optional[str] = None,
               previous_state: Optional[ApprovalState] = None,
               risk_level: Optional[RiskLevel] = None,
               category: Optional[ApprovalCategory] = None,
               timestamp: Optional[datetime] = None) -> Commit:
        parents = tuple(parents)
        message = message or cls.default_message(response)
        diff = cls.diff(response, previous_state)
        tree = cls.tree_hash(response, previous_state)

        metadata_args = {}
        if timestamp is not None:
            metadata_args["timestamp"] = timestamp
        metadata = CommitMetadata(
            author=author,
            email=email,
            message=message,
            tags=tuple(cls.auto_tags(response)),
            risk_level=RiskLevel(risk_level) if risk_level else cls.infer_risk(response),
            category=ApprovalCategory.parse(category) or cls.infer_category(response),
            **metadata_args,
        )

        return Commit(
            id=cls.compute_id(tree, parents, author, email, message, response, diff.summary),
            parents=parents,
            response=response,
            metadata=metadata,
            diff=diff,
            tree_hash=tree,
        )

    @staticmethod
    def compute_id(tree: str,
                   parents: Sequence[str],
                   author: str,
                   email: str,
                   message: str,
                   response: ApprovalResponse,
                   diff_summary: str) -> str:
        return commit_id({
            "tree": tree,
            "parents": list(parents),
            "author": f"{author} <{email}>",
            "message": message,
            "action": response.action.value,
            "status": "approved" if response.approved else "rejected",
            "diff_summary": diff_summary,
        })

    @classmethod
    def recompute_id(cls, commit: Commit) -> str:
        return cls.compute_id(
            commit.tree_hash, commit.parents, commit.metadata.author, commit.metadata.email,
            commit.metadata.message, commit.response, commit.diff.summary,
        )

    @staticmethod
    def tree_hash(response: ApprovalResponse, previous_state: Optional[ApprovalState] = None) -> str:
        """Hash of the reduced approval state; proposed-action content is not included."""
        return content_hash({
            "approved": response.approved,
            "action": response.action.value,
            "trust_rank": response.trust_rank.value if response.trust_rank else None,
            "timestamp": format_ts(response.timestamp),
            "previous_state": previous_state.to_dict() if previous_state else None,
        })

    @staticmethod
    def default_message(response: ApprovalResponse) -> str:
        if response.action == ApprovalAction.TRUST:
            rank = response.trust_rank.value if response.trust_rank else "unchanged"
            return f"Grant trust: Auto-approve similar requests ({rank})"
        if response.action == ApprovalAction.REVIEW:
            return "Request review: Additional validation required"

        status = "approved" if response.approved else "rejected"
        message = f"{response.action.value.capitalize()}: {status}"
        if response.comment:
            message = f"{message}\n\n{response.comment}"
        return message

    @staticmethod
    def next_state(response: ApprovalResponse, previous_state: Optional[ApprovalState]) -> ApprovalState:
        base = previous_state or ApprovalState()
        trust_rank = response.trust_rank.value if response.trust_rank else base.trust_rank
        categories = base.auto_approval_categories
        if response.trust_rank:
            categories = tuple(c.value for c in TrustPolicy.auto_approval_categories(response.trust_rank))

        approved, rejected = base.approved_requests, base.rejected_requests
        if response.approved:
            approved = approved + (response.request_id,)
        else:
            rejected = rejected + (response.request_id,)

        return ApprovalState(
            trust_rank=trust_rank,
            auto_approval_categories=categories,
            approved_requests=approved,
            rejected_requests=rejected,
        )

    @classmethod
    def diff(cls, response: ApprovalResponse, previous_state: Optional[ApprovalState] = None) -> Diff:
        after = cls.next_state(response, previous_state)
        before_rank = previous_state.trust_rank if previous_state else None
        changes = []

        if response.trust_rank and before_rank != response.trust_rank.value:
            changes.append(Change(
                path="trust-level",
                operation="modify" if before_rank else "add",
                old_value=before_rank,
                new_value=response.trust_rank.value,
                description=f"Trust level {'changed' if before_rank else 'set'} to {response.trust_rank.value}",
            ))

        before_categories = previous_state.auto_approval_categories if previous_state else ()
        if response.trust_rank and tuple(before_categories) != after.auto_approval_categories:
            changes.append(Change(
                path="auto-approval-categories",
                operation="modify" if before_categories else "add",
                old_value=list(before_categories),
                new_value=list(after.auto_approval_categories),
                description=f"Auto-approval categories: {', '.join(after.auto_approval_categories) or 'none'}",
            ))

        changes.append(Change(
            path="approval-status",
            operation="add",
            new_value=response.approved,
            description=f"Request {'approved' if response.approved else 'rejected'}",
        ))
        changes.append(Change(
            path="approval-action",
            operation="add",
            new_value=response.action.value,
            description=f"Action taken: {response.action.value}",
        ))

        if response.action == ApprovalAction.TRUST:
            diff_type = DiffType.TRUST_CHANGE
        elif response.approved:
            diff_type = DiffType.APPROVAL
        else:
            diff_type = DiffType.REJECTION

        return Diff(
            type=diff_type,
            before=previous_state,
            after=after,
            changes=tuple(changes),
            summary=", ".join(c.description for c in changes) or "No changes",
        )

    @staticmethod
    def auto_tags(response: ApprovalResponse) -> List[str]:
        tags = [response.action.value, "approved" if response.approved else "rejected"]
        if response.quick_decision:
            tags.append("quick-decision")
        if response.trust_rank:
            tags.append(f"trust-{response.trust_rank.value}")
        return tags

    @staticmethod
    def infer_risk(response: ApprovalResponse) -> RiskLevel:
        comment = (response.comment or "").lower()
        for keywords, level in RISK_HINTS:
            if any(k in comment for k in keywords):
                return level
        return RiskLevel.LOW

    @staticmethod
    def infer_category(response: ApprovalResponse) -> ApprovalCategory:
        comment = (response.comment or "").lower()
        for keyword, category in CATEGORY_HINTS:
            if keyword in comment:
                return category
        return ApprovalCategory.IMPLEMENTATION


def format_commit(commit: Commit, oneline: bool = False, show_diff: bool = False, show_tags: bool = False) -> str:
    """git-log style rendering."""
    if oneline:
        return f"{commit.short_id} {commit.subject}"

    lines = [f"commit {commit.id}"]
    if commit.parents:
        label = "Parents" if len(commit.parents) > 1 else "Parent"
        lines.append(f"{label}: {' '.join(commit.parents)}")
    lines.append(f"Author: {commit.metadata.author} <{commit.metadata.email}>")
    lines.append(f"Date: {format_ts(commit.metadata.timestamp)}")
    if show_tags and commit.metadata.tags:
        lines.append(f"Tags: {', '.join(commit.metadata.tags)}")
    lines.append(f"Risk: {commit.metadata.risk_level.value}, Category: {commit.metadata.category.value}")
    lines.append("")
    lines.extend(f"    {line}" for line in commit.metadata.message.split("\n"))

    if show_diff:
        lines.append("")
        lines.append("Changes:")
        for change in commit.diff.changes:
            lines.append(f"    {change.operation}: {change.description}")

    return "\n".join(lines)


def ancestors(start: str, commits: Dict[str, Commit]) -> List[str]:
    """Breadth-first walk over parent links, starting commit first."""
    seen = []
    visited = set()
    queue = deque([start])
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        seen.append(current)
        commit = commits.get(current)
        if commit is not None:
            queue.extend(commit.parents)
    return seen


def find_common_ancestor(a: str, b: str, commits: Dict[str, Commit]) -> Optional[str]:
    """First commit in a's breadth-first ancestry that is also an ancestor of b.

    Each call walks both histories in full.
    """
    other = set(ancestors(b, commits))
    for candidate in ancestors(a, commits):
        if candidate in other:
            return candidate
    return None


def ancestor_set(heads: Iterable[str], commits: Dict[str, Commit]) -> set:
    result = set()
    for head in heads:
        if head and head not in result:
            result.update(ancestors(head, commits))
    return result
