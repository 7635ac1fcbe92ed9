import logging
import re
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from approval_core.engine.types import (
    ApprovalAction,
    ApprovalCategory,
    ApprovalResponse,
    RiskLevel,
    utc_now,
)
from approval_core.errors import ConflictError, NotFoundError, StateError
from approval_core.events import (
    BranchCreated,
    BranchDeleted,
    CommitCreated,
    EventBus,
    MergeCompleted,
    MergeRequestCreated,
    MergeRequestUpdated,
    TagCreated,
)
from .commits import DEFAULT_AUTHOR, DEFAULT_EMAIL, CommitFactory, ancestor_set, ancestors
from .integrity import verify_repository
from .models import (
    ApprovalState,
    Branch,
    Comment,
    Commit,
    MergeRequest,
    MergeStatus,
    Repository,
    Review,
    ReviewStatus,
)

logger = logging.getLogger(__name__)

MIN_PREFIX = 4


class HistoryStore:
    """Owns the commit DAG and the branches, tags and merge requests pointing into it.

    Every mutating operation validates its inputs first and only then changes
    state, so a failed call leaves the repository exactly as it was. Events are
    published after the mutation completes.

    Mutations and full-repository reads hold ``lock``, so one store may be
    shared between request threads. The lock is re-entrant: revert and merge
    build on the same append path as create_commit.
    """

    def __init__(self,
                 bus: Optional[EventBus] = None,
                 default_branch: str = "main",
                 protected_branches: Sequence[str] = ("main", "master"),
                 author: str = DEFAULT_AUTHOR,
                 email: str = DEFAULT_EMAIL,
                 repository: Optional[Repository] = None):
        self.bus = bus or EventBus()
        self.author = author
        self.email = email
        self.protected_branches = list(protected_branches)
        self.lock = threading.RLock()

        if repository is None:
            repository = Repository(default_branch=default_branch, current_branch=default_branch)
            repository.branches[default_branch] = Branch(name=default_branch, protected=True)
        self.repo = repository

    @classmethod
    def from_config(cls, config, bus: Optional[EventBus] = None) -> "HistoryStore":
        return cls(
            bus=bus,
            default_branch=config.default_branch,
            protected_branches=config.protected_branches,
            author=config.author_name,
            email=config.author_email,
        )

    # -- lookups ----------------------------------------------------------

    @property
    def current_branch(self) -> Branch:
        return self.repo.branches[self.repo.current_branch]

    @property
    def default_branch(self) -> Branch:
        return self.repo.branches[self.repo.default_branch]

    def get_branch(self, name: str) -> Branch:
        branch = self.repo.branches.get(name)
        if branch is None:
            raise NotFoundError(f"Branch '{name}' does not exist")
        return branch

    def get_commit(self, commit_id: str) -> Commit:
        commit = self.repo.commits.get(commit_id)
        if commit is None:
            raise NotFoundError(f"Commit '{commit_id}' not found")
        return commit

    def get_merge_request(self, mr_id: str) -> MergeRequest:
        mr = self.repo.merge_requests.get(mr_id)
        if mr is None:
            raise NotFoundError(f"Merge request '{mr_id}' not found")
        return mr

    def resolve(self, ref: str) -> str:
        """Maps a full id, unique id prefix, tag name or branch name to a commit id."""
        if not ref:
            raise NotFoundError("Empty reference")
        with self.lock:
            if ref in self.repo.commits:
                return ref
            if ref in self.repo.tags:
                return self.repo.tags[ref]
            if ref in self.repo.branches:
                head = self.repo.branches[ref].head
                if not head:
                    raise StateError(f"Branch '{ref}' has no commits")
                return head
            if len(ref) >= MIN_PREFIX:
                matches = [cid for cid in self.repo.commits if cid.startswith(ref)]
                if len(matches) == 1:
                    return matches[0]
                if len(matches) > 1:
                    raise ConflictError(f"Ambiguous commit reference '{ref}' ({len(matches)} matches)")
        raise NotFoundError(f"Unknown reference '{ref}'")

    def _state_at(self, commit_id: Optional[str]) -> Optional[ApprovalState]:
        if not commit_id:
            return None
        commit = self.repo.commits.get(commit_id)
        return commit.diff.after if commit else None

    def _ordered(self, ids) -> List[str]:
        # insertion order of the commit map is creation order
        wanted = set(ids)
        return [cid for cid in self.repo.commits if cid in wanted]

    # -- commits ----------------------------------------------------------

    def create_commit(self,
                      response: ApprovalResponse,
                      message: Optional[str] = None,
                      author: Optional[str] = None,
                      email: Optional[str] = None,
                      risk_level: Optional[RiskLevel] = None,
                      category: Optional[ApprovalCategory] = None) -> Commit:
        """Appends a commit for response to the current branch."""
        # head read, commit build and head update form one step
        with self.lock:
            branch = self.current_branch
            commit = CommitFactory.create(
                response,
                parents=[branch.head] if branch.head else [],
                author=author or self.author,
                email=email or self.email,
                message=message,
                previous_state=self._state_at(branch.head),
                risk_level=risk_level,
                category=category,
            )
            self._append(branch, commit)
        return commit

    def _append(self, branch: Branch, commit: Commit):
        self.repo.commits[commit.id] = commit
        branch.head = commit.id
        if commit.id not in branch.path:
            branch.path.append(commit.id)
        branch.touch()
        self.repo.last_activity = branch.last_activity

        logger.info("Commit %s on %s: %s", commit.short_id, branch.name, commit.subject)
        self.bus.publish(CommitCreated(commit_id=commit.id, branch=branch.name, message=commit.metadata.message))

    def revert_commit(self, ref: str, message: Optional[str] = None, no_commit: bool = False) -> Commit:
        """Creates a commit that flips the approval recorded by ref.

        With no_commit=True the revert commit is built and returned but not stored.
        """
        with self.lock:
            original = self.get_commit(self.resolve(ref))
            default_message = f'Revert "{original.metadata.message}"'
            response = ApprovalResponse(
                request_id=f"revert-{original.response.request_id}",
                action=ApprovalAction.REJECT if original.approved else ApprovalAction.APPROVE,
                approved=not original.approved,
                comment=default_message,
            )
            message = message or default_message

            if no_commit:
                head = self.current_branch.head
                return CommitFactory.create(
                    response,
                    parents=[head] if head else [],
                    author=self.author,
                    email=self.email,
                    message=message,
                    previous_state=self._state_at(head),
                    risk_level=original.metadata.risk_level,
                    category=original.metadata.category,
                )

            return self.create_commit(
                response,
                message=message,
                risk_level=original.metadata.risk_level,
                category=original.metadata.category,
            )

    # -- branches ---------------------------------------------------------

    def create_branch(self, name: str, base: Optional[str] = None) -> Branch:
        if not name or not name.strip():
            raise ValueError("Branch name must not be empty")
        with self.lock:
            if name in self.repo.branches:
                raise ConflictError(f"Branch '{name}' already exists")
            base_id = self.resolve(base) if base else self.current_branch.head

            branch = Branch(
                name=name,
                head=base_id,
                base=base_id,
                path=self._ordered(ancestors(base_id, self.repo.commits)) if base_id else [],
                protected=name in self.protected_branches,
            )
            self.repo.branches[name] = branch

            logger.info("Branch %s created at %s", name, base_id[:12] if base_id else "(empty)")
            self.bus.publish(BranchCreated(name=name, base=base_id))
        return branch

    def checkout_branch(self, name: str) -> Branch:
        with self.lock:
            branch = self.get_branch(name)
            self.repo.current_branch = name
        return branch

    def delete_branch(self, name: str, force: bool = False):
        with self.lock:
            if name == self.repo.default_branch:
                raise ConflictError("Cannot delete the default branch")
            branch = self.get_branch(name)
            if branch.protected and not force:
                raise ConflictError(f"Branch '{name}' is protected. Use force to delete.")
            if not force and self.has_unmerged_changes(name):
                raise ConflictError(f"Branch '{name}' has unmerged changes. Use force to delete.")

            del self.repo.branches[name]
            if self.repo.current_branch == name:
                self.repo.current_branch = self.repo.default_branch

            logger.info("Branch %s deleted", name)
            self.bus.publish(BranchDeleted(name=name))

    def protect_branch(self, name: str, protected: bool = True) -> Branch:
        with self.lock:
            branch = self.get_branch(name)
            branch.protected = protected
        return branch

    def has_unmerged_changes(self, name: str) -> bool:
        """True when the branch path holds commits the default branch path does not."""
        branch = self.get_branch(name)
        merged = set(self.default_branch.path)
        return any(cid not in merged for cid in branch.path)

    def is_merged(self, name: str) -> bool:
        branch = self.get_branch(name)
        return bool(branch.head) and branch.head in self.default_branch.path

    def list_branches(self, merged: bool = False) -> List[Branch]:
        with self.lock:
            branches = list(self.repo.branches.values())
            if merged:
                branches = [
                    b for b in branches
                    if b.name != self.repo.default_branch and self.is_merged(b.name)
                ]
        return sorted(branches, key=lambda b: b.last_activity, reverse=True)

    # -- merge requests ---------------------------------------------------

    def create_merge_request(self,
                             title: str,
                             source: str,
                             target: str,
                             author: Optional[str] = None,
                             description: str = "") -> MergeRequest:
        with self.lock:
            if source not in self.repo.branches or target not in self.repo.branches:
                raise StateError("Source or target branch does not exist")
            source_branch = self.repo.branches[source]
            target_branch = self.repo.branches[target]

            mr = MergeRequest(
                title=title,
                description=description,
                source=source,
                target=target,
                author=author or self.author,
                commits=self._commits_to_merge(source_branch, target_branch),
            )
            self.repo.merge_requests[mr.id] = mr
            source_branch.merge_requests.append(mr.id)

            logger.info("Merge request %s created (%s -> %s)", mr.id, source, target)
            self.bus.publish(MergeRequestCreated(merge_request_id=mr.id, source=source, target=target))
        return mr

    def _commits_to_merge(self, source: Branch, target: Branch) -> List[str]:
        if not source.head:
            return []
        reachable = ancestor_set([target.head], self.repo.commits)
        return self._ordered(cid for cid in ancestors(source.head, self.repo.commits) if cid not in reachable)

    def add_review(self,
                   mr_id: str,
                   reviewer: str,
                   status: str,
                   comment: Optional[str] = None) -> Review:
        with self.lock:
            mr = self.get_merge_request(mr_id)
            status = ReviewStatus(status)
            if not mr.status.is_open:
                raise StateError(f"Merge request '{mr_id}' is {mr.status.value}")

            review = Review(
                reviewer=reviewer,
                status=status,
                comments=[Comment(author=reviewer, content=comment)] if comment else [],
            )
            mr.reviews.append(review)
            if status == ReviewStatus.APPROVED:
                mr.status = MergeStatus.APPROVED
            elif status == ReviewStatus.CHANGES_REQUESTED:
                mr.status = MergeStatus.REJECTED
            mr.updated_at = utc_now()

            self.bus.publish(MergeRequestUpdated(merge_request_id=mr.id, status=mr.status.value))
        return review

    def close_merge_request(self, mr_id: str) -> MergeRequest:
        with self.lock:
            mr = self.get_merge_request(mr_id)
            if not mr.status.is_open:
                raise StateError(f"Merge request '{mr_id}' is {mr.status.value}")
            mr.status = MergeStatus.CLOSED
            mr.closed_at = mr.updated_at = utc_now()
            self.bus.publish(MergeRequestUpdated(merge_request_id=mr.id, status=mr.status.value))
        return mr

    # -- merge ------------------------------------------------------------

    def merge_branch(self, source: str, target: str, message: Optional[str] = None) -> Commit:
        """Creates a merge commit on target with parents [target head, source head]."""
        with self.lock:
            if source not in self.repo.branches or target not in self.repo.branches:
                raise StateError("Source or target branch does not exist")
            if source == target:
                raise StateError("Cannot merge a branch into itself")
            source_branch = self.repo.branches[source]
            target_branch = self.repo.branches[target]

            parents = []
            for head in (target_branch.head, source_branch.head):
                if head and head not in parents:
                    parents.append(head)
            if not parents:
                raise StateError(f"Nothing to merge: '{source}' and '{target}' have no commits")

            message = message or f"Merge branch '{source}' into '{target}'"
            response = ApprovalResponse(
                request_id=f"merge-{uuid.uuid4()}",
                action=ApprovalAction.APPROVE,
                approved=True,
                comment=message,
            )
            commit = CommitFactory.create(
                response,
                parents=parents,
                author=self.author,
                email=self.email,
                message=message,
                previous_state=self._state_at(target_branch.head),
            )

            # source history becomes part of the target path before the merge commit
            present = set(target_branch.path)
            target_branch.path.extend(cid for cid in source_branch.path if cid not in present)
            self._append(target_branch, commit)

            merged = []
            for mr in self.repo.merge_requests.values():
                if (mr.source == source and mr.target == target
                        and mr.status in (MergeStatus.PENDING, MergeStatus.APPROVED)):
                    mr.status = MergeStatus.MERGED
                    mr.merged_at = mr.updated_at = utc_now()
                    merged.append(mr.id)

            logger.info("Merged %s into %s (%s)", source, target, commit.short_id)
            for mr_id in merged:
                self.bus.publish(MergeRequestUpdated(merge_request_id=mr_id, status=MergeStatus.MERGED.value))
            self.bus.publish(MergeCompleted(source=source, target=target, merge_commit=commit.id))
        return commit

    # -- tags -------------------------------------------------------------

    def create_tag(self, name: str, ref: Optional[str] = None, force: bool = False) -> str:
        if not name or not name.strip():
            raise ValueError("Tag name must not be empty")
        with self.lock:
            if name in self.repo.tags and not force:
                raise ConflictError(f"Tag '{name}' already exists. Use force to overwrite.")
            if ref:
                target = ref if ref in self.repo.commits else self._resolve_tag_target(ref)
            else:
                target = self.current_branch.head
                if not target:
                    raise StateError("No commit to tag")

            self.repo.tags[name] = target
            logger.info("Tag %s -> %s", name, target[:12])
            self.bus.publish(TagCreated(name=name, commit_id=target))
        return target

    def _resolve_tag_target(self, ref: str) -> str:
        try:
            return self.resolve(ref)
        except NotFoundError:
            raise StateError(f"Commit '{ref}' does not exist")

    def delete_tag(self, name: str):
        with self.lock:
            if name not in self.repo.tags:
                raise NotFoundError(f"Tag '{name}' not found")
            del self.repo.tags[name]

    def list_tags(self) -> Dict[str, str]:
        with self.lock:
            return dict(sorted(self.repo.tags.items()))

    # -- queries ----------------------------------------------------------

    def get_log(self,
                branch: Optional[str] = None,
                author: Optional[str] = None,
                since: Optional[datetime] = None,
                until: Optional[datetime] = None,
                grep: Optional[str] = None,
                limit: Optional[int] = None) -> List[Commit]:
        """Commits matching every given filter, newest first."""
        with self.lock:
            indexed = list(enumerate(self.repo.commits.values()))
            members = set(self.get_branch(branch).path) if branch else None

        if members is not None:
            indexed = [(i, c) for i, c in indexed if c.id in members]
        if author:
            needle = author.lower()
            indexed = [(i, c) for i, c in indexed if needle in c.metadata.author.lower()]
        if since:
            indexed = [(i, c) for i, c in indexed if c.metadata.timestamp >= since]
        if until:
            indexed = [(i, c) for i, c in indexed if c.metadata.timestamp <= until]
        if grep:
            pattern = re.compile(grep, re.I)
            indexed = [(i, c) for i, c in indexed if pattern.search(c.metadata.message)]

        # ties on timestamp fall back to creation order
        indexed.sort(key=lambda pair: (pair[1].metadata.timestamp, pair[0]), reverse=True)
        commits = [c for _, c in indexed]
        if limit and limit > 0:
            commits = commits[:limit]
        return commits

    def get_statistics(self) -> Dict[str, Any]:
        with self.lock:
            commits = list(self.repo.commits.values())
            merge_requests = list(self.repo.merge_requests.values())
            branch_count = len(self.repo.branches)
            tag_count = len(self.repo.tags)
        now = utc_now()
        week_ago = now - timedelta(days=7)
        month_ago = now - timedelta(days=30)

        merge_times = [
            (mr.merged_at - mr.created_at).total_seconds()
            for mr in merge_requests if mr.merged_at
        ]
        avg_merge = sum(merge_times) / len(merge_times) if merge_times else 0.0

        contributors = Counter(c.metadata.author for c in commits)
        risk = Counter(c.metadata.risk_level.value for c in commits)
        category = Counter(c.metadata.category.value for c in commits)
        rejected = sum(1 for c in commits if not c.approved)

        return {
            "repository": {
                "total_commits": len(commits),
                "total_branches": branch_count,
                "total_merge_requests": len(merge_requests),
                "total_tags": tag_count,
            },
            "activity": {
                "commits_last_week": sum(1 for c in commits if c.metadata.timestamp >= week_ago),
                "commits_last_month": sum(1 for c in commits if c.metadata.timestamp >= month_ago),
                "average_time_to_merge": avg_merge,
            },
            "contributors": {
                "total_contributors": len(contributors),
                "most_active_contributor": contributors.most_common(1)[0][0] if contributors else None,
                "contributor_activity": dict(contributors),
            },
            "risk": {
                "risk_distribution": dict(risk),
                "category_distribution": dict(category),
                "rejection_rate": rejected / len(commits) if commits else 0.0,
            },
        }

    def status(self) -> Dict[str, Any]:
        with self.lock:
            branch = self.current_branch
            return {
                "current_branch": branch.name,
                "default_branch": self.repo.default_branch,
                "head": branch.head,
                "commits": len(branch.path),
                "protected": branch.protected,
                "open_merge_requests": sum(1 for mr in self.repo.merge_requests.values() if mr.status.is_open),
            }

    # -- snapshot ---------------------------------------------------------

    def export_repository(self) -> Dict[str, Any]:
        """Deep, fully materialized copy of the repository as plain data."""
        with self.lock:
            return self.repo.to_dict()

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any], bus: Optional[EventBus] = None, **kwargs) -> "HistoryStore":
        try:
            repository = Repository.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise StateError(f"Invalid repository snapshot: {e}")

        is_valid, errors = verify_repository(repository)
        if not is_valid:
            raise StateError(f"Invalid repository snapshot: {'; '.join(errors)}")

        return cls(bus=bus, default_branch=repository.default_branch, repository=repository, **kwargs)
