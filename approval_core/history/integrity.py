import logging
from typing import List, Tuple

from .commits import CommitFactory
from .models import Repository

logger = logging.getLogger(__name__)


def verify_repository(repo: Repository) -> Tuple[bool, List[str]]:
    """
    Checks the DAG invariants of a repository.
    Returns (is_valid, list_of_errors).
    """
    errors = []

    for commit_id, commit in repo.commits.items():
        if commit.id != commit_id:
            errors.append(f"Commit {commit_id[:12]}: stored under a different id ({commit.id[:12]})")

        expected_tree = CommitFactory.tree_hash(commit.response, commit.diff.before)
        if commit.tree_hash != expected_tree:
            errors.append(f"Commit {commit_id[:12]}: tree hash mismatch")

        expected_id = CommitFactory.recompute_id(commit)
        if commit.id != expected_id:
            errors.append(f"Commit {commit_id[:12]}: content does not match id (expected {expected_id[:12]})")

        if len(commit.parents) > 2:
            errors.append(f"Commit {commit_id[:12]}: more than two parents")
        for parent in commit.parents:
            if parent not in repo.commits:
                errors.append(f"Commit {commit_id[:12]}: missing parent {parent[:12]}")

    if repo.default_branch not in repo.branches:
        errors.append(f"Default branch '{repo.default_branch}' is missing")
    if repo.current_branch not in repo.branches:
        errors.append(f"Current branch '{repo.current_branch}' is missing")

    for name, branch in repo.branches.items():
        if branch.name != name:
            errors.append(f"Branch '{name}': stored under a different name ({branch.name})")
        if branch.head and branch.head not in repo.commits:
            errors.append(f"Branch '{name}': head {branch.head[:12]} not in store")
        for commit_id in branch.path:
            if commit_id not in repo.commits:
                errors.append(f"Branch '{name}': path commit {commit_id[:12]} not in store")

    for tag, commit_id in repo.tags.items():
        if commit_id not in repo.commits:
            errors.append(f"Tag '{tag}': commit {commit_id[:12]} not in store")

    if errors:
        logger.warning("Repository %s failed verification with %d error(s)", repo.name, len(errors))
    return not errors, errors
