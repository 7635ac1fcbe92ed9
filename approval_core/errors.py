class ApprovalError(Exception):
    """Base class for coordinator and history store failures."""


class NotFoundError(ApprovalError):
    """Unknown request id, branch, commit, tag or merge request."""


class ConflictError(ApprovalError):
    """Name collision or a protected/default branch operation."""


class StateError(ApprovalError):
    """Operation is not valid for the current repository or request state."""
