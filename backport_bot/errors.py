from typing import List, Optional


class BackportError(Exception):
    """Base class for every failure a backport job can report."""


class NoCommitsError(BackportError):
    def __init__(self, pr_number: int):
        super().__init__(f"Found no commits to backport in PR #{pr_number}")
        self.pr_number = pr_number


class CommitLimitExceeded(BackportError):
    def __init__(self, pr_number: int, count: int, limit: int):
        super().__init__(f"PR #{pr_number} has {count} commits, the automatic backport limit is {limit}")
        self.pr_number = pr_number
        self.count = count
        self.limit = limit


class PatchApplyConflict(BackportError):
    """Both the per-commit replay and the squash fallback failed to apply."""

    def __init__(self, target_branch: str, annotations: Optional[List] = None, raw_diff: str = ''):
        super().__init__(f"Cherry picking commit(s) to {target_branch} failed")
        self.target_branch = target_branch
        self.annotations = annotations or []
        self.raw_diff = raw_diff


class BranchNotFound(BackportError):
    def __init__(self, branch: str):
        super().__init__(f"The branch `{branch}` does not appear to exist")
        self.branch = branch


class UnsupportedBranch(BackportError):
    def __init__(self, branch: str):
        super().__init__(f"{branch} is no longer supported - no backport will be initiated.")
        self.branch = branch


class RepositoryCacheCorrupt(BackportError):
    def __init__(self, path: str, reason: str = ''):
        super().__init__(f"Repository cache at {path} is not a valid bare repository {reason}".strip())
        self.path = path


class HostedAPIError(BackportError):
    """A call to the GitHub API failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransportError(BackportError):
    """A local git operation that talks to the remote failed (clone, fetch, push)."""


class InvalidTransition(BackportError):
    def __init__(self, branch: str, current, new):
        current_name = current.name if current is not None else 'UNTRACKED'
        super().__init__(f"Cannot move backport to {branch} from {current_name} to {new.name}")
        self.branch = branch
        self.current = current
        self.new = new
