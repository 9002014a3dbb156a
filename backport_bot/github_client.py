import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from github import Github, GithubException

from backport_bot.errors import HostedAPIError

API_ENDPOINT = 'https://api.github.com'
PATCH_MEDIA_TYPE = 'application/vnd.github.VERSION.patch'


@dataclass
class PullRequest:
    """The fields of a pull request the backport engine reads."""
    number: int
    title: str
    body: str
    user: str
    merged: bool
    head_sha: str
    head_ref: str
    base_ref: str
    merge_commit_sha: Optional[str] = None
    state: str = 'open'
    labels: List[str] = field(default_factory=list)
    merged_by: Optional[str] = None
    html_url: str = ''

    @classmethod
    def from_github(cls, pr) -> 'PullRequest':
        return cls(
            number=pr.number,
            title=pr.title or '',
            body=pr.body or '',
            user=pr.user.login,
            merged=bool(pr.merged),
            head_sha=pr.head.sha,
            head_ref=pr.head.ref,
            base_ref=pr.base.ref,
            merge_commit_sha=pr.merge_commit_sha,
            state=pr.state,
            labels=[label.name for label in pr.labels],
            merged_by=pr.merged_by.login if pr.merged_by else None,
            html_url=pr.html_url,
        )


@dataclass
class CheckRun:
    id: int
    name: str
    status: str = 'queued'
    conclusion: Optional[str] = None

    @classmethod
    def from_github(cls, run) -> 'CheckRun':
        return cls(id=run.id, name=run.name, status=run.status, conclusion=run.conclusion)


def _wrap_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except GithubException as e:
            raise HostedAPIError(f"GitHub API call failed: {e}", status=e.status) from e
        except requests.exceptions.RequestException as e:
            status = e.response.status_code if e.response is not None else None
            raise HostedAPIError(f"GitHub request failed: {e}", status=status) from e
    return wrapper


class GitHubClient:
    """
    Async facade over PyGithub for a single repository.

    PyGithub and requests block, so every call is pushed to a worker thread. Any
    GithubException or requests error comes out as HostedAPIError.
    """

    def __init__(self, token: str, slug: str, github: Optional[Github] = None) -> None:
        self.token = token
        self.slug = slug
        self.github = github or Github(token)
        self.session = requests.Session()
        self.session.headers["Authorization"] = f"token {token}"
        self._repo = None

    @property
    def repo(self):
        if self._repo is None:
            self._repo = self.github.get_repo(self.slug)
        return self._repo

    async def _call(self, func, *args, **kwargs):
        return await asyncio.to_thread(_wrap_errors(func), *args, **kwargs)

    # Pull requests

    async def get_pull(self, number: int) -> PullRequest:
        return await self._call(lambda: PullRequest.from_github(self.repo.get_pull(number)))

    async def list_pull_commits(self, number: int) -> List[str]:
        return await self._call(lambda: [commit.sha for commit in self.repo.get_pull(number).get_commits()])

    async def create_pull(self, title: str, body: str, head: str, base: str) -> PullRequest:
        def create():
            pr = self.repo.create_pull(title=title, body=body, head=head, base=base, maintainer_can_modify=False)
            logging.info(f"Pull request created: {pr.html_url}")
            return PullRequest.from_github(pr)
        return await self._call(create)

    async def request_reviewers(self, number: int, reviewers: List[str], team_reviewers: List[str]):
        await self._call(lambda: self.repo.get_pull(number).create_review_request(
            reviewers=reviewers, team_reviewers=team_reviewers))

    # Commits

    def _check_rate_limits(self, response):
        remaining = response.headers.get('X-RateLimit-Remaining')
        limit = response.headers.get('X-RateLimit-Limit')
        if remaining is None or not limit:
            return
        if float(remaining) / float(limit) < 0.20:
            logging.warning(f"Reaching GitHub API's rate limit! {remaining}/{limit} requests left")

    async def get_commit_patch(self, sha: str) -> str:
        """Fetch a commit in `git format-patch` form."""
        def fetch():
            response = self.session.get(f"{API_ENDPOINT}/repos/{self.slug}/commits/{sha}",
                                        headers={"Accept": PATCH_MEDIA_TYPE}, timeout=60)
            self._check_rate_limits(response)
            response.raise_for_status()
            return response.text
        return await self._call(fetch)

    # Issues, comments and labels

    async def create_comment(self, number: int, body: str):
        await self._call(lambda: self.repo.get_issue(number).create_comment(body))

    async def list_comments(self, number: int) -> List[str]:
        return await self._call(lambda: [comment.body for comment in self.repo.get_issue(number).get_comments()])

    async def list_labels(self, number: int) -> List[str]:
        return await self._call(lambda: [label.name for label in self.repo.get_issue(number).get_labels()])

    async def add_labels(self, number: int, labels: List[str]):
        if not labels:
            return
        await self._call(lambda: self.repo.get_issue(number).add_to_labels(*labels))

    async def remove_label(self, number: int, label: str):
        await self._call(lambda: self.repo.get_issue(number).remove_from_labels(label))

    # Check runs

    async def list_check_runs(self, sha: str) -> List[CheckRun]:
        return await self._call(lambda: [CheckRun.from_github(run) for run in self.repo.get_commit(sha).get_check_runs()])

    async def create_check_run(self, name: str, head_sha: str, status: str = 'queued',
                               details_url: Optional[str] = None, output: Optional[Dict[str, Any]] = None) -> CheckRun:
        kwargs = {'name': name, 'head_sha': head_sha, 'status': status}
        if details_url:
            kwargs['details_url'] = details_url
        if output:
            kwargs['output'] = output
        return await self._call(lambda: CheckRun.from_github(self.repo.create_check_run(**kwargs)))

    async def update_check_run(self, check_run_id: int, *, name: Optional[str] = None, status: Optional[str] = None,
                               conclusion: Optional[str] = None, details_url: Optional[str] = None,
                               output: Optional[Dict[str, Any]] = None):
        kwargs: Dict[str, Any] = {}
        if name:
            kwargs['name'] = name
        if status:
            kwargs['status'] = status
        if conclusion:
            kwargs['conclusion'] = conclusion
            kwargs['completed_at'] = datetime.now(timezone.utc)
        if details_url:
            kwargs['details_url'] = details_url
        if output:
            kwargs['output'] = output
        await self._call(lambda: self.repo.get_check_run(check_run_id).edit(**kwargs))

    # Branches and permissions

    async def list_branches(self) -> List[str]:
        return await self._call(lambda: [branch.name for branch in self.repo.get_branches()])

    async def branch_exists(self, name: str) -> bool:
        try:
            await self._call(lambda: self.repo.get_branch(name))
        except HostedAPIError as e:
            if e.status == 404:
                return False
            raise
        return True

    async def get_collaborator_permission(self, username: str) -> str:
        return await self._call(lambda: self.repo.get_collaborator_permission(username))

    async def delete_branch(self, ref: str):
        await self._call(lambda: self.repo.get_git_ref(f"heads/{ref}").delete())
