import dataclasses
import itertools
import os
import shutil
from dataclasses import dataclass
from typing import Dict, List, Optional

import pytest
from git import Repo

from backport_bot.config import Settings
from backport_bot.errors import HostedAPIError
from backport_bot.github_client import CheckRun, PullRequest


class FakeGitHubClient:
    """In-memory stand-in for GitHubClient, recording every write."""

    def __init__(self, slug='electron/electron', token='fake-token'):
        self.slug = slug
        self.token = token
        self.pulls: Dict[int, PullRequest] = {}
        self.commits: Dict[int, List[str]] = {}
        self.patches: Dict[str, str] = {}
        self.labels: Dict[int, List[str]] = {}
        self.comments: Dict[int, List[str]] = {}
        self.check_runs: Dict[str, List[CheckRun]] = {}
        self.check_run_updates: List[dict] = []
        self.branches: List[str] = ['main']
        self.permissions: Dict[str, str] = {}
        self.review_requests: List[tuple] = []
        self.deleted_branches: List[str] = []
        self.created_pulls: List[PullRequest] = []
        self.reject_annotations = False
        self._ids = itertools.count(1)
        self._numbers = itertools.count(1000)

    def add_pull(self, pr: PullRequest, commits: Optional[List[str]] = None) -> PullRequest:
        self.pulls[pr.number] = pr
        self.labels[pr.number] = list(pr.labels)
        self.commits[pr.number] = list(commits or [])
        return pr

    async def get_pull(self, number: int) -> PullRequest:
        if number not in self.pulls:
            raise HostedAPIError(f"PR #{number} not found", status=404)
        return self.pulls[number]

    async def list_pull_commits(self, number: int) -> List[str]:
        return list(self.commits.get(number, []))

    async def create_pull(self, title: str, body: str, head: str, base: str) -> PullRequest:
        pr = PullRequest(number=next(self._numbers), title=title, body=body, user='trop[bot]', merged=False,
                         head_sha=f"sha-{head}", head_ref=head, base_ref=base)
        self.add_pull(pr)
        self.created_pulls.append(pr)
        return pr

    async def request_reviewers(self, number: int, reviewers: List[str], team_reviewers: List[str]):
        self.review_requests.append((number, reviewers, team_reviewers))

    async def get_commit_patch(self, sha: str) -> str:
        return self.patches[sha]

    async def create_comment(self, number: int, body: str):
        self.comments.setdefault(number, []).append(body)

    async def list_comments(self, number: int) -> List[str]:
        return list(self.comments.get(number, []))

    async def list_labels(self, number: int) -> List[str]:
        return list(self.labels.get(number, []))

    async def add_labels(self, number: int, labels: List[str]):
        existing = self.labels.setdefault(number, [])
        for label in labels:
            if label not in existing:
                existing.append(label)

    async def remove_label(self, number: int, label: str):
        existing = self.labels.get(number, [])
        if label not in existing:
            raise HostedAPIError(f"Label {label} does not exist", status=404)
        existing.remove(label)

    async def list_check_runs(self, sha: str) -> List[CheckRun]:
        return list(self.check_runs.get(sha, []))

    async def create_check_run(self, name: str, head_sha: str, status: str = 'queued',
                               details_url: Optional[str] = None, output: Optional[dict] = None) -> CheckRun:
        run = CheckRun(id=next(self._ids), name=name, status=status)
        self.check_runs.setdefault(head_sha, []).append(run)
        return run

    async def update_check_run(self, check_run_id: int, *, name=None, status=None, conclusion=None,
                               details_url=None, output=None):
        if self.reject_annotations and output and 'annotations' in output:
            raise HostedAPIError("Invalid annotations", status=422)
        self.check_run_updates.append({'id': check_run_id, 'name': name, 'status': status,
                                       'conclusion': conclusion, 'output': output})
        for runs in self.check_runs.values():
            for run in runs:
                if run.id == check_run_id:
                    if status:
                        run.status = status
                    if conclusion:
                        run.status = 'completed'
                        run.conclusion = conclusion

    async def list_branches(self) -> List[str]:
        return list(self.branches)

    async def branch_exists(self, name: str) -> bool:
        return name in self.branches

    async def get_collaborator_permission(self, username: str) -> str:
        return self.permissions.get(username, 'read')

    async def delete_branch(self, ref: str):
        self.deleted_branches.append(ref)

    def updates_for(self, check_run_id: int) -> List[dict]:
        return [update for update in self.check_run_updates if update['id'] == check_run_id]


def make_pull(number=1, title='fix: something (main)', body='', user='someone', merged=True, labels=None,
              base_ref='main', merge_commit_sha='merge-sha', head_sha=None) -> PullRequest:
    return PullRequest(number=number, title=title, body=body, user=user, merged=merged,
                       head_sha=head_sha or f"head-{number}", head_ref=f"feature-{number}", base_ref=base_ref,
                       merge_commit_sha=merge_commit_sha if merged else None, labels=list(labels or []))


@pytest.fixture
def settings(tmp_path):
    return Settings(github_token='fake-token', bot_user_name='trop[bot]', committer_user_name='trop[bot]',
                    working_dir=str(tmp_path / 'working'))


@pytest.fixture
def client():
    return FakeGitHubClient()


def _commit(repo, path, content, message):
    full_path = os.path.join(repo.working_tree_dir, path)
    with open(full_path, 'w', encoding='utf-8') as f:
        f.write(content)
    repo.index.add([path])
    return repo.index.commit(message).hexsha


def _lines(**changes):
    lines = [f"line {i}" for i in range(1, 11)]
    for index, text in changes.items():
        lines[int(index[1:]) - 1] = text
    return '\n'.join(lines) + '\n'


@dataclass
class RemoteFixture:
    slug: str
    url_template: str
    commits: List[str]
    squash_sha: str
    patches: Dict[str, str]


def _source_repo(tmp_path):
    """A repository with a base commit on main and a release branch 1-x-y that rewrote line 5."""
    if shutil.which('git') is None:
        pytest.skip('git is not installed')

    src = Repo.init(tmp_path / 'src')
    with src.config_writer() as config:
        config.set_value('user', 'name', 'Test Author')
        config.set_value('user', 'email', 'author@example.com')
        config.set_value('commit', 'gpgsign', 'false')

    _commit(src, 'file.txt', _lines(), 'base')
    src.git.branch('-M', 'main')

    src.git.checkout('-b', '1-x-y')
    _commit(src, 'file.txt', _lines(l5='line 5 release'), 'release change')
    src.git.checkout('main')
    return src


def _publish(tmp_path, src, commits, squash_sha) -> RemoteFixture:
    slug = 'electron/electron'
    Repo.clone_from(str(tmp_path / 'src'), str(tmp_path / 'remotes' / 'electron' / 'electron.git'), bare=True)
    patches = {sha: src.git.format_patch('-1', '--stdout', sha) + '\n' for sha in commits + [squash_sha]}
    return RemoteFixture(slug=slug, url_template=str(tmp_path / 'remotes' / '{slug}.git'), commits=commits,
                         squash_sha=squash_sha, patches=patches)


@pytest.fixture
def conflicting_remote(tmp_path):
    """
    A bare "GitHub" remote whose release branch 1-x-y rewrote line 5, and a PR of three
    commits against main whose second commit rewrites line 5 too.
    """
    src = _source_repo(tmp_path)

    src.git.checkout('-b', 'feature')
    commits = [
        _commit(src, 'file.txt', _lines(l1='line 1 feature'), 'first'),
        _commit(src, 'file.txt', _lines(l1='line 1 feature', l5='line 5 feature'), 'second'),
        _commit(src, 'file.txt', _lines(l1='line 1 feature', l5='line 5 feature', l10='line 10 feature'), 'third'),
    ]

    src.git.checkout('main')
    src.git.checkout('-b', 'squash')
    squash_sha = _commit(src, 'file.txt', _lines(l1='line 1 feature', l5='line 5 feature', l10='line 10 feature'),
                         'fix: feature (main) (#1)')
    src.git.checkout('main')
    return _publish(tmp_path, src, commits, squash_sha)


@pytest.fixture
def reverted_remote(tmp_path):
    """
    Same release branch, but the PR's first commit touches line 5 and its second one
    reverts that while changing line 10, so only the squashed change applies cleanly.
    """
    src = _source_repo(tmp_path)

    src.git.checkout('-b', 'feature')
    commits = [
        _commit(src, 'file.txt', _lines(l5='line 5 feature'), 'touch line 5'),
        _commit(src, 'file.txt', _lines(l10='line 10 feature'), 'revert line 5, touch line 10'),
    ]

    src.git.checkout('main')
    src.git.checkout('-b', 'squash')
    squash_sha = _commit(src, 'file.txt', _lines(l10='line 10 feature'), 'fix: x (main) (#2)')
    src.git.checkout('main')
    return _publish(tmp_path, src, commits, squash_sha)



@pytest.fixture
def git_settings(settings, conflicting_remote):
    return dataclasses.replace(settings, remote_url_template=conflicting_remote.url_template)
