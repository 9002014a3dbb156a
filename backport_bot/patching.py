import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from git import GitCommandError, Repo

from backport_bot.config import Settings
from backport_bot.errors import CommitLimitExceeded, NoCommitsError, TransportError
from backport_bot.github_client import PullRequest
from backport_bot.repo_cache import TARGET_REMOTE

PATCH_FETCH_CONCURRENCY = 5

CONFLICT_START = '<<<<<<<'
CONFLICT_SEPARATOR = '======='
CONFLICT_END = '>>>>>>>'

FILE_HEADER = re.compile(r'^diff --(?:git a/(?P<a>.+?) b/(?P<b>.+)|cc (?P<cc>.+)|combined (?P<combined>.+))$')
# Plain hunks look like "@@ -1,3 +1,4 @@", combined ones like "@@@ -1,3 -1,3 +1,7 @@@".
HUNK_HEADER = re.compile(r'^(?P<ats>@@+) (?:-\d+(?:,\d+)? )+\+(?P<start>\d+)(?:,\d+)? @@+')
SQUASH_PR_SUFFIX = re.compile(r' \(#[0-9]+\)$')


@dataclass
class ConflictAnnotation:
    path: str
    start_line: int
    end_line: int
    message: str
    raw_conflict_text: str

    def to_check_annotation(self) -> Dict:
        return {
            'path': self.path,
            'start_line': self.start_line,
            'end_line': self.end_line,
            'annotation_level': 'failure',
            'message': self.message,
            'raw_details': self.raw_conflict_text,
        }


@dataclass
class _Hunk:
    start_line: int
    prefix_width: int
    lines: List[str]


@dataclass
class _FileDiff:
    path: str
    binary: bool
    hunks: List[_Hunk]


def _parse_diff(raw_diff: str) -> List[_FileDiff]:
    files: List[_FileDiff] = []
    current: Optional[_FileDiff] = None
    hunk: Optional[_Hunk] = None
    for line in raw_diff.splitlines():
        header = FILE_HEADER.match(line)
        if header:
            path = header.group('b') or header.group('cc') or header.group('combined')
            current = _FileDiff(path=path, binary=False, hunks=[])
            files.append(current)
            hunk = None
            continue
        if current is None:
            continue
        if hunk is None:
            if line.startswith('Binary files ') or line == 'GIT binary patch':
                current.binary = True
                continue
            if line.startswith('+++ ') and line[4:] != '/dev/null':
                current.path = line[6:] if line.startswith('+++ b/') else line[4:]
                continue
        match = HUNK_HEADER.match(line)
        if match:
            hunk = _Hunk(start_line=int(match.group('start')), prefix_width=len(match.group('ats')) - 1, lines=[])
            current.hunks.append(hunk)
        elif hunk is not None:
            hunk.lines.append(line)
    return files


def _first_index(lines: List[str], marker: str, start: int = 0) -> int:
    for i in range(start, len(lines)):
        if marker in lines[i]:
            return i
    return -1


def parse_conflict_annotations(raw_diff: str) -> List[ConflictAnnotation]:
    """
    Build one annotation per diff hunk that still holds conflict markers.

    The annotated range runs from the `<<<<<<<` marker to the last line of the ours
    side, clamped to the start of the hunk. Binary files are skipped.
    """
    annotations = []
    for file_diff in _parse_diff(raw_diff):
        if file_diff.binary:
            continue
        for hunk in file_diff.hunks:
            start_offset = _first_index(hunk.lines, CONFLICT_START)
            if start_offset < 0:
                continue
            separator_offset = _first_index(hunk.lines, CONFLICT_SEPARATOR, start_offset)
            final_offset = _first_index(hunk.lines, CONFLICT_END, start_offset)
            if final_offset < 0:
                final_offset = len(hunk.lines) - 1
            end_offset = separator_offset - 1 if separator_offset > start_offset else final_offset

            raw_lines = hunk.lines[start_offset:final_offset + 1]
            annotations.append(ConflictAnnotation(
                path=file_diff.path,
                start_line=hunk.start_line + max(0, start_offset),
                end_line=hunk.start_line + max(0, end_offset, start_offset),
                message='Patch Conflict',
                raw_conflict_text='\n'.join(line[hunk.prefix_width:] for line in raw_lines),
            ))
    return annotations


def rewrite_squash_subject(raw_patch: str, base_ref: str, target_branch: str) -> str:
    """
    Point the squash commit's subject at the target branch and drop its "(#123)" suffix.

    Only the first Subject line is touched, later ones belong to the commit message body.
    """
    lines = []
    subject_found = False
    for line in raw_patch.split('\n'):
        if not subject_found and line.startswith('Subject: '):
            subject_found = True
            line = line.replace(f"({base_ref})", f"({target_branch})")
            line = SQUASH_PR_SUFFIX.sub('', line)
        lines.append(line)
    return '\n'.join(lines)


def _abort_previous_am(repo: Repo):
    try:
        repo.git.am('--abort')
    except GitCommandError:
        logging.debug("No patch application in progress")


def apply_patches(working_copy: Path, target_branch: str, temp_branch: str, patches: List[str], push: bool) -> bool:
    """
    Replay `patches` with a three-way `git am` onto a new `temp_branch` cut from
    target_repo/`target_branch`.

    Stops at the first patch that does not apply and leaves the conflicted state in
    place so it can be inspected. Returns True when every patch applied.
    """
    logging.info(f"Backporting {len(patches)} patch(es) to {target_branch}")
    repo = Repo(working_copy)
    _abort_previous_am(repo)

    remote_branch = f"{TARGET_REMOTE}/{target_branch}"
    try:
        repo.git.fetch(TARGET_REMOTE, target_branch)
        repo.git.checkout(remote_branch, force=True)
        if temp_branch in [head.name for head in repo.heads]:
            logging.info(f'The temporary branch name "{temp_branch}" already exists, deleting it before backporting')
            repo.git.branch('-D', temp_branch)
        repo.git.checkout(remote_branch, b=temp_branch)
    except GitCommandError as e:
        logging.error(f"Failed to checkout new backport branch {temp_branch}: {e}")
        return False

    patch_path = f"{working_copy}.patch"
    for index, patch in enumerate(patches, start=1):
        try:
            with open(patch_path, 'w', encoding='utf-8') as f:
                f.write(patch)
            repo.git.am('-3', patch_path)
        except GitCommandError as e:
            logging.error(f"Failed to apply patch {index}/{len(patches)} to {target_branch}: {e}")
            return False
        finally:
            if os.path.exists(patch_path):
                os.remove(patch_path)

    if push:
        try:
            repo.git.push('--set-upstream', TARGET_REMOTE, temp_branch)
        except GitCommandError as e:
            raise TransportError(f"Failed to push {temp_branch} to {TARGET_REMOTE}: {e}") from e
        logging.info(f"Pushed {temp_branch} to {TARGET_REMOTE}")
    return True


def get_raw_diff(working_copy: Path) -> str:
    return Repo(working_copy).git.diff()


class PatchBackportEngine:
    """
    Replays a pull request onto another branch.

    The PR's commits are applied one by one first. When that fails and the PR was
    merged, its squashed merge commit is applied as a single patch instead.
    """

    def __init__(self, client, settings: Settings):
        self.client = client
        self.settings = settings

    async def backport_commits_to_branch(self, working_copy: Path, target_branch: str, temp_branch: str,
                                         patches: List[str], push: bool) -> bool:
        return await asyncio.to_thread(apply_patches, working_copy, target_branch, temp_branch, patches, push)

    async def fetch_patches(self, shas: List[str]) -> List[str]:
        semaphore = asyncio.Semaphore(PATCH_FETCH_CONCURRENCY)
        fetched = 0

        async def fetch(sha: str) -> str:
            nonlocal fetched
            async with semaphore:
                patch = await self.client.get_commit_patch(sha)
            fetched += 1
            logging.info(f"Got patch ({fetched}/{len(shas)})")
            return patch

        return list(await asyncio.gather(*(fetch(sha) for sha in shas)))

    async def try_backport_all_commits(self, working_copy: Path, pr: PullRequest, target_branch: str,
                                       temp_branch: str, push: bool) -> bool:
        logging.info(f"Getting commits of PR #{pr.number}: {pr.base_ref}..{pr.head_sha}")
        commits = await self.client.list_pull_commits(pr.number)

        if not commits:
            logging.info("Found no commits to backport - aborting backport process")
            raise NoCommitsError(pr.number)
        if len(commits) >= self.settings.commit_limit:
            logging.error(f"Too many commits ({len(commits)})...backport will not be performed.")
            raise CommitLimitExceeded(pr.number, len(commits), self.settings.commit_limit)

        logging.info(f"Found {len(commits)} commits to backport - requesting details now.")
        patches = await self.fetch_patches(commits)
        logging.info(f'Checking out target: "{TARGET_REMOTE}/{target_branch}" to temp: "{temp_branch}"')
        return await self.backport_commits_to_branch(working_copy, target_branch, temp_branch, patches, push)

    async def try_backport_squash_commit(self, working_copy: Path, pr: PullRequest, target_branch: str,
                                         temp_branch: str, push: bool) -> bool:
        if not pr.merged or not pr.merge_commit_sha:
            logging.info(f"PR #{pr.number} was not squash merged - aborting")
            return False

        logging.info(f"Fetching squash commit {pr.merge_commit_sha} details")
        raw_patch = await self.client.get_commit_patch(pr.merge_commit_sha)
        patch = rewrite_squash_subject(raw_patch, pr.base_ref, target_branch)
        logging.info(f'Checking out target: "{TARGET_REMOTE}/{target_branch}" to temp: "{temp_branch}"')
        return await self.backport_commits_to_branch(working_copy, target_branch, temp_branch, [patch], push)

    async def backport(self, working_copy: Path, pr: PullRequest, target_branch: str, temp_branch: str,
                       push: bool) -> bool:
        started = time.monotonic()
        success = await self.try_backport_all_commits(working_copy, pr, target_branch, temp_branch, push)
        logging.info(f"Backport via all commits took {time.monotonic() - started:.1f}s, success={success}")

        if not success:
            started = time.monotonic()
            success = await self.try_backport_squash_commit(working_copy, pr, target_branch, temp_branch, push)
            logging.info(f"Backport via squash commit took {time.monotonic() - started:.1f}s, success={success}")

        if success:
            logging.info(f"Cherry pick success{' - pushed up to ' + TARGET_REMOTE if push else ''}")
        return success

    async def get_raw_diff(self, working_copy: Path) -> str:
        return await asyncio.to_thread(get_raw_diff, working_copy)

    async def diff_conflicts(self, working_copy: Path) -> List[ConflictAnnotation]:
        return parse_conflict_annotations(await self.get_raw_diff(working_copy))
