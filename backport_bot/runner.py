import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from backport_bot import checks
from backport_bot.branches import BranchMatcher, find_backport_numbers
from backport_bot.config import (
    BACKPORT_INFORMATION_CHECK,
    BACKPORT_LABEL,
    BACKPORT_REQUESTED_LABEL,
    FAST_TRACK_LABELS,
    FAST_TRACK_PREFIXES,
    NO_BACKPORT_LABEL,
    SEMVER_MINOR_LABEL,
    SKIP_CHECK_LABEL,
    VALID_BACKPORT_CHECK,
    Settings,
)
from backport_bot.errors import (
    BranchNotFound,
    CommitLimitExceeded,
    HostedAPIError,
    InvalidTransition,
    NoCommitsError,
    PatchApplyConflict,
    UnsupportedBranch,
)
from backport_bot.github_client import PullRequest
from backport_bot.patching import PatchBackportEngine, parse_conflict_annotations
from backport_bot.queue import ExecutionQueue, JobResult
from backport_bot.repo_cache import RepositoryCache
from backport_bot.state import BackportState, BackportStateMachine, is_valid_transition

SEMVER_LABELS = ['semver/patch', 'semver/minor', 'semver/major']
COMMIT_LIMIT_COMMENT = 'This PR has exceeded the automatic backport commit limit and must be performed manually.'
MAX_BACKPORT_CHAIN_DEPTH = 10
NEEDS_INFORMATION_SUMMARY = 'This PR requires backport information. It should have a "no-backport" or a "target/x-y-z" label.'


class BackportPurpose(Enum):
    EXECUTE = 'execute'
    CHECK = 'check'


@dataclass
class BackportJob:
    pr: PullRequest
    target_branch: str
    purpose: BackportPurpose

    @property
    def identifier(self) -> str:
        return f"backport-{self.pr.head_sha}-{self.target_branch}-{self.purpose.value}"

    @property
    def description(self) -> str:
        return f'backport from PR #{self.pr.number} to "{self.target_branch}"'


def sanitize_title(title: str) -> str:
    return re.sub(r'[^a-z0-9_]+', '-', title.replace('*', 'x').lower())


def make_temp_branch_name(target_branch: str, title: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"backport-bot/{target_branch}-bp-{sanitize_title(title)}-{now_ms}"


def extract_release_notes(body: str) -> Optional[str]:
    """
    Find the release notes of a PR body, either a single "notes: ..." line or a
    "Notes:" header followed by a bullet list.
    """
    if not body:
        return None
    oneline = re.search(r'(?:\r?\n|^)notes: (.+?)(?:\r?\n|$)', body, re.IGNORECASE)
    if oneline:
        return oneline.group(0).strip()
    multiline = re.search(r'\r?\nNotes:\r?\n((?:\*.+(?:\r?\n|$))+)', body, re.IGNORECASE)
    if multiline:
        return multiline.group(0).strip()
    return None


def get_semver_label(labels: List[str]) -> Optional[str]:
    for label in labels:
        if label in SEMVER_LABELS:
            return label
    return None


def get_highest_semver_label(*labels: str) -> str:
    return max(labels, key=SEMVER_LABELS.index)


class BackportRunner:
    """
    Entry points a webhook router calls to start, check and track backports.

    Each backport runs as a job on the shared ExecutionQueue, keyed by head commit,
    target branch and purpose, so repeated events for the same backport collapse.
    """

    def __init__(self, client, settings: Settings, queue: ExecutionQueue, cache: RepositoryCache,
                 engine: Optional[PatchBackportEngine] = None, state: Optional[BackportStateMachine] = None,
                 branch_matcher: Optional[BranchMatcher] = None):
        self.client = client
        self.settings = settings
        self.queue = queue
        self.cache = cache
        self.engine = engine or PatchBackportEngine(client, settings)
        self.state = state or BackportStateMachine(client, settings)
        self.branch_matcher = branch_matcher or BranchMatcher(settings.supported_branch_pattern,
                                                              settings.num_supported_versions)

    # Lookups

    async def get_supported_branches(self) -> List[str]:
        return self.branch_matcher.get_supported_branches(await self.client.list_branches())

    async def is_authorized_user(self, username: str) -> bool:
        logging.info(f"Checking whether {username} has write access")
        return await self.client.get_collaborator_permission(username) in ('admin', 'write')

    async def is_semver_minor_pr(self, pr: PullRequest) -> bool:
        logging.info(f"Checking if #{pr.number} is semver-minor")
        return pr.title.startswith('feat:') or SEMVER_MINOR_LABEL in pr.labels

    async def get_original_backport_number(self, pr: PullRequest) -> int:
        """
        Follow "Backport of #N" links from `pr` down to the PR that is not itself a
        backport, so bookkeeping lands on the original.
        """
        current = pr
        for _ in range(MAX_BACKPORT_CHAIN_DEPTH):
            numbers = find_backport_numbers(current.body)
            if not numbers:
                return current.number
            parent = await self.client.get_pull(numbers[0])
            logging.info(f"Tracing backport chain: PR #{current.number} -> PR #{parent.number}")
            current = parent
        logging.warning(f"Max depth ({MAX_BACKPORT_CHAIN_DEPTH}) reached while tracing backport chain, "
                        f"returning PR #{current.number}")
        return current.number

    async def get_tracking_number(self, pr: PullRequest) -> int:
        # Chained backports are tracked on the original; multi-backports stay on this PR.
        if len(find_backport_numbers(pr.body)) == 1:
            return await self.get_original_backport_number(pr)
        return pr.number

    def is_fast_track(self, pr: PullRequest) -> bool:
        bots = {self.settings.bot_user_name, self.settings.committer_user_name} - {''}
        return (any(pr.title.startswith(prefix) for prefix in FAST_TRACK_PREFIXES)
                or pr.user in bots
                or any(label in pr.labels for label in FAST_TRACK_LABELS))

    async def create_backport_comment(self, pr: PullRequest) -> str:
        original_number = await self.get_original_backport_number(pr)
        logging.info(f"Creating backport comment for #{original_number}")
        body = f"Backport of #{original_number}\n\nSee that PR for details."
        notes = extract_release_notes(pr.body)
        body += f"\n\n{notes}" if notes else "\n\nNotes: no-notes"
        return body

    async def tag_backport_reviewers(self, target_pr_number: int, user: Optional[str] = None):
        reviewers = []
        team_reviewers = []
        team = self.settings.default_backport_review_team
        if team:
            # "org/team-slug" -> "team-slug"
            team_reviewers.append(team.split('/')[1] if '/' in team else team)
        if user and await self.is_authorized_user(user):
            reviewers.append(user)
        if not reviewers and not team_reviewers:
            return
        try:
            await self.client.request_reviewers(target_pr_number, reviewers, team_reviewers)
        except HostedAPIError as e:
            logging.error(f"Failed to request reviewers for PR #{target_pr_number}: {e}")

    async def _comment_once(self, number: int, body: str):
        if body not in await self.client.list_comments(number):
            await self.client.create_comment(number, body)

    # Scheduling

    async def backport(self, pr: PullRequest, target_branch: str, purpose: BackportPurpose) -> bool:
        """
        Queue a backport of `pr` to `target_branch`.

        Returns False when the backport was refused up front or an identical job is
        already queued.
        """
        try:
            await self._ensure_branch_supported(target_branch)
        except UnsupportedBranch as e:
            logging.warning(str(e))
            await self.client.create_comment(pr.number, str(e))
            return False

        if shutil.which('git') is None:
            await self.client.create_comment(
                pr.number, f"Git not found - unable to proceed with backporting to {target_branch}")
            return False

        job = BackportJob(pr=pr, target_branch=target_branch, purpose=purpose)
        logging.info(f'Queuing {job.description} for "{self.client.slug}"')
        return self.queue.enter_queue(job.identifier, lambda: self._run_job(job),
                                      lambda result: self._on_job_result(job, result))

    async def _ensure_branch_supported(self, target_branch: str):
        if not self.settings.no_eol_support:
            return
        supported = await self.get_supported_branches()
        if target_branch not in [self.settings.default_branch, *supported]:
            raise UnsupportedBranch(target_branch)

    async def backport_to_label(self, pr: PullRequest, label: str) -> bool:
        prefix = self.settings.target_label_prefix
        if not label.startswith(prefix):
            logging.info(f"Label '{label}' does not begin with '{prefix}'")
            return False
        target_branch = label[len(prefix):]
        if not target_branch:
            logging.info("Nothing to do")
            return False
        return await self.backport(pr, target_branch, BackportPurpose.EXECUTE)

    async def backport_to_branch(self, pr: PullRequest, target_branch: str) -> bool:
        if not await self.client.branch_exists(target_branch):
            error = BranchNotFound(target_branch)
            logging.warning(str(error))
            await self.client.create_comment(pr.number, f"{error}.")
            return False
        return await self.backport(pr, target_branch, BackportPurpose.EXECUTE)

    async def backport_all_labels(self, pr: PullRequest) -> List[str]:
        queued = []
        for label in pr.labels:
            if label.startswith(self.settings.target_label_prefix) and await self.backport_to_label(pr, label):
                queued.append(label[len(self.settings.target_label_prefix):])
        return queued

    async def run_check(self, pr: PullRequest):
        """Queue a dry-run backport for each target label of an unmerged PR."""
        if pr.merged:
            return
        prefix = self.settings.target_label_prefix
        for label in pr.labels:
            if not label.startswith(prefix):
                continue
            target_branch = label[len(prefix):]
            if await checks.queue_check_run(self.client, self.settings, pr, target_branch) is None:
                continue
            await self.backport(pr, target_branch, BackportPurpose.CHECK)
        await checks.cancel_stale_check_runs(self.client, pr, prefix)

    async def backport_information_check(self, pr: PullRequest) -> Optional[str]:
        """
        Require PRs to the default branch to say whether they should be backported,
        with either the no-backport label or a target label. Returns the conclusion,
        None when the PR targets another branch.
        """
        if pr.base_ref != self.settings.default_branch:
            return None
        check_run = await checks.get_or_create_named_check_run(
            self.client, self.settings, pr, BACKPORT_INFORMATION_CHECK,
            output={'title': 'Needs Backport Information', 'summary': NEEDS_INFORMATION_SUMMARY})

        requested = {BackportState.TARGET, BackportState.IN_FLIGHT, BackportState.MERGED}
        parsed = [self.state.labels.parse(label) for label in pr.labels]
        has_target = any(entry[0] in requested for entry in parsed if entry)
        is_no_backport = NO_BACKPORT_LABEL in pr.labels

        if is_no_backport and has_target:
            conclusion, title = 'failure', 'Conflicting Backport Information'
            summary = ('The PR has a "no-backport" and at least one "target/x-y-z" label. '
                       'Impossible to determine backport action.')
        elif not is_no_backport and not has_target:
            conclusion, title, summary = 'failure', 'Missing Backport Information', NEEDS_INFORMATION_SUMMARY
        else:
            conclusion, title = 'success', 'Backport Information Provided'
            summary = 'This PR contains the required backport information.'
        await checks.conclude(self.client, check_run, conclusion, title, summary)
        return conclusion

    async def validate_backport(self, pr: PullRequest) -> Optional[str]:
        """
        Check that a PR to a release branch declares which merged PR it backports.

        On the default branch a leftover check is cancelled instead. Returns the
        conclusion, None when there was nothing to check.
        """
        default_branch = self.settings.default_branch
        if pr.base_ref == default_branch:
            check_run = await checks.find_check_run(self.client, pr.head_sha, VALID_BACKPORT_CHECK)
            if check_run is None:
                return None
            await checks.mark_neutral(self.client, check_run, 'Cancelled',
                                      f'This PR is targeting `{default_branch}` and is not a backport')
            return 'neutral'

        check_run = await checks.get_or_create_named_check_run(self.client, self.settings, pr, VALID_BACKPORT_CHECK)
        if await self.state.label_exists(pr.number, SKIP_CHECK_LABEL):
            await checks.mark_neutral(self.client, check_run, 'Backport Check Skipped',
                                      'This PR is not a backport - skip backport validation check')
            return 'neutral'

        old_pr_numbers = find_backport_numbers(pr.body)
        if not old_pr_numbers:
            if self.is_fast_track(pr):
                await checks.conclude(self.client, check_run, 'success', 'Valid Backport',
                                      'This PR is fast-tracked and does not need to declare a backport.')
                return 'success'
            await checks.conclude(self.client, check_run, 'failure', 'Invalid Backport',
                                  f'This PR is targeting a branch that is not {default_branch} but is missing '
                                  f'a "Backport of #{{N}}" declaration.')
            return 'failure'

        allowed_bases = [default_branch, *await self.get_supported_branches()]
        for old_pr_number in old_pr_numbers:
            cause = await self._invalid_backport_cause(old_pr_number, allowed_bases)
            if cause:
                await checks.conclude(self.client, check_run, 'failure', 'Invalid Backport',
                                      f'This PR is targeting a branch that is not {default_branch} but {cause}')
                return 'failure'

        declared = ', '.join(f'#{number}' for number in old_pr_numbers)
        await checks.conclude(self.client, check_run, 'success', 'Valid Backport',
                              f'This PR is declared as backporting "{declared}" which is a valid PR that has been '
                              f'merged into {default_branch}')
        return 'success'

    async def _invalid_backport_cause(self, old_pr_number: int, allowed_bases: List[str]) -> Optional[str]:
        try:
            old_pr = await self.client.get_pull(old_pr_number)
        except HostedAPIError as e:
            if e.status != 404:
                raise
            return f'the PR #{old_pr_number} that it is backporting does not exist.'
        if old_pr.base_ref not in allowed_bases:
            return f'the PR that it is backporting was not targeting the {allowed_bases[0]} branch.'
        if not old_pr.merged:
            return 'the PR that this is backporting has not been merged yet.'
        return None

    # State tracking

    async def handle_manual_backport_opened(self, pr: PullRequest):
        if pr.user == self.settings.bot_user_name:
            return
        old_pr_numbers = find_backport_numbers(pr.body)
        logging.info(f"Found {len(old_pr_numbers)} backport numbers for PR #{pr.number}")
        for old_pr_number in old_pr_numbers:
            logging.info(f"Updating original backport at #{old_pr_number} for #{pr.number}")
            await self.state.record_manual_backport(pr, old_pr_number)

    async def handle_backport_closed(self, pr: PullRequest, closed_by: Optional[str] = None):
        close_type = 'merged' if pr.merged else 'closed'
        logging.info(f"Updating labels on original PR for {close_type} PR: #{pr.number}")
        await self.state.handle_backport_closed(pr, pr.merged, closed_by=closed_by)
        if pr.merged and pr.user != self.settings.bot_user_name:
            logging.info(f"Backporting #{pr.number} to all branches specified by labels")
            await self.backport_all_labels(pr)

    # Job body

    async def _run_job(self, job: BackportJob) -> bool:
        pr = job.pr
        logging.info(f'Executing {job.description} for "{self.client.slug}"')
        check_run = await checks.get_or_create_check_run(self.client, self.settings, pr, job.target_branch)
        await checks.mark_in_progress(self.client, check_run)

        push = job.purpose == BackportPurpose.EXECUTE
        if push:
            await self._ensure_can_start(await self.get_tracking_number(pr), job.target_branch)

        temp_branch = make_temp_branch_name(job.target_branch, pr.title)
        async with self.cache.working_copy(self.client.slug, self.client.token) as working_copy:
            success = await self.engine.backport(working_copy, pr, job.target_branch, temp_branch, push)
            logging.info(json.dumps({
                'msg': 'backport-result',
                'pullRequest': pr.number,
                'targetBranch': job.target_branch,
                'backportPurpose': job.purpose.value,
                'success': success,
            }))
            if not success:
                logging.error("Cherry picking commits to branch failed")
                raw_diff = await self.engine.get_raw_diff(working_copy)
                raise PatchApplyConflict(job.target_branch, parse_conflict_annotations(raw_diff), raw_diff)

        if push:
            await self._open_backport_pr(job, temp_branch)

        await checks.mark_clean(self.client, check_run, job.target_branch)
        return True

    async def _ensure_can_start(self, number: int, target_branch: str):
        """Refuse to push or open a PR when PR #`number` cannot move to in-flight."""
        current = await self.state.current_state(number, target_branch)
        if not is_valid_transition(current, BackportState.IN_FLIGHT):
            raise InvalidTransition(target_branch, current, BackportState.IN_FLIGHT)

    async def _open_backport_pr(self, job: BackportJob, temp_branch: str):
        pr = job.pr
        target_branch = job.target_branch
        logging.info("Creating Pull Request")
        title = pr.title.replace(f"({pr.base_ref})", f"({target_branch})")
        new_pr = await self.client.create_pull(title=title, body=await self.create_backport_comment(pr),
                                               head=temp_branch, base=target_branch)

        await self.tag_backport_reviewers(new_pr.number, pr.user)

        logging.info(f"Adding breadcrumb comment to #{pr.number}")
        await self.client.create_comment(
            pr.number, f'I have automatically backported this PR to "{target_branch}", '
                       f'please check out #{new_pr.number}')

        labels_to_add = [BACKPORT_LABEL, target_branch]
        if await self.is_semver_minor_pr(pr):
            logging.info(f"Determined that #{pr.number} is semver-minor")
            labels_to_add.append(BACKPORT_REQUESTED_LABEL)

        semver_label = get_semver_label(pr.labels)
        if semver_label:
            new_pr_semver_label = get_semver_label(new_pr.labels)
            if new_pr_semver_label and new_pr_semver_label != semver_label:
                if get_highest_semver_label(semver_label, new_pr_semver_label) == semver_label:
                    await self.state.remove_label(new_pr.number, new_pr_semver_label)
                    labels_to_add.append(semver_label)
            else:
                labels_to_add.append(semver_label)

        await self.state.add_labels(new_pr.number, labels_to_add)

        original_number = await self.get_tracking_number(pr)
        try:
            await self.state.mark_in_flight(original_number, target_branch)
        except InvalidTransition as e:
            # The labels moved on while the job ran; the new PR stands on its own.
            logging.warning(f"Backport PR #{new_pr.number} opened but PR #{original_number} was not updated: {e}")
        if original_number != pr.number:
            await self.state.remove_label(pr.number, self.state.labels.label(BackportState.TARGET, target_branch))
        logging.info("Backport process complete")

    # Failure continuation

    async def _on_job_result(self, job: BackportJob, result: JobResult):
        if result.ok:
            return

        pr = job.pr
        error = result.error
        check_run = await checks.get_or_create_check_run(self.client, self.settings, pr, job.target_branch)

        if isinstance(error, NoCommitsError):
            await checks.mark_neutral(self.client, check_run, 'No Commits',
                                      'This PR has no commits that could be backported.')
            return

        if isinstance(error, InvalidTransition):
            state_name = error.current.value if error.current is not None else 'untracked'
            summary = (f'The backport to "{job.target_branch}" is already {state_name}, '
                       f'so no backport PR was opened.')
            if job.purpose == BackportPurpose.EXECUTE:
                await self._comment_once(pr.number, summary)
            await checks.mark_neutral(self.client, check_run, 'Backport Not Needed', summary)
            return

        if isinstance(error, CommitLimitExceeded):
            await self._comment_once(pr.number, COMMIT_LIMIT_COMMENT)
            if job.purpose == BackportPurpose.EXECUTE:
                await self._mark_needs_manual(await self.get_original_backport_number(pr), job.target_branch)
            await checks.mark_neutral(self.client, check_run, 'Too Many Commits',
                                      f'This PR has {error.count} commits, automatic backports are limited to '
                                      f'{error.limit - 1}. It must be backported to "{job.target_branch}" manually.')
            return

        if isinstance(error, PatchApplyConflict):
            if job.purpose == BackportPurpose.EXECUTE:
                await self.client.create_comment(
                    pr.number,
                    f'I was unable to backport this PR to "{job.target_branch}" cleanly;\n'
                    f'   you will need to perform this [backport manually]({self.settings.manual_backport_docs_url}).')
                original_number = await self.get_original_backport_number(pr)
                await self._mark_needs_manual(original_number, job.target_branch)
                if original_number != pr.number:
                    await self.state.remove_label(
                        pr.number, self.state.labels.label(BackportState.TARGET, job.target_branch))
            await checks.mark_failed_backport(self.client, check_run, job.target_branch,
                                              error.annotations, error.raw_diff)
            return

        await checks.mark_neutral(self.client, check_run, 'Backport Failed',
                                  f'An error occurred while backporting this PR to "{job.target_branch}": '
                                  f'{type(error).__name__}')

    async def _mark_needs_manual(self, number: int, target_branch: str):
        try:
            await self.state.mark_needs_manual(number, target_branch)
        except InvalidTransition as e:
            logging.warning(f"Leaving labels of PR #{number} unchanged: {e}")
