import logging
from typing import List, Optional

from backport_bot.config import CHECK_PREFIX, Settings
from backport_bot.errors import HostedAPIError
from backport_bot.github_client import CheckRun, PullRequest
from backport_bot.patching import ConflictAnnotation

# GitHub rejects more than 50 annotations per check run update.
MAX_ANNOTATIONS = 50
MD_FENCE = '``````````````````````````````'


def check_run_name(target_branch: str) -> str:
    return f"{CHECK_PREFIX}{target_branch}"


async def find_check_run(client, sha: str, name: str) -> Optional[CheckRun]:
    for run in await client.list_check_runs(sha):
        if run.name == name:
            return run
    return None


async def get_check_run(client, pr: PullRequest, target_branch: str) -> Optional[CheckRun]:
    return await find_check_run(client, pr.head_sha, check_run_name(target_branch))


async def get_or_create_check_run(client, settings: Settings, pr: PullRequest, target_branch: str) -> CheckRun:
    check_run = await get_check_run(client, pr, target_branch)
    if check_run is None:
        logging.info(f"Queueing new check run '{check_run_name(target_branch)}' for #{pr.number}")
        check_run = await client.create_check_run(check_run_name(target_branch), pr.head_sha,
                                                  status='queued', details_url=settings.details_url)
    return check_run


async def queue_check_run(client, settings: Settings, pr: PullRequest, target_branch: str) -> Optional[CheckRun]:
    """
    Queue the backportability check for `target_branch`.

    An existing run is only re-queued when its last conclusion was neutral, returns
    None when there is nothing to re-run.
    """
    existing = await get_check_run(client, pr, target_branch)
    if existing is None:
        return await client.create_check_run(check_run_name(target_branch), pr.head_sha,
                                             status='queued', details_url=settings.details_url)
    if existing.conclusion not in (None, 'neutral'):
        return None
    await client.update_check_run(existing.id, name=existing.name, status='queued')
    return existing


async def get_or_create_named_check_run(client, settings: Settings, pr: PullRequest, name: str,
                                        output: Optional[dict] = None) -> CheckRun:
    check_run = await find_check_run(client, pr.head_sha, name)
    if check_run is None:
        logging.info(f"Queueing new check run '{name}' for #{pr.number}")
        check_run = await client.create_check_run(name, pr.head_sha, status='queued',
                                                  details_url=settings.details_url, output=output)
    return check_run


async def mark_in_progress(client, check_run: CheckRun):
    logging.info(f"Updating check run '{check_run.name}' ({check_run.id}) with status 'in_progress'")
    await client.update_check_run(check_run.id, name=check_run.name, status='in_progress')


async def mark_clean(client, check_run: CheckRun, target_branch: str):
    logging.info(f"Updating check run '{check_run.name}' ({check_run.id}) with conclusion 'success'")
    await client.update_check_run(check_run.id, name=check_run.name, conclusion='success', output={
        'title': 'Clean Backport',
        'summary': f'This PR was checked and can be backported to "{target_branch}" cleanly.',
    })


async def conclude(client, check_run: CheckRun, conclusion: str, title: str, summary: str):
    logging.info(f"Updating check run '{check_run.name}' ({check_run.id}) with conclusion '{conclusion}'")
    await client.update_check_run(check_run.id, name=check_run.name, conclusion=conclusion,
                                  output={'title': title, 'summary': summary})


async def mark_neutral(client, check_run: CheckRun, title: str, summary: str):
    await conclude(client, check_run, 'neutral', title, summary)


async def mark_failed_backport(client, check_run: CheckRun, target_branch: str,
                               annotations: List[ConflictAnnotation], raw_diff: str):
    """
    Conclude the check as neutral with the failed diff and conflict annotations.

    GitHub sometimes refuses annotations (bad paths, line ranges), in which case the
    update is retried without them.
    """
    output = {
        'title': 'Backport Failed',
        'summary': f'This PR was checked and could not be automatically backported to "{target_branch}" cleanly',
    }
    if raw_diff:
        output['text'] = f"Failed Diff:\n\n{MD_FENCE}diff\n{raw_diff}\n{MD_FENCE}"
    if annotations:
        output['annotations'] = [a.to_check_annotation() for a in annotations[:MAX_ANNOTATIONS]]

    logging.info(f"Updating check run '{check_run.name}' ({check_run.id}) with conclusion 'neutral'")
    try:
        await client.update_check_run(check_run.id, name=check_run.name, conclusion='neutral', output=output)
    except HostedAPIError as e:
        if 'annotations' not in output:
            raise
        logging.warning(f"Check run update with annotations was rejected, retrying without them: {e}")
        output.pop('annotations')
        await client.update_check_run(check_run.id, name=check_run.name, conclusion='neutral', output=output)


async def cancel_stale_check_runs(client, pr: PullRequest, target_label_prefix: str):
    """Neutralize backport checks whose target label was removed from the PR."""
    for run in await client.list_check_runs(pr.head_sha):
        if not run.name.startswith(CHECK_PREFIX):
            continue
        branch = run.name[len(CHECK_PREFIX):]
        if f"{target_label_prefix}{branch}" in pr.labels:
            continue
        await mark_neutral(client, run, 'Cancelled',
                           'This check was cancelled and can be ignored as this PR is no longer targeting '
                           'this branch for a backport')
