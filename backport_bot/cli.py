import argparse
import asyncio
import logging
import sys

from backport_bot.config import Settings
from backport_bot.github_client import GitHubClient
from backport_bot.queue import ExecutionQueue
from backport_bot.repo_cache import RepositoryCache
from backport_bot.runner import BackportPurpose, BackportRunner

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def setup_logging(level: str = 'INFO'):
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog='backport-bot', description="Backport merged pull requests to release branches")
    parser.add_argument("-l", "--log-level", choices=LOG_LEVELS, default='INFO',
                        help="set the logging level (default: %(default)s)")
    subparsers = parser.add_subparsers(dest='command', required=True)

    backport = subparsers.add_parser('backport', help='Backport a pull request to a branch')
    backport.add_argument('--repo', type=str, required=True, help='Github repository name, e.g. owner/name')
    backport.add_argument('--pull-request', type=int, required=True, help='Pull request number to be backported')
    backport.add_argument('--target-branch', type=str, required=True, help='Branch to backport the pull request to')
    backport.add_argument('--check', action='store_true',
                          help='Only check whether the backport applies cleanly, without opening a PR')

    validate = subparsers.add_parser('validate', help='Run the backport information and validity checks on a PR')
    validate.add_argument('--repo', type=str, required=True, help='Github repository name, e.g. owner/name')
    validate.add_argument('--pull-request', type=int, required=True, help='Pull request number to be checked')

    supported = subparsers.add_parser('supported-branches', help='List the release branches still supported')
    supported.add_argument('--repo', type=str, required=True, help='Github repository name, e.g. owner/name')
    return parser.parse_args(argv)


async def run_backport(settings: Settings, args) -> bool:
    client = GitHubClient(settings.github_token, args.repo)
    queue = ExecutionQueue(settings.max_active_jobs)
    runner = BackportRunner(client, settings, queue, RepositoryCache(settings))

    pr = await client.get_pull(args.pull_request)
    purpose = BackportPurpose.CHECK if args.check else BackportPurpose.EXECUTE
    if purpose == BackportPurpose.EXECUTE:
        queued = await runner.backport_to_branch(pr, args.target_branch)
    else:
        queued = await runner.backport(pr, args.target_branch, purpose)
    if not queued:
        logging.info(f"No backport of #{pr.number} to {args.target_branch} was started")
        return False
    await queue.wait_until_empty()
    return True


async def run_validation(settings: Settings, args) -> bool:
    client = GitHubClient(settings.github_token, args.repo)
    runner = BackportRunner(client, settings, ExecutionQueue(settings.max_active_jobs), RepositoryCache(settings))
    pr = await client.get_pull(args.pull_request)
    results = [await runner.backport_information_check(pr), await runner.validate_backport(pr)]
    logging.info(f"Checks for #{pr.number} concluded: {results}")
    return 'failure' not in results


async def list_supported_branches(settings: Settings, args):
    client = GitHubClient(settings.github_token, args.repo)
    queue = ExecutionQueue(settings.max_active_jobs)
    runner = BackportRunner(client, settings, queue, RepositoryCache(settings))
    for branch in await runner.get_supported_branches():
        print(branch)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = Settings.from_env()
    except (KeyError, ValueError) as e:
        logging.error(f"Invalid configuration: {e}")
        return 1
    if not settings.github_token:
        logging.error("GITHUB_TOKEN is not set")
        return 1

    if args.command == 'backport':
        return 0 if asyncio.run(run_backport(settings, args)) else 1
    if args.command == 'validate':
        return 0 if asyncio.run(run_validation(settings, args)) else 1
    asyncio.run(list_supported_branches(settings, args))
    return 0


if __name__ == "__main__":
    sys.exit(main())
