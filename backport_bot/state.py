import logging
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from backport_bot.branches import find_backport_numbers
from backport_bot.config import Settings
from backport_bot.errors import HostedAPIError, InvalidTransition
from backport_bot.github_client import PullRequest


class BackportState(Enum):
    TARGET = 'target'
    IN_FLIGHT = 'in-flight'
    MERGED = 'merged'
    NEEDS_MANUAL = 'needs-manual'


# None is a PR that carries no lifecycle label for the branch yet.
TRANSITIONS: Dict[Optional[BackportState], FrozenSet[BackportState]] = {
    None: frozenset({BackportState.TARGET, BackportState.IN_FLIGHT, BackportState.NEEDS_MANUAL,
                     BackportState.MERGED}),
    BackportState.TARGET: frozenset({BackportState.IN_FLIGHT, BackportState.NEEDS_MANUAL}),
    BackportState.IN_FLIGHT: frozenset({BackportState.MERGED, BackportState.NEEDS_MANUAL}),
    BackportState.NEEDS_MANUAL: frozenset({BackportState.IN_FLIGHT, BackportState.MERGED}),
    BackportState.MERGED: frozenset(),
}


def is_valid_transition(current: Optional[BackportState], new: BackportState) -> bool:
    return current == new or new in TRANSITIONS[current]


class LabelScheme:
    """Maps lifecycle states to label prefixes and back."""

    def __init__(self, settings: Settings):
        self.prefixes = {
            BackportState.TARGET: settings.target_label_prefix,
            BackportState.IN_FLIGHT: settings.in_flight_label_prefix,
            BackportState.MERGED: settings.merged_label_prefix,
            BackportState.NEEDS_MANUAL: settings.needs_manual_label_prefix,
        }

    def label(self, state: BackportState, branch: str) -> str:
        return f"{self.prefixes[state]}{branch}"

    def parse(self, label: str):
        """Return (state, branch) for a lifecycle label, None for anything else."""
        # Longest prefix first so that e.g. "target/" never shadows "target/special/".
        for state, prefix in sorted(self.prefixes.items(), key=lambda item: len(item[1]), reverse=True):
            if label.startswith(prefix) and len(label) > len(prefix):
                return state, label[len(prefix):]
        return None

    def state_for(self, labels: List[str], branch: str) -> Optional[BackportState]:
        """
        Current state of the backport to `branch` given a PR's labels.

        When several lifecycle labels for the same branch coexist, the most advanced
        one wins.
        """
        found = {state for state in BackportState if self.label(state, branch) in labels}
        for state in (BackportState.MERGED, BackportState.IN_FLIGHT, BackportState.NEEDS_MANUAL, BackportState.TARGET):
            if state in found:
                return state
        return None


class BackportStateMachine:
    """
    Tracks, through labels on the original PR, where the backport of that PR to each
    release branch stands:

        target/<branch> -> in-flight/<branch> -> merged/<branch>
                                              -> needs-manual-bp/<branch> -> in-flight/<branch>

    Every operation reads the current labels first, so replaying an event is harmless.
    """

    def __init__(self, client, settings: Settings):
        self.client = client
        self.settings = settings
        self.labels = LabelScheme(settings)

    async def label_exists(self, number: int, label: str) -> bool:
        return label in await self.client.list_labels(number)

    async def remove_label(self, number: int, label: str):
        """Remove a label, doing nothing when the PR does not carry it."""
        if not await self.label_exists(number, label):
            return
        try:
            await self.client.remove_label(number, label)
            logging.info(f"Removed label '{label}' from PR #{number}")
        except HostedAPIError as e:
            if e.status != 404:
                raise
            logging.info(f"Label '{label}' was already gone from PR #{number}")

    async def add_labels(self, number: int, labels: List[str]):
        existing = await self.client.list_labels(number)
        missing = [label for label in labels if label not in existing]
        if missing:
            await self.client.add_labels(number, missing)
            logging.info(f"Added labels {missing} to PR #{number}")

    async def current_state(self, number: int, branch: str) -> Optional[BackportState]:
        return self.labels.state_for(await self.client.list_labels(number), branch)

    async def transition(self, number: int, branch: str, new_state: BackportState,
                         remove: Optional[BackportState] = None) -> Optional[BackportState]:
        """
        Move the backport of PR `number` to `branch` into `new_state`.

        The label of the current state is replaced by the label of the new one. With
        `remove` given, that state's label is removed instead of the current one.
        Returns the state the PR was in before.
        """
        labels = await self.client.list_labels(number)
        current = self.labels.state_for(labels, branch)
        if not is_valid_transition(current, new_state):
            raise InvalidTransition(branch, current, new_state)

        new_label = self.labels.label(new_state, branch)
        if new_label not in labels:
            await self.client.add_labels(number, [new_label])
            logging.info(f"Added label '{new_label}' to PR #{number}")

        stale = [state for state in BackportState if state != new_state and self.labels.label(state, branch) in labels]
        if remove is not None:
            stale = [remove] if remove in stale else []
        for state in stale:
            await self.remove_label(number, self.labels.label(state, branch))
        return current

    async def mark_in_flight(self, number: int, branch: str):
        """An automated backport PR for `branch` was opened."""
        await self.transition(number, branch, BackportState.IN_FLIGHT)

    async def mark_needs_manual(self, number: int, branch: str):
        """Automation could not (or can no longer) carry the backport to `branch`."""
        await self.transition(number, branch, BackportState.NEEDS_MANUAL)

    async def mark_merged(self, number: int, branch: str):
        await self.transition(number, branch, BackportState.MERGED)

    async def record_manual_backport(self, backport_pr: PullRequest, old_pr_number: int):
        """
        A human opened `backport_pr` declaring it backports `old_pr_number`.

        The older PR moves to in-flight, dropping its needs-manual label if it has one
        and its target label otherwise, and gets a single cross-link comment.
        """
        branch = backport_pr.base_ref
        labels = await self.client.list_labels(old_pr_number)
        needs_manual = self.labels.label(BackportState.NEEDS_MANUAL, branch)
        remove = BackportState.NEEDS_MANUAL if needs_manual in labels else BackportState.TARGET
        if self.labels.state_for(labels, branch) != BackportState.MERGED:
            await self.transition(old_pr_number, branch, BackportState.IN_FLIGHT, remove=remove)

        body = (f'A maintainer has manually backported this PR to "{branch}", '
                f'please check out #{backport_pr.number}')
        existing_comments = await self.client.list_comments(old_pr_number)
        if body not in existing_comments:
            await self.client.create_comment(old_pr_number, body)
            logging.info(f"Linked manual backport #{backport_pr.number} on PR #{old_pr_number}")

    async def handle_backport_closed(self, backport_pr: PullRequest, merged: bool, closed_by: Optional[str] = None):
        """
        Mirror the outcome of a closed backport PR onto the PRs it backports.

        Merged: in-flight becomes merged on each original PR and the intermediate PR's
        own target label goes away. Closed unmerged by a person: the originals need a
        manual backport. Closing by the bot itself changes nothing.
        """
        branch = backport_pr.base_ref
        bots = {name for name in (self.settings.bot_user_name, self.settings.committer_user_name) if name}
        is_bot = closed_by in bots
        for old_pr_number in find_backport_numbers(backport_pr.body):
            try:
                if merged:
                    await self.mark_merged(old_pr_number, branch)
                elif not is_bot:
                    await self.mark_needs_manual(old_pr_number, branch)
                else:
                    logging.info(f"Backport #{backport_pr.number} was closed by {closed_by}, "
                                 f"leaving #{old_pr_number} as is")
            except InvalidTransition as e:
                logging.warning(f"Not updating PR #{old_pr_number} for backport #{backport_pr.number}: {e}")

        if merged:
            await self.remove_label(backport_pr.number, self.labels.label(BackportState.TARGET, branch))

        if backport_pr.user == self.settings.bot_user_name:
            logging.info(f"Deleting backport branch: {backport_pr.head_ref}")
            try:
                await self.client.delete_branch(backport_pr.head_ref)
            except HostedAPIError as e:
                logging.warning(f"Failed to delete backport branch {backport_pr.head_ref}: {e}")
