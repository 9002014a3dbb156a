import functools
import logging
import re
from typing import Iterable, List, Optional, Pattern, Sequence, Union

from backport_bot.config import DEFAULT_NUM_SUPPORTED_VERSIONS, DEFAULT_SUPPORTED_BRANCH_PATTERN

# Matches "Backport of #123", "Manual backport of #123", "Manually backport #123",
# "Manually backport of #123" and the same forms followed by a pull request URL.
BACKPORT_PATTERN = re.compile(
    r'(?:^|\n)(?:manual |manually )?backport (?:of )?(?:#(\d+)|https://github\.com/[^/\s]+/[^/\s]+/pull/(\d+))',
    re.IGNORECASE,
)


def get_backport_pattern() -> Pattern:
    return BACKPORT_PATTERN


def find_backport_numbers(body: Optional[str]) -> List[int]:
    """
    Return every PR number a PR body declares it backports, in order of appearance.

    Examples:
        'Backport of #27514' -> [27514]
        'Manually backport https://github.com/x/y/pull/27514' -> [27514]
    """
    if not body:
        return []
    return [int(match.group(1) or match.group(2)) for match in BACKPORT_PATTERN.finditer(body)]


def _compare_part(a: Optional[str], b: Optional[str]) -> int:
    if a == b:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    if a.isdigit() and b.isdigit():
        return (int(a) > int(b)) - (int(a) < int(b))
    return (a > b) - (a < b)


class BranchMatcher:
    """
    Decides which branches are release branches and which of them are still supported.

    The pattern is searched, not implicitly anchored: anchor it with ^ and $ to match
    whole branch names. Its capture groups are the version components, the first one
    being the major version. Only the newest `num_supported_versions` majors are supported.
    """

    def __init__(self, pattern: Union[str, Pattern] = DEFAULT_SUPPORTED_BRANCH_PATTERN,
                 num_supported_versions: int = DEFAULT_NUM_SUPPORTED_VERSIONS):
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.num_supported_versions = num_supported_versions

    def is_branch_supported(self, branch_name: str) -> bool:
        return bool(branch_name) and self.pattern.search(branch_name) is not None

    def version_parts(self, branch_name: str) -> Sequence[Optional[str]]:
        return self.pattern.search(branch_name).groups()

    def compare(self, a: str, b: str) -> int:
        for a_part, b_part in zip(self.version_parts(a), self.version_parts(b)):
            result = _compare_part(a_part, b_part)
            if result:
                return result
        return 0

    def sort_branches(self, branches: Iterable[str]) -> List[str]:
        return sorted(branches, key=functools.cmp_to_key(self.compare))

    def get_supported_branches(self, all_branches: Iterable[str], limit: Optional[int] = None) -> List[str]:
        """
        Filter `all_branches` to release branches, keep the most specific branch of
        each major version and return the newest `limit` of them in ascending order.
        """
        if limit is None:
            limit = self.num_supported_versions
        if limit <= 0:
            return []

        release_branches = self.sort_branches(b for b in all_branches if self.is_branch_supported(b))
        by_major = {}
        for branch in release_branches:
            by_major[self.version_parts(branch)[0]] = branch

        supported = self.sort_branches(by_major.values())[-limit:]
        logging.debug(f"Supported branches: {supported}")
        return supported


def is_supported_branch(branch_name: str, pattern: str = DEFAULT_SUPPORTED_BRANCH_PATTERN) -> bool:
    return BranchMatcher(pattern).is_branch_supported(branch_name)


def supported_branches(all_branches: Iterable[str], limit: int = DEFAULT_NUM_SUPPORTED_VERSIONS,
                       pattern: str = DEFAULT_SUPPORTED_BRANCH_PATTERN) -> List[str]:
    return BranchMatcher(pattern, limit).get_supported_branches(all_branches)
