import pytest

from backport_bot.branches import (
    BranchMatcher,
    find_backport_numbers,
    get_backport_pattern,
    is_supported_branch,
    supported_branches,
)


@pytest.mark.parametrize('body', [
    'Backport of https://github.com/electron/electron/pull/27514',
    'Manually backport https://github.com/electron/electron/pull/27514',
    'Manual backport of https://github.com/electron/electron/pull/27514',
    'Manually backport #27514',
    'Manually backport of #27514',
    'Manual backport of #27514',
    'Backport of #27514',
])
def test_backport_pattern_extracts_pr_number(body):
    assert get_backport_pattern().search(body)
    assert find_backport_numbers(body) == [27514]


def test_find_backport_numbers_is_restartable():
    body = 'Backport of #1\nBackport of #2\n\nsome text\nmanual backport of #3'
    assert find_backport_numbers(body) == [1, 2, 3]
    assert find_backport_numbers(body) == [1, 2, 3]


def test_find_backport_numbers_ignores_mid_line_references():
    assert find_backport_numbers('This is not a backport of #12') == []
    assert find_backport_numbers('') == []
    assert find_backport_numbers(None) == []


def test_matches_supported_branches():
    bm = BranchMatcher(r'^(\d+)-x-y$', 3)
    assert bm.is_branch_supported('3-x-y')
    assert bm.is_branch_supported('192-x-y')
    assert not bm.is_branch_supported('z-x-y')
    assert not bm.is_branch_supported('foo')
    assert not bm.is_branch_supported('3-x-y-z')
    assert not bm.is_branch_supported('x3-x-y')
    assert not bm.is_branch_supported('')


def test_default_pattern():
    assert is_supported_branch('8-x-y')
    assert is_supported_branch('7-1-x')
    assert not is_supported_branch('main')
    assert not is_supported_branch('7-1-y')


def test_sorts_and_filters_release_branches():
    bm = BranchMatcher(r'^(\d+)-x-y$', 2)
    assert bm.get_supported_branches(['3-x-y', '6-x-y', '5-x-y', 'unrelated', '4-x-y']) == ['5-x-y', '6-x-y']


def test_versions_compare_numerically():
    assert supported_branches(['8-x-y', '7-1-x', '6-0-x', '5-0-x'], limit=2) == ['7-1-x', '8-x-y']
    assert supported_branches(['10-x-y', '9-x-y', '11-x-y'], limit=2) == ['10-x-y', '11-x-y']


def test_missing_component_sorts_before_present_one():
    bm = BranchMatcher(num_supported_versions=2)
    assert bm.sort_branches(['5-1-x', '5-x-y', '4-0-x']) == ['4-0-x', '5-x-y', '5-1-x']
    # Last branch per major wins after sorting.
    assert bm.get_supported_branches(['6-x-y', '5-1-x', '5-x-y']) == ['5-1-x', '6-x-y']


def test_can_sort_non_numeric_groups():
    bm = BranchMatcher(r'^0\.([A-Z])$', 2)
    assert bm.get_supported_branches(['0.F', '0.H', '0.G']) == ['0.G', '0.H']


def test_limit_zero_returns_nothing():
    assert supported_branches(['8-x-y'], limit=0) == []


def test_unanchored_pattern_is_searched():
    bm = BranchMatcher(r'(\d+)-x-y', 2)
    assert bm.is_branch_supported('release/8-x-y')
    assert bm.get_supported_branches(['release/7-x-y', 'release/8-x-y', 'main']) == ['release/7-x-y', 'release/8-x-y']
