"""Shared test fixtures for the roadmap board tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.roadmap.github import TrackerError
from pkg.roadmap.issues import IssueCache
from pkg.roadmap.reconciler import BoardReconciler, LocalBackend
from pkg.roadmap.schema import Issue
from pkg.roadmap.store import CardStore


def make_issue(number: int, title: str = None, labels=None) -> Issue:
    return Issue(
        issue_id=f"github-{number}",
        number=number,
        title=title or f"Issue {number}",
        url=f"https://github.com/example/repo/issues/{number}",
        labels=labels or [],
    )


class FakeSource:
    """Stand-in for GitHubIssueSource: returns a fixed list or raises."""

    def __init__(self, issues=None, error: str = None):
        self.issues = list(issues or [])
        self.error = error
        self.calls = 0

    def fetch_issues(self):
        self.calls += 1
        if self.error:
            raise TrackerError(self.error)
        return list(self.issues)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "roadmap.db")


@pytest.fixture
def store(db_path):
    return CardStore(db_path)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def issue_cache(store, source):
    return IssueCache(store, source=source)


@pytest.fixture
def backend(store, issue_cache):
    return LocalBackend(store, issue_cache)


@pytest.fixture
def reconciler(backend):
    r = BoardReconciler(backend)
    r.load()
    return r
