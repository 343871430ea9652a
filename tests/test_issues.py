"""
Tests for the issue cache and the GitHub issue source.

Covers:
    - IssueCache.replace() : wholesale swap, refresh timestamp
    - IssueCache.list()    : read-time filter against placed cards
    - IssueCache.refresh() : fallback to cached issues on tracker errors
    - IssueCache.restore() : reverted issues written back once per number
    - GitHubIssueSource    : pagination, GraphQL errors, HTTP failures
"""
import pytest
import requests

from conftest import FakeSource, make_issue
from pkg.roadmap.github import GitHubIssueSource, TrackerError, mask_token
from pkg.roadmap.issues import IssueCache
from pkg.roadmap.schema import Card, IssueRef, Location


def _place(store, number):
    store.create_card(Card(None, f"Issue {number}", Location.of("obj1", "now"),
                           source_ref=IssueRef(number, "u")))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# IssueCache
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestIssueCache:

    def test_empty_cache(self, issue_cache):
        assert issue_cache.list() == []
        assert issue_cache.last_refreshed() is None

    def test_replace_is_wholesale(self, issue_cache):
        issue_cache.replace([make_issue(1), make_issue(2)])
        issue_cache.replace([make_issue(3)])
        assert [i.number for i in issue_cache.list()] == [3]

    def test_replace_records_timestamp(self, issue_cache):
        stamp = issue_cache.replace([make_issue(1)])
        assert issue_cache.last_refreshed() == stamp

    def test_empty_replace_still_records_timestamp(self, issue_cache):
        stamp = issue_cache.replace([])
        assert issue_cache.last_refreshed() == stamp

    def test_labels_round_trip(self, issue_cache):
        issue_cache.replace([make_issue(1, labels=["bmt-2025", "bug"])])
        assert issue_cache.list()[0].labels == ["bmt-2025", "bug"]

    def test_list_filters_placed_issues(self, store, issue_cache):
        """Three issues refreshed while two are already on the board → one unplaced."""
        _place(store, 1)
        _place(store, 2)
        issue_cache.replace([make_issue(1), make_issue(2), make_issue(3)])
        assert [i.number for i in issue_cache.list()] == [3]
        assert len(issue_cache.all()) == 3

    def test_filter_applies_at_read_time(self, store, issue_cache):
        issue_cache.replace([make_issue(1), make_issue(2)])
        _place(store, 2)
        assert [i.number for i in issue_cache.list()] == [1]
        store.delete_card("github-2")
        assert [i.number for i in issue_cache.list()] == [1, 2]

    def test_refresh_success(self, issue_cache, source):
        source.issues = [make_issue(10), make_issue(11)]
        outcome = issue_cache.refresh()
        assert outcome.refreshed
        assert len(outcome.issues) == 2
        assert outcome.last_refreshed == issue_cache.last_refreshed()
        assert [i.number for i in issue_cache.list()] == [10, 11]

    def test_refresh_failure_serves_cache(self, store, source):
        cache = IssueCache(store, source=source)
        cache.replace([make_issue(1)])
        stamp = cache.last_refreshed()
        source.error = "Bad credentials"

        outcome = cache.refresh()
        assert not outcome.refreshed
        assert outcome.error == "Bad credentials"
        assert [i.number for i in outcome.issues] == [1]
        assert cache.last_refreshed() == stamp

    def test_refresh_without_source(self, store):
        cache = IssueCache(store)
        outcome = cache.refresh()
        assert not outcome.refreshed
        assert outcome.issues == []

    def test_refresh_issues_exclude_placed(self, store, issue_cache, source):
        _place(store, 1)
        _place(store, 2)
        source.issues = [make_issue(1), make_issue(2), make_issue(3)]
        outcome = issue_cache.refresh()
        assert outcome.refreshed
        assert [i.number for i in outcome.issues] == [3]

    def test_fallback_issues_exclude_placed(self, store, issue_cache, source):
        issue_cache.replace([make_issue(1), make_issue(2)])
        _place(store, 1)
        source.error = "timeout"
        outcome = issue_cache.refresh()
        assert not outcome.refreshed
        assert [i.number for i in outcome.issues] == [2]

    def test_restore_inserts_missing_issue(self, issue_cache):
        issue_cache.replace([make_issue(1)])
        assert issue_cache.restore(make_issue(7, title="Reverted")) is True
        assert [i.number for i in issue_cache.list()] == [1, 7]
        assert issue_cache.list()[1].title == "Reverted"

    def test_restore_skips_cached_number(self, issue_cache):
        issue_cache.replace([make_issue(4, title="From tracker")])
        assert issue_cache.restore(make_issue(4, title="Stale")) is False
        assert [i.title for i in issue_cache.all()] == ["From tracker"]

    def test_restore_keeps_refresh_stamp(self, issue_cache):
        stamp = issue_cache.replace([])
        issue_cache.restore(make_issue(2))
        assert issue_cache.last_refreshed() == stamp

    def test_shares_database_with_store(self, store):
        cache = IssueCache(store, source=FakeSource())
        assert cache.db_path == store.db_path


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GitHubIssueSource
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class FakeResponse:

    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.ok = 200 <= status_code < 400

    def json(self):
        if self.payload is None:
            raise ValueError("no JSON")
        return self.payload


class FakeSession:
    """Replays canned GraphQL responses and records request variables."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.headers = {}
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append(json)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _page(numbers, has_next=False, cursor=None):
    return FakeResponse({
        "data": {
            "search": {
                "edges": [
                    {"node": {
                        "number": n,
                        "title": f"Issue {n}",
                        "url": f"https://github.com/o/r/issues/{n}",
                        "labels": {"nodes": [{"name": "bmt-2025"}]},
                    }}
                    for n in numbers
                ],
                "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
            }
        }
    })


def _source(session, token="ghp_abcdefghijklmnop"):
    return GitHubIssueSource(
        token=token, owner="o", repo="r", labels=["bmt-2025", "bmt-team-1"], session=session,
    )


class TestGitHubIssueSource:

    def test_search_query_includes_labels(self):
        src = _source(FakeSession([]))
        assert src.search_query() == 'repo:o/r is:issue is:open label:"bmt-2025" label:"bmt-team-1"'

    def test_sets_auth_header(self):
        session = FakeSession([])
        _source(session)
        assert session.headers["Authorization"] == "Bearer ghp_abcdefghijklmnop"

    def test_single_page(self):
        issues = _source(FakeSession([_page([1, 2])])).fetch_issues()
        assert [i.number for i in issues] == [1, 2]
        assert issues[0].issue_id == "github-1"
        assert issues[0].labels == ["bmt-2025"]

    def test_follows_pagination_until_exhausted(self):
        session = FakeSession([
            _page([1, 2], has_next=True, cursor="c1"),
            _page([3], has_next=True, cursor="c2"),
            _page([4]),
        ])
        issues = _source(session).fetch_issues()
        assert [i.number for i in issues] == [1, 2, 3, 4]
        cursors = [r["variables"]["cursor"] for r in session.requests]
        assert cursors == [None, "c1", "c2"]

    def test_skips_non_issue_nodes(self):
        response = _page([1])
        response.payload["data"]["search"]["edges"].append({"node": {}})
        issues = _source(FakeSession([response])).fetch_issues()
        assert [i.number for i in issues] == [1]

    def test_missing_token(self):
        with pytest.raises(TrackerError, match="token"):
            _source(FakeSession([]), token="").fetch_issues()

    def test_graphql_errors(self):
        session = FakeSession([FakeResponse({"errors": [{"message": "Bad credentials"}]})])
        with pytest.raises(TrackerError, match="Bad credentials"):
            _source(session).fetch_issues()

    def test_http_error(self):
        with pytest.raises(TrackerError, match="401"):
            _source(FakeSession([FakeResponse({}, status_code=401)])).fetch_issues()

    def test_connection_error(self):
        session = FakeSession([requests.ConnectionError("unreachable")])
        with pytest.raises(TrackerError):
            _source(session).fetch_issues()

    def test_invalid_json(self):
        with pytest.raises(TrackerError):
            _source(FakeSession([FakeResponse(None)])).fetch_issues()

    def test_unexpected_shape(self):
        with pytest.raises(TrackerError):
            _source(FakeSession([FakeResponse({"data": None})])).fetch_issues()


def test_mask_token():
    assert mask_token("ghp_abcdefghijklmnop") == "ghp_...mnop"
    assert mask_token("short") == "****"
