"""
GitHub issue source.

Read-only client for the tracker: one paginated GraphQL search, filtered by
a fixed set of required labels, followed until the provider reports no
further pages.
"""
import logging
from typing import List, Optional, Dict, Any

import requests

from .schema import Issue, issue_card_id

logger = logging.getLogger(__name__)

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"

SEARCH_QUERY = """
query RoadmapIssues($cursor: String, $searchQuery: String!, $pageSize: Int!) {
  search(type: ISSUE, first: $pageSize, after: $cursor, query: $searchQuery) {
    edges {
      node {
        ... on Issue {
          number
          title
          url
          labels(first: 10) {
            nodes { name }
          }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
"""


class TrackerError(Exception):
    """Raised when the issue tracker cannot be queried."""
    pass


def mask_token(token: str) -> str:
    """First/last four characters only, for log lines."""
    if len(token) <= 10:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


class GitHubIssueSource:
    """Fetches open, labelled issues for one repository."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        labels: List[str],
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        page_size: int = 100,
        url: str = GITHUB_GRAPHQL_URL,
    ):
        self.token = token or ""
        self.owner = owner
        self.repo = repo
        self.labels = list(labels)
        self.timeout = timeout
        self.page_size = page_size
        self.url = url
        self.session = session or requests.Session()
        if self.token:
            self.session.headers["Authorization"] = f"Bearer {self.token}"
        self.session.headers["Content-Type"] = "application/json"

    def search_query(self) -> str:
        labels = " ".join(f'label:"{label}"' for label in self.labels)
        return f"repo:{self.owner}/{self.repo} is:issue is:open {labels}".strip()

    def fetch_issues(self) -> List[Issue]:
        """
        Fetch every matching issue, page by page.

        Raises:
            TrackerError on a missing token, transport failure, non-2xx
            response, GraphQL errors, or an unexpected payload shape.
        """
        if not self.token:
            raise TrackerError("GitHub token is not configured")

        logger.info(f"Fetching issues with token {mask_token(self.token)}: {self.search_query()}")
        issues: List[Issue] = []
        cursor = None
        while True:
            data = self._post({
                "cursor": cursor,
                "searchQuery": self.search_query(),
                "pageSize": self.page_size,
            })
            try:
                search = data["data"]["search"]
                edges = search.get("edges") or []
                page_info = search.get("pageInfo") or {}
            except (KeyError, TypeError, AttributeError) as e:
                raise TrackerError(f"Unexpected GitHub response shape: {e}") from e

            page = [self._edge_to_issue(edge) for edge in edges]
            page = [issue for issue in page if issue is not None]
            issues.extend(page)

            has_next = bool(page_info.get("hasNextPage"))
            cursor = page_info.get("endCursor")
            if page:
                logger.info(f"Received {len(page)} issues{', has more pages' if has_next else ''}")
            if not has_next or not cursor:
                break

        logger.info(f"Total GitHub issues fetched: {len(issues)}")
        return issues

    def _post(self, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            r = self.session.post(
                self.url,
                json={"query": SEARCH_QUERY, "variables": variables},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TrackerError(f"GitHub request failed: {e}") from e

        if not r.ok:
            raise TrackerError(f"GitHub API returned HTTP {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise TrackerError("GitHub API returned invalid JSON") from e

        if data.get("errors"):
            logger.error(f"GitHub API returned errors: {data['errors']}")
            raise TrackerError(data["errors"][0].get("message", "GraphQL error"))
        return data

    @staticmethod
    def _edge_to_issue(edge: Dict[str, Any]) -> Optional[Issue]:
        node = (edge or {}).get("node") or {}
        # Non-issue search hits come back as empty nodes
        if "number" not in node:
            return None
        labels = ((node.get("labels") or {}).get("nodes")) or []
        return Issue(
            issue_id=issue_card_id(node["number"]),
            number=node["number"],
            title=node.get("title", ""),
            url=node.get("url", ""),
            labels=[label["name"] for label in labels if label and "name" in label],
        )
