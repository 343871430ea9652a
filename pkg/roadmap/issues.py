"""
Issue cache: the last tracker snapshot, stored in SQLite.

Refresh is a wholesale swap, never a merge. Reads filter out every issue
whose number is already held by a card, so the cache and the card store
never need to be kept in step at write time. A card deleted back into an
issue is written back with restore(), which never duplicates a number.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .schema import Issue
from .store import CardStore, PersistenceError, _connect
from .github import TrackerError

logger = logging.getLogger(__name__)

REFRESHED_KEY = "issues_refreshed_at"


@dataclass
class RefreshOutcome:
    """
    Result of a refresh. issues is the unplaced list either way;
    refreshed=False means it came from the cached set.
    """
    issues: List[Issue]
    refreshed: bool
    error: Optional[str] = None
    last_refreshed: Optional[str] = None


class IssueCache:
    """SQLite-backed cache of tracker issues."""

    def __init__(self, card_store: CardStore, source=None, db_path: str = None):
        """
        Args:
            card_store: used for the read-time filter on placed issues
            source: anything with fetch_issues() (GitHubIssueSource)
            db_path: defaults to the card store's database
        """
        self.card_store = card_store
        self.source = source
        self.db_path = db_path or card_store.db_path
        self._init_schema()

    def _init_schema(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS github_issues (
                    id TEXT PRIMARY KEY,
                    number INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    url TEXT NOT NULL,
                    labels TEXT,  -- JSON list
                    fetched_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS system_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def replace(self, issues: List[Issue]) -> str:
        """Swap the whole cached set. Returns the fetched_at stamp."""
        fetched_at = datetime.now(timezone.utc).isoformat()
        try:
            with _connect(self.db_path) as conn:
                conn.execute("DELETE FROM github_issues")
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO github_issues
                    (id, number, title, url, labels, fetched_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (i.issue_id, i.number, i.title, i.url, json.dumps(i.labels), fetched_at)
                        for i in issues
                    ],
                )
                # Empty refreshes still count as refreshes
                conn.execute("""
                    INSERT INTO system_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """, (REFRESHED_KEY, fetched_at, fetched_at))
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Error replacing issue cache: {e}")
            raise PersistenceError(str(e)) from e
        return fetched_at

    def restore(self, issue: Issue) -> bool:
        """
        Put a reverted issue back into the cache.

        Skipped when an issue with the same number is already cached.
        Returns True if a row was inserted.
        """
        fetched_at = datetime.now(timezone.utc).isoformat()
        try:
            with _connect(self.db_path) as conn:
                exists = conn.execute(
                    "SELECT 1 FROM github_issues WHERE number = ? LIMIT 1", (issue.number,)
                ).fetchone()
                if exists:
                    return False
                conn.execute(
                    """
                    INSERT OR IGNORE INTO github_issues
                    (id, number, title, url, labels, fetched_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (issue.issue_id, issue.number, issue.title, issue.url,
                     json.dumps(issue.labels), fetched_at),
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Error restoring issue #{issue.number}: {e}")
            raise PersistenceError(str(e)) from e
        logger.info(f"Restored issue #{issue.number} to the cache")
        return True

    def refresh(self) -> RefreshOutcome:
        """
        Reload from the tracker and replace the cache.

        Tracker failures are swallowed: the caller gets the cached set
        instead. Only a failure of that fallback read propagates.
        """
        if self.source is None:
            logger.warning("No issue source configured, serving cached issues")
            return RefreshOutcome(
                issues=self.list(), refreshed=False,
                error="no issue source configured", last_refreshed=self.last_refreshed(),
            )
        try:
            fetched = self.source.fetch_issues()
        except TrackerError as e:
            logger.error(f"Issue refresh failed, serving cached issues: {e}")
            return RefreshOutcome(
                issues=self.list(), refreshed=False,
                error=str(e), last_refreshed=self.last_refreshed(),
            )

        stamp = self.replace(fetched)
        logger.info(f"Issue cache replaced with {len(fetched)} issues")
        return RefreshOutcome(issues=self.list(), refreshed=True, last_refreshed=stamp)

    def all(self) -> List[Issue]:
        """Every cached issue, unfiltered."""
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(
                    "SELECT * FROM github_issues ORDER BY number ASC"
                ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Error reading issue cache: {e}")
            raise PersistenceError(str(e)) from e
        return [self._row_to_issue(r) for r in rows]

    def list(self) -> List[Issue]:
        """Cached issues not yet placed on the board."""
        placed = self.card_store.issue_numbers()
        issues = self.all()
        unplaced = [i for i in issues if i.number not in placed]
        logger.debug(f"Returning {len(unplaced)} issues (filtered from {len(issues)} total)")
        return unplaced

    def last_refreshed(self) -> Optional[str]:
        """ISO timestamp of the last successful refresh, or None."""
        try:
            with _connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT value FROM system_state WHERE key = ? LIMIT 1", (REFRESHED_KEY,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Error reading refresh time: {e}")
            raise PersistenceError(str(e)) from e
        return row["value"] if row else None

    @staticmethod
    def _row_to_issue(row: sqlite3.Row) -> Issue:
        data = dict(row)
        try:
            labels = json.loads(data.get("labels") or "[]")
        except (json.JSONDecodeError, TypeError):
            labels = []
        return Issue(
            issue_id=data["id"],
            number=data["number"],
            title=data["title"],
            url=data["url"],
            labels=labels,
        )
