"""
Roadmap card storage backend (SQLite).

Provides CRUD operations for placed cards. The store guarantees id
uniqueness and nothing more: keeping one card per tracker issue is the
reconciler's job.
"""
import sqlite3
import json
import logging
from pathlib import Path
from typing import List, Optional, Set, Iterable
from datetime import datetime, timezone
from .schema import Card, CARD_ID_PREFIX, issue_card_id, card_id_number, to_row_fields

logger = logging.getLogger(__name__)

INITIALIZED_KEY = "cards_initialized_at"


class PersistenceError(Exception):
    """Raised when the durable side cannot complete a write or read."""
    pass


class CardNotFoundError(PersistenceError):
    """Raised when a durable update/delete targets an unknown card id."""
    pass


class DuplicateCardError(PersistenceError):
    """Raised when a create would reuse an existing card id."""
    pass


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CardStore:
    """SQLite-backed store for roadmap cards."""

    def __init__(self, db_path: str = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "roadmap" / "roadmap.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS roadmap_cards (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    location TEXT NOT NULL,  -- JSON {objective, column}
                    is_accent INTEGER DEFAULT 0,
                    is_high_priority INTEGER DEFAULT 0,
                    github_number INTEGER,
                    github_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cards_github_number ON roadmap_cards(github_number)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS system_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    # ── Writes ───────────────────────────────────────────────────────────────

    def create_card(self, card: Card) -> Card:
        """
        Insert a card. Assigns an id when card.card_id is empty:
        github-<n> for issue-derived cards, otherwise the next card-<n>.

        Raises:
            DuplicateCardError if the id is taken.
            PersistenceError on any other SQLite failure.
        """
        try:
            with _connect(self.db_path) as conn:
                created = self._insert(conn, card)
                self._mark_initialized(conn)
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateCardError(f"Card {card.card_id or '(new)'} already exists") from e
        except sqlite3.Error as e:
            logger.error(f"Error creating card {card.card_id}: {e}")
            raise PersistenceError(str(e)) from e
        logger.info(f"Created card {created.card_id} at {created.location.objective}/{created.location.column.value}")
        return created

    def batch_create(self, cards: Iterable[Card]) -> List[Card]:
        """Insert many cards in one transaction, keeping client ids. All or nothing."""
        created = []
        try:
            with _connect(self.db_path) as conn:
                for card in cards:
                    created.append(self._insert(conn, card))
                self._mark_initialized(conn)
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateCardError(f"Batch contains an existing card id: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Error in batch create: {e}")
            raise PersistenceError(str(e)) from e
        logger.info(f"Batch created {len(created)} cards")
        return created

    def update_card(self, card_id: str, **fields) -> Optional[Card]:
        """
        Update only the given Card fields.

        Returns the updated card, or None if card_id is unknown.
        """
        row = to_row_fields(fields)
        if "location" in row:
            row["location"] = json.dumps(row["location"])
        for flag in ("is_accent", "is_high_priority"):
            if flag in row:
                row[flag] = 1 if row[flag] else 0
        row["updated_at"] = _utc_now()

        assignments = ", ".join(f"{col} = ?" for col in row)
        try:
            with _connect(self.db_path) as conn:
                cur = conn.execute(
                    f"UPDATE roadmap_cards SET {assignments} WHERE id = ?",
                    (*row.values(), card_id),
                )
                conn.commit()
                if cur.rowcount == 0:
                    return None
                updated = conn.execute(
                    "SELECT * FROM roadmap_cards WHERE id = ?", (card_id,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Error updating card {card_id}: {e}")
            raise PersistenceError(str(e)) from e
        return self._row_to_card(updated)

    def delete_card(self, card_id: str) -> bool:
        """Delete a card. Returns True if a row was removed."""
        try:
            with _connect(self.db_path) as conn:
                cur = conn.execute("DELETE FROM roadmap_cards WHERE id = ?", (card_id,))
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Error deleting card {card_id}: {e}")
            raise PersistenceError(str(e)) from e
        return cur.rowcount > 0

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_card(self, card_id: str) -> Optional[Card]:
        """Retrieve a card by ID."""
        try:
            with _connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT * FROM roadmap_cards WHERE id = ?", (card_id,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Error retrieving card {card_id}: {e}")
            raise PersistenceError(str(e)) from e
        return self._row_to_card(row) if row else None

    def list_cards(self) -> List[Card]:
        """List all cards in creation order."""
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(
                    "SELECT * FROM roadmap_cards ORDER BY seq ASC"
                ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Error listing cards: {e}")
            raise PersistenceError(str(e)) from e
        return [self._row_to_card(row) for row in rows]

    def issue_numbers(self) -> Set[int]:
        """Tracker issue numbers currently held by cards."""
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(
                    "SELECT DISTINCT github_number FROM roadmap_cards WHERE github_number IS NOT NULL"
                ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Error reading issue numbers: {e}")
            raise PersistenceError(str(e)) from e
        return {row[0] for row in rows}

    def is_initialized(self) -> bool:
        """True once any card has ever been written, even if all were deleted since."""
        try:
            with _connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT value FROM system_state WHERE key = ? LIMIT 1", (INITIALIZED_KEY,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Error reading board state: {e}")
            raise PersistenceError(str(e)) from e
        return row is not None

    # ── Internals ────────────────────────────────────────────────────────────

    def _mark_initialized(self, conn: sqlite3.Connection) -> None:
        now = _utc_now()
        conn.execute("""
            INSERT INTO system_state (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO NOTHING
        """, (INITIALIZED_KEY, now, now))

    def _next_card_id(self, conn: sqlite3.Connection) -> str:
        """Next native card id: one past the highest card-<n> suffix."""
        rows = conn.execute(
            "SELECT id FROM roadmap_cards WHERE id LIKE ?", (f"{CARD_ID_PREFIX}%",)
        ).fetchall()
        numbers = [n for n in (card_id_number(r[0]) for r in rows) if n is not None]
        return f"{CARD_ID_PREFIX}{max(numbers, default=0) + 1}"

    def _insert(self, conn: sqlite3.Connection, card: Card) -> Card:
        card_id = card.card_id
        if not card_id:
            if card.source_ref:
                card_id = issue_card_id(card.source_ref.number)
            else:
                card_id = self._next_card_id(conn)
        seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM roadmap_cards").fetchone()[0]
        now = _utc_now()
        conn.execute("""
            INSERT INTO roadmap_cards
            (id, seq, text, location, is_accent, is_high_priority,
             github_number, github_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            card_id,
            seq,
            card.text,
            json.dumps(card.location.to_dict()),
            1 if card.is_accent else 0,
            1 if card.is_high_priority else 0,
            card.source_ref.number if card.source_ref else None,
            card.source_ref.url if card.source_ref else None,
            now,
            now,
        ))
        return Card(
            card_id=card_id,
            text=card.text,
            location=card.location,
            is_accent=card.is_accent,
            is_high_priority=card.is_high_priority,
            source_ref=card.source_ref,
        )

    def _row_to_card(self, row: sqlite3.Row) -> Card:
        """Convert a database row to a Card object."""
        data = dict(row)
        data["location"] = json.loads(data["location"])
        return Card.from_row(data)
