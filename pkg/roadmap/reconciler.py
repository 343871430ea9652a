"""
Location reconciler: turns board gestures into consistent card/issue state.

Two cooperating state machines:
  client-visible state  → held here (ordered cards, unplaced issues)
  durable state         → the backend (LocalBackend or RoadmapClient)

Every gesture updates the client-visible state first and then persists.
A persistence failure is reported to "persist_failed" subscribers and is
never rolled back; load() is the only reconciliation point and simply
replaces client-visible state with durable state.

Per unit of work:
  Unplaced(Issue)        --place_issue--> Placed(Card)
  Placed(Card)           --move_card----> Placed(Card, new location)
  Placed(Card, issue)    --delete_card--> Unplaced(Issue)
  Placed(Card, native)   --delete_card--> Gone
  Unplaced(Issue)        --hide_issue---> Placed(Card, hidden sentinel)
"""
import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from .schema import Card, Issue, Location, CARD_ID_PREFIX, card_id_number, issue_card_id
from .store import CardStore, CardNotFoundError, PersistenceError
from .issues import IssueCache

logger = logging.getLogger(__name__)


class LocalBackend:
    """In-process durable side: the SQLite card store plus the issue cache."""

    def __init__(self, store: CardStore, issue_cache: IssueCache):
        self.store = store
        self.issue_cache = issue_cache

    def list_cards(self) -> List[Card]:
        return self.store.list_cards()

    def list_issues(self) -> List[Issue]:
        return self.issue_cache.list()

    def create_card(self, card: Card) -> Card:
        # Same contract as POST /cards: the durable side assigns the id
        return self.store.create_card(replace(card, card_id=None))

    def batch_create_cards(self, cards: Iterable[Card]) -> List[Card]:
        return self.store.batch_create(cards)

    def update_card(self, card_id: str, **fields) -> Card:
        updated = self.store.update_card(card_id, **fields)
        if updated is None:
            raise CardNotFoundError(f"Card {card_id} not found")
        return updated

    def delete_card(self, card_id: str) -> None:
        if not self.store.delete_card(card_id):
            raise CardNotFoundError(f"Card {card_id} not found")

    def restore_issue(self, issue: Issue) -> bool:
        return self.issue_cache.restore(issue)

    def is_initialized(self) -> bool:
        return self.store.is_initialized()


class BoardReconciler:
    """Applies board operations optimistically and persists them."""

    def __init__(self, backend, seed_cards: Iterable[Card] = ()):
        """
        Args:
            backend: durable side (see LocalBackend for the contract)
            seed_cards: created through batch_create_cards on first load
                        when the durable card set is empty
        """
        self.backend = backend
        self.seed_cards = list(seed_cards)
        self._cards: Dict[str, Card] = {}
        self._issues: List[Issue] = []
        self._next_id = 1
        self._in_flight = 0
        self.subscribers: Dict[str, list] = {}  # event_type -> list of callbacks

    # ── Events ───────────────────────────────────────────────────────────────

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a callback for an event type."""
        self.subscribers.setdefault(event_type, []).append(callback)

    def _emit(self, event_type: str, **kwargs) -> None:
        for callback in self.subscribers.get(event_type, []):
            try:
                callback(**kwargs)
            except Exception as e:
                logger.error(f"Error in {event_type} callback: {e}")

    # ── State access ─────────────────────────────────────────────────────────

    @property
    def cards(self) -> List[Card]:
        return list(self._cards.values())

    @property
    def issues(self) -> List[Issue]:
        return list(self._issues)

    @property
    def is_saving(self) -> bool:
        """True while a persistence call is outstanding."""
        return self._in_flight > 0

    def get_card(self, card_id: str) -> Optional[Card]:
        return self._cards.get(card_id)

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        return next((i for i in self._issues if i.issue_id == issue_id), None)

    # ── Reconciliation ───────────────────────────────────────────────────────

    def load(self) -> bool:
        """
        Replace client-visible state with durable state.

        Seeds the durable side on first run only: a board emptied by hand
        stays empty. On failure the previous state is kept, "load_failed" is emitted and False is returned.
        """
        try:
            cards = self.backend.list_cards()
            if not cards and self.seed_cards and not self.backend.is_initialized():
                logger.info(f"No cards stored, seeding {len(self.seed_cards)} initial cards")
                cards = self.backend.batch_create_cards(self.seed_cards)
            issues = self.backend.list_issues()
        except PersistenceError as e:
            logger.warning(f"Board load failed, keeping current state: {e}")
            self._emit("load_failed", error=e)
            return False

        self._cards = {c.card_id: c for c in cards}
        placed = {c.source_ref.number for c in cards if c.source_ref}
        self._issues = [i for i in issues if i.number not in placed]
        numbers = [n for n in (card_id_number(cid) for cid in self._cards) if n is not None]
        self._next_id = max(numbers, default=0) + 1
        return True

    # ── Operations ───────────────────────────────────────────────────────────

    def place_new_card(self, objective: str, column, text: str = "") -> str:
        """
        Create a native card and return its id for immediate editing.

        If the durable side assigns a different id, the client-visible card
        is re-keyed and the durable id is returned.
        """
        location = Location.of(objective, column)
        local_id = self._allocate_id()
        card = Card(card_id=local_id, text=text, location=location)
        self._cards[local_id] = card

        created = self._persist("create", local_id, self.backend.create_card, card)
        if created is not None and created.card_id != local_id:
            self._rekey(local_id, created.card_id)
            return created.card_id
        return local_id

    def update_card_text(self, card_id: str, new_text: str) -> None:
        """Commit an edit. Whitespace-only text deletes the card."""
        card = self._cards.get(card_id)
        if card is None:
            return
        text = (new_text or "").strip()
        if not text:
            self.delete_card(card_id)
            return
        card.text = text
        self._persist("update", card_id, self.backend.update_card, card_id, text=text)

    def delete_card(self, card_id: str) -> None:
        """
        Remove a card. Issue-derived cards go back to the unplaced list
        instead of disappearing.
        """
        card = self._cards.pop(card_id, None)
        if card is None:
            return
        issue = Issue.from_card(card) if card.from_issue else None
        if issue is not None:
            logger.info(f"Moving issue #{issue.number} back to the unplaced list")
            held = self._card_for_number(issue.number) is not None
            if not held and not any(i.number == issue.number for i in self._issues):
                self._issues.append(issue)

        self._persist("delete", card_id, self.backend.delete_card, card_id)
        if issue is not None:
            self._persist("restore", card_id, self.backend.restore_issue, issue)

    def move_card(self, card_id: str, new_location: Location) -> None:
        """Move a card, or place an issue dropped onto the board."""
        if self.get_issue(card_id) is not None:
            self.place_issue(card_id, new_location)
            return

        card = self._cards.get(card_id)
        if card is None:
            logger.debug(f"Move ignored, unknown id {card_id}")
            return

        if card.from_issue:
            canonical = self._canonical_card(card.source_ref.number)
            if canonical.card_id != card.card_id:
                logger.info(
                    f"Issue #{card.source_ref.number} already on the board as "
                    f"{canonical.card_id}, collapsing duplicate {card.card_id}"
                )
                self._cards.pop(card.card_id)
                self._persist("delete", card.card_id, self.backend.delete_card, card.card_id)
                card = canonical

        self._relocate(card, new_location)

    def place_issue(self, issue_id: str, location: Location) -> Optional[str]:
        """
        Turn an unplaced issue into a card at location.

        Returns the id of the card now holding the issue, or None when the
        issue id is unknown.
        """
        issue = self.get_issue(issue_id)
        if issue is None:
            logger.debug(f"Issue not found: {issue_id}")
            return None

        self._issues = [i for i in self._issues if i.issue_id != issue_id]

        existing = self._card_for_number(issue.number)
        if existing is not None:
            logger.info(f"Issue #{issue.number} is already on the board as card {existing.card_id}")
            self._relocate(existing, location)
            return existing.card_id

        card = Card.from_issue_at(issue, location)
        logger.info(
            f"Placing issue #{issue.number} at {location.objective}/{location.column.value}"
        )
        self._cards[card.card_id] = card
        created = self._persist("create", card.card_id, self.backend.create_card, card)
        if created is not None and created.card_id != card.card_id:
            self._rekey(card.card_id, created.card_id)
            return created.card_id
        return card.card_id

    def toggle_high_priority(self, card_id: str, value: bool) -> None:
        card = self._cards.get(card_id)
        if card is None:
            return
        card.is_high_priority = bool(value)
        self._persist(
            "update", card_id, self.backend.update_card, card_id,
            is_high_priority=card.is_high_priority,
        )

    def hide_issue(self, issue_id: str) -> Optional[str]:
        """
        Dismiss an issue from the unplaced list.

        Modelled as a placement into Location.HIDDEN: the resulting card is
        stored but never rendered, and keeps the issue out of the list after
        later refreshes. Deleting that card brings the issue back.
        """
        return self.place_issue(issue_id, Location.HIDDEN)

    # ── Internals ────────────────────────────────────────────────────────────

    def _allocate_id(self) -> str:
        while f"{CARD_ID_PREFIX}{self._next_id}" in self._cards:
            self._next_id += 1
        card_id = f"{CARD_ID_PREFIX}{self._next_id}"
        self._next_id += 1
        return card_id

    def _rekey(self, old_id: str, new_id: str) -> None:
        card = self._cards.pop(old_id, None)
        if card is None:
            return
        card.card_id = new_id
        self._cards[new_id] = card

    def _relocate(self, card: Card, location: Location) -> None:
        if card.location == location:
            return
        logger.info(
            f"Moving card {card.card_id} to {location.objective}/{location.column.value}"
        )
        card.location = location
        self._persist("update", card.card_id, self.backend.update_card, card.card_id, location=location)

    def _card_for_number(self, number: int) -> Optional[Card]:
        holders = [c for c in self._cards.values() if c.source_ref and c.source_ref.number == number]
        if not holders:
            return None
        return self._canonical_card(number)

    def _canonical_card(self, number: int) -> Card:
        """The card that owns an issue number: github-<n> if present, else the earliest."""
        preferred = self._cards.get(issue_card_id(number))
        if preferred is not None and preferred.source_ref and preferred.source_ref.number == number:
            return preferred
        return next(
            c for c in self._cards.values()
            if c.source_ref and c.source_ref.number == number
        )

    def _persist(self, action: str, card_id: str, fn: Callable, *args, **kwargs):
        """Run one durable write. Failures are reported, not reverted."""
        self._in_flight += 1
        try:
            return fn(*args, **kwargs)
        except PersistenceError as e:
            logger.warning(f"Failed to persist {action} of card {card_id}: {e}")
            self._emit("persist_failed", action=action, card_id=card_id, error=e)
            return None
        finally:
            self._in_flight -= 1
