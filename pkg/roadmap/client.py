"""
HTTP client for the roadmap JSON API.

Implements the reconciler backend contract over the network, so a
BoardReconciler can run remotely against a roadmap server and keep its own
optimistic copy of the board.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

from .schema import Card, Issue, to_row_fields
from .store import PersistenceError, CardNotFoundError

logger = logging.getLogger(__name__)


class RoadmapAPIError(PersistenceError):
    """Raised when the roadmap server rejects or cannot serve a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RoadmapClient:
    """HTTP client for the roadmap server."""

    def __init__(self, base_url: str = "http://localhost:5000", session=None, timeout: float = 5):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    # ── Backend contract ─────────────────────────────────────────────────────

    def list_cards(self) -> List[Card]:
        data = self._request("GET", "/api/cards")
        return [Card.from_row(row) for row in data.get("cards", [])]

    def get_card(self, card_id: str) -> Optional[Card]:
        try:
            return Card.from_row(self._request("GET", f"/api/cards/{card_id}"))
        except CardNotFoundError:
            return None

    def list_issues(self) -> List[Issue]:
        data = self._request("GET", "/api/issues")
        return [Issue.from_dict(i) for i in data.get("issues", [])]

    def refresh_issues(self) -> Dict[str, Any]:
        return self._request("GET", "/api/issues/refresh")

    def restore_issue(self, issue: Issue) -> bool:
        data = self._request("POST", "/api/issues", json=issue.to_dict())
        return bool(data.get("restored"))

    def create_card(self, card: Card) -> Card:
        row = card.to_row()
        row.pop("id")
        return Card.from_row(self._request("POST", "/api/cards", json=row))

    def batch_create_cards(self, cards: Iterable[Card]) -> List[Card]:
        data = self._request("POST", "/api/cards/batch", json=[c.to_row() for c in cards])
        return [Card.from_row(row) for row in data.get("cards", [])]

    def update_card(self, card_id: str, **fields) -> Card:
        return Card.from_row(
            self._request("PATCH", f"/api/cards/{card_id}", json=to_row_fields(fields))
        )

    def delete_card(self, card_id: str) -> None:
        self._request("DELETE", f"/api/cards/{card_id}")

    def is_initialized(self) -> bool:
        return bool(self._request("GET", "/api/cards").get("initialized"))

    def health(self) -> bool:
        """Check if the server is reachable."""
        try:
            r = self.session.request("GET", f"{self.base_url}/health", timeout=2)
            return r.ok
        except requests.RequestException:
            return False

    # ── Transport ────────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, json: Any = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, json=json, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise RoadmapAPIError(f"{method} {path} failed: {e}") from e

        if r.status_code == 404:
            raise CardNotFoundError(self._error_message(r) or f"{path} not found")
        if not r.ok:
            message = self._error_message(r) or f"HTTP {r.status_code}"
            logger.warning(f"{method} {path} returned {r.status_code}: {message}")
            raise RoadmapAPIError(message, status=r.status_code)
        if r.status_code == 204 or not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise RoadmapAPIError(f"{method} {path} returned invalid JSON") from e

    @staticmethod
    def _error_message(r) -> str:
        try:
            return (r.json() or {}).get("error", "")
        except ValueError:
            return ""
