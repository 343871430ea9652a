#!/usr/bin/env python3
"""
Roadmap Board Server
--------------------
JSON API for the roadmap board: cards on an objective × now/next/later grid,
plus the list of tracker issues not yet placed.

Usage:
    python roadmap_server.py
    python roadmap_server.py --config config/roadmap.yaml --port 5000

API:
    GET    /api/issues              → { issues, lastRefreshed }
    GET    /api/issues/refresh      → { message, count, lastRefreshed }  (count = unplaced issues)
    POST   /api/issues              → 201 { issue, restored } | 200 if the number is already cached
    GET    /api/cards               → { cards, initialized }
    GET    /api/cards/<id>          → card | 404
    POST   /api/cards               → 201 card (server assigns id) | 400
    PATCH  /api/cards/<id>          → card | 400 | 404
    DELETE /api/cards/<id>          → 204 | 404
    POST   /api/cards/batch         → 201 { cards } (first-run seeding)

    GET    /api/board               → grid + unplaced issues
    POST   /api/board/cards                    { objective, column, text? }
    POST   /api/board/cards/<id>/move          { objective, column }
    POST   /api/board/cards/<id>/text          { text }
    POST   /api/board/cards/<id>/priority      { value }
    DELETE /api/board/cards/<id>
    POST   /api/board/issues/<id>/place        { objective, column }
    POST   /api/board/issues/<id>/hide

    GET    /health
"""

import logging
import sys
import threading
from typing import Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from pkg.roadmap.board import build_board
from pkg.roadmap.config import RoadmapConfig, ConfigError
from pkg.roadmap.github import GitHubIssueSource
from pkg.roadmap.issues import IssueCache
from pkg.roadmap.reconciler import BoardReconciler, LocalBackend
from pkg.roadmap.schema import (
    Card,
    Location,
    ValidationError,
    validate_card_payload,
    validate_issue_payload,
)
from pkg.roadmap.store import CardStore, DuplicateCardError

logger = logging.getLogger("roadmap")

api = Blueprint("roadmap", __name__)


# ── Services ─────────────────────────────────────────────────────────────────


class RoadmapServices:
    """Per-process wiring: store, issue cache, and the board reconciler."""

    def __init__(self, config: RoadmapConfig, source=None):
        self.config = config
        self.store = CardStore(config.db_path)
        if source is None:
            source = GitHubIssueSource(
                token=config.github_token,
                owner=config.github_owner,
                repo=config.github_repo,
                labels=config.github_labels,
                timeout=config.github_timeout,
            )
        self.issue_cache = IssueCache(self.store, source=source)
        self.reconciler = BoardReconciler(
            LocalBackend(self.store, self.issue_cache),
            seed_cards=config.seed_cards,
        )
        # Board actions load, mutate and render as one step
        self.board_lock = threading.Lock()


def _services() -> RoadmapServices:
    return current_app.extensions["roadmap"]


def _json_body() -> dict:
    return request.get_json(force=True, silent=True)


def _error(message: str, code: int):
    return jsonify({"error": message}), code


def _check_objective(location: Location) -> Location:
    """Reject locations on objectives the board does not have."""
    if location.is_hidden:
        return location
    known = {o.objective_id for o in _services().config.objectives}
    if location.objective not in known:
        raise ValidationError(f"Unknown objective: {location.objective!r}")
    return location


def _checked_card_fields(data, partial: bool = False) -> dict:
    fields = validate_card_payload(data, partial=partial)
    if "location" in fields:
        _check_objective(fields["location"])
    return fields


# ── Issues ───────────────────────────────────────────────────────────────────


@api.route("/issues", methods=["GET"])
def api_issues():
    cache = _services().issue_cache
    issues = cache.list()
    return jsonify({
        "issues": [i.to_dict() for i in issues],
        "lastRefreshed": cache.last_refreshed(),
    })


@api.route("/issues/refresh", methods=["GET"])
def api_issues_refresh():
    outcome = _services().issue_cache.refresh()
    if outcome.refreshed:
        message = "GitHub issues refreshed successfully"
    else:
        message = f"GitHub refresh failed, serving cached issues: {outcome.error}"
    return jsonify({
        "message": message,
        "count": len(outcome.issues),
        "lastRefreshed": outcome.last_refreshed,
    })


@api.route("/issues", methods=["POST"])
def api_restore_issue():
    try:
        issue = validate_issue_payload(_json_body())
    except ValidationError as e:
        return _error(str(e), 400)
    restored = _services().issue_cache.restore(issue)
    return jsonify({"issue": issue.to_dict(), "restored": restored}), (201 if restored else 200)


# ── Cards ────────────────────────────────────────────────────────────────────


@api.route("/cards", methods=["GET"])
def api_cards():
    store = _services().store
    cards = store.list_cards()
    return jsonify({
        "cards": [c.to_row() for c in cards],
        "initialized": store.is_initialized(),
    })


@api.route("/cards/<card_id>", methods=["GET"])
def api_get_card(card_id):
    card = _services().store.get_card(card_id)
    if card is None:
        return _error("Card not found", 404)
    return jsonify(card.to_row())


@api.route("/cards", methods=["POST"])
def api_create_card():
    try:
        fields = _checked_card_fields(_json_body())
        card = _services().store.create_card(Card(card_id=None, **fields))
    except ValidationError as e:
        return _error(str(e), 400)
    except DuplicateCardError as e:
        return _error(str(e), 400)
    return jsonify(card.to_row()), 201


@api.route("/cards/batch", methods=["POST"])
def api_batch_create_cards():
    data = _json_body()
    if not isinstance(data, list):
        return _error("request body must be a JSON array of cards", 400)
    cards = []
    try:
        for item in data:
            if not isinstance(item, dict):
                raise ValidationError("each card must be a JSON object")
            body = dict(item)
            card_id = body.pop("id", None)
            if card_id is not None and (not isinstance(card_id, str) or not card_id):
                raise ValidationError("id must be a non-empty string")
            cards.append(Card(card_id=card_id, **_checked_card_fields(body)))
        created = _services().store.batch_create(cards)
    except ValidationError as e:
        return _error(str(e), 400)
    except DuplicateCardError as e:
        return _error(str(e), 400)
    return jsonify({"cards": [c.to_row() for c in created]}), 201


@api.route("/cards/<card_id>", methods=["PATCH"])
def api_update_card(card_id):
    try:
        fields = _checked_card_fields(_json_body(), partial=True)
    except ValidationError as e:
        return _error(str(e), 400)
    card = _services().store.update_card(card_id, **fields)
    if card is None:
        return _error("Card not found", 404)
    return jsonify(card.to_row())


@api.route("/cards/<card_id>", methods=["DELETE"])
def api_delete_card(card_id):
    if not _services().store.delete_card(card_id):
        return _error("Card not found", 404)
    return "", 204


# ── Board ────────────────────────────────────────────────────────────────────


def _board_payload(services: RoadmapServices) -> dict:
    r = services.reconciler
    return build_board(services.config.objectives, r.cards, r.issues)


def _location_from(data) -> Location:
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return _check_objective(Location.from_dict(data))


def _board_action(operation, status: int = 200):
    """
    Run one reconciler operation against freshly loaded durable state.

    Persistence failures are returned alongside the board, not as an HTTP
    error: the optimistic state stays as the operation left it.
    """
    services = _services()
    errors = []

    def collect(action, card_id, error):
        errors.append({"action": action, "card_id": card_id, "error": str(error)})

    with services.board_lock:
        r = services.reconciler
        r.subscribe("persist_failed", collect)
        try:
            r.load()
            result = operation(r) or {}
            payload = dict(result)
            payload["board"] = _board_payload(services)
            payload["errors"] = errors
        finally:
            r.subscribers["persist_failed"].remove(collect)
    return jsonify(payload), status


@api.route("/board", methods=["GET"])
def api_board():
    services = _services()
    with services.board_lock:
        services.reconciler.load()
        return jsonify(_board_payload(services))


@api.route("/board/cards", methods=["POST"])
def api_board_add_card():
    data = _json_body()
    try:
        location = _location_from(data)
        text = data.get("text", "")
        if not isinstance(text, str):
            raise ValidationError("text must be a string")
    except ValidationError as e:
        return _error(str(e), 400)
    return _board_action(
        lambda r: {"id": r.place_new_card(location.objective, location.column, text)},
        status=201,
    )


@api.route("/board/cards/<card_id>/move", methods=["POST"])
def api_board_move_card(card_id):
    try:
        location = _location_from(_json_body())
    except ValidationError as e:
        return _error(str(e), 400)
    return _board_action(lambda r: r.move_card(card_id, location))


@api.route("/board/cards/<card_id>/text", methods=["POST"])
def api_board_card_text(card_id):
    data = _json_body()
    if not isinstance(data, dict) or not isinstance(data.get("text"), str):
        return _error("text must be a string", 400)
    return _board_action(lambda r: r.update_card_text(card_id, data["text"]))


@api.route("/board/cards/<card_id>/priority", methods=["POST"])
def api_board_card_priority(card_id):
    data = _json_body()
    if not isinstance(data, dict) or not isinstance(data.get("value"), bool):
        return _error("value must be a boolean", 400)
    return _board_action(lambda r: r.toggle_high_priority(card_id, data["value"]))


@api.route("/board/cards/<card_id>", methods=["DELETE"])
def api_board_delete_card(card_id):
    return _board_action(lambda r: r.delete_card(card_id))


@api.route("/board/issues/<issue_id>/place", methods=["POST"])
def api_board_place_issue(issue_id):
    try:
        location = _location_from(_json_body())
    except ValidationError as e:
        return _error(str(e), 400)
    return _board_action(lambda r: {"id": r.place_issue(issue_id, location)})


@api.route("/board/issues/<issue_id>/hide", methods=["POST"])
def api_board_hide_issue(issue_id):
    return _board_action(lambda r: {"id": r.hide_issue(issue_id)})


# ── App factory ──────────────────────────────────────────────────────────────


def create_app(config: Optional[RoadmapConfig] = None, source=None) -> Flask:
    """
    Build the Flask app. One RoadmapServices per app; handlers reach it
    through current_app.extensions["roadmap"].

    Args:
        config: defaults to RoadmapConfig.load()
        source: issue source override (anything with fetch_issues())
    """
    if config is None:
        config = RoadmapConfig.load()
    app = Flask(__name__)
    app.extensions["roadmap"] = RoadmapServices(config, source=source)
    app.register_blueprint(api, url_prefix="/api")

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": config.db_path})

    @app.errorhandler(HTTPException)
    def http_error(e):
        return _error(e.description or e.name, e.code)

    @app.errorhandler(Exception)
    def internal_error(e):
        app.logger.exception(f"Unhandled error on {request.method} {request.path}")
        return _error("Internal server error", 500)

    return app


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [roadmap] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# ── Main ─────────────────────────────────────────────────────────────────────


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Roadmap Board Server")
    parser.add_argument("--config", help="Path to roadmap.yaml (overrides ROADMAP_CONFIG env var)")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to roadmap.db (overrides config and ROADMAP_DB)")
    args = parser.parse_args(argv)

    try:
        config = RoadmapConfig.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1
    if args.db:
        config.db_path = args.db
    host = args.host or config.host
    port = args.port or config.port

    setup_logging(config.log_level)
    if not config.github_token:
        logger.warning(f"{config.github_token_env} is not set; refresh will serve cached issues")

    app = create_app(config)
    logger.info(f"Serving roadmap on http://{host}:{port} (db: {config.db_path})")
    app.run(host=host, port=port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
