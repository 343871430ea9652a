"""Board presentation: the grid and unplaced list, derived from reconciler state."""
import logging
from typing import Any, Dict, Iterable, List

from .schema import Card, Column, Issue, Objective

logger = logging.getLogger(__name__)


def build_board(
    objectives: Iterable[Objective],
    cards: Iterable[Card],
    issues: Iterable[Issue],
) -> Dict[str, Any]:
    """
    Lay cards out on the objective × column grid.

    Hidden sentinel cards and cards on unknown objectives are never rendered.
    """
    columns = [c.value for c in Column.visible()]
    rows: List[Dict[str, Any]] = []
    cells_by_objective: Dict[str, Dict[str, list]] = {}
    for objective in objectives:
        cells = {col: [] for col in columns}
        cells_by_objective[objective.objective_id] = cells
        rows.append({"id": objective.objective_id, "label": objective.label, "cells": cells})

    for card in cards:
        if card.location.is_hidden:
            continue
        cells = cells_by_objective.get(card.location.objective)
        if cells is None:
            logger.debug(f"Card {card.card_id} is on unknown objective {card.location.objective}")
            continue
        cells[card.location.column.value].append(card.to_dict())

    return {
        "columns": columns,
        "objectives": rows,
        "unplaced": [issue.to_dict() for issue in issues],
    }
