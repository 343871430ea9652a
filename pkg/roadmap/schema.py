"""
Roadmap card schema.

A board is a grid of objectives (rows) crossed with time-horizon columns:
  now → next → later

Cards live in one grid cell. Issues come from the external tracker and sit
in the unplaced list until they are dropped onto the board.

Field names cross a case boundary here and nowhere else:
  storage / API rows  → snake_case, flat (github_number, github_url)
  in-memory Card      → nested IssueRef
  UI view model       → camelCase (Card.to_dict)
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any


ISSUE_ID_PREFIX = "github-"
CARD_ID_PREFIX = "card-"


class ValidationError(Exception):
    """Raised when a card payload does not match the schema."""
    pass


class Column(Enum):
    """Time-horizon buckets, plus the sentinel used for dismissed issues."""
    NOW = "now"
    NEXT = "next"
    LATER = "later"
    HIDDEN = "hidden"        # Dismissed issue, never rendered

    @classmethod
    def visible(cls) -> List["Column"]:
        return [cls.NOW, cls.NEXT, cls.LATER]

    @classmethod
    def from_str(cls, value: str) -> "Column":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid column: {value!r} (expected one of "
                f"{[c.value for c in cls]})"
            )


@dataclass(frozen=True)
class Location:
    """Grid cell a card occupies."""
    objective: str
    column: Column

    HIDDEN_OBJECTIVE = "hidden"

    @property
    def is_hidden(self) -> bool:
        return self.column == Column.HIDDEN

    def to_dict(self) -> Dict[str, str]:
        return {"objective": self.objective, "column": self.column.value}

    @classmethod
    def from_dict(cls, data: Any) -> "Location":
        """Parse {objective, column}. Raises ValidationError."""
        if not isinstance(data, dict):
            raise ValidationError("location must be an object with objective and column")
        objective = data.get("objective")
        if not isinstance(objective, str) or not objective.strip():
            raise ValidationError("location.objective must be a non-empty string")
        column = data.get("column")
        if not isinstance(column, str):
            raise ValidationError("location.column must be a string")
        return cls.of(objective, column)

    @classmethod
    def of(cls, objective: str, column) -> "Location":
        """Build a location, enforcing the hidden sentinel pairing."""
        if not objective:
            raise ValidationError("objective is required")
        col = column if isinstance(column, Column) else Column.from_str(column)
        hidden_objective = objective == cls.HIDDEN_OBJECTIVE
        if (col == Column.HIDDEN) != hidden_objective:
            raise ValidationError(
                "the hidden column and the hidden objective must be used together"
            )
        return cls(objective=objective, column=col)


# Sentinel location for issues dismissed from the unplaced list
Location.HIDDEN = Location(Location.HIDDEN_OBJECTIVE, Column.HIDDEN)


@dataclass(frozen=True)
class IssueRef:
    """Link from a card back to the tracker issue it came from."""
    number: int
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {"number": self.number, "url": self.url}


@dataclass
class Objective:
    """Static row descriptor. Label may contain inline HTML."""
    objective_id: str
    label: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.objective_id, "label": self.label}


def issue_card_id(number: int) -> str:
    """Card id for an issue-derived card. Same issue → same id."""
    return f"{ISSUE_ID_PREFIX}{number}"


def card_id_number(card_id: str) -> Optional[int]:
    """Numeric suffix of a native card id (card-17 → 17), else None."""
    if not card_id or not card_id.startswith(CARD_ID_PREFIX):
        return None
    try:
        return int(card_id[len(CARD_ID_PREFIX):])
    except ValueError:
        return None


@dataclass
class Issue:
    """Externally sourced work item not yet placed on the board."""
    issue_id: str
    number: int
    title: str
    url: str
    labels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.issue_id,
            "number": self.number,
            "title": self.title,
            "url": self.url,
            "labels": list(self.labels),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Issue":
        return cls(
            issue_id=data.get("id") or issue_card_id(data["number"]),
            number=int(data["number"]),
            title=data.get("title", ""),
            url=data.get("url", ""),
            labels=list(data.get("labels") or []),
        )

    @classmethod
    def from_card(cls, card: "Card") -> "Issue":
        """Revert an issue-derived card back into an unplaced issue."""
        return cls(
            issue_id=issue_card_id(card.source_ref.number),
            number=card.source_ref.number,
            title=card.text,
            url=card.source_ref.url,
            labels=[],
        )


@dataclass
class Card:
    """A placed sticky note on the board."""

    card_id: Optional[str]          # None until the store assigns one
    text: str
    location: Location
    is_accent: bool = False
    is_high_priority: bool = False
    source_ref: Optional[IssueRef] = None

    @property
    def from_issue(self) -> bool:
        return self.source_ref is not None

    @classmethod
    def from_issue_at(cls, issue: Issue, location: Location) -> "Card":
        return cls(
            card_id=issue_card_id(issue.number),
            text=issue.title,
            location=location,
            source_ref=IssueRef(number=issue.number, url=issue.url),
        )

    def to_dict(self) -> Dict[str, Any]:
        """UI view model (camelCase)."""
        return {
            "id": self.card_id,
            "text": self.text,
            "location": self.location.to_dict(),
            "isAccent": self.is_accent,
            "isHighPriority": self.is_high_priority,
            "sourceIssueRef": self.source_ref.to_dict() if self.source_ref else None,
        }

    def to_row(self) -> Dict[str, Any]:
        """Storage / API representation (snake_case, flat)."""
        row = {"id": self.card_id}
        row.update(to_row_fields({
            "text": self.text,
            "location": self.location,
            "is_accent": self.is_accent,
            "is_high_priority": self.is_high_priority,
            "source_ref": self.source_ref,
        }))
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Card":
        """Inverse of to_row. Tolerates missing optional columns."""
        location = row["location"]
        if not isinstance(location, Location):
            location = Location.from_dict(location)
        source_ref = None
        if row.get("github_number") is not None:
            source_ref = IssueRef(
                number=int(row["github_number"]),
                url=row.get("github_url") or "",
            )
        return cls(
            card_id=row.get("id"),
            text=row.get("text") or "",
            location=location,
            is_accent=bool(row.get("is_accent") or False),
            is_high_priority=bool(row.get("is_high_priority") or False),
            source_ref=source_ref,
        )


# ── Storage boundary mapping ─────────────────────────────────────────────────

CARD_FIELDS = ("text", "location", "is_accent", "is_high_priority", "source_ref")


def to_row_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map Card attribute updates to storage/API columns.

    The only place model names are translated to row names:
        location    → location dict
        source_ref  → github_number + github_url
    """
    row: Dict[str, Any] = {}
    for name, value in fields.items():
        if name not in CARD_FIELDS:
            raise ValueError(f"Unknown card field: {name}")
        if name == "location":
            row["location"] = value.to_dict()
        elif name == "source_ref":
            row["github_number"] = value.number if value else None
            row["github_url"] = value.url if value else None
        else:
            row[name] = value
    return row


def from_row_fields(row: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of to_row_fields for a partial row."""
    fields: Dict[str, Any] = {}
    for key, value in row.items():
        if key == "location":
            fields["location"] = value if isinstance(value, Location) else Location.from_dict(value)
        elif key in ("github_number", "github_url"):
            continue
        else:
            fields[key] = value
    if "github_number" in row or "github_url" in row:
        number = row.get("github_number")
        fields["source_ref"] = (
            IssueRef(number=int(number), url=row.get("github_url") or "")
            if number is not None else None
        )
    return fields


# ── Payload validation ───────────────────────────────────────────────────────

_ROW_KEYS = {"text", "location", "is_accent", "is_high_priority", "github_number", "github_url"}


def validate_card_payload(data: Any, partial: bool = False) -> Dict[str, Any]:
    """
    Validate a snake_case card body from the API.

    Returns the payload as Card attribute fields (see from_row_fields).

    Raises:
        ValidationError on any schema violation.
    """
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")

    if "id" in data:
        raise ValidationError("id is assigned by the server")
    unknown = set(data) - _ROW_KEYS
    if unknown:
        raise ValidationError(f"Unknown fields: {sorted(unknown)}")

    if partial:
        if not data:
            raise ValidationError("no fields to update")
    else:
        for required in ("text", "location"):
            if required not in data:
                raise ValidationError(f"{required} is required")

    if "text" in data and not isinstance(data["text"], str):
        raise ValidationError("text must be a string")

    for flag in ("is_accent", "is_high_priority"):
        if flag in data and data[flag] is not None and not isinstance(data[flag], bool):
            raise ValidationError(f"{flag} must be a boolean")

    number = data.get("github_number")
    if number is not None:
        if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
            raise ValidationError("github_number must be a positive integer")
    url = data.get("github_url")
    if url is not None and not isinstance(url, str):
        raise ValidationError("github_url must be a string")
    if ("github_number" in data) != ("github_url" in data):
        raise ValidationError("github_number and github_url must be given together")
    if (number is None) != (url is None):
        raise ValidationError("github_number and github_url must both be set or both be null")

    cleaned = dict(data)
    for flag in ("is_accent", "is_high_priority"):
        if flag in cleaned and cleaned[flag] is None:
            cleaned[flag] = False
    # Location.from_dict raises ValidationError itself
    return from_row_fields(cleaned)


def validate_issue_payload(data: Any) -> Issue:
    """Validate an issue body ({number, title, url, labels?}) from the API."""
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    unknown = set(data) - {"id", "number", "title", "url", "labels"}
    if unknown:
        raise ValidationError(f"Unknown fields: {sorted(unknown)}")

    number = data.get("number")
    if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
        raise ValidationError("number must be a positive integer")
    for key in ("title", "url"):
        if not isinstance(data.get(key), str):
            raise ValidationError(f"{key} must be a string")
    labels = data.get("labels") or []
    if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
        raise ValidationError("labels must be a list of strings")
    if data.get("id") not in (None, issue_card_id(number)):
        raise ValidationError(f"id must be {issue_card_id(number)}")

    return Issue(
        issue_id=issue_card_id(number),
        number=number,
        title=data["title"],
        url=data["url"],
        labels=labels,
    )
