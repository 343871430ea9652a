# Roadmap board configuration
# Override paths and tracker settings via config/roadmap.yaml or env vars.

import os
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

from .schema import Card, Location, Objective, ValidationError

CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "roadmap.yaml"

DEFAULT_LABELS = ["benefits-management-tools", "bmt-2025", "bmt-team-1"]


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


def _default_objectives() -> List[Objective]:
    return [
        Objective("obj1", "Increase satisfaction with web / mobile products <strong>+5 points</strong>"),
        Objective("obj2", "Cut wait-time for a response by <strong>50%</strong>"),
        Objective("obj3", "Ensure <strong>100%</strong> of transactions are processed correctly "
                          "<em>or</em> the user receives an error notification"),
        Objective("obj4", "No benefits transactions rely on services slated for deprecation"),
        Objective("obj5", "Other (does not neatly fit into a KR)"),
    ]


@dataclass
class RoadmapConfig:
    """Runtime configuration for the roadmap server."""

    # Storage
    db_path: str = "~/.local/share/roadmap/roadmap.db"

    # Issue tracker
    github_owner: str = "department-of-veterans-affairs"
    github_repo: str = "va.gov-team"
    github_labels: List[str] = field(default_factory=lambda: list(DEFAULT_LABELS))
    github_token_env: str = "GITHUB_TOKEN"
    github_timeout: float = 30.0

    # Server
    host: str = "127.0.0.1"
    port: int = 5000
    log_level: str = "INFO"

    # Board
    objectives: List[Objective] = field(default_factory=_default_objectives)
    seed_cards: List[Card] = field(default_factory=list)

    @property
    def github_token(self) -> str:
        """Read from the environment only; never stored in the YAML file."""
        return os.environ.get(self.github_token_env, "")

    def resolve_paths(self):
        """Expand ~ and apply the ROADMAP_DB override."""
        env_db = os.environ.get("ROADMAP_DB")
        if env_db:
            self.db_path = env_db
        self.db_path = str(Path(self.db_path).expanduser())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoadmapConfig":
        if not isinstance(data, dict):
            raise ConfigError("Config file must contain a mapping at the top level")

        cfg = cls()
        if "db_path" in data:
            cfg.db_path = str(data["db_path"])
        if "log_level" in data:
            cfg.log_level = str(data["log_level"]).upper()

        github = data.get("github") or {}
        cfg.github_owner = github.get("owner", cfg.github_owner)
        cfg.github_repo = github.get("repo", cfg.github_repo)
        cfg.github_labels = list(github.get("labels", cfg.github_labels))
        cfg.github_token_env = github.get("token_env", cfg.github_token_env)
        cfg.github_timeout = float(github.get("timeout", cfg.github_timeout))

        server = data.get("server") or {}
        cfg.host = server.get("host", cfg.host)
        cfg.port = int(server.get("port", cfg.port))

        if "objectives" in data:
            cfg.objectives = [_parse_objective(o) for o in data["objectives"] or []]
        if "seed_cards" in data:
            cfg.seed_cards = [_parse_seed_card(c) for c in data["seed_cards"] or []]
        known = {o.objective_id for o in cfg.objectives}
        for card in cfg.seed_cards:
            if card.location.objective not in known:
                raise ConfigError(
                    f"Seed card {card.card_id}: unknown objective {card.location.objective!r}"
                )
        return cfg

    @classmethod
    def load(cls, path: Optional[str] = None) -> "RoadmapConfig":
        """Load config from YAML file, falling back to defaults when absent."""
        if path is None:
            path = os.environ.get("ROADMAP_CONFIG")
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}") from e
            cfg = cls.from_dict(data)
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")
        else:
            cfg = cls()
        cfg.resolve_paths()
        return cfg


def _parse_objective(raw: Any) -> Objective:
    if not isinstance(raw, dict) or not raw.get("id"):
        raise ConfigError(f"Objective needs an id: {raw!r}")
    return Objective(objective_id=str(raw["id"]), label=str(raw.get("label", "")))


def _parse_seed_card(raw: Any) -> Card:
    if not isinstance(raw, dict) or not raw.get("id") or not raw.get("text"):
        raise ConfigError(f"Seed card needs an id and text: {raw!r}")
    try:
        location = Location.of(str(raw.get("objective", "")), str(raw.get("column", "")))
    except ValidationError as e:
        raise ConfigError(f"Seed card {raw['id']}: {e}") from e
    return Card(
        card_id=str(raw["id"]),
        text=str(raw["text"]),
        location=location,
        is_accent=bool(raw.get("accent", False)),
    )
