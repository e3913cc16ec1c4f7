"""Policy resolver — loads award_policy.json and exposes every award
decision input as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

POLICY_FILENAME = "award_policy.json"


@dataclass(frozen=True)
class AwardRule:
    """One row of the claimant award table."""
    rule: str
    keywords: tuple[str, ...]
    points: int


class PolicyResolver:
    """Loads and resolves the award policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        resolver.reporter_award()   # 10
        resolver.claimant_rules()   # ordered, first match wins
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / POLICY_FILENAME))

    def _validate(self) -> None:
        if "version" not in self._policy:
            raise ValueError(f"{POLICY_FILENAME} missing version")
        _require_points(self._policy["reporter_award"], "reporter_award")
        rules = self._policy["claimant_awards"]
        if not isinstance(rules, list):
            raise ValueError("claimant_awards must be an ordered list")
        seen: set[str] = set()
        for row in rules:
            name = row["rule"]
            if name in seen:
                raise ValueError(f"Duplicate award rule: {name}")
            seen.add(name)
            _require_points(row["points"], f"claimant_awards.{name}.points")
            if not row["keywords"] or not all(
                isinstance(k, str) and k.strip() for k in row["keywords"]
            ):
                raise ValueError(f"Award rule {name} needs non-blank keywords")

    # ------------------------------------------------------------------
    # Awards
    # ------------------------------------------------------------------

    def reporter_award(self) -> int:
        """Fixed award for an addressable reporter."""
        return self._policy["reporter_award"]

    def claimant_rules(self) -> list[AwardRule]:
        """Claimant award table in priority order."""
        return [
            AwardRule(
                rule=row["rule"],
                keywords=tuple(row["keywords"]),
                points=row["points"],
            )
            for row in self._policy["claimant_awards"]
        ]

    # ------------------------------------------------------------------
    # Report defaults
    # ------------------------------------------------------------------

    def default_category(self) -> str:
        """Category recorded when a report leaves it blank."""
        return self._policy["defaults"]["category"]

    def anonymous_name(self) -> str:
        """Reporter name recorded when none is known. Never credited."""
        return self._policy["defaults"]["anonymous_name"]


def _require_points(value: Any, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{label} must be a non-negative integer, got {value!r}")


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
