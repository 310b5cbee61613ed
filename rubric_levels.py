"""Rubric level configuration loader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional

AWARD_ELIGIBLE_LEVELS = frozenset({"proficient", "applying"})


class RubricLevelConfigError(ValueError):
    """Raised when ``rubric_levels.json`` contains invalid data."""


@dataclass(frozen=True)
class RubricLevel:
    """Immutable representation of a rubric mastery tier."""

    id: str
    label: str
    score: int
    color: str
    description: str


class RubricLevelRegistry:
    """Load the ordered rubric tiers from ``rubric_levels.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        self.path = Path(path) if path is not None else base_path / "rubric_levels.json"
        self._levels: List[RubricLevel] = []
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload rubric levels from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Rubric levels file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise RubricLevelConfigError("Rubric levels file must contain a JSON list")

        levels: List[RubricLevel] = []
        seen: set[str] = set()
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise RubricLevelConfigError(f"Entry #{idx} must be a JSON object")
            for key in ("id", "label", "color"):
                if not str(entry.get(key, "")).strip():
                    raise RubricLevelConfigError(f"Entry #{idx} is missing a non-empty '{key}'")

            level_id = str(entry["id"]).strip().lower()
            if level_id in seen:
                raise RubricLevelConfigError(f"Duplicate rubric level id detected: {level_id}")
            seen.add(level_id)

            try:
                score = int(entry.get("score"))
            except (TypeError, ValueError) as exc:
                raise RubricLevelConfigError(f"Entry {level_id} has non-numeric score") from exc

            levels.append(
                RubricLevel(
                    id=level_id,
                    label=str(entry["label"]).strip(),
                    score=score,
                    color=str(entry["color"]).strip(),
                    description=str(entry.get("description", "")).strip(),
                )
            )

        if not levels:
            raise RubricLevelConfigError("Rubric levels file may not be empty")

        levels.sort(key=lambda lvl: lvl.score)
        self._levels = levels

    # ------------------------------------------------------------------
    def get(self, level_id: Optional[str]) -> Optional[RubricLevel]:
        if not level_id:
            return None
        key = str(level_id).strip().lower()
        for level in self._levels:
            if level.id == key:
                return level
        return None

    def normalize(self, value: Any) -> Optional[str]:
        """Return the canonical level id for ``value`` or ``None`` when unknown."""

        if not isinstance(value, str):
            return None
        level = self.get(value)
        return level.id if level else None

    def score_for(self, level_id: Optional[str]) -> Optional[int]:
        level = self.get(level_id)
        return level.score if level else None

    def color_for(self, level_id: Optional[str]) -> Optional[str]:
        level = self.get(level_id)
        return level.color if level else None

    def display_name(self, level_id: Optional[str]) -> str:
        level = self.get(level_id)
        if level:
            return level.label
        return str(level_id or "").capitalize()

    def is_award_eligible(self, level_id: Optional[str]) -> bool:
        """Only the two top tiers earn a sticker."""

        return self.normalize(level_id) in AWARD_ELIGIBLE_LEVELS

    def formatted_overview(self) -> str:
        """Return a numbered list describing each tier, used in scorer prompts."""

        lines = []
        for idx, level in enumerate(self._levels, start=1):
            lines.append(f"{idx}. {level.label.upper()} (Score {level.score}): {level.description}")
        return "\n\n".join(lines)

    # ------------------------------------------------------------------
    def __iter__(self) -> Iterable[RubricLevel]:
        return iter(self._levels)


RUBRIC_LEVELS = RubricLevelRegistry()
"""Singleton registry used throughout the application."""
