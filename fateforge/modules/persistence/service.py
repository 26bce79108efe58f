from __future__ import annotations

import logging
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from fateforge.db.models import SavedGame
from fateforge.modules.game.settings import GameSettings, normalize_settings
from fateforge.modules.rules.schemas import GameState

logger = logging.getLogger(__name__)


class GameStateStore(Protocol):
    def save(self, state: GameState) -> None: ...

    def load(self) -> GameState | None: ...

    def exists(self) -> bool: ...

    def clear(self) -> None: ...


def _is_track(value: object) -> bool:
    return isinstance(value, dict) and isinstance(value.get("boxes"), list) and isinstance(value.get("marked"), list)


def structural_problems(data: object) -> list[str]:
    """Shape checks a stored game must pass before the models even look at it."""
    if not isinstance(data, dict):
        return ["state is not an object"]
    problems: list[str] = []

    scene = data.get("scene")
    if not isinstance(scene, dict) or not isinstance(scene.get("aspects"), list):
        problems.append("scene.aspects missing")
    if not isinstance(data.get("storyLog"), list):
        problems.append("storyLog missing")

    character = data.get("character")
    if not isinstance(character, dict):
        problems.append("character missing")
        return problems
    aspects = character.get("aspects")
    if (
        not isinstance(aspects, dict)
        or not isinstance(aspects.get("highConcept"), dict)
        or not isinstance(aspects.get("trouble"), dict)
        or not isinstance(aspects.get("others"), list)
    ):
        problems.append("character.aspects malformed")
    for track in ("physicalStress", "mentalStress"):
        if not _is_track(character.get(track)):
            problems.append(f"character.{track} malformed")
    if not isinstance(character.get("consequences"), list):
        problems.append("character.consequences missing")
    if not isinstance(character.get("name"), str):
        problems.append("character.name missing")
    fate_points = character.get("fatePoints")
    if isinstance(fate_points, bool) or not isinstance(fate_points, (int, float)):
        problems.append("character.fatePoints not a number")
    for key in ("skills", "stunts"):
        if not isinstance(character.get(key), list):
            problems.append(f"character.{key} missing")
    return problems


def validate_saved_state(data: object) -> GameState | None:
    problems = structural_problems(data)
    if problems:
        logger.warning("saved game rejected: %s", "; ".join(problems))
        return None
    try:
        return GameState.model_validate(data)
    except ValidationError as exc:
        logger.warning("saved game rejected by model validation: %s", exc.errors()[:3])
        return None


class SqlGameStateStore:
    """GameStateStore keeping one serialized game per named slot in the saved_games table."""

    def __init__(self, db: Session, *, slot: str = "default"):
        self.db = db
        self.slot = slot

    def _row(self) -> SavedGame | None:
        return self.db.execute(select(SavedGame).where(SavedGame.slot == self.slot)).scalar_one_or_none()

    def save(self, state: GameState, *, game_settings: GameSettings | None = None) -> None:
        row = self._row()
        if row is None:
            row = SavedGame(slot=self.slot)
            self.db.add(row)
        row.state_json = state.to_json()
        row.settings_json = (game_settings or GameSettings()).to_json()
        self.db.commit()

    def load(self) -> GameState | None:
        row = self._row()
        if row is None:
            return None
        state = validate_saved_state(row.state_json)
        if state is None:
            logger.warning("clearing corrupt save in slot %r", self.slot)
            self.clear()
        return state

    def load_settings(self) -> GameSettings:
        row = self._row()
        return normalize_settings(row.settings_json if row is not None else None)

    def exists(self) -> bool:
        return self._row() is not None

    def clear(self) -> None:
        row = self._row()
        if row is not None:
            self.db.delete(row)
            self.db.commit()
