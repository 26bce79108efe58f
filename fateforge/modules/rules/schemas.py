from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from fateforge.modules.rules.constants import (
    CONSEQUENCE_CAPACITY,
    DEFAULT_FATE_POINTS,
    DEFAULT_STRESS_BOXES,
    ladder_label,
)

logger = logging.getLogger(__name__)

StressType = Literal["physical", "mental"]
ConsequenceSeverity = Literal["mild", "moderate", "severe"]
LogEntryType = Literal["narration", "action", "roll", "system", "error"]


def _clean_text(value: object) -> str:
    return " ".join(str(value or "").split())


class FateModel(BaseModel):
    """Shared config: camelCase on the wire, snake_case in Python, unknown keys ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Aspect(FateModel):
    name: str = Field(min_length=1)
    description: str = ""
    has_free_invoke: bool = False

    @field_validator("name", "description", mode="before")
    @classmethod
    def _normalize_text(cls, value: object) -> str:
        return _clean_text(value)

    @field_validator("has_free_invoke", mode="before")
    @classmethod
    def _none_is_false(cls, value: object) -> bool:
        return bool(value)


class Skill(FateModel):
    name: str = Field(min_length=1)
    level: int = 0
    level_name: str = ""

    @model_validator(mode="after")
    def _fill_level_name(self):
        if not self.level_name:
            self.level_name = ladder_label(self.level)
        return self


class Stunt(FateModel):
    name: str = Field(min_length=1)
    description: str = ""

    @field_validator("name", "description", mode="before")
    @classmethod
    def _normalize_text(cls, value: object) -> str:
        return _clean_text(value)


class StressTrack(FateModel):
    boxes: list[int]
    marked: list[bool]

    @model_validator(mode="before")
    @classmethod
    def _repair_shape(cls, data: object) -> dict:
        if not isinstance(data, dict):
            boxes = list(DEFAULT_STRESS_BOXES)
            return {"boxes": boxes, "marked": [False] * len(boxes)}
        boxes = data.get("boxes")
        if not isinstance(boxes, list):
            boxes = list(DEFAULT_STRESS_BOXES)
        marked = data.get("marked")
        if not isinstance(marked, list):
            marked = []
        repaired = [bool(flag) for flag in marked[: len(boxes)]]
        repaired.extend([False] * (len(boxes) - len(repaired)))
        if len(marked) != len(boxes):
            logger.debug("stress track marked length %d repaired to %d", len(marked), len(boxes))
        return {"boxes": boxes, "marked": repaired}

    @classmethod
    def default(cls) -> StressTrack:
        boxes = list(DEFAULT_STRESS_BOXES)
        return cls(boxes=boxes, marked=[False] * len(boxes))

    def unmarked_indices(self) -> list[int]:
        return [idx for idx, flag in enumerate(self.marked) if not flag]

    def cleared(self) -> StressTrack:
        return StressTrack(boxes=list(self.boxes), marked=[False] * len(self.boxes))


class Consequence(FateModel):
    severity: ConsequenceSeverity
    aspect: Aspect

    @property
    def capacity(self) -> int:
        return CONSEQUENCE_CAPACITY[self.severity]


def _coerce_consequence_list(value: object, *, owner: str) -> list:
    if not isinstance(value, list):
        if value is not None:
            logger.warning("%s consequences were not a list; reset to empty", owner)
        return []
    return [item for item in value if isinstance(item, (dict, Consequence))]


def _dedupe_severities(consequences: list[Consequence], *, owner: str) -> list[Consequence]:
    seen: set[str] = set()
    kept: list[Consequence] = []
    for consequence in consequences:
        if consequence.severity in seen:
            logger.warning("%s had a second %s consequence %r; dropped", owner, consequence.severity, consequence.aspect.name)
            continue
        seen.add(consequence.severity)
        kept.append(consequence)
    return kept


class CharacterAspects(FateModel):
    high_concept: Aspect
    trouble: Aspect
    others: list[Aspect] = Field(default_factory=list)


class Character(FateModel):
    name: str = Field(min_length=1)
    aspects: CharacterAspects
    skills: list[Skill] = Field(default_factory=list)
    stunts: list[Stunt] = Field(default_factory=list)
    fate_points: int = DEFAULT_FATE_POINTS
    physical_stress: StressTrack = Field(default_factory=StressTrack.default)
    mental_stress: StressTrack = Field(default_factory=StressTrack.default)
    consequences: list[Consequence] = Field(default_factory=list)

    @field_validator("consequences", mode="before")
    @classmethod
    def _consequences_list(cls, value: object) -> list:
        return _coerce_consequence_list(value, owner="character")

    @model_validator(mode="after")
    def _one_per_severity(self):
        self.consequences = _dedupe_severities(self.consequences, owner=f"character {self.name!r}")
        return self

    def all_aspects(self) -> list[Aspect]:
        return [self.aspects.high_concept, self.aspects.trouble, *self.aspects.others]

    def stress_track(self, stress_type: StressType) -> StressTrack:
        return self.physical_stress if stress_type == "physical" else self.mental_stress

    def skill(self, name: str) -> Skill | None:
        wanted = _clean_text(name).lower()
        for skill in self.skills:
            if skill.name.lower() == wanted:
                return skill
        return None

    def consequence_for(self, severity: str) -> Consequence | None:
        for consequence in self.consequences:
            if consequence.severity == severity:
                return consequence
        return None


class Opponent(FateModel):
    id: str = ""
    name: str = Field(min_length=1)
    aspects: list[Aspect] = Field(default_factory=list)
    physical_stress: StressTrack = Field(default_factory=StressTrack.default)
    mental_stress: StressTrack = Field(default_factory=StressTrack.default)
    consequences: list[Consequence] = Field(default_factory=list)
    is_taken_out: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _id_text(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("consequences", mode="before")
    @classmethod
    def _consequences_list(cls, value: object) -> list:
        return _coerce_consequence_list(value, owner="opponent")

    @field_validator("aspects", mode="before")
    @classmethod
    def _aspects_list(cls, value: object) -> list:
        return value if isinstance(value, list) else []

    @field_validator("is_taken_out", mode="before")
    @classmethod
    def _none_is_false(cls, value: object) -> bool:
        return bool(value)


class Scene(FateModel):
    description: str = ""
    aspects: list[Aspect] = Field(default_factory=list)
    image_url: str | None = None
    opponents: list[Opponent] | None = None
    has_offered_compel: bool = False

    @field_validator("has_offered_compel", mode="before")
    @classmethod
    def _none_is_false(cls, value: object) -> bool:
        return bool(value)

    @model_validator(mode="after")
    def _unique_opponent_ids(self):
        if not self.opponents:
            return self
        declared = {opponent.id for opponent in self.opponents if opponent.id}
        seen: set[str] = set()
        kept: list[Opponent] = []
        for idx, opponent in enumerate(self.opponents, start=1):
            if not opponent.id:
                candidate = f"opp_{idx}"
                while candidate in seen or candidate in declared:
                    candidate = f"{candidate}_"
                opponent.id = candidate
            if opponent.id in seen:
                logger.warning("duplicate opponent id %r in scene; dropped %r", opponent.id, opponent.name)
                continue
            seen.add(opponent.id)
            kept.append(opponent)
        self.opponents = kept
        return self

    def aspect(self, name: str) -> Aspect | None:
        for aspect in self.aspects:
            if aspect.name == name:
                return aspect
        return None


class StoryLogEntry(FateModel):
    id: int
    type: LogEntryType
    content: str = ""
    image_url: str | None = None
    is_loading_image: bool = False


class Compel(FateModel):
    aspect: str = Field(min_length=1)
    reason: str = ""
    accept_narration: str = ""
    reject_narration: str = ""


class GameState(FateModel):
    character: Character
    scene: Scene
    story_log: list[StoryLogEntry] = Field(default_factory=list)

    def entry(self, entry_id: int) -> StoryLogEntry | None:
        for entry in self.story_log:
            if entry.id == entry_id:
                return entry
        return None
