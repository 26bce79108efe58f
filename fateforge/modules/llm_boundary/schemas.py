from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pydantic import Field, field_validator

from fateforge.modules.rules.schemas import (
    Aspect,
    CharacterAspects,
    Compel,
    FateModel,
    Opponent,
    Scene,
    Stunt,
)

logger = logging.getLogger(__name__)


def _none_to_list(value: object) -> list:
    return value if isinstance(value, list) else []


def _blank_to_none(value: object) -> str | None:
    text = " ".join(str(value or "").split())
    return text or None


class CharacterOptionAspects(FateModel):
    high_concepts: list[Aspect] = Field(min_length=1)
    troubles: list[Aspect] = Field(min_length=1)
    others: list[Aspect] = Field(min_length=1)


class CharacterOptionsPayload(FateModel):
    aspects: CharacterOptionAspects
    stunts: list[Stunt] = Field(min_length=1)


class GeneratedSkillPick(FateModel):
    name: str = Field(min_length=1)
    level: int = Field(ge=0, le=8)


class GeneratedCharacterPayload(FateModel):
    name: str = Field(min_length=1)
    aspects: CharacterAspects
    stunts: list[Stunt]
    skills: list[GeneratedSkillPick]


class OpeningScenePayload(FateModel):
    scene: Scene
    image_prompt: str | None = None

    @field_validator("image_prompt", mode="before")
    @classmethod
    def _blank_prompt(cls, value: object) -> str | None:
        return _blank_to_none(value)


class UpdatedCharacterHint(FateModel):
    fate_points: int | None = None


class TurnResolutionPayload(FateModel):
    narration: str = Field(min_length=1)
    image_prompt: str | None = None
    new_scene_aspect: Aspect | None = None
    removed_scene_aspects: list[str] = Field(default_factory=list)
    hit: dict | None = None
    updated_character: UpdatedCharacterHint | None = None
    compel: Compel | None = None
    new_scene: Scene | None = None
    used_free_invokes: list[str] = Field(default_factory=list)
    updated_opponents: list[Opponent] | None = None

    @field_validator("image_prompt", mode="before")
    @classmethod
    def _blank_prompt(cls, value: object) -> str | None:
        return _blank_to_none(value)

    @field_validator("removed_scene_aspects", "used_free_invokes", mode="before")
    @classmethod
    def _name_list(cls, value: object) -> list[str]:
        return [str(item) for item in _none_to_list(value) if isinstance(item, str) and item.strip()]

    @field_validator("hit", mode="before")
    @classmethod
    def _hit_object(cls, value: object) -> dict | None:
        if value is None:
            return None
        if not isinstance(value, dict):
            logger.warning("turn payload hit was not an object: %r", value)
            return {}
        return value

    @field_validator("compel", mode="before")
    @classmethod
    def _usable_compel(cls, value: object) -> object:
        if value is None:
            return None
        if not isinstance(value, dict) or not str(value.get("aspect") or "").strip():
            logger.warning("turn payload compel dropped, no aspect named: %r", value)
            return None
        return value

    @field_validator("new_scene_aspect", mode="before")
    @classmethod
    def _usable_aspect(cls, value: object) -> object:
        if isinstance(value, dict) and not str(value.get("name") or "").strip():
            logger.warning("turn payload newSceneAspect dropped, no name: %r", value)
            return None
        return value

    @field_validator("updated_opponents", mode="before")
    @classmethod
    def _opponent_objects(cls, value: object) -> list | None:
        if value is None:
            return None
        return [item for item in _none_to_list(value) if isinstance(item, dict)]


class SceneTransitionPayload(FateModel):
    narration: str = Field(min_length=1)
    new_scene: Scene
    image_prompt: str | None = None

    @field_validator("image_prompt", mode="before")
    @classmethod
    def _blank_prompt(cls, value: object) -> str | None:
        return _blank_to_none(value)


@dataclass(frozen=True, slots=True)
class PlayerActionBrief:
    description: str
    skill_name: str
    skill_level: int
    total: int
    invoked_aspects: list[str] = field(default_factory=list)
    target_opponent_id: str | None = None


_ASPECT_ITEM = {
    "type": "object",
    "required": ["name"],
    "properties": {"name": {"type": "string"}, "description": {"type": ["string", "null"]}},
}
_NULLABLE_STRING_LIST = {"type": ["array", "null"], "items": {"type": "string"}}
_NULLABLE_OBJECT = {"type": ["object", "null"]}

CHARACTER_OPTIONS_SCHEMA_NAME = "fate_character_options_v1"
CHARACTER_OPTIONS_SCHEMA = {
    "type": "object",
    "required": ["aspects", "stunts"],
    "properties": {
        "aspects": {
            "type": "object",
            "required": ["highConcepts", "troubles", "others"],
            "properties": {
                "highConcepts": {"type": "array", "items": _ASPECT_ITEM},
                "troubles": {"type": "array", "items": _ASPECT_ITEM},
                "others": {"type": "array", "items": _ASPECT_ITEM},
            },
        },
        "stunts": {"type": "array", "items": _ASPECT_ITEM},
    },
}

GENERATED_CHARACTER_SCHEMA_NAME = "fate_generated_character_v1"
GENERATED_CHARACTER_SCHEMA = {
    "type": "object",
    "required": ["name", "aspects", "stunts", "skills"],
    "properties": {
        "name": {"type": "string"},
        "aspects": {
            "type": "object",
            "required": ["highConcept", "trouble", "others"],
            "properties": {
                "highConcept": _ASPECT_ITEM,
                "trouble": _ASPECT_ITEM,
                "others": {"type": "array", "items": _ASPECT_ITEM},
            },
        },
        "stunts": {"type": "array", "items": _ASPECT_ITEM},
        "skills": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "level"],
                "properties": {"name": {"type": "string"}, "level": {"type": "integer"}},
            },
        },
    },
}

_SCENE_OBJECT = {
    "type": "object",
    "required": ["description", "aspects"],
    "properties": {
        "description": {"type": "string"},
        "aspects": {"type": "array", "items": _ASPECT_ITEM},
        "opponents": {"type": ["array", "null"]},
    },
}

OPENING_SCENE_SCHEMA_NAME = "fate_opening_scene_v1"
OPENING_SCENE_SCHEMA = {
    "type": "object",
    "required": ["scene"],
    "properties": {
        "scene": _SCENE_OBJECT,
        "imagePrompt": {"type": ["string", "null"]},
    },
}

TURN_RESOLUTION_SCHEMA_NAME = "fate_turn_resolution_v1"
TURN_RESOLUTION_SCHEMA = {
    "type": "object",
    "required": ["narration"],
    "properties": {
        "narration": {"type": "string", "minLength": 1},
        "imagePrompt": {"type": ["string", "null"]},
        "newSceneAspect": _NULLABLE_OBJECT,
        "removedSceneAspects": _NULLABLE_STRING_LIST,
        "hit": {},
        "updatedCharacter": _NULLABLE_OBJECT,
        "compel": {},
        "newScene": {"anyOf": [_SCENE_OBJECT, {"type": "null"}]},
        "usedFreeInvokes": _NULLABLE_STRING_LIST,
        "updatedOpponents": {"type": ["array", "null"]},
    },
}

SCENE_TRANSITION_SCHEMA_NAME = "fate_scene_transition_v1"
SCENE_TRANSITION_SCHEMA = {
    "type": "object",
    "required": ["narration", "newScene"],
    "properties": {
        "narration": {"type": "string", "minLength": 1},
        "newScene": _SCENE_OBJECT,
        "imagePrompt": {"type": ["string", "null"]},
    },
}
