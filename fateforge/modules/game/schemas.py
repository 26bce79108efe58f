from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fateforge.modules.rules.schemas import Aspect, Stunt


class CharacterOptionsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    genre: str = Field(min_length=1, max_length=120)
    settings: dict | None = None


class CharacterDraftIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=120)
    high_concept: Aspect
    trouble: Aspect
    others: list[Aspect]
    stunts: list[Stunt]
    skills: dict[str, int] = Field(default_factory=dict)


class GeneratedCharacterResponse(CharacterDraftIn):
    problems: list[str] = Field(default_factory=list)


class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    genre: str = Field(min_length=1, max_length=120)
    character: CharacterDraftIn
    settings: dict | None = None


class InvokeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    aspect_name: str = Field(min_length=1)


class ActionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(min_length=1, max_length=600)
    skill_name: str = Field(min_length=1)
    target_opponent_id: str | None = None
    dice: list[int] | None = None

    @field_validator("description")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = " ".join(value.split())
        if not cleaned:
            raise ValueError("description must not be blank")
        return cleaned


class CompelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    accept: bool


class SettingsUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    settings: dict


class SaveSlotRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slot: str | None = Field(default=None, max_length=64)


class PendingHitOut(BaseModel):
    hit: dict
    phase: str
    max_absorption: int


class GameSessionResponse(BaseModel):
    id: str
    genre: str
    state: dict
    settings: dict
    staged_invokes: list[dict]
    invocation_bonus: int
    pending_hit: PendingHitOut | None = None
    pending_compel: dict | None = None
    actions_enabled: bool
    turn_count: int


class ActionResponse(GameSessionResponse):
    dice: list[int]
    total: int
    narration_entry_id: int


class SaveStatusResponse(BaseModel):
    slot: str
    exists: bool
