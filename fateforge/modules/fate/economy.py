from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from fateforge.modules.narrative.story_log import push_entry
from fateforge.modules.rules.constants import INVOKE_BONUS
from fateforge.modules.rules.schemas import Character, Compel, GameState

logger = logging.getLogger(__name__)

InvokeScope = Literal["scene", "consequences"]


class FateEconomyError(ValueError):
    code = "FATE_ECONOMY"


class InsufficientFatePointsError(FateEconomyError):
    code = "NO_FATE_POINTS"


class UnknownAspectError(FateEconomyError):
    code = "UNKNOWN_ASPECT"


class CompelRejectNotAllowedError(FateEconomyError):
    code = "COMPEL_REJECT_NOT_ALLOWED"


@dataclass(frozen=True, slots=True)
class StagedInvoke:
    aspect_name: str
    is_free: bool

    def to_json(self) -> dict:
        return {"aspectName": self.aspect_name, "isFree": self.is_free}

    @classmethod
    def from_json(cls, raw: dict) -> StagedInvoke:
        return cls(aspect_name=str(raw.get("aspectName") or ""), is_free=bool(raw.get("isFree")))


StagedInvokes = tuple[StagedInvoke, ...]


def staged_from_json(raw: object) -> StagedInvokes:
    if not isinstance(raw, list):
        return ()
    return tuple(StagedInvoke.from_json(item) for item in raw if isinstance(item, dict) and item.get("aspectName"))


def staged_to_json(staged: Iterable[StagedInvoke]) -> list[dict]:
    return [item.to_json() for item in staged]


def invocable_aspect_names(state: GameState) -> set[str]:
    names = {aspect.name for aspect in state.scene.aspects}
    names.update(aspect.name for aspect in state.character.all_aspects())
    return names


def has_free_invoke(state: GameState, aspect_name: str) -> bool:
    aspect = state.scene.aspect(aspect_name)
    return bool(aspect is not None and aspect.has_free_invoke)


def toggle_invoke(state: GameState, staged: StagedInvokes, aspect_name: str) -> tuple[GameState, StagedInvokes]:
    """Stage or unstage an aspect for the pending action.

    Staging never touches free-invoke flags; those are consumed only when the action resolves.
    """
    existing = next((item for item in staged if item.aspect_name == aspect_name), None)
    if existing is not None:
        remaining = tuple(item for item in staged if item.aspect_name != aspect_name)
        if existing.is_free:
            return state, remaining
        refunded = state.model_copy(deep=True)
        refunded.character.fate_points += 1
        return refunded, remaining

    if aspect_name not in invocable_aspect_names(state):
        raise UnknownAspectError(f"aspect not available to invoke: {aspect_name}")

    if has_free_invoke(state, aspect_name):
        return state, (*staged, StagedInvoke(aspect_name=aspect_name, is_free=True))

    if state.character.fate_points <= 0:
        raise InsufficientFatePointsError("no fate points left to pay for an invoke")
    paid = state.model_copy(deep=True)
    paid.character.fate_points -= 1
    return paid, (*staged, StagedInvoke(aspect_name=aspect_name, is_free=False))


def invocation_bonus(staged: Iterable[StagedInvoke]) -> int:
    return INVOKE_BONUS * len(tuple(staged))


def resolve_compel(state: GameState, compel: Compel, *, accept: bool) -> GameState:
    if not accept and state.character.fate_points <= 0:
        raise CompelRejectNotAllowedError("rejecting a compel costs a fate point and none are left")

    working = state.model_copy(deep=True)
    if accept:
        working.character.fate_points += 1
        message = f'You accepted the compel on "{compel.aspect}" and gained 1 Fate Point.'
        narration = compel.accept_narration
    else:
        working.character.fate_points -= 1
        message = f'You rejected the compel on "{compel.aspect}" and spent 1 Fate Point.'
        narration = compel.reject_narration

    push_entry(working.story_log, "system", message)
    if narration:
        push_entry(working.story_log, "narration", narration)
    return working


def award_concession_point(character: Character) -> Character:
    return character.model_copy(update={"fate_points": character.fate_points + 1})


def consume_free_invokes(state: GameState, aspect_names: Iterable[str], *, scope: InvokeScope) -> GameState:
    """Spend the free invocation on every named aspect in ``scope``.

    ``scene`` covers advantages the player created; ``consequences`` covers the opposition's
    free shot at the character's consequences. Already-spent flags stay spent.
    """
    wanted = {name for name in aspect_names if name}
    if not wanted:
        return state

    working = state.model_copy(deep=True)
    if scope == "scene":
        aspects = working.scene.aspects
    elif scope == "consequences":
        aspects = [consequence.aspect for consequence in working.character.consequences]
    else:
        raise ValueError(f"unknown invoke scope: {scope}")

    for aspect in aspects:
        if aspect.name in wanted and aspect.has_free_invoke:
            aspect.has_free_invoke = False
            logger.debug("free invoke on %r consumed (%s)", aspect.name, scope)
    return working
