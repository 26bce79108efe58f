from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from fateforge.modules.conflict.resolver import (
    CONCESSION_MESSAGE,
    TAKEN_OUT_MESSAGE,
    Hit,
    HitOutcome,
    apply_concession,
    apply_taken_out,
    clear_conflict_tracks,
    normalize_hit,
)
from fateforge.modules.fate.economy import StagedInvoke, consume_free_invokes
from fateforge.modules.llm_boundary.schemas import (
    OpeningScenePayload,
    SceneTransitionPayload,
    TurnResolutionPayload,
)
from fateforge.modules.narrative.story_log import SCENE_CHANGED_MESSAGE, push_entry
from fateforge.modules.rules.schemas import Character, Compel, GameState, Scene, StoryLogEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    state: GameState
    narration_entry_id: int
    image_prompt: str | None = None
    hit: Hit | None = None
    compel: Compel | None = None
    scene_changed: bool = False


def _fresh_scene(scene: Scene) -> Scene:
    return scene.model_copy(deep=True, update={"image_url": None, "has_offered_compel": False})


def reconcile(
    prior: GameState,
    payload: TurnResolutionPayload,
    staged_invokes: Iterable[StagedInvoke],
    *,
    images_enabled: bool = True,
) -> ReconcileResult:
    """Fold one turn's generated outcome into the game state.

    A declared new scene replaces the old one wholesale and wipes the character's stress and
    consequences. Otherwise the current scene is amended: the new advantage joins the scene
    with a free invoke and a supplied opponent roster replaces the old one. Removed aspects,
    free-invoke consumption and the narration entry apply in both cases.
    """
    working = prior.model_copy(deep=True)
    scene_changed = payload.new_scene is not None

    if payload.new_scene is not None:
        working.scene = _fresh_scene(payload.new_scene)
        working.character = clear_conflict_tracks(working.character)
    else:
        working.scene.has_offered_compel = working.scene.has_offered_compel or payload.compel is not None
        if payload.new_scene_aspect is not None:
            advantage = payload.new_scene_aspect.model_copy(update={"has_free_invoke": True})
            working.scene.aspects = [a for a in working.scene.aspects if a.name != advantage.name]
            working.scene.aspects.append(advantage)
        if payload.updated_opponents is not None:
            working.scene.opponents = [opponent.model_copy(deep=True) for opponent in payload.updated_opponents]

    if payload.removed_scene_aspects:
        removed = set(payload.removed_scene_aspects)
        working.scene.aspects = [a for a in working.scene.aspects if a.name not in removed]

    if not scene_changed:
        spent = [item.aspect_name for item in staged_invokes if item.is_free]
        working = consume_free_invokes(working, spent, scope="scene")
    working = consume_free_invokes(working, payload.used_free_invokes, scope="consequences")

    if payload.updated_character is not None and payload.updated_character.fate_points is not None:
        logger.debug("ignoring generator fate point hint %s", payload.updated_character.fate_points)

    image_prompt = payload.image_prompt if images_enabled else None
    narration = push_entry(
        working.story_log,
        "narration",
        payload.narration,
        is_loading_image=image_prompt is not None,
    )
    if scene_changed:
        push_entry(working.story_log, "system", SCENE_CHANGED_MESSAGE)

    return ReconcileResult(
        state=working,
        narration_entry_id=narration.id,
        image_prompt=image_prompt,
        hit=normalize_hit(payload.hit),
        compel=payload.compel,
        scene_changed=scene_changed,
    )


def reconcile_scene_transition(
    prior: GameState,
    payload: SceneTransitionPayload,
    *,
    outcome: HitOutcome,
    images_enabled: bool = True,
) -> ReconcileResult:
    if outcome is HitOutcome.TAKEN_OUT:
        character, summary = apply_taken_out(prior.character), TAKEN_OUT_MESSAGE
    elif outcome is HitOutcome.CONCEDED:
        character, summary = apply_concession(prior.character), CONCESSION_MESSAGE
    else:
        raise ValueError(f"scene transition needs a terminal defeat outcome, got {outcome}")

    working = prior.model_copy(deep=True)
    working.character = character.model_copy(deep=True)
    working.scene = _fresh_scene(payload.new_scene)

    image_prompt = payload.image_prompt if images_enabled else None
    push_entry(working.story_log, "system", summary)
    narration = push_entry(
        working.story_log,
        "narration",
        payload.narration,
        is_loading_image=image_prompt is not None,
    )
    return ReconcileResult(
        state=working,
        narration_entry_id=narration.id,
        image_prompt=image_prompt,
        scene_changed=True,
    )


def _is_latest_narration(state: GameState, entry_id: int) -> bool:
    narrations = [entry.id for entry in state.story_log if entry.type == "narration"]
    return bool(narrations) and narrations[-1] == entry_id


def apply_image_result(
    state: GameState,
    entry_id: int,
    image_url: str | None,
    *,
    system_message: str | None = None,
) -> GameState:
    """Settle the pending image on one narration entry; nothing else in the log is touched."""
    working = state.model_copy(deep=True)
    entry = working.entry(entry_id)
    if entry is None:
        logger.info("image result for missing story log entry %s discarded", entry_id)
    else:
        entry.is_loading_image = False
        if image_url:
            entry.image_url = image_url
            if _is_latest_narration(working, entry_id):
                working.scene.image_url = image_url
    if system_message:
        push_entry(working.story_log, "system", system_message)
    return working


def opening_state(character: Character, payload: OpeningScenePayload, *, image_url: str | None = None) -> GameState:
    scene = _fresh_scene(payload.scene)
    scene.image_url = image_url
    return GameState(
        character=character.model_copy(deep=True),
        scene=scene,
        story_log=[StoryLogEntry(id=0, type="narration", content=scene.description, image_url=image_url)],
    )
