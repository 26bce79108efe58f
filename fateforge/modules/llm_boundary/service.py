from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from pydantic import BaseModel

from fateforge.config import settings
from fateforge.modules.game.settings import GameSettings
from fateforge.modules.llm_boundary.client import (
    CHAT_COMPLETIONS_PATH,
    LLMCallError,
    call_chat_completions,
    call_image_generation,
    is_rate_limit_error,
)
from fateforge.modules.llm_boundary.errors import (
    IMAGE_COOLDOWN_MESSAGE,
    IMAGE_RATE_LIMIT_MESSAGE,
    RATE_LIMIT_BUSY_MESSAGE,
    ImageGenerationError,
    LLMUnavailableError,
    PayloadValidationError,
    RateLimitError,
)
from fateforge.modules.llm_boundary.grammarcheck import PayloadInvalid, parse_structured_payload
from fateforge.modules.llm_boundary.prompt_profiles import (
    character_brief,
    consequences_brief,
    opponents_brief,
    render_prompt,
    skill_names_slot,
)
from fateforge.modules.llm_boundary.schemas import (
    CHARACTER_OPTIONS_SCHEMA,
    CHARACTER_OPTIONS_SCHEMA_NAME,
    GENERATED_CHARACTER_SCHEMA,
    GENERATED_CHARACTER_SCHEMA_NAME,
    OPENING_SCENE_SCHEMA,
    OPENING_SCENE_SCHEMA_NAME,
    SCENE_TRANSITION_SCHEMA,
    SCENE_TRANSITION_SCHEMA_NAME,
    TURN_RESOLUTION_SCHEMA,
    TURN_RESOLUTION_SCHEMA_NAME,
    CharacterOptionsPayload,
    GeneratedCharacterPayload,
    OpeningScenePayload,
    PlayerActionBrief,
    SceneTransitionPayload,
    TurnResolutionPayload,
)
from fateforge.modules.rules.constants import DEFAULT_SKILL_NAMES
from fateforge.modules.rules.schemas import Character, GameState

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)

IMAGE_STYLE_SUFFIX = ", cinematic composition, dramatic lighting, high detail, masterpiece, game art, rpg art style"
OPTION_COUNTS = {"high_concept_count": 5, "trouble_count": 5, "other_count": 8, "stunt_count": 8}


@dataclass(frozen=True)
class _LLMChannelConfig:
    api_key: str
    base_url: str
    path: str
    model: str
    timeout_s: float


@dataclass(slots=True)
class ImageCooldown:
    """Process-wide pause on image generation after the provider signals a rate limit."""

    until: float = 0.0
    lock: threading.Lock | None = None

    def __post_init__(self) -> None:
        self.lock = threading.Lock()

    def remaining_s(self, now: float | None = None) -> float:
        current = time.monotonic() if now is None else now
        with self.lock:
            return max(0.0, self.until - current)

    def active(self, now: float | None = None) -> bool:
        return self.remaining_s(now) > 0

    def trip(self, seconds: float, now: float | None = None) -> None:
        current = time.monotonic() if now is None else now
        with self.lock:
            self.until = max(self.until, current + max(0.0, float(seconds)))

    def reset(self) -> None:
        with self.lock:
            self.until = 0.0


image_cooldown = ImageCooldown()


class GenerativeBackend:
    def provider_trace_label(self) -> str:
        return "real_auto" if self._is_real_mode() else "fake_auto"

    def character_options(self, *, genre: str, game_settings: GameSettings) -> CharacterOptionsPayload:
        return self._structured(
            "character_options_v1",
            slots={"genre": genre, **OPTION_COUNTS},
            game_settings=game_settings,
            schema_name=CHARACTER_OPTIONS_SCHEMA_NAME,
            schema=CHARACTER_OPTIONS_SCHEMA,
            model=CharacterOptionsPayload,
            fake=lambda: self._fake_character_options(genre=genre),
        )

    def generate_character(self, *, genre: str, game_settings: GameSettings) -> GeneratedCharacterPayload:
        return self._structured(
            "generated_character_v1",
            slots={"genre": genre, "skill_names": skill_names_slot()},
            game_settings=game_settings,
            schema_name=GENERATED_CHARACTER_SCHEMA_NAME,
            schema=GENERATED_CHARACTER_SCHEMA,
            model=GeneratedCharacterPayload,
            fake=lambda: self._fake_generated_character(genre=genre),
        )

    def opening_scene(self, *, character: Character, genre: str, game_settings: GameSettings) -> OpeningScenePayload:
        return self._structured(
            "opening_scene_v1",
            slots={"genre": genre, "character_brief": character_brief(character)},
            game_settings=game_settings,
            schema_name=OPENING_SCENE_SCHEMA_NAME,
            schema=OPENING_SCENE_SCHEMA,
            model=OpeningScenePayload,
            fake=lambda: self._fake_opening_scene(character=character, genre=genre, game_settings=game_settings),
        )

    def resolve_turn(
        self,
        *,
        state: GameState,
        action: PlayerActionBrief,
        game_settings: GameSettings,
    ) -> TurnResolutionPayload:
        invoked = ", ".join(f'"{name}"' for name in action.invoked_aspects)
        slots = {
            "character_brief": character_brief(state.character),
            "consequences_brief": consequences_brief(state.character),
            "fate_points": state.character.fate_points,
            "scene_description": state.scene.description,
            "scene_aspects": ", ".join(f'"{a.name}"' for a in state.scene.aspects) or "None",
            "opponents_brief": opponents_brief(state.scene),
            "compel_offered": str(state.scene.has_offered_compel).lower(),
            "action_description": action.description,
            "skill_name": action.skill_name,
            "skill_level": action.skill_level,
            "target_line": (
                f'They are targeting the opponent with ID "{action.target_opponent_id}".'
                if action.target_opponent_id
                else ""
            ),
            "invoked_line": f"They invoked: {invoked}." if invoked else "",
            "total": action.total,
        }
        return self._structured(
            "turn_resolution_v1",
            slots=slots,
            game_settings=game_settings,
            schema_name=TURN_RESOLUTION_SCHEMA_NAME,
            schema=TURN_RESOLUTION_SCHEMA,
            model=TurnResolutionPayload,
            fake=lambda: self._fake_turn(state=state, action=action, game_settings=game_settings),
        )

    def taken_out(self, *, state: GameState, hit: dict, game_settings: GameSettings) -> SceneTransitionPayload:
        return self._scene_transition("taken_out_v1", state=state, hit=hit, game_settings=game_settings)

    def concession(self, *, state: GameState, hit: dict, game_settings: GameSettings) -> SceneTransitionPayload:
        return self._scene_transition("concession_v1", state=state, hit=hit, game_settings=game_settings)

    def generate_image(self, prompt: str) -> str | None:
        """Return an image URL (or data URL); None when running without a provider."""
        if not str(prompt or "").strip():
            raise ValueError("image prompt must not be empty")
        if image_cooldown.active():
            raise RateLimitError(IMAGE_COOLDOWN_MESSAGE)
        if not self._is_real_mode():
            return None

        full_prompt = f"{prompt.strip()}{IMAGE_STYLE_SUFFIX}"
        try:
            return asyncio.run(
                call_image_generation(
                    api_key=self._clean(settings.llm_api_key),
                    base_url=self._clean(settings.llm_base_url),
                    model=self._clean(settings.llm_image_model),
                    prompt=full_prompt,
                    timeout_s=float(settings.llm_image_timeout_s),
                )
            )
        except LLMCallError as exc:
            if is_rate_limit_error(exc):
                image_cooldown.trip(settings.image_cooldown_s)
                logger.warning("image generation rate limited; pausing for %ss", settings.image_cooldown_s)
                raise RateLimitError(IMAGE_RATE_LIMIT_MESSAGE) from exc
            raise ImageGenerationError(str(exc)) from exc

    def _scene_transition(
        self,
        profile_id: str,
        *,
        state: GameState,
        hit: dict,
        game_settings: GameSettings,
    ) -> SceneTransitionPayload:
        character = state.character
        slots = {
            "character_name": character.name,
            "aspect_names": ", ".join(a.name for a in character.all_aspects()),
            "shifts": hit.get("shifts"),
            "hit_type": hit.get("type"),
            "attack_description": hit.get("attackDescription"),
        }
        return self._structured(
            profile_id,
            slots=slots,
            game_settings=game_settings,
            schema_name=SCENE_TRANSITION_SCHEMA_NAME,
            schema=SCENE_TRANSITION_SCHEMA,
            model=SceneTransitionPayload,
            fake=lambda: self._fake_transition(profile_id=profile_id, state=state, game_settings=game_settings),
        )

    def _structured(
        self,
        profile_id: str,
        *,
        slots: dict[str, object],
        game_settings: GameSettings,
        schema_name: str,
        schema: dict,
        model: type[PayloadT],
        fake: Callable[[], dict],
    ) -> PayloadT:
        system_prompt, user_prompt = render_prompt(profile_id, slots=slots, game_settings=game_settings)
        if not user_prompt.strip():
            raise ValueError(f"empty prompt rendered for {profile_id}")

        raw: object
        if self._is_real_mode():
            raw = self._call_with_rate_limit_retry(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                channel=self._resolve_channel(timeout_s=settings.llm_timeout_s),
            )
        else:
            raw = fake()

        result = parse_structured_payload(raw, schema=schema, model=model)
        if isinstance(result, PayloadInvalid):
            logger.error("%s payload invalid (%s): %s", schema_name, result.error_kind, result.message)
            raise PayloadValidationError(
                result.message,
                error_kind=result.error_kind,
                raw_snippet=result.raw_snippet,
            )
        return result.value

    def _call_with_rate_limit_retry(self, *, system_prompt: str, user_prompt: str, channel: _LLMChannelConfig) -> str:
        attempts = max(1, int(settings.llm_rate_limit_max_attempts))
        for attempt_index in range(attempts):
            try:
                return asyncio.run(
                    call_chat_completions(
                        api_key=channel.api_key,
                        base_url=channel.base_url,
                        path=channel.path,
                        model=channel.model,
                        messages=[
                            {"role": "system", "content": system_prompt},
                            {"role": "user", "content": user_prompt},
                        ],
                        response_format={"type": "json_object"},
                        timeout_s=channel.timeout_s,
                    )
                )
            except LLMCallError as exc:
                if not is_rate_limit_error(exc):
                    logger.error("generator call failed: %s", exc)
                    raise LLMUnavailableError(str(exc)) from exc
                if attempt_index >= attempts - 1:
                    logger.error("generator still rate limited after %d attempts", attempts)
                    raise LLMUnavailableError(RATE_LIMIT_BUSY_MESSAGE) from exc
                logger.warning("generator rate limited (attempt %d/%d); backing off", attempt_index + 1, attempts)
                self._sleep_backoff(attempt_index)
        raise LLMUnavailableError(RATE_LIMIT_BUSY_MESSAGE)

    @staticmethod
    def _sleep_backoff(attempt_index: int) -> None:
        base_ms = max(1, int(settings.llm_retry_backoff_base_ms))
        cap_ms = max(base_ms, int(settings.llm_retry_backoff_max_ms))
        backoff_ms = min(cap_ms, base_ms * (2 ** max(0, attempt_index)))
        jitter_ms = random.randint(0, base_ms)
        time.sleep((backoff_ms + jitter_ms) / 1000.0)

    @staticmethod
    def _clean(value: str | None) -> str:
        return str(value or "").strip()

    def _resolve_channel(self, *, timeout_s: float) -> _LLMChannelConfig:
        return _LLMChannelConfig(
            api_key=self._clean(settings.llm_api_key),
            base_url=self._clean(settings.llm_base_url),
            path=CHAT_COMPLETIONS_PATH,
            model=self._clean(settings.llm_model),
            timeout_s=float(timeout_s),
        )

    @staticmethod
    def _is_real_mode() -> bool:
        return bool(str(settings.llm_api_key or "").strip())

    @staticmethod
    def _fake_character_options(*, genre: str) -> dict:
        theme = " ".join(str(genre or "adventure").split()) or "adventure"
        return {
            "aspects": {
                "highConcepts": [
                    {"name": f"{label} of the {theme.title()}", "description": f"A {label.lower()} shaped by {theme}."}
                    for label in ("Wandering Blade", "Disgraced Scholar", "Reluctant Heir", "Hired Gun", "Last Witness")
                ],
                "troubles": [
                    {"name": name, "description": f"{name} keeps getting in the way."}
                    for name in ("Owes the Wrong People", "Can't Leave Well Enough Alone", "Haunted by the Past",
                                 "Trusts Too Easily", "Temper Like Dry Tinder")
                ],
                "others": [
                    {"name": name, "description": f"{name} matters in this {theme} world."}
                    for name in ("Old Friends in Low Places", "Scarred but Standing", "A Map Nobody Else Can Read",
                                 "Quick Hands", "Sworn to the Lantern Guild", "Knows Every Back Road",
                                 "Family Heirloom Blade", "Sleepless Eyes")
                ],
            },
            "stunts": [
                {"name": name, "description": f"+2 when {desc}."}
                for name, desc in (
                    ("Backstab", "attacking a foe who has not noticed you"),
                    ("Silver Tongue", "using Rapport on strangers"),
                    ("Iron Will", "defending against Provoke"),
                    ("Lay of the Land", "using Notice in the wilderness"),
                    ("Tinkerer", "using Crafts to repair under pressure"),
                    ("Sure Footing", "using Athletics on treacherous ground"),
                    ("Favors Owed", "using Contacts in your home city"),
                    ("Steady Aim", "using Shoot from cover"),
                )
            ],
        }

    @staticmethod
    def _fake_generated_character(*, genre: str) -> dict:
        theme = " ".join(str(genre or "adventure").split()) or "adventure"
        levels = (4, 3, 3, 2, 2, 2, 1, 1, 1, 1)
        return {
            "name": "Rowan Vale",
            "aspects": {
                "highConcept": {"name": f"Wayfinder of the {theme.title()}", "description": "Always finds a way through."},
                "trouble": {"name": "Owes the Wrong People", "description": "Debts follow Rowan everywhere."},
                "others": [
                    {"name": "Scarred but Standing", "description": "Has survived worse."},
                    {"name": "Old Friends in Low Places", "description": "Someone always owes a favor."},
                    {"name": "Quick Hands", "description": "Faster than most eyes."},
                ],
            },
            "stunts": [
                {"name": "Lay of the Land", "description": "+2 to Notice in unfamiliar terrain."},
                {"name": "Silver Tongue", "description": "+2 to Rapport when first meeting someone."},
            ],
            "skills": [
                {"name": name, "level": level}
                for name, level in zip(("Notice", "Athletics", "Rapport", "Fight", "Stealth", "Will",
                                        "Contacts", "Lore", "Physique", "Empathy"), levels)
                if name in DEFAULT_SKILL_NAMES
            ],
        }

    @staticmethod
    def _fake_opening_scene(*, character: Character, genre: str, game_settings: GameSettings) -> dict:
        theme = " ".join(str(genre or "adventure").split()) or "adventure"
        return {
            "scene": {
                "description": (
                    f"{character.name} arrives at a rain-soaked crossroads in a {theme} world, where a frightened "
                    "courier begs for help as torches approach."
                ),
                "aspects": [
                    {"name": "Rain-Slick Cobblestones", "description": "Footing is treacherous."},
                    {"name": "Torches in the Dark", "description": "Someone is coming, and fast."},
                ],
                "opponents": [],
            },
            "imagePrompt": None if not game_settings.images_enabled else f"A lone hero at a rainy {theme} crossroads",
        }

    @staticmethod
    def _fake_turn(*, state: GameState, action: PlayerActionBrief, game_settings: GameSettings) -> dict:
        success = action.total >= 2
        outcome = "succeeds" if success else "falls short"
        payload: dict = {
            "narration": f'{state.character.name} tries to "{action.description}" with {action.skill_name} and {outcome}.',
            "imagePrompt": None,
            "newSceneAspect": None,
            "removedSceneAspects": [],
            "hit": None,
            "compel": None,
            "newScene": None,
            "usedFreeInvokes": [],
            "updatedOpponents": None,
        }
        if game_settings.image_generation_frequency == "always":
            payload["imagePrompt"] = f"{state.character.name} in action: {action.description}"
        return payload

    @staticmethod
    def _fake_transition(*, profile_id: str, state: GameState, game_settings: GameSettings) -> dict:
        conceded = profile_id.startswith("concession")
        narration = (
            f"{state.character.name} yields the fight and slips away to regroup."
            if conceded
            else f"The world fades to black around {state.character.name}. They wake somewhere unfamiliar."
        )
        return {
            "narration": narration,
            "newScene": {
                "description": "A quiet, unfamiliar room. The danger has passed, for now.",
                "aspects": [{"name": "Unfamiliar Surroundings", "description": "Nothing here is where you expect it."}],
            },
            "imagePrompt": "A quiet unfamiliar room at dawn" if game_settings.images_enabled else None,
        }


_generative_backend: GenerativeBackend | None = None


def get_generative_backend() -> GenerativeBackend:
    global _generative_backend
    if _generative_backend is None:
        _generative_backend = GenerativeBackend()
    return _generative_backend
