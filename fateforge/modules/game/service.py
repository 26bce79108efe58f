from __future__ import annotations

import logging
import random
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.orm import Session

from fateforge.config import settings
from fateforge.db import session as db_session
from fateforge.db.models import GameSession
from fateforge.modules.conflict.resolver import (
    Hit,
    HitAbsorption,
    HitOutcome,
    HitPhase,
    InvalidResolutionError,
    apply_absorption,
    assess_hit,
)
from fateforge.modules.fate import economy
from fateforge.modules.game.schemas import (
    ActionRequest,
    ActionResponse,
    CharacterDraftIn,
    GameSessionResponse,
    GeneratedCharacterResponse,
    PendingHitOut,
)
from fateforge.modules.game.settings import GameSettings, normalize_settings
from fateforge.modules.llm_boundary.errors import (
    ImageGenerationError,
    LLMUnavailableError,
    PayloadValidationError,
    RateLimitError,
)
from fateforge.modules.llm_boundary.schemas import PlayerActionBrief
from fateforge.modules.llm_boundary.service import GenerativeBackend
from fateforge.modules.narrative.reconciler import (
    apply_image_result,
    opening_state,
    reconcile,
    reconcile_scene_transition,
)
from fateforge.modules.narrative.story_log import append_entries, append_error
from fateforge.modules.persistence.service import SqlGameStateStore
from fateforge.modules.rules.character import (
    build_character,
    pyramid_problems,
    skill_levels_from_pairs,
)
from fateforge.modules.rules.dice import action_total, check_dice, format_roll, roll_fate_dice
from fateforge.modules.rules.schemas import Compel, GameState

logger = logging.getLogger(__name__)

IMAGE_PATCH_LOCK_TIMEOUT_S = 30.0


class GameNotFoundError(ValueError):
    pass


class GameInputError(ValueError):
    pass


class GameConflictError(ValueError):
    code = "CONFLICT"


class GameBusyError(GameConflictError):
    code = "GAME_BUSY"


class PendingDecisionError(GameConflictError):
    code = "DECISION_PENDING"


class NoPendingDecisionError(GameConflictError):
    code = "NO_PENDING_DECISION"


class GeneratorFailedError(RuntimeError):
    """The generator call failed; the session now carries an error entry and is otherwise unchanged."""

    def __init__(self, message: str, *, code: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True, slots=True)
class ImageJob:
    session_id: str
    entry_id: int
    prompt: str


_session_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_session_locks_guard = threading.Lock()


def _lock_for(session_id: str) -> threading.Lock:
    with _session_locks_guard:
        lock = _session_locks.get(session_id)
        if lock is None:
            lock = threading.Lock()
            _session_locks[session_id] = lock
        return lock


@contextmanager
def _exclusive(session_id: str) -> Iterator[None]:
    lock = _lock_for(session_id)
    if not lock.acquire(blocking=False):
        raise GameBusyError("another request for this game is still in progress")
    try:
        yield
    finally:
        lock.release()


def _load_row(db: Session, session_id: str) -> GameSession:
    row = db.get(GameSession, session_id)
    if row is None:
        raise GameNotFoundError(f"game session not found: {session_id}")
    return row


def _state_of(row: GameSession) -> GameState:
    return GameState.model_validate(row.state_json)


def _settings_of(row: GameSession) -> GameSettings:
    return normalize_settings(row.settings_json)


def _pending_hit(row: GameSession) -> Hit | None:
    return Hit.model_validate(row.pending_hit) if row.pending_hit else None


def _pending_compel(row: GameSession) -> Compel | None:
    return Compel.model_validate(row.pending_compel) if row.pending_compel else None


def _ensure_no_pending(row: GameSession) -> None:
    if row.pending_hit:
        raise PendingDecisionError("resolve the incoming hit first")
    if row.pending_compel:
        raise PendingDecisionError("answer the compel first")


def _session_response(row: GameSession) -> GameSessionResponse:
    state = _state_of(row)
    staged = economy.staged_from_json(row.staged_invokes)
    pending_hit = None
    hit = _pending_hit(row)
    if hit is not None:
        assessment = assess_hit(state.character, hit)
        pending_hit = PendingHitOut(
            hit=hit.to_json(),
            phase=assessment.phase.value,
            max_absorption=assessment.max_absorption,
        )
    return GameSessionResponse(
        id=row.id,
        genre=row.genre,
        state=state.to_json(),
        settings=_settings_of(row).to_json(),
        staged_invokes=economy.staged_to_json(staged),
        invocation_bonus=economy.invocation_bonus(staged),
        pending_hit=pending_hit,
        pending_compel=row.pending_compel,
        actions_enabled=not row.pending_hit and not row.pending_compel,
        turn_count=row.turn_count,
    )


def _store_state(db: Session, row: GameSession, state: GameState) -> None:
    row.state_json = state.to_json()
    db.commit()
    db.refresh(row)


def _record_generator_failure(db: Session, row: GameSession, state: GameState, exc: Exception) -> GeneratorFailedError:
    if isinstance(exc, PayloadValidationError):
        code = "PAYLOAD_INVALID"
        message = "The AI returned a response the game could not understand. Please try again."
    else:
        code = "LLM_UNAVAILABLE"
        message = str(exc) or "The AI encountered an error. Please try a different action."
    logger.error("generator failure on session %s (%s): %s", row.id, code, exc)
    row.last_error = message
    _store_state(db, row, append_error(state, message))
    return GeneratorFailedError(message, code=code)


def character_options(*, genre: str, raw_settings: dict | None, backend: GenerativeBackend) -> dict:
    payload = backend.character_options(genre=genre, game_settings=normalize_settings(raw_settings))
    return payload.to_json()


def generate_character(
    *,
    genre: str,
    raw_settings: dict | None,
    backend: GenerativeBackend,
) -> GeneratedCharacterResponse:
    payload = backend.generate_character(genre=genre, game_settings=normalize_settings(raw_settings))
    levels = skill_levels_from_pairs((pick.name, pick.level) for pick in payload.skills)
    return GeneratedCharacterResponse(
        name=payload.name,
        high_concept=payload.aspects.high_concept,
        trouble=payload.aspects.trouble,
        others=payload.aspects.others,
        stunts=payload.stunts,
        skills=levels,
        problems=pyramid_problems(levels),
    )


def create_session(
    db: Session,
    *,
    genre: str,
    draft: CharacterDraftIn,
    raw_settings: dict | None,
    backend: GenerativeBackend,
) -> GameSessionResponse:
    game_settings = normalize_settings(raw_settings)
    character = build_character(
        name=draft.name,
        high_concept=draft.high_concept,
        trouble=draft.trouble,
        others=draft.others,
        stunts=draft.stunts,
        skill_levels=draft.skills,
    )
    opening = backend.opening_scene(character=character, genre=genre, game_settings=game_settings)

    image_url = None
    if game_settings.images_enabled and opening.image_prompt:
        try:
            image_url = backend.generate_image(opening.image_prompt)
        except (RateLimitError, ImageGenerationError) as exc:
            logger.warning("opening scene image skipped: %s", exc)

    row = GameSession(
        genre=" ".join(genre.split()),
        state_json=opening_state(character, opening, image_url=image_url).to_json(),
        settings_json=game_settings.to_json(),
        staged_invokes=[],
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("game session %s created (%s)", row.id, row.genre)
    return _session_response(row)


def get_session(db: Session, *, session_id: str) -> GameSessionResponse:
    return _session_response(_load_row(db, session_id))


def toggle_invoke(db: Session, *, session_id: str, aspect_name: str) -> GameSessionResponse:
    with _exclusive(session_id):
        row = _load_row(db, session_id)
        _ensure_no_pending(row)
        state, staged = economy.toggle_invoke(
            _state_of(row),
            economy.staged_from_json(row.staged_invokes),
            aspect_name,
        )
        row.staged_invokes = economy.staged_to_json(staged)
        _store_state(db, row, state)
        return _session_response(row)


def take_action(
    db: Session,
    *,
    session_id: str,
    payload: ActionRequest,
    backend: GenerativeBackend,
    rng: random.Random | None = None,
) -> tuple[ActionResponse, ImageJob | None]:
    with _exclusive(session_id):
        row = _load_row(db, session_id)
        _ensure_no_pending(row)
        state = _state_of(row)
        game_settings = _settings_of(row)

        skill = state.character.skill(payload.skill_name)
        if skill is None:
            raise GameInputError(f"unknown skill: {payload.skill_name}")
        if payload.target_opponent_id and not any(
            opponent.id == payload.target_opponent_id for opponent in state.scene.opponents or []
        ):
            raise GameInputError(f"unknown opponent: {payload.target_opponent_id}")
        try:
            dice = check_dice(payload.dice) if payload.dice is not None else roll_fate_dice(rng)
        except ValueError as exc:
            raise GameInputError(str(exc)) from exc

        staged = economy.staged_from_json(row.staged_invokes)
        bonus = economy.invocation_bonus(staged)
        total = action_total(dice=dice, skill_level=skill.level, invocation_bonus=bonus)
        brief = PlayerActionBrief(
            description=payload.description,
            skill_name=skill.name,
            skill_level=skill.level,
            total=total,
            invoked_aspects=[item.aspect_name for item in staged],
            target_opponent_id=payload.target_opponent_id,
        )

        try:
            outcome = backend.resolve_turn(state=state, action=brief, game_settings=game_settings)
        except (LLMUnavailableError, PayloadValidationError) as exc:
            raise _record_generator_failure(db, row, state, exc) from exc

        announced = append_entries(
            state,
            ("action", f'"{payload.description}" using {skill.name}.'),
            ("roll", format_roll(dice=dice, skill_level=skill.level, invocation_bonus=bonus)),
        )
        result = reconcile(announced, outcome, staged, images_enabled=game_settings.images_enabled)

        row.staged_invokes = []
        row.pending_hit = result.hit.to_json() if result.hit is not None else None
        row.pending_compel = result.compel.to_json() if result.compel is not None else None
        row.turn_count += 1
        row.last_error = ""
        _store_state(db, row, result.state)

        job = None
        if result.image_prompt:
            job = ImageJob(session_id=row.id, entry_id=result.narration_entry_id, prompt=result.image_prompt)
        response = ActionResponse(
            **_session_response(row).model_dump(),
            dice=dice,
            total=total,
            narration_entry_id=result.narration_entry_id,
        )
        return response, job


def absorb_hit(db: Session, *, session_id: str, absorption: HitAbsorption) -> GameSessionResponse:
    with _exclusive(session_id):
        row = _load_row(db, session_id)
        hit = _pending_hit(row)
        if hit is None:
            raise NoPendingDecisionError("there is no hit to absorb")
        state = apply_absorption(_state_of(row), hit, absorption)
        row.pending_hit = None
        _store_state(db, row, state)
        return _session_response(row)


def _end_conflict(
    db: Session,
    *,
    session_id: str,
    outcome: HitOutcome,
    backend: GenerativeBackend,
) -> tuple[GameSessionResponse, ImageJob | None]:
    with _exclusive(session_id):
        row = _load_row(db, session_id)
        hit = _pending_hit(row)
        if hit is None:
            raise NoPendingDecisionError("there is no conflict to leave")
        state = _state_of(row)
        game_settings = _settings_of(row)
        phase = assess_hit(state.character, hit).phase
        if outcome is HitOutcome.TAKEN_OUT and phase is not HitPhase.TAKEN_OUT:
            raise InvalidResolutionError("NOT_TAKEN_OUT", "this hit can still be absorbed or conceded")
        if outcome is HitOutcome.CONCEDED and phase is HitPhase.TAKEN_OUT:
            raise InvalidResolutionError("TAKEN_OUT_ONLY", "this hit cannot be absorbed; acknowledge being taken out")

        call = backend.taken_out if outcome is HitOutcome.TAKEN_OUT else backend.concession
        try:
            transition = call(state=state, hit=hit.to_json(), game_settings=game_settings)
        except (LLMUnavailableError, PayloadValidationError) as exc:
            raise _record_generator_failure(db, row, state, exc) from exc

        result = reconcile_scene_transition(
            state,
            transition,
            outcome=outcome,
            images_enabled=game_settings.images_enabled,
        )
        row.pending_hit = None
        row.staged_invokes = []
        row.last_error = ""
        _store_state(db, row, result.state)
        logger.info("session %s conflict ended: %s", row.id, outcome.value)

        job = None
        if result.image_prompt:
            job = ImageJob(session_id=row.id, entry_id=result.narration_entry_id, prompt=result.image_prompt)
        return _session_response(row), job


def acknowledge_taken_out(
    db: Session, *, session_id: str, backend: GenerativeBackend
) -> tuple[GameSessionResponse, ImageJob | None]:
    return _end_conflict(db, session_id=session_id, outcome=HitOutcome.TAKEN_OUT, backend=backend)


def concede(db: Session, *, session_id: str, backend: GenerativeBackend) -> tuple[GameSessionResponse, ImageJob | None]:
    return _end_conflict(db, session_id=session_id, outcome=HitOutcome.CONCEDED, backend=backend)


def resolve_compel(db: Session, *, session_id: str, accept: bool) -> GameSessionResponse:
    with _exclusive(session_id):
        row = _load_row(db, session_id)
        compel = _pending_compel(row)
        if compel is None:
            raise NoPendingDecisionError("there is no compel to answer")
        state = economy.resolve_compel(_state_of(row), compel, accept=accept)
        row.pending_compel = None
        _store_state(db, row, state)
        return _session_response(row)


def update_settings(db: Session, *, session_id: str, raw_settings: dict) -> GameSessionResponse:
    with _exclusive(session_id):
        row = _load_row(db, session_id)
        merged = {**_settings_of(row).to_json(), **raw_settings}
        row.settings_json = normalize_settings(merged).to_json()
        db.commit()
        db.refresh(row)
        return _session_response(row)


def resolve_slot(slot: str | None) -> str:
    cleaned = str(slot or "").strip()
    return cleaned or settings.default_save_slot


def save_game(db: Session, *, session_id: str, slot: str | None = None) -> str:
    with _exclusive(session_id):
        row = _load_row(db, session_id)
        resolved = resolve_slot(slot)
        SqlGameStateStore(db, slot=resolved).save(_state_of(row), game_settings=_settings_of(row))
        logger.info("session %s saved to slot %r", row.id, resolved)
        return resolved


def load_game(db: Session, *, slot: str | None = None) -> GameSessionResponse:
    """Start a fresh live session from a save slot. Pending decisions are not part of a save."""
    store = SqlGameStateStore(db, slot=resolve_slot(slot))
    game_settings = store.load_settings()
    state = store.load()
    if state is None:
        raise GameNotFoundError(f"no saved game in slot {store.slot!r}")
    # images still loading when the game was saved will never resolve
    for entry in state.story_log:
        entry.is_loading_image = False
    row = GameSession(state_json=state.to_json(), settings_json=game_settings.to_json(), staged_invokes=[])
    db.add(row)
    db.commit()
    db.refresh(row)
    return _session_response(row)


def saved_game_exists(db: Session, *, slot: str | None = None) -> bool:
    return SqlGameStateStore(db, slot=resolve_slot(slot)).exists()


def clear_saved_game(db: Session, *, slot: str | None = None) -> None:
    SqlGameStateStore(db, slot=resolve_slot(slot)).clear()


def resolve_pending_image(job: ImageJob, *, backend: GenerativeBackend) -> None:
    """Generate the image for one narration entry and patch only that entry."""
    image_url = None
    system_message = None
    try:
        image_url = backend.generate_image(job.prompt)
    except RateLimitError as exc:
        system_message = str(exc)
        logger.warning("image for session %s entry %s skipped: %s", job.session_id, job.entry_id, exc)
    except (ImageGenerationError, ValueError) as exc:
        logger.error("image for session %s entry %s failed: %s", job.session_id, job.entry_id, exc)

    lock = _lock_for(job.session_id)
    if not lock.acquire(timeout=IMAGE_PATCH_LOCK_TIMEOUT_S):
        logger.error("image patch for session %s abandoned; session stayed busy", job.session_id)
        return
    try:
        with db_session.session_scope() as db:
            row = db.get(GameSession, job.session_id)
            if row is None:
                return
            patched = apply_image_result(_state_of(row), job.entry_id, image_url, system_message=system_message)
            row.state_json = patched.to_json()
    finally:
        lock.release()
