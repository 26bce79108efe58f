from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from fateforge.db.session import get_db
from fateforge.modules.conflict.resolver import HitAbsorption, InvalidResolutionError
from fateforge.modules.fate.economy import FateEconomyError
from fateforge.modules.game import service
from fateforge.modules.game.schemas import (
    ActionRequest,
    ActionResponse,
    CharacterOptionsRequest,
    CompelRequest,
    GameSessionResponse,
    GeneratedCharacterResponse,
    InvokeRequest,
    SaveSlotRequest,
    SaveStatusResponse,
    SessionCreateRequest,
    SettingsUpdateRequest,
)
from fateforge.modules.llm_boundary.errors import LLMUnavailableError, PayloadValidationError
from fateforge.modules.llm_boundary.service import get_generative_backend
from fateforge.modules.rules.character import CharacterValidationError

router = APIRouter(prefix="/api/v1", tags=["game"])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, service.GameNotFoundError):
        return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": str(exc)})
    if isinstance(exc, service.GameConflictError):
        return HTTPException(status_code=409, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, FateEconomyError):
        return HTTPException(status_code=409, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, InvalidResolutionError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": exc.code, "message": str(exc)},
        )
    if isinstance(exc, CharacterValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_CHARACTER", "message": str(exc), "problems": exc.problems},
        )
    if isinstance(exc, service.GeneratorFailedError):
        status_code = 502 if exc.code == "PAYLOAD_INVALID" else 503
        return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, PayloadValidationError):
        return HTTPException(
            status_code=502,
            detail={"code": "PAYLOAD_INVALID", "message": str(exc), "error_kind": exc.error_kind},
        )
    if isinstance(exc, LLMUnavailableError):
        return HTTPException(status_code=503, detail={"code": "LLM_UNAVAILABLE", "message": str(exc)})
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": str(exc)})


_DOMAIN_ERRORS = (
    ValueError,
    service.GeneratorFailedError,
    LLMUnavailableError,
    PayloadValidationError,
)


def _schedule_image(background_tasks: BackgroundTasks, job: service.ImageJob | None) -> None:
    if job is not None:
        background_tasks.add_task(service.resolve_pending_image, job, backend=get_generative_backend())


@router.post("/character-options")
def character_options(payload: CharacterOptionsRequest) -> dict:
    try:
        return service.character_options(
            genre=payload.genre,
            raw_settings=payload.settings,
            backend=get_generative_backend(),
        )
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/characters/generate", response_model=GeneratedCharacterResponse)
def generate_character(payload: CharacterOptionsRequest) -> GeneratedCharacterResponse:
    try:
        return service.generate_character(
            genre=payload.genre,
            raw_settings=payload.settings,
            backend=get_generative_backend(),
        )
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/sessions", response_model=GameSessionResponse, status_code=201)
def create_session(payload: SessionCreateRequest, db: Session = Depends(get_db)) -> GameSessionResponse:
    try:
        return service.create_session(
            db,
            genre=payload.genre,
            draft=payload.character,
            raw_settings=payload.settings,
            backend=get_generative_backend(),
        )
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.get("/sessions/{session_id}", response_model=GameSessionResponse)
def get_session(session_id: str, db: Session = Depends(get_db)) -> GameSessionResponse:
    try:
        return service.get_session(db, session_id=session_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/sessions/{session_id}/invokes", response_model=GameSessionResponse)
def toggle_invoke(session_id: str, payload: InvokeRequest, db: Session = Depends(get_db)) -> GameSessionResponse:
    try:
        return service.toggle_invoke(db, session_id=session_id, aspect_name=payload.aspect_name)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/sessions/{session_id}/actions", response_model=ActionResponse)
def take_action(
    session_id: str,
    payload: ActionRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> ActionResponse:
    try:
        response, job = service.take_action(
            db,
            session_id=session_id,
            payload=payload,
            backend=get_generative_backend(),
        )
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    _schedule_image(background_tasks, job)
    return response


@router.post("/sessions/{session_id}/hit/absorb", response_model=GameSessionResponse)
def absorb_hit(session_id: str, payload: HitAbsorption, db: Session = Depends(get_db)) -> GameSessionResponse:
    try:
        return service.absorb_hit(db, session_id=session_id, absorption=payload)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/sessions/{session_id}/hit/taken-out", response_model=GameSessionResponse)
def acknowledge_taken_out(
    session_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> GameSessionResponse:
    try:
        response, job = service.acknowledge_taken_out(db, session_id=session_id, backend=get_generative_backend())
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    _schedule_image(background_tasks, job)
    return response


@router.post("/sessions/{session_id}/hit/concede", response_model=GameSessionResponse)
def concede(
    session_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> GameSessionResponse:
    try:
        response, job = service.concede(db, session_id=session_id, backend=get_generative_backend())
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    _schedule_image(background_tasks, job)
    return response


@router.post("/sessions/{session_id}/compel", response_model=GameSessionResponse)
def resolve_compel(session_id: str, payload: CompelRequest, db: Session = Depends(get_db)) -> GameSessionResponse:
    try:
        return service.resolve_compel(db, session_id=session_id, accept=payload.accept)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.put("/sessions/{session_id}/settings", response_model=GameSessionResponse)
def update_settings(
    session_id: str,
    payload: SettingsUpdateRequest,
    db: Session = Depends(get_db),
) -> GameSessionResponse:
    try:
        return service.update_settings(db, session_id=session_id, raw_settings=payload.settings)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/sessions/{session_id}/save", response_model=SaveStatusResponse)
def save_game(session_id: str, payload: SaveSlotRequest, db: Session = Depends(get_db)) -> SaveStatusResponse:
    try:
        slot = service.save_game(db, session_id=session_id, slot=payload.slot)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return SaveStatusResponse(slot=slot, exists=True)


@router.get("/saves", response_model=SaveStatusResponse)
def saved_game_status(slot: str | None = None, db: Session = Depends(get_db)) -> SaveStatusResponse:
    exists = service.saved_game_exists(db, slot=slot)
    return SaveStatusResponse(slot=service.resolve_slot(slot), exists=exists)


@router.post("/saves/load", response_model=GameSessionResponse, status_code=201)
def load_game(payload: SaveSlotRequest, db: Session = Depends(get_db)) -> GameSessionResponse:
    try:
        return service.load_game(db, slot=payload.slot)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc


@router.delete("/saves", response_model=SaveStatusResponse)
def clear_saved_game(slot: str | None = None, db: Session = Depends(get_db)) -> SaveStatusResponse:
    service.clear_saved_game(db, slot=slot)
    return SaveStatusResponse(slot=service.resolve_slot(slot), exists=False)
