from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any

import httpx
import typer

app = typer.Typer(help="Fate Forge terminal client")
session_app = typer.Typer(help="Session commands")
compel_app = typer.Typer(help="Answer the pending compel")
app.add_typer(session_app, name="session")
app.add_typer(compel_app, name="compel")

DEFAULT_BACKEND_URL = "http://127.0.0.1:8000"
API_PREFIX = "/api/v1"
STATE_PATH = Path(__file__).resolve().parent / ".state.json"
BUSY_MAX_ATTEMPTS = 3
BUSY_RETRY_BACKOFF_S = 0.5
# turn resolution waits on the generator, which can be slow
REQUEST_TIMEOUT_S = 90.0


def load_state(path: Path = STATE_PATH) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        return {}


def save_state(data: dict[str, Any], path: Path = STATE_PATH) -> None:
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2))


def backend_url() -> str:
    return os.getenv("BACKEND_URL", DEFAULT_BACKEND_URL).rstrip("/")


def request(
    method: str,
    endpoint: str,
    *,
    json_body: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    url = f"{backend_url()}{endpoint}"
    with httpx.Client(timeout=REQUEST_TIMEOUT_S) as client:
        return client.request(method, url, json=json_body, params=params)


def response_detail_code(resp: httpx.Response) -> str | None:
    try:
        payload = resp.json()
    except ValueError:
        return None
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        code = detail.get("code")
        if isinstance(code, str) and code.strip():
            return code.strip()
    return None


def is_game_busy_response(resp: httpx.Response) -> bool:
    return int(resp.status_code) == 409 and response_detail_code(resp) == "GAME_BUSY"


def request_with_busy_retry(
    method: str,
    endpoint: str,
    *,
    json_body: dict[str, Any] | None = None,
    sleep=time.sleep,
) -> httpx.Response:
    resp = request(method, endpoint, json_body=json_body)
    for attempt in range(1, BUSY_MAX_ATTEMPTS):
        if not is_game_busy_response(resp):
            break
        sleep(BUSY_RETRY_BACKOFF_S * attempt)
        resp = request(method, endpoint, json_body=json_body)
    return resp


def new_log_entries(body: dict[str, Any], last_seen_id: int | None) -> list[dict[str, Any]]:
    log = (body.get("state") or {}).get("storyLog") or []
    if last_seen_id is None:
        return list(log)
    return [entry for entry in log if int(entry.get("id", -1)) > last_seen_id]


def format_entry(entry: dict[str, Any]) -> str:
    kind = entry.get("type", "?")
    content = entry.get("content", "")
    if kind == "narration":
        suffix = f"\n    [image] {entry['imageUrl']}" if entry.get("imageUrl") else ""
        return f"{content}{suffix}"
    return f"[{kind}] {content}"


def _resolve_session_id(session_id: str | None) -> str:
    if session_id:
        return session_id
    sid = load_state().get("session_id")
    if not sid:
        raise typer.BadParameter("No session_id provided and no saved session in client/.state.json")
    return str(sid)


def _handle_response(resp: httpx.Response, action: str) -> dict[str, Any] | None:
    if resp.status_code == 404:
        typer.echo(f"{action}: not found ({resp.text}).")
        return None
    if resp.status_code >= 400:
        typer.echo(f"{action} failed ({resp.status_code}): {resp.text}")
        raise typer.Exit(code=1)
    try:
        return resp.json()
    except ValueError:
        typer.echo(resp.text)
        return None


def _print_session(body: dict[str, Any], *, show_all: bool = False) -> None:
    state = load_state()
    last_seen = None if show_all or state.get("session_id") != body.get("id") else state.get("last_entry_id")
    entries = new_log_entries(body, last_seen)
    for entry in entries:
        typer.echo(format_entry(entry))

    character = (body.get("state") or {}).get("character") or {}
    typer.echo(f"-- fate points: {character.get('fatePoints')}  invoke bonus: +{body.get('invocation_bonus', 0)}")
    pending_hit = body.get("pending_hit")
    if pending_hit:
        hit = pending_hit.get("hit") or {}
        typer.echo(
            f"-- incoming {hit.get('type')} hit for {hit.get('shifts')} shifts ({pending_hit.get('phase')}, "
            f"max absorb {pending_hit.get('max_absorption')}): {hit.get('attackDescription')}"
        )
    compel = body.get("pending_compel")
    if compel:
        typer.echo(f"-- compel on \"{compel.get('aspect')}\": {compel.get('reason')}")

    log = (body.get("state") or {}).get("storyLog") or []
    state["session_id"] = body.get("id")
    if log:
        state["last_entry_id"] = max(int(entry.get("id", 0)) for entry in log)
    save_state(state)


def _session_call(method: str, suffix: str, action: str, session_id: str | None, json_body=None) -> None:
    sid = _resolve_session_id(session_id)
    resp = request_with_busy_retry(method, f"{API_PREFIX}/sessions/{sid}{suffix}", json_body=json_body)
    body = _handle_response(resp, action)
    if body is not None:
        _print_session(body)


@app.command()
def ping() -> None:
    resp = request("GET", "/health")
    body = _handle_response(resp, "ping")
    if body is not None:
        typer.echo(f"ok: {body}")


@app.command()
def options(genre: str = typer.Argument(..., help="Game genre, e.g. 'cyberpunk noir'")) -> None:
    resp = request("POST", f"{API_PREFIX}/character-options", json_body={"genre": genre})
    body = _handle_response(resp, "options")
    if body is None:
        return
    aspects = body.get("aspects") or {}
    for label, key in (("High concepts", "highConcepts"), ("Troubles", "troubles"), ("Other aspects", "others")):
        typer.echo(f"{label}:")
        for item in aspects.get(key) or []:
            typer.echo(f"  - {item.get('name')}: {item.get('description')}")
    typer.echo("Stunts:")
    for item in body.get("stunts") or []:
        typer.echo(f"  - {item.get('name')}: {item.get('description')}")


@session_app.command("create")
def session_create(
    genre: str = typer.Option(..., "--genre", help="Game genre"),
    character_file: Path | None = typer.Option(
        None, "--character-file", help="JSON character draft; a generated character is used when omitted"
    ),
    images: str = typer.Option("sometimes", "--images", help="none, rarely, sometimes or always"),
    language: str = typer.Option("en", "--language"),
    difficulty: str = typer.Option("medium", "--difficulty"),
) -> None:
    if character_file is not None:
        draft = json.loads(character_file.read_text())
    else:
        resp = request("POST", f"{API_PREFIX}/characters/generate", json_body={"genre": genre})
        draft = _handle_response(resp, "character generate")
        if draft is None:
            return
        problems = draft.pop("problems", [])
        if problems:
            typer.echo(f"generated character rejected: {'; '.join(problems)}")
            raise typer.Exit(code=1)
        typer.echo(f"playing as {draft.get('name')}")

    payload = {
        "genre": genre,
        "character": draft,
        "settings": {"imageGenerationFrequency": images, "language": language, "difficulty": difficulty},
    }
    resp = request("POST", f"{API_PREFIX}/sessions", json_body=payload)
    body = _handle_response(resp, "session create")
    if body is None:
        return
    typer.echo(f"session_id: {body.get('id')}")
    _print_session(body, show_all=True)


@session_app.command("get")
def session_get(session_id: str | None = typer.Argument(default=None)) -> None:
    sid = _resolve_session_id(session_id)
    resp = request("GET", f"{API_PREFIX}/sessions/{sid}")
    body = _handle_response(resp, "session get")
    if body is not None:
        _print_session(body, show_all=True)


@app.command()
def invoke(
    aspect: str = typer.Argument(..., help="Aspect name to invoke or un-invoke"),
    session_id: str | None = typer.Option(default=None),
) -> None:
    _session_call("POST", "/invokes", "invoke", session_id, json_body={"aspect_name": aspect})


@app.command()
def act(
    text: str = typer.Argument(..., help="What your character does"),
    skill: str = typer.Option(..., "--skill", help="Skill used for the roll"),
    target: str | None = typer.Option(None, "--target", help="Opponent id"),
    session_id: str | None = typer.Option(default=None),
) -> None:
    payload: dict[str, Any] = {"description": text, "skill_name": skill}
    if target:
        payload["target_opponent_id"] = target
    _session_call("POST", "/actions", "act", session_id, json_body=payload)


@app.command()
def absorb(
    stress_type: str = typer.Option("physical", "--type", help="physical or mental"),
    box: list[int] = typer.Option([], "--box", help="Stress box index to mark; repeatable"),
    severity: str | None = typer.Option(None, "--severity", help="mild, moderate or severe"),
    name: str = typer.Option("", "--name", help="Consequence aspect name"),
    session_id: str | None = typer.Option(default=None),
) -> None:
    payload: dict[str, Any] = {"stressType": stress_type, "markedStressIndices": list(box)}
    if severity:
        payload["newConsequence"] = {"severity": severity, "name": name}
    _session_call("POST", "/hit/absorb", "absorb", session_id, json_body=payload)


@app.command("taken-out")
def taken_out(session_id: str | None = typer.Option(default=None)) -> None:
    _session_call("POST", "/hit/taken-out", "taken-out", session_id)


@app.command()
def concede(session_id: str | None = typer.Option(default=None)) -> None:
    _session_call("POST", "/hit/concede", "concede", session_id)


@compel_app.command("accept")
def compel_accept(session_id: str | None = typer.Option(default=None)) -> None:
    _session_call("POST", "/compel", "compel accept", session_id, json_body={"accept": True})


@compel_app.command("reject")
def compel_reject(session_id: str | None = typer.Option(default=None)) -> None:
    _session_call("POST", "/compel", "compel reject", session_id, json_body={"accept": False})


@app.command()
def settings(
    images: str | None = typer.Option(None, "--images"),
    language: str | None = typer.Option(None, "--language"),
    difficulty: str | None = typer.Option(None, "--difficulty"),
    session_id: str | None = typer.Option(default=None),
) -> None:
    changes = {
        key: value
        for key, value in (("imageGenerationFrequency", images), ("language", language), ("difficulty", difficulty))
        if value is not None
    }
    _session_call("PUT", "/settings", "settings", session_id, json_body={"settings": changes})


@app.command()
def save(
    slot: str | None = typer.Option(None, "--slot"),
    session_id: str | None = typer.Option(default=None),
) -> None:
    sid = _resolve_session_id(session_id)
    resp = request_with_busy_retry("POST", f"{API_PREFIX}/sessions/{sid}/save", json_body={"slot": slot})
    body = _handle_response(resp, "save")
    if body is not None:
        typer.echo(f"saved to slot {body.get('slot')}")


@app.command()
def load(slot: str | None = typer.Option(None, "--slot")) -> None:
    resp = request("POST", f"{API_PREFIX}/saves/load", json_body={"slot": slot})
    body = _handle_response(resp, "load")
    if body is None:
        return
    typer.echo(f"session_id: {body.get('id')}")
    _print_session(body, show_all=True)


if __name__ == "__main__":
    app()
