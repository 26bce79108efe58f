from __future__ import annotations

import gc
import json

import pytest
from fastapi.testclient import TestClient

from fateforge.config import settings
from fateforge.main import app
from fateforge.modules.game import service as game_service
from fateforge.modules.llm_boundary import service as llm_service
from fateforge.modules.llm_boundary.client import LLMCallError
from tests.support.fate_factory import character_draft

API = "/api/v1"


def _client() -> TestClient:
    return TestClient(app)


def _start(client: TestClient, **game_settings) -> dict:
    resp = client.post(
        f"{API}/sessions",
        json={
            "genre": "gothic horror",
            "character": character_draft(),
            "settings": {"imageGenerationFrequency": "none", **game_settings},
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _script_generator(monkeypatch: pytest.MonkeyPatch, outcomes: list[object]) -> list[dict]:
    """Switch to real mode with canned generator replies, one per call."""
    calls: list[dict] = []

    async def _fake_call(**kwargs):
        calls.append(kwargs)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome if isinstance(outcome, str) else json.dumps(outcome)

    settings.llm_api_key = "test-key"
    monkeypatch.setattr(llm_service, "call_chat_completions", _fake_call)
    monkeypatch.setattr(llm_service.time, "sleep", lambda _s: None)
    return calls


def _act(client: TestClient, session_id: str, *, skill: str = "Fight", dice=(1, 1, 0, -1)):
    return client.post(
        f"{API}/sessions/{session_id}/actions",
        json={"description": "I wade toward the ghoul, blade raised", "skill_name": skill, "dice": list(dice)},
    )


def _log(body: dict) -> list[dict]:
    return body["state"]["storyLog"]


def _transition(narration: str) -> dict:
    return {
        "narration": narration,
        "newScene": {"description": "A chapel at dawn.", "aspects": [{"name": "Cold Pews"}]},
        "imagePrompt": None,
    }


def test_health() -> None:
    resp = _client().get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_character_options_and_generated_character_start_a_game() -> None:
    client = _client()
    options = client.post(f"{API}/character-options", json={"genre": "gothic horror"})
    assert options.status_code == 200
    assert len(options.json()["aspects"]["highConcepts"]) == 5

    generated = client.post(f"{API}/characters/generate", json={"genre": "gothic horror"})
    assert generated.status_code == 200
    draft = generated.json()
    assert draft.pop("problems") == []

    resp = client.post(f"{API}/sessions", json={"genre": "gothic horror", "character": draft})
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["state"]["character"]["fatePoints"] == 3
    assert _log(body)[0]["type"] == "narration"
    assert body["actions_enabled"] is True
    assert body["settings"]["imageGenerationFrequency"] == "sometimes"


def test_invalid_character_is_rejected() -> None:
    draft = character_draft(skills={"Fight": 4, "Shoot": 4})
    resp = _client().post(f"{API}/sessions", json={"genre": "noir", "character": draft})
    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail["code"] == "INVALID_CHARACTER"
    assert any("+4" in problem for problem in detail["problems"])


def test_unknown_session_is_404() -> None:
    resp = _client().get(f"{API}/sessions/missing")
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "NOT_FOUND"


def test_invoke_then_act_spends_the_bonus() -> None:
    client = _client()
    session = _start(client)
    sid = session["id"]

    invoked = client.post(f"{API}/sessions/{sid}/invokes", json={"aspect_name": "Disgraced Lantern Knight"})
    assert invoked.status_code == 200
    assert invoked.json()["state"]["character"]["fatePoints"] == 2
    assert invoked.json()["invocation_bonus"] == 2

    unknown = client.post(f"{API}/sessions/{sid}/invokes", json={"aspect_name": "Nowhere"})
    assert unknown.status_code == 409
    assert unknown.json()["detail"]["code"] == "UNKNOWN_ASPECT"

    resp = _act(client, sid)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["dice"] == [1, 1, 0, -1]
    assert body["total"] == 1 + 4 + 2
    assert body["staged_invokes"] == []
    assert body["turn_count"] == 1
    assert [entry["type"] for entry in _log(body)[-3:]] == ["action", "roll", "narration"]
    assert _log(body)[-2]["content"] == "Roll: +1 + Skill: 4 + Invokes: 2 = Total: 7"
    assert body["narration_entry_id"] == _log(body)[-1]["id"]
    assert [entry["id"] for entry in _log(body)] == list(range(len(_log(body))))


def test_bad_action_input_is_rejected() -> None:
    client = _client()
    sid = _start(client)["id"]

    unknown_skill = _act(client, sid, skill="Hacking")
    assert unknown_skill.status_code == 400
    assert unknown_skill.json()["detail"]["code"] == "BAD_REQUEST"

    bad_dice = _act(client, sid, dice=(2, 0, 0, 0))
    assert bad_dice.status_code == 400


def test_hit_absorption_flow(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    _script_generator(
        monkeypatch,
        [
            {
                "narration": "The ghoul rakes you.",
                "hit": {"shifts": 5, "attackDescription": "Ghoul claws", "type": "physical"},
            }
        ],
    )

    body = _act(client, sid).json()
    assert body["pending_hit"] == {
        "hit": {"shifts": 5, "attackDescription": "Ghoul claws", "type": "physical"},
        "phase": "RESOLVING",
        "max_absorption": 14,
    }
    assert body["actions_enabled"] is False

    blocked = _act(client, sid)
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["code"] == "DECISION_PENDING"

    short = client.post(f"{API}/sessions/{sid}/hit/absorb", json={"stressType": "physical", "markedStressIndices": [0]})
    assert short.status_code == 422
    assert short.json()["detail"]["code"] == "UNDER_ABSORBED"

    not_out = client.post(f"{API}/sessions/{sid}/hit/taken-out")
    assert not_out.status_code == 422
    assert not_out.json()["detail"]["code"] == "NOT_TAKEN_OUT"

    absorbed = client.post(
        f"{API}/sessions/{sid}/hit/absorb",
        json={
            "stressType": "physical",
            "markedStressIndices": [0, 1],
            "newConsequence": {"severity": "moderate", "name": "Raked Shoulder"},
        },
    )
    assert absorbed.status_code == 200, absorbed.text
    state = absorbed.json()["state"]
    assert absorbed.json()["pending_hit"] is None
    assert state["character"]["physicalStress"]["marked"] == [True, True]
    assert state["character"]["consequences"][0]["aspect"]["hasFreeInvoke"] is True

    again = client.post(f"{API}/sessions/{sid}/hit/absorb", json={"stressType": "physical", "markedStressIndices": []})
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "NO_PENDING_DECISION"


def test_taken_out_flow(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    _script_generator(
        monkeypatch,
        [
            {"narration": "The crypt collapses.", "hit": {"shifts": 20, "attackDescription": "Falling stone"}},
            _transition("You wake among the pews."),
        ],
    )

    body = _act(client, sid).json()
    assert body["pending_hit"]["phase"] == "TAKEN_OUT"

    refused = client.post(
        f"{API}/sessions/{sid}/hit/absorb",
        json={"stressType": "physical", "markedStressIndices": [0, 1], "newConsequence": {"severity": "severe", "name": "Crushed"}},
    )
    assert refused.status_code == 422
    assert refused.json()["detail"]["code"] == "TAKEN_OUT_ONLY"

    no_concession = client.post(f"{API}/sessions/{sid}/hit/concede")
    assert no_concession.status_code == 422
    assert no_concession.json()["detail"]["code"] == "TAKEN_OUT_ONLY"
    assert client.get(f"{API}/sessions/{sid}").json()["state"]["character"]["fatePoints"] == 3

    resp = client.post(f"{API}/sessions/{sid}/hit/taken-out")
    assert resp.status_code == 200, resp.text
    after = resp.json()
    assert after["pending_hit"] is None
    assert after["state"]["scene"]["description"] == "A chapel at dawn."
    assert after["state"]["character"]["fatePoints"] == 3
    assert [entry["type"] for entry in _log(after)[-2:]] == ["system", "narration"]
    assert _log(after)[-1]["content"] == "You wake among the pews."


def test_concession_flow(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    _script_generator(
        monkeypatch,
        [
            {"narration": "A blow is coming.", "hit": {"shifts": 3, "attackDescription": "Ghoul bite", "type": "mental"}},
            _transition("You retreat with your dignity."),
        ],
    )
    _act(client, sid)

    resp = client.post(f"{API}/sessions/{sid}/hit/concede")
    assert resp.status_code == 200, resp.text
    assert resp.json()["state"]["character"]["fatePoints"] == 4
    assert resp.json()["pending_hit"] is None


def test_failed_transition_keeps_the_pending_hit(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    _script_generator(
        monkeypatch,
        [
            {"narration": "A blow is coming.", "hit": {"shifts": 3, "attackDescription": "Ghoul bite"}},
            LLMCallError("chat/completions non-200: 500", status_code=500),
        ],
    )
    _act(client, sid)

    resp = client.post(f"{API}/sessions/{sid}/hit/concede")
    assert resp.status_code == 503
    session = client.get(f"{API}/sessions/{sid}").json()
    assert session["pending_hit"]["hit"]["shifts"] == 3
    assert _log(session)[-1]["type"] == "error"


def test_compel_flow(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    _script_generator(
        monkeypatch,
        [
            {
                "narration": "A familiar face steps out of the fog.",
                "compel": {
                    "aspect": "Owes the Salt Syndicate",
                    "reason": "The collector wants payment now",
                    "acceptNarration": "You hand over your purse.",
                    "rejectNarration": "You shove past.",
                },
            }
        ],
    )

    body = _act(client, sid).json()
    assert body["pending_compel"]["aspect"] == "Owes the Salt Syndicate"
    assert body["state"]["scene"]["hasOfferedCompel"] is True

    accepted = client.post(f"{API}/sessions/{sid}/compel", json={"accept": True})
    assert accepted.status_code == 200
    assert accepted.json()["state"]["character"]["fatePoints"] == 4
    assert _log(accepted.json())[-1]["content"] == "You hand over your purse."
    assert accepted.json()["pending_compel"] is None

    twice = client.post(f"{API}/sessions/{sid}/compel", json={"accept": False})
    assert twice.status_code == 409


def test_generator_failure_keeps_state_and_staged_invokes(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    client.post(f"{API}/sessions/{sid}/invokes", json={"aspect_name": "Rain-Slick Cobblestones"})
    before = client.get(f"{API}/sessions/{sid}").json()
    _script_generator(monkeypatch, [LLMCallError("chat/completions non-200: 500", status_code=500)])

    resp = _act(client, sid)
    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "LLM_UNAVAILABLE"

    after = client.get(f"{API}/sessions/{sid}").json()
    assert _log(after)[:-1] == _log(before)
    assert _log(after)[-1]["type"] == "error"
    assert after["staged_invokes"] == before["staged_invokes"]
    assert after["state"]["character"] == before["state"]["character"]
    assert after["turn_count"] == 0


def test_unparseable_generator_reply_is_502(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    _script_generator(monkeypatch, ["this is not json at all"])

    resp = _act(client, sid)
    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "PAYLOAD_INVALID"


def test_overflowing_hit_shifts_are_repaired(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    sid = _start(client)["id"]
    _script_generator(monkeypatch, ['{"narration": "A blow.", "hit": {"shifts": 1e999, "attackDescription": "Falling stone"}}'])

    resp = _act(client, sid)
    assert resp.status_code == 200, resp.text
    assert resp.json()["pending_hit"]["hit"]["shifts"] == 1
    assert resp.json()["pending_hit"]["phase"] == "RESOLVING"


def test_concurrent_request_is_refused_as_busy() -> None:
    client = _client()
    sid = _start(client)["id"]
    lock = game_service._lock_for(sid)
    lock.acquire()
    try:
        resp = _act(client, sid)
    finally:
        lock.release()
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "GAME_BUSY"


def test_session_lock_is_released_after_the_request() -> None:
    client = _client()
    sid = _start(client)["id"]
    held = game_service._lock_for(sid)
    assert game_service._session_locks.get(sid) is held
    del held

    assert _act(client, sid).status_code == 200
    gc.collect()
    assert sid not in game_service._session_locks


def test_background_image_patches_the_narration(monkeypatch: pytest.MonkeyPatch) -> None:
    prompts: list[str] = []

    def _fake_image(self, prompt: str) -> str:
        prompts.append(prompt)
        return f"https://img.example/{len(prompts)}.png"

    monkeypatch.setattr(llm_service.GenerativeBackend, "generate_image", _fake_image)
    client = _client()
    session = _start(client, imageGenerationFrequency="always")
    assert session["state"]["scene"]["imageUrl"] == "https://img.example/1.png"

    body = _act(client, session["id"]).json()
    assert _log(body)[-1]["isLoadingImage"] is True

    after = client.get(f"{API}/sessions/{session['id']}").json()
    narration = _log(after)[-1]
    assert narration["isLoadingImage"] is False
    assert narration["imageUrl"] == "https://img.example/2.png"
    assert after["state"]["scene"]["imageUrl"] == "https://img.example/2.png"


def test_image_cooldown_is_reported_in_the_log(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()
    session = _start(client, imageGenerationFrequency="always")
    llm_service.image_cooldown.trip(60)

    _act(client, session["id"])
    after = client.get(f"{API}/sessions/{session['id']}").json()
    assert _log(after)[-1]["type"] == "system"
    assert _log(after)[-2]["isLoadingImage"] is False


def test_settings_update_merges() -> None:
    client = _client()
    sid = _start(client)["id"]
    resp = client.put(f"{API}/sessions/{sid}/settings", json={"settings": {"difficulty": "hard"}})
    assert resp.status_code == 200
    assert resp.json()["settings"] == {"imageGenerationFrequency": "none", "language": "en", "difficulty": "hard"}


def test_save_load_and_delete() -> None:
    client = _client()
    session = _start(client)
    sid = session["id"]

    assert client.get(f"{API}/saves").json() == {"slot": "default", "exists": False}
    saved = client.post(f"{API}/sessions/{sid}/save", json={"slot": "chapter-1"})
    assert saved.json() == {"slot": "chapter-1", "exists": True}
    assert client.get(f"{API}/saves", params={"slot": "chapter-1"}).json()["exists"] is True

    loaded = client.post(f"{API}/saves/load", json={"slot": "chapter-1"})
    assert loaded.status_code == 201
    assert loaded.json()["id"] != sid
    assert loaded.json()["state"] == session["state"]
    assert loaded.json()["settings"]["imageGenerationFrequency"] == "none"

    deleted = client.delete(f"{API}/saves", params={"slot": "chapter-1"})
    assert deleted.json() == {"slot": "chapter-1", "exists": False}
    missing = client.post(f"{API}/saves/load", json={"slot": "chapter-1"})
    assert missing.status_code == 404
