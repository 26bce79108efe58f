from __future__ import annotations

import pytest

from fateforge.modules.llm_boundary.errors import (
    GRAMMAR_JSON_PARSE,
    GRAMMAR_MODEL_VALIDATE,
    GRAMMAR_OUTPUT_SHAPE,
    GRAMMAR_SCHEMA_VALIDATE,
    GrammarCheckError,
)
from fateforge.modules.llm_boundary.grammarcheck import (
    PayloadInvalid,
    PayloadOk,
    parse_structured_payload,
    repair_json_text,
    sanitize_raw_snippet,
    strip_code_fence,
)
from fateforge.modules.llm_boundary.schemas import (
    CHARACTER_OPTIONS_SCHEMA,
    SCENE_TRANSITION_SCHEMA,
    TURN_RESOLUTION_SCHEMA,
    CharacterOptionsPayload,
    SceneTransitionPayload,
    TurnResolutionPayload,
)


def test_strip_code_fence() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('  {"a": 1} ') == '{"a": 1}'


def test_repair_restores_missing_object_brace() -> None:
    broken = '{"stunts": [{"name": "A", "description": "x"},"name": "B", "description": "y"}]}'
    repaired = repair_json_text(broken)
    assert [item["name"] for item in repaired["stunts"]] == ["A", "B"]


def test_repair_slices_json_out_of_chatter() -> None:
    assert repair_json_text('Sure! Here it is: {"narration": "ok"} Enjoy.') == {"narration": "ok"}


def test_repair_gives_up_on_garbage() -> None:
    with pytest.raises(GrammarCheckError) as exc:
        repair_json_text('{"narration":')
    assert exc.value.error_kind == GRAMMAR_JSON_PARSE


def test_sanitize_raw_snippet_redacts_keys() -> None:
    snippet = sanitize_raw_snippet("token sk-abcdefghijklmnop leaked")
    assert "[REDACTED_KEY]" in snippet
    assert sanitize_raw_snippet("   ") is None


def test_turn_payload_parses_into_ok_variant() -> None:
    raw = (
        '{"narration": "The ghoul reels.", "imagePrompt": "", "hit": null, "compel": {"reason": "no aspect"},'
        ' "newSceneAspect": {"name": ""}, "removedSceneAspects": null, "usedFreeInvokes": ["Winded", " "]}'
    )
    result = parse_structured_payload(raw, schema=TURN_RESOLUTION_SCHEMA, model=TurnResolutionPayload)

    assert isinstance(result, PayloadOk)
    payload = result.value
    assert payload.narration == "The ghoul reels."
    assert payload.image_prompt is None
    assert payload.compel is None
    assert payload.new_scene_aspect is None
    assert payload.removed_scene_aspects == []
    assert payload.used_free_invokes == ["Winded"]


def test_schema_violation_is_invalid_variant() -> None:
    result = parse_structured_payload('{"imagePrompt": "x"}', schema=TURN_RESOLUTION_SCHEMA, model=TurnResolutionPayload)
    assert isinstance(result, PayloadInvalid)
    assert result.error_kind == GRAMMAR_SCHEMA_VALIDATE


def test_non_object_is_invalid_variant() -> None:
    result = parse_structured_payload("[1, 2]", schema=TURN_RESOLUTION_SCHEMA, model=TurnResolutionPayload)
    assert isinstance(result, PayloadInvalid)
    assert result.error_kind == GRAMMAR_OUTPUT_SHAPE


def test_model_rejection_is_invalid_variant() -> None:
    raw = {"aspects": {"highConcepts": [], "troubles": [], "others": []}, "stunts": []}
    result = parse_structured_payload(raw, schema=CHARACTER_OPTIONS_SCHEMA, model=CharacterOptionsPayload)
    assert isinstance(result, PayloadInvalid)
    assert result.error_kind == GRAMMAR_MODEL_VALIDATE
    assert "aspects" in result.message


def test_scene_transition_requires_new_scene() -> None:
    result = parse_structured_payload(
        '{"narration": "Darkness."}', schema=SCENE_TRANSITION_SCHEMA, model=SceneTransitionPayload
    )
    assert isinstance(result, PayloadInvalid)
    assert result.error_kind == GRAMMAR_SCHEMA_VALIDATE
