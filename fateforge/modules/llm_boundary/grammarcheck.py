from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Generic, TypeVar

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as JSONSchemaValidationError
from pydantic import BaseModel, ValidationError

from fateforge.modules.llm_boundary.errors import (
    GRAMMAR_JSON_PARSE,
    GRAMMAR_MODEL_VALIDATE,
    GRAMMAR_OUTPUT_SHAPE,
    GRAMMAR_SCHEMA_VALIDATE,
    GrammarCheckError,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

_TOKEN_REDACTION_RE = re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}\b")
_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)
# models sometimes drop the opening brace of the next array object: `},"name":` -> `},{"name":`
_MISSING_BRACE_RE = re.compile(r'(\},)(\s*)("name":)')


@dataclass(frozen=True, slots=True)
class PayloadOk(Generic[ModelT]):
    value: ModelT


@dataclass(frozen=True, slots=True)
class PayloadInvalid:
    error_kind: str
    message: str
    raw_snippet: str | None = None


def sanitize_raw_snippet(raw: object, max_len: int = 240) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        try:
            text = json.dumps(raw, ensure_ascii=False)
        except (TypeError, ValueError):
            text = str(raw)
    else:
        text = str(raw)
    text = _TOKEN_REDACTION_RE.sub("[REDACTED_KEY]", text)
    text = " ".join(text.split())
    if not text:
        return None
    return text[:max_len]


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    fenced = _FENCE_RE.match(stripped)
    if fenced:
        return fenced.group(1).strip()
    return stripped


def extract_json_fragment(raw_text: str) -> str | None:
    left = raw_text.find("{")
    right = raw_text.rfind("}")
    if left == -1 or right == -1 or right <= left:
        return None
    return raw_text[left : right + 1]


def repair_json_text(raw: str) -> object:
    """Decode model output, trying progressively looser readings before giving up."""
    text = strip_code_fence(raw)
    if not text:
        raise GrammarCheckError("empty json content", error_kind=GRAMMAR_JSON_PARSE, raw_snippet=None)

    candidates = [text, _MISSING_BRACE_RE.sub(r"\1\2{\3", text)]
    fragment = extract_json_fragment(text)
    if fragment is not None:
        candidates.append(fragment)

    last_error: json.JSONDecodeError | None = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
    raise GrammarCheckError(
        f"json parse failed: {last_error}",
        error_kind=GRAMMAR_JSON_PARSE,
        raw_snippet=sanitize_raw_snippet(raw),
    )


def validate_schema(payload: object, schema: dict) -> None:
    if not isinstance(schema, dict) or not schema:
        raise GrammarCheckError("schema missing", error_kind=GRAMMAR_SCHEMA_VALIDATE)
    try:
        Draft202012Validator(schema).validate(payload)
    except JSONSchemaValidationError as exc:
        raise GrammarCheckError(
            f"schema validate failed: {exc.message}",
            error_kind=GRAMMAR_SCHEMA_VALIDATE,
            raw_snippet=sanitize_raw_snippet(payload),
        ) from exc


def ensure_object(payload: object) -> dict:
    if not isinstance(payload, dict):
        raise GrammarCheckError(
            "top-level output must be object",
            error_kind=GRAMMAR_OUTPUT_SHAPE,
            raw_snippet=sanitize_raw_snippet(payload),
        )
    return payload


def parse_structured_payload(
    raw: object,
    *,
    schema: dict,
    model: type[ModelT],
) -> PayloadOk[ModelT] | PayloadInvalid:
    """Turn raw generator output into a typed payload, or a PayloadInvalid describing why not."""
    try:
        decoded = repair_json_text(raw) if isinstance(raw, str) else raw
        payload = ensure_object(decoded)
        validate_schema(payload, schema)
    except GrammarCheckError as exc:
        return PayloadInvalid(error_kind=exc.error_kind, message=str(exc), raw_snippet=exc.raw_snippet)

    try:
        return PayloadOk(value=model.model_validate(payload))
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        return PayloadInvalid(
            error_kind=GRAMMAR_MODEL_VALIDATE,
            message=f"payload rejected at {location or '<root>'}: {first.get('msg', str(exc))}",
            raw_snippet=sanitize_raw_snippet(payload),
        )
