from __future__ import annotations

from typing import Literal, TypedDict

import httpx

STRICT_SYSTEM_PROMPT = "Return STRICT JSON. No markdown. No explanation."
CHAT_COMPLETIONS_PATH = "/chat/completions"
IMAGE_GENERATIONS_PATH = "/images/generations"
RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "rate limit")


class ChatCompletionMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class LLMCallError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMRateLimitedError(LLMCallError):
    pass


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, LLMRateLimitedError):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def _normalize_messages(messages: list[dict]) -> list[ChatCompletionMessage]:
    normalized: list[ChatCompletionMessage] = []
    for item in messages:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role") or "").strip().lower()
        content = str(item.get("content") or "")
        if role not in {"system", "user", "assistant"}:
            continue
        normalized.append({"role": role, "content": content})
    return normalized


def _prepend_strict_system(messages: list[ChatCompletionMessage]) -> list[ChatCompletionMessage]:
    trimmed = [m for m in messages if not (m["role"] == "system" and m["content"].strip() == STRICT_SYSTEM_PROMPT)]
    return [{"role": "system", "content": STRICT_SYSTEM_PROMPT}, *trimmed]


def _endpoint_url(*, base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _raise_for_status(response: httpx.Response, *, label: str) -> None:
    if response.status_code == 200:
        return
    body = response.text[:300] if response.text else ""
    message = f"{label} non-200: {response.status_code} {body}".strip()
    if response.status_code == 429 or "RESOURCE_EXHAUSTED" in body:
        raise LLMRateLimitedError(message, status_code=response.status_code)
    raise LLMCallError(message, status_code=response.status_code)


async def _post_json(*, api_key: str, endpoint_url: str, payload: dict, timeout_s: float, label: str) -> dict:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)) as client:
            response = await client.post(endpoint_url, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        raise LLMCallError(f"{label} transport error: {exc}") from exc
    _raise_for_status(response, label=label)
    try:
        data = response.json()
    except ValueError as exc:
        raise LLMCallError(f"{label} returned non-json body") from exc
    if not isinstance(data, dict):
        raise LLMCallError(f"{label} returned non-object body")
    return data


def extract_message_content(data: dict) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise LLMCallError("missing choices[0].message.content") from exc
    if not isinstance(content, str) or not content.strip():
        raise LLMCallError("empty model content")
    return content


def extract_image_url(data: dict) -> str:
    try:
        first = data["data"][0]
    except (KeyError, IndexError, TypeError) as exc:
        raise LLMCallError("missing data[0] in image response") from exc
    if isinstance(first, dict):
        b64 = first.get("b64_json")
        if isinstance(b64, str) and b64:
            return f"data:image/png;base64,{b64}"
        url = first.get("url")
        if isinstance(url, str) and url:
            return url
    raise LLMCallError("image response carried neither url nor b64_json")


async def call_chat_completions(
    *,
    api_key: str,
    base_url: str,
    path: str,
    model: str,
    messages: list[dict],
    response_format: dict | None,
    timeout_s: float,
) -> str:
    """One attempt at a JSON chat completion; retry policy belongs to the caller."""
    normalized = _normalize_messages(messages)
    if not normalized:
        normalized = [{"role": "user", "content": ""}]
    payload: dict = {
        "model": model,
        "messages": _prepend_strict_system(normalized),
        "temperature": 0.8,
    }
    if response_format is not None:
        payload["response_format"] = response_format
    data = await _post_json(
        api_key=api_key,
        endpoint_url=_endpoint_url(base_url=base_url, path=path),
        payload=payload,
        timeout_s=timeout_s,
        label="chat/completions",
    )
    return extract_message_content(data)


async def call_image_generation(
    *,
    api_key: str,
    base_url: str,
    model: str,
    prompt: str,
    timeout_s: float,
    size: str = "1792x1024",
) -> str:
    data = await _post_json(
        api_key=api_key,
        endpoint_url=_endpoint_url(base_url=base_url, path=IMAGE_GENERATIONS_PATH),
        payload={"model": model, "prompt": prompt, "n": 1, "size": size},
        timeout_s=timeout_s,
        label="images/generations",
    )
    return extract_image_url(data)
