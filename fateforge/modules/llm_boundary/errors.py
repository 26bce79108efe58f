from __future__ import annotations

RATE_LIMIT_BUSY_MESSAGE = (
    "The AI service is currently busy or the quota has been exceeded. Please wait a moment and try again."
)
IMAGE_RATE_LIMIT_MESSAGE = (
    "You've exceeded the image generation quota. Image generation will be paused for a minute to cool down."
)
IMAGE_COOLDOWN_MESSAGE = "Image generation is on cooldown due to recent rate limits."


class LLMUnavailableError(RuntimeError):
    """Raised when the generator cannot be reached or keeps refusing for rate limits."""


class PayloadValidationError(RuntimeError):
    """Raised when generator output stays malformed after repair."""

    def __init__(self, message: str, *, error_kind: str, raw_snippet: str | None = None):
        super().__init__(message)
        self.error_kind = error_kind
        self.raw_snippet = raw_snippet


class GrammarCheckError(RuntimeError):
    def __init__(self, message: str, *, error_kind: str, raw_snippet: str | None = None):
        super().__init__(message)
        self.error_kind = error_kind
        self.raw_snippet = raw_snippet


class RateLimitError(RuntimeError):
    """Image generation refused because of quota; the message is safe to show players."""


class ImageGenerationError(RuntimeError):
    pass


GRAMMAR_JSON_PARSE = "GRAMMAR_JSON_PARSE"
GRAMMAR_SCHEMA_VALIDATE = "GRAMMAR_SCHEMA_VALIDATE"
GRAMMAR_OUTPUT_SHAPE = "GRAMMAR_OUTPUT_SHAPE"
GRAMMAR_MODEL_VALIDATE = "GRAMMAR_MODEL_VALIDATE"
