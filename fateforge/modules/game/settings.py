from __future__ import annotations

from typing import Literal

from fateforge.modules.rules.schemas import FateModel

ImageFrequency = Literal["none", "rarely", "sometimes", "always"]
Language = Literal["en", "es"]
Difficulty = Literal["easy", "medium", "hard"]

_FREQUENCIES = ("none", "rarely", "sometimes", "always")
_DIFFICULTIES = ("easy", "medium", "hard")


class GameSettings(FateModel):
    image_generation_frequency: ImageFrequency = "sometimes"
    language: Language = "en"
    difficulty: Difficulty = "medium"

    @property
    def images_enabled(self) -> bool:
        return self.image_generation_frequency != "none"


def normalize_settings(raw: object) -> GameSettings:
    """Read stored or client-supplied settings, including the old boolean image toggle."""
    data = raw if isinstance(raw, dict) else {}

    frequency = data.get("imageGenerationFrequency", data.get("image_generation_frequency"))
    if frequency not in _FREQUENCIES:
        legacy = data.get("enableImageGeneration")
        if isinstance(legacy, bool):
            frequency = "sometimes" if legacy else "none"
        else:
            frequency = "sometimes"

    language = "es" if data.get("language") == "es" else "en"
    difficulty = data.get("difficulty") if data.get("difficulty") in _DIFFICULTIES else "medium"
    return GameSettings(image_generation_frequency=frequency, language=language, difficulty=difficulty)
