from __future__ import annotations

from fateforge.db import session as db_session
from fateforge.db.models import SavedGame
from fateforge.modules.game.settings import GameSettings, normalize_settings
from fateforge.modules.persistence.service import SqlGameStateStore, structural_problems, validate_saved_state
from tests.support.fate_factory import make_state


def test_save_load_and_clear_slot() -> None:
    state = make_state()
    with db_session.SessionLocal() as db:
        store = SqlGameStateStore(db, slot="alpha")
        assert store.exists() is False
        assert store.load() is None

        store.save(state, game_settings=GameSettings(language="es"))
        assert store.exists() is True
        loaded = store.load()
        assert loaded.to_json() == state.to_json()
        assert store.load_settings().language == "es"

        store.save(state.model_copy(update={"story_log": []}))
        assert store.load().story_log == []
        assert store.load_settings().language == "en"

        store.clear()
        assert store.exists() is False


def test_slots_are_independent() -> None:
    with db_session.SessionLocal() as db:
        SqlGameStateStore(db, slot="one").save(make_state())
        assert SqlGameStateStore(db, slot="two").exists() is False


def test_corrupt_save_is_cleared_on_load() -> None:
    with db_session.SessionLocal() as db:
        db.add(SavedGame(slot="default", state_json={"character": {"name": "Half"}}, settings_json={}))
        db.commit()

        store = SqlGameStateStore(db)
        assert store.load() is None
        assert store.exists() is False


def test_structural_problems_name_what_is_missing() -> None:
    data = make_state().to_json()
    assert structural_problems(data) == []

    data["character"]["physicalStress"] = {"boxes": [1, 2]}
    data["character"]["fatePoints"] = "three"
    del data["storyLog"]
    problems = structural_problems(data)
    assert "storyLog missing" in problems
    assert "character.physicalStress malformed" in problems
    assert "character.fatePoints not a number" in problems
    assert structural_problems([]) == ["state is not an object"]


def test_model_rejection_after_shape_check() -> None:
    data = make_state().to_json()
    data["storyLog"] = [{"id": "x", "type": "poem"}]
    assert validate_saved_state(data) is None


def test_normalize_settings_defaults_and_legacy_toggle() -> None:
    assert normalize_settings(None) == GameSettings()
    assert normalize_settings({"enableImageGeneration": False}).image_generation_frequency == "none"
    assert normalize_settings({"enableImageGeneration": True}).image_generation_frequency == "sometimes"

    explicit = normalize_settings(
        {"imageGenerationFrequency": "always", "language": "es", "difficulty": "hard", "enableImageGeneration": False}
    )
    assert (explicit.image_generation_frequency, explicit.language, explicit.difficulty) == ("always", "es", "hard")
    assert normalize_settings({"language": "fr", "difficulty": "brutal"}).to_json() == {
        "imageGenerationFrequency": "sometimes",
        "language": "en",
        "difficulty": "medium",
    }
    assert GameSettings(image_generation_frequency="none").images_enabled is False
