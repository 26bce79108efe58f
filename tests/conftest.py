from __future__ import annotations

from pathlib import Path

import pytest

from fateforge.config import settings
from fateforge.db import session as db_session
from fateforge.db.base import Base
from fateforge.db.models import GameSession, SavedGame  # noqa: F401
from fateforge.modules.llm_boundary.service import image_cooldown


@pytest.fixture(autouse=True)
def _reset_db_and_defaults(tmp_path: Path) -> None:
    settings.llm_api_key = ""
    settings.llm_base_url = "https://api.example.test/v1"
    settings.llm_model = "test-model"
    settings.llm_rate_limit_max_attempts = 3
    settings.image_cooldown_s = 60
    image_cooldown.reset()
    db_session.rebind_engine(f"sqlite+pysqlite:///{tmp_path / 'fateforge_test.db'}")
    Base.metadata.create_all(bind=db_session.engine)
    yield
    image_cooldown.reset()
    Base.metadata.drop_all(bind=db_session.engine)
    db_session.engine.dispose()
