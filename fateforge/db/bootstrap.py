from fateforge.db import session as db_session
from fateforge.db.base import Base
from fateforge.db.models import GameSession, SavedGame  # noqa: F401


def init_db() -> None:
    Base.metadata.create_all(bind=db_session.engine)
