import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from fateforge.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class GameSession(Base):
    """One live game: the persisted GameState plus the decision currently awaiting the player."""

    __tablename__ = "game_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    genre: Mapped[str] = mapped_column(String(120), default="")
    state_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    settings_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    staged_invokes: Mapped[list] = mapped_column(JSONType, default=list)
    pending_hit: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    pending_compel: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    turn_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, index=True)


class SavedGame(Base):
    __tablename__ = "saved_games"

    slot: Mapped[str] = mapped_column(String(64), primary_key=True)
    state_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    settings_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    saved_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
