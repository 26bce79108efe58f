from __future__ import annotations

from fateforge.modules.rules.schemas import GameState, LogEntryType, StoryLogEntry

SCENE_CHANGED_MESSAGE = "The scene has changed. Your stress and consequences have been cleared."


def next_entry_id(log: list[StoryLogEntry]) -> int:
    return max((entry.id for entry in log), default=-1) + 1


def push_entry(
    log: list[StoryLogEntry],
    entry_type: LogEntryType,
    content: str,
    *,
    is_loading_image: bool = False,
) -> StoryLogEntry:
    """Append to a working copy of a log and return the new entry."""
    entry = StoryLogEntry(
        id=next_entry_id(log),
        type=entry_type,
        content=content,
        is_loading_image=is_loading_image,
    )
    log.append(entry)
    return entry


def append_entries(state: GameState, *entries: tuple[LogEntryType, str]) -> GameState:
    working = state.model_copy(deep=True)
    for entry_type, content in entries:
        push_entry(working.story_log, entry_type, content)
    return working


def append_error(state: GameState, message: str) -> GameState:
    return append_entries(state, ("error", message))
