from __future__ import annotations

from typing import Iterable

from .tasks import TaskKind

CHAT_TEXT_CATEGORIES = frozenset({"chat_text", "chat_text_generation"})
WORLD_EDIT_CATEGORIES = frozenset({"world_edit", "node_edition_json", "node_edition_yaml"})

IMAGE_PROMPT_CATEGORIES = frozenset(
    {"image_prompt", "image_prompt_generation", "image_generation", "image_generation_novelai"}
)
ACTION_LIST_CATEGORIES = frozenset({"action_list", "action_generation"})

# Conversation bookkeeping events: logged in the ledger, never critiqued.
SYSTEM_EVENT_CATEGORIES = frozenset(
    {
        "story_refocus_event",
        "chat_reset_event",
        "assistant_message_edit_event",
        "chat_regenerate_event",
        "chat_input_regenerate_event",
        "refocus_story_generation",
    }
)

CHAT_RESET_EVENT = "chat_reset_event"

# Every call the engine makes on its own behalf is tagged with this prefix.
INTERNAL_PREFIX = "reflection_"

SKIP_CATEGORIES = IMAGE_PROMPT_CATEGORIES | ACTION_LIST_CATEGORIES | SYSTEM_EVENT_CATEGORIES


def is_internal(category: str) -> bool:
    return str(category or "").strip().startswith(INTERNAL_PREFIX)


def should_skip(category: str, extra: Iterable[str] = ()) -> bool:
    name = str(category or "").strip()
    if not name:
        return False
    return name in SKIP_CATEGORIES or name in set(extra) or is_internal(name)


def critique_kind_for(category: str) -> TaskKind:
    name = str(category or "").strip()
    if name in CHAT_TEXT_CATEGORIES:
        return TaskKind.CHAT_TEXT_CRITIQUE
    if name in WORLD_EDIT_CATEGORIES:
        return TaskKind.WORLD_EDIT_CRITIQUE
    return TaskKind.CALL_CRITIQUE


def internal_category(name: str) -> str:
    return f"{INTERNAL_PREFIX}{name}"
