from __future__ import annotations

import contextlib
import re
from typing import Any, Iterable, Mapping

TRUNCATION_MARKER = " ... [truncated]"

# Roles that carry conversational content worth showing to a critic.
_HISTORY_ROLES = {"user", "assistant", "userMandatoryInstructions"}


def cap_text(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    value = str(text or "")
    if len(value) <= limit:
        return value
    return value[:limit] + marker


def as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        with contextlib.suppress(ValueError):
            return int(value.strip())
    return default


def as_float(value: object, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        with contextlib.suppress(ValueError):
            return float(value.strip())
    return default


def as_str(value: object, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def recent_turns(
    history: Iterable[Mapping[str, Any]] | None,
    assistant_turns: int,
    *,
    extra_roles: Iterable[str] = (),
) -> list[dict[str, str]]:
    """Return the tail of ``history`` that covers the last ``assistant_turns`` assistant replies."""
    turns = [dict(item) for item in (history or []) if isinstance(item, Mapping)]
    if not turns or assistant_turns <= 0:
        return []
    start_index = 0
    seen = 0
    for index in range(len(turns) - 1, -1, -1):
        if str(turns[index].get("role") or "") == "assistant":
            seen += 1
            if seen == assistant_turns:
                start_index = index
                break
    allowed = _HISTORY_ROLES | set(extra_roles)
    return [
        {"role": str(turn.get("role") or ""), "content": str(turn.get("content") or "")}
        for turn in turns[start_index:]
        if str(turn.get("role") or "") in allowed
    ]


def format_history(
    history: Iterable[Mapping[str, Any]] | None,
    assistant_turns: int,
    *,
    extra_roles: Iterable[str] = (),
) -> str:
    if not history:
        return "(No chat history available)"
    turns = recent_turns(history, assistant_turns, extra_roles=extra_roles)
    if not turns:
        return f"(No relevant chat history for the last {assistant_turns} turns)"
    return "\n".join(f"{turn['role']}: {turn['content']}" for turn in turns)


def format_report(text: str) -> str:
    """Lay a generated report out as readable sections or bullet paragraphs."""
    cleaned = str(text or "").strip()
    sections = [part.strip() for part in re.split(r"(?=^#+\s+)", cleaned, flags=re.MULTILINE) if part.strip()]
    if len(sections) > 1:
        return "\n\n".join(sections)
    paragraphs = [part.strip() for part in re.split(r"\n+", cleaned) if part.strip()]
    if len(paragraphs) > 1:
        lines: list[str] = []
        for para in paragraphs:
            if para[:1].isupper() and len(para) < 100 and not para.startswith(("-", "*")):
                lines.append(f"- {para}")
            else:
                lines.append(para)
        return "\n\n".join(lines)
    return cleaned
