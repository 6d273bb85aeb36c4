from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..common import as_int

logger = logging.getLogger("critique_engine")


@dataclass(frozen=True, slots=True)
class DiffInstruction:
    prev: str
    next: str
    occurrence: int = 1

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> Optional["DiffInstruction"]:
        prev = raw.get("prev_txt", raw.get("prev"))
        nxt = raw.get("next_txt", raw.get("next"))
        if not isinstance(prev, str) or not isinstance(nxt, str):
            return None
        occurrence = as_int(raw.get("occ", raw.get("occurrence", 1)), 1)
        return cls(prev=prev, next=nxt, occurrence=max(1, occurrence))


@dataclass(slots=True)
class DiffResult:
    text: str
    applied: int = 0
    skipped: int = 0


@dataclass(slots=True)
class MemoryUpdate:
    replacement: Optional[str] = None
    diffs: List[DiffInstruction] = field(default_factory=list)
    critique: str = ""
    teaching: Dict[str, str] = field(default_factory=dict)
    evolution: str = ""
    structured: bool = False

    @property
    def has_changes(self) -> bool:
        return self.replacement is not None or bool(self.diffs)


def _find_nth(text: str, needle: str, occurrence: int) -> int:
    index = -1
    start = 0
    for _ in range(occurrence):
        index = text.find(needle, start)
        if index < 0:
            return -1
        start = index + len(needle)
    return index


def apply_diff_instructions(text: str, instructions: Iterable[DiffInstruction], *, label: str = "") -> DiffResult:
    result = DiffResult(text=str(text or ""))
    for position, instruction in enumerate(instructions, start=1):
        if instruction.prev == "":
            if not instruction.next:
                result.skipped += 1
                continue
            separator = "\n" if result.text and not result.text.endswith("\n") else ""
            result.text = f"{result.text}{separator}{instruction.next}"
            result.applied += 1
            continue
        index = _find_nth(result.text, instruction.prev, instruction.occurrence)
        if index < 0:
            result.skipped += 1
            logger.info(
                "[memory.diff] doc=%s instruction=%s skipped: occurrence %s of %r not found",
                label or "?",
                position,
                instruction.occurrence,
                instruction.prev[:80],
            )
            continue
        result.text = result.text[:index] + instruction.next + result.text[index + len(instruction.prev) :]
        result.applied += 1
    return result


def strip_json_fences(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = re.sub(r"<think>.*?</think>\s*", "", cleaned, flags=re.IGNORECASE | re.DOTALL).strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
        cleaned = re.sub(r"```$", "", cleaned).strip()
    if not cleaned.startswith("{"):
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start >= 0 and end > start:
            cleaned = cleaned[start : end + 1].strip()
    return cleaned


def _parse_diff_block(block: Any) -> Tuple[Optional[str], List[DiffInstruction]]:
    if not isinstance(block, Mapping):
        return None, []
    replacement = block.get("rpl")
    if isinstance(replacement, str) and replacement.strip():
        return replacement, []
    diffs: List[DiffInstruction] = []
    raw_list = block.get("df")
    if isinstance(raw_list, list):
        for item in raw_list:
            if isinstance(item, Mapping):
                instruction = DiffInstruction.from_mapping(item)
                if instruction is not None:
                    diffs.append(instruction)
    return None, diffs


def _parse_teaching(raw: Any) -> Dict[str, str]:
    if isinstance(raw, str) and raw.strip():
        return {"general": raw.strip()}
    if not isinstance(raw, Mapping):
        return {}
    result: Dict[str, str] = {}
    for key, value in raw.items():
        if isinstance(value, str) and value.strip():
            result[str(key)] = value.strip()
        elif isinstance(value, (dict, list)):
            result[str(key)] = json.dumps(value, ensure_ascii=False)
    return result


def parse_memory_update(raw_text: str) -> MemoryUpdate:
    """Parse a structured memory-update reply.

    Anything that is not a JSON object carrying usable instructions degrades to a
    full replacement with the cleaned text.
    """
    cleaned = strip_json_fences(raw_text)
    fallback_text = re.sub(r"<think>.*?</think>\s*", "", str(raw_text or ""), flags=re.IGNORECASE | re.DOTALL).strip()
    try:
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        parsed = None
    if not isinstance(parsed, dict):
        return MemoryUpdate(replacement=fallback_text or None, critique=fallback_text)

    update = MemoryUpdate(structured=True)
    critique = parsed.get("critique")
    if isinstance(critique, str):
        update.critique = critique.strip()
    evolution = parsed.get("evolution")
    if isinstance(evolution, str):
        update.evolution = evolution.strip()
    update.teaching = _parse_teaching(parsed.get("teaching"))
    replacement, diffs = _parse_diff_block(parsed.get("memory_update_diffs"))
    update.replacement = replacement
    update.diffs = diffs

    if not update.has_changes and not update.critique:
        logger.info("[memory.diff] structured reply had no usable instructions; using full text")
        return MemoryUpdate(replacement=fallback_text or None, critique=fallback_text)
    return update
