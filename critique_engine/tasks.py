from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger("critique_engine")


class TaskKind(str, Enum):
    CALL_CRITIQUE = "call_critique"
    CHAT_TEXT_CRITIQUE = "chat_text_critique"
    WORLD_EDIT_CRITIQUE = "world_edit_critique"
    MANUAL_EDIT_CRITIQUE = "manual_edit_critique"
    ASSISTANT_RESULT_CRITIQUE = "assistant_result_critique"
    MEMORY_SYNTHESIS = "memory_synthesis"
    FINAL_REPORT = "final_report"


WORLD_EDIT_FAMILY = frozenset({TaskKind.WORLD_EDIT_CRITIQUE})
NARRATIVE_FAMILY = frozenset({TaskKind.CHAT_TEXT_CRITIQUE})


@dataclass(frozen=True, slots=True)
class CallCritiquePayload:
    call_id: str
    category: str
    model: str
    prompt: str
    response: str
    chat_history: Tuple[Tuple[str, str], ...] = ()
    history_context: str = ""


@dataclass(frozen=True, slots=True)
class ManualEditPayload:
    original: str
    edited: str
    edit_context: str = ""
    history_context: str = ""


@dataclass(frozen=True, slots=True)
class AssistantResultPayload:
    query: str
    result: str
    history_context: str = ""


@dataclass(frozen=True, slots=True)
class SynthesisPayload:
    reason: str = "periodic"
    details: str = ""
    report_context: str = ""
    history_context: str = ""


@dataclass(frozen=True, slots=True)
class ReportPayload:
    history_context: str = ""


PAYLOAD_TYPES: Dict[TaskKind, type] = {
    TaskKind.CALL_CRITIQUE: CallCritiquePayload,
    TaskKind.CHAT_TEXT_CRITIQUE: CallCritiquePayload,
    TaskKind.WORLD_EDIT_CRITIQUE: CallCritiquePayload,
    TaskKind.MANUAL_EDIT_CRITIQUE: ManualEditPayload,
    TaskKind.ASSISTANT_RESULT_CRITIQUE: AssistantResultPayload,
    TaskKind.MEMORY_SYNTHESIS: SynthesisPayload,
    TaskKind.FINAL_REPORT: ReportPayload,
}


def coerce_payload(kind: TaskKind, payload: Any) -> Any:
    """Turn a mapping into the payload dataclass for ``kind``; reject anything else that does not match."""
    expected = PAYLOAD_TYPES[kind]
    if payload is None and kind in {TaskKind.MEMORY_SYNTHESIS, TaskKind.FINAL_REPORT}:
        return expected()
    if isinstance(payload, Mapping):
        known = {item.name for item in fields(expected)}
        values = {key: value for key, value in payload.items() if key in known}
        if "chat_history" in values:
            values["chat_history"] = _history_tuple(values["chat_history"])
        try:
            return expected(**values)
        except TypeError as exc:
            raise TypeError(f"Invalid payload for {kind.value}: {exc}") from exc
    if not isinstance(payload, expected):
        raise TypeError(f"{kind.value} expects {expected.__name__}, got {type(payload).__name__}")
    return payload


def _history_tuple(raw: Any) -> Tuple[Tuple[str, str], ...]:
    turns: List[Tuple[str, str]] = []
    for item in raw or ():
        if isinstance(item, Mapping):
            turns.append((str(item.get("role") or ""), str(item.get("content") or "")))
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            turns.append((str(item[0]), str(item[1])))
    return tuple(turns)


@dataclass(frozen=True, slots=True)
class ReflectionTask:
    id: int
    kind: TaskKind
    payload: Any
    enqueued_at: float


@dataclass(slots=True)
class TaskQueue:
    on_enqueue: Optional[Callable[[ReflectionTask], None]] = None
    clock: Callable[[], float] = time.time
    _items: List[ReflectionTask] = field(default_factory=list)
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ReflectionTask]:
        return iter(list(self._items))

    def enqueue(self, kind: TaskKind | str, payload: Any = None) -> ReflectionTask:
        task_kind = TaskKind(kind)
        task = ReflectionTask(
            id=next(self._ids),
            kind=task_kind,
            payload=coerce_payload(task_kind, payload),
            enqueued_at=self.clock(),
        )
        self._items.append(task)
        logger.debug("[reflection.queue] enqueued id=%s kind=%s pending=%s", task.id, task_kind.value, len(self._items))
        if self.on_enqueue is not None:
            self.on_enqueue(task)
        return task

    def head(self) -> Optional[ReflectionTask]:
        return self._items[0] if self._items else None

    def pop_head(self) -> Optional[ReflectionTask]:
        return self._items.pop(0) if self._items else None

    def dequeue_first_matching(self, predicate: Callable[[ReflectionTask], bool]) -> Optional[ReflectionTask]:
        for index, task in enumerate(self._items):
            if predicate(task):
                return self._items.pop(index)
        return None

    def has_kind(self, kind: TaskKind) -> bool:
        return any(task.kind == kind for task in self._items)

    def clear(self) -> None:
        self._items.clear()


@dataclass(slots=True)
class CompletionFlagAggregator:
    """Joins the narrative and world-edit reflection streams into one report task.

    Read-modify-write without a lock: every call happens on the event loop thread
    between awaits.
    """

    queue: TaskQueue
    report_payload_factory: Callable[[], ReportPayload] = ReportPayload
    world_edit_done: bool = False
    narrative_done: bool = False

    def on_reflection_completed(self, kind: TaskKind) -> Optional[ReflectionTask]:
        if kind in WORLD_EDIT_FAMILY:
            self.world_edit_done = True
        elif kind in NARRATIVE_FAMILY:
            self.narrative_done = True
        else:
            return None
        if not (self.world_edit_done and self.narrative_done):
            return None
        task: Optional[ReflectionTask] = None
        if not self.queue.has_kind(TaskKind.FINAL_REPORT):
            task = self.queue.enqueue(TaskKind.FINAL_REPORT, self.report_payload_factory())
            logger.info("[reflection.flags] both streams done, report task=%s", task.id)
        self.world_edit_done = False
        self.narrative_done = False
        return task

    def reset(self) -> None:
        self.world_edit_done = False
        self.narrative_done = False
