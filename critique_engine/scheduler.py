from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set

from .tasks import NARRATIVE_FAMILY, WORLD_EDIT_FAMILY, ReflectionTask, TaskKind, TaskQueue

logger = logging.getLogger("critique_engine")


class Slot(str, Enum):
    REPORT = "report"
    CHAT_TEXT = "chat_text"
    WORLD_EDIT = "world_edit"
    CALL = "call"


SLOT_BY_KIND: Dict[TaskKind, Slot] = {
    TaskKind.FINAL_REPORT: Slot.REPORT,
    TaskKind.CHAT_TEXT_CRITIQUE: Slot.CHAT_TEXT,
    TaskKind.WORLD_EDIT_CRITIQUE: Slot.WORLD_EDIT,
    TaskKind.CALL_CRITIQUE: Slot.CALL,
}

JobRunner = Callable[[ReflectionTask, int], Awaitable[None]]


class ReflectionScheduler:
    """Admission control for reflection jobs.

    Four dedicated slots hold at most one job each. Every other kind shares a gate
    that opens only while all dedicated slots are idle.
    """

    def __init__(
        self,
        queue: TaskQueue,
        run_job: JobRunner,
        *,
        on_completed: Callable[[TaskKind], None],
        request_pass: Callable[[], None],
    ) -> None:
        self.queue = queue
        self._run_job = run_job
        self._on_completed = on_completed
        self._request_pass = request_pass
        self._slots: Dict[Slot, Optional[asyncio.Task[None]]] = {slot: None for slot in Slot}
        self._other: Set[asyncio.Task[None]] = set()
        self._detached: Set[asyncio.Task[None]] = set()
        self.generation = 0

    def slot_busy(self, slot: Slot) -> bool:
        return self._slots[slot] is not None

    def dedicated_idle(self) -> bool:
        return all(job is None for job in self._slots.values())

    @property
    def in_flight(self) -> int:
        return sum(1 for job in self._slots.values() if job is not None) + len(self._other)

    def running_jobs(self) -> list[asyncio.Task[None]]:
        jobs = [job for job in self._slots.values() if job is not None]
        return jobs + list(self._other) + list(self._detached)

    def dispatch(self) -> int:
        """Run one admission pass; return how many jobs were launched."""
        launched = 0
        queue = self.queue

        head = queue.head()
        if not self.slot_busy(Slot.REPORT) and head is not None and head.kind == TaskKind.FINAL_REPORT:
            self._launch(Slot.REPORT, queue.pop_head())
            launched += 1

        head = queue.head()
        if not self.slot_busy(Slot.CHAT_TEXT) and head is not None and head.kind == TaskKind.CHAT_TEXT_CRITIQUE:
            self._launch(Slot.CHAT_TEXT, queue.pop_head())
            launched += 1

        if not self.slot_busy(Slot.WORLD_EDIT):
            # This kind gates the end-of-turn report, so it may overtake anything queued before it.
            task = queue.dequeue_first_matching(lambda item: item.kind == TaskKind.WORLD_EDIT_CRITIQUE)
            if task is not None:
                self._launch(Slot.WORLD_EDIT, task)
                launched += 1

        head = queue.head()
        if not self.slot_busy(Slot.CALL) and head is not None and head.kind == TaskKind.CALL_CRITIQUE:
            self._launch(Slot.CALL, queue.pop_head())
            launched += 1

        head = queue.head()
        if head is not None and head.kind not in SLOT_BY_KIND and self.dedicated_idle():
            self._launch(None, queue.pop_head())
            launched += 1

        if not launched and len(queue):
            head = queue.head()
            logger.debug(
                "[reflection.dispatch] waiting head=%s pending=%s in_flight=%s",
                head.kind.value if head else None,
                len(queue),
                self.in_flight,
            )
        return launched

    def _launch(self, slot: Optional[Slot], task: Optional[ReflectionTask]) -> None:
        if task is None:
            return
        loop = asyncio.get_running_loop()
        job = loop.create_task(self._run(slot, task, self.generation), name=f"reflection-{task.kind.value}-{task.id}")
        if slot is None:
            self._other.add(job)
        else:
            self._slots[slot] = job
        logger.info(
            "[reflection.dispatch] launched task=%s kind=%s slot=%s pending=%s",
            task.id,
            task.kind.value,
            slot.value if slot else "other",
            len(self.queue),
        )

    async def _run(self, slot: Optional[Slot], task: ReflectionTask, generation: int) -> None:
        try:
            await self._run_job(task, generation)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[reflection.job] task=%s kind=%s failed", task.id, task.kind.value)
        finally:
            current = asyncio.current_task()
            if slot is not None and self._slots[slot] is current:
                self._slots[slot] = None
            self._other.discard(current)  # type: ignore[arg-type]
            self._detached.discard(current)  # type: ignore[arg-type]
            if generation == self.generation:
                if task.kind in NARRATIVE_FAMILY or task.kind in WORLD_EDIT_FAMILY:
                    self._on_completed(task.kind)
                self._request_pass()
            logger.debug("[reflection.job] task=%s kind=%s completed", task.id, task.kind.value)

    def detach_all(self) -> None:
        """Forget in-flight jobs without cancelling them; they finish against a stale generation."""
        self.generation += 1
        for slot, job in self._slots.items():
            if job is not None:
                self._detached.add(job)
            self._slots[slot] = None
        self._detached.update(self._other)
        self._other.clear()

    def cancel_all(self) -> None:
        for job in self.running_jobs():
            job.cancel()
