from __future__ import annotations

import asyncio
import dataclasses
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Set

from .categories import CHAT_RESET_EVENT, critique_kind_for, should_skip
from .common import format_history
from .config import Settings
from .debounce import DebouncedTrigger
from .jobs import JOB_HANDLERS, SYNTHESIS_CHAT_RESET, SYNTHESIS_PERIODIC, JobContext
from .ledger import CallLedger, CallRecord
from .memory.persistence import BlobStore, StatePersister
from .memory.store import MemoryStore
from .prompts.reflection import build_feedback_system_message
from .scheduler import ReflectionScheduler
from .tasks import (
    AssistantResultPayload,
    CallCritiquePayload,
    CompletionFlagAggregator,
    ManualEditPayload,
    ReflectionTask,
    ReportPayload,
    SynthesisPayload,
    TaskKind,
    TaskQueue,
    coerce_payload,
)

logger = logging.getLogger("critique_engine")

NodesAccessor = Callable[[], List[Dict[str, Any]]]
HistoryAccessor = Callable[[], List[Dict[str, Any]]]
MessageSink = Callable[[Dict[str, str]], Any]


class CritiqueGenerator(Protocol):
    async def generate_critique(self, prompt: str, category_hint: str) -> str: ...


class ReflectionEngine:
    """Owns the call ledger, the reflection queue and the critique documents."""

    def __init__(
        self,
        generator: CritiqueGenerator,
        settings: Optional[Settings] = None,
        blob_store: Optional[BlobStore] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.generator = generator
        self.ledger = CallLedger(
            capacity=self.settings.ledger_capacity,
            excerpt_max_chars=self.settings.excerpt_max_chars,
            error_max_chars=self.settings.error_max_chars,
        )
        self.persister = StatePersister(blob_store, self.settings.state_key)
        self.memory = MemoryStore(
            self.ledger,
            self.persister,
            general_max_chars=self.settings.general_memory_max_chars,
        )
        self.trigger = DebouncedTrigger(self._dispatch_pass, self.settings.debounce_ms / 1000.0)
        self.queue = TaskQueue(on_enqueue=lambda _task: self.trigger.request())
        self.flags = CompletionFlagAggregator(self.queue, self._report_payload)
        self.scheduler = ReflectionScheduler(
            self.queue,
            self._run_job,
            on_completed=self.flags.on_reflection_completed,
            request_pass=self.trigger.request,
        )
        self._get_nodes: NodesAccessor = list
        self._get_chat_history: HistoryAccessor = list
        self._emit_message: Optional[MessageSink] = None
        self._delayed: Set[asyncio.TimerHandle] = set()
        self.critique_count = 0
        self.initialized = False

    @property
    def generation(self) -> int:
        return self.scheduler.generation

    async def initialize(
        self,
        get_nodes: Optional[NodesAccessor] = None,
        emit_message: Optional[MessageSink] = None,
        get_chat_history: Optional[HistoryAccessor] = None,
    ) -> None:
        self._get_nodes = get_nodes or list
        self._emit_message = emit_message
        self._get_chat_history = get_chat_history or list
        self.trigger.cancel()
        self._cancel_delayed()
        self.queue.clear()
        self.flags.reset()
        self.scheduler.detach_all()
        await self.memory.load()
        self.initialized = True
        logger.info("[reflection] initialized calls=%s", len(self.ledger))

    # Collaborator access

    def nodes(self) -> List[Dict[str, Any]]:
        try:
            return list(self._get_nodes() or [])
        except Exception:
            logger.exception("[reflection] nodes accessor failed")
            return []

    def chat_history(self) -> List[Dict[str, Any]]:
        try:
            return [dict(item) for item in (self._get_chat_history() or []) if isinstance(item, Mapping)]
        except Exception:
            logger.exception("[reflection] chat history accessor failed")
            return []

    async def generate(self, prompt: str, category_hint: str) -> str:
        return str(await self.generator.generate_critique(prompt, category_hint) or "")

    async def emit(self, message: Dict[str, str]) -> None:
        if self._emit_message is None:
            logger.warning("[reflection.report] no message sink configured, report dropped")
            return
        result = self._emit_message(message)
        if inspect.isawaitable(result):
            await result

    # Call lifecycle

    def begin_call(
        self,
        call_id: str,
        category: str,
        model: str,
        prompt: str,
        chat_history: Optional[List[Dict[str, Any]]] = None,
    ) -> CallRecord:
        record = self.ledger.begin(call_id, category, model, prompt, chat_history=chat_history)
        self._ledger_changed()
        return record

    def finish_call(self, call_id: str, response: str) -> Optional[ReflectionTask]:
        record = self.ledger.finish(call_id, response)
        if record is None:
            return None
        task = self._route_completed(record, response)
        self._ledger_changed()
        return task

    def fail_call(self, call_id: str, error: str) -> None:
        if self.ledger.fail(call_id, error) is not None:
            self._ledger_changed()

    def record_system_event(
        self,
        event_id: str,
        prompt: str,
        response: str,
        category: str = "system_event",
        previous_history: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[ReflectionTask]:
        record = self.ledger.record_external_event(event_id, category, prompt, response)
        task: Optional[ReflectionTask] = None
        if record.category == CHAT_RESET_EVENT and previous_history:
            task = self.enqueue(
                TaskKind.MEMORY_SYNTHESIS,
                SynthesisPayload(
                    reason=SYNTHESIS_CHAT_RESET,
                    details=f"Chat reset event {event_id}: {response}".strip(),
                    history_context=format_history(previous_history, self.settings.reset_history_turns),
                ),
            )
        else:
            task = self._route_completed(record, response)
        self._ledger_changed()
        return task

    def _route_completed(self, record: CallRecord, response: str) -> Optional[ReflectionTask]:
        if should_skip(record.category, self.settings.extra_skip_categories):
            logger.debug("[reflection] call=%s category=%s skipped", record.id, record.category)
            return None
        if not str(response or "").strip():
            logger.debug("[reflection] call=%s finished with empty response, not critiqued", record.id)
            return None
        payload = CallCritiquePayload(
            call_id=record.id,
            category=record.category,
            model=record.model,
            prompt=record.prompt_excerpt,
            response=record.response_excerpt or response,
            chat_history=tuple(
                (str(turn.get("role") or ""), str(turn.get("content") or "")) for turn in record.chat_history or ()
            ),
        )
        return self.queue.enqueue(critique_kind_for(record.category), payload)

    # Queue surface

    def enqueue(
        self,
        kind: TaskKind | str,
        payload: Any = None,
        history_snapshot: Optional[List[Dict[str, Any]]] = None,
    ) -> ReflectionTask:
        task_kind = TaskKind(kind)
        value = coerce_payload(task_kind, payload)
        if history_snapshot is not None:
            turns = (
                self.settings.report_history_turns
                if task_kind == TaskKind.FINAL_REPORT
                else self.settings.task_history_turns
            )
            extra = (self.settings.report_role,) if task_kind == TaskKind.FINAL_REPORT else ()
            value = _with_history(value, format_history(history_snapshot, turns, extra_roles=extra))
        return self.queue.enqueue(task_kind, value)

    def record_manual_edit(self, original: str, edited: str, context: str = "") -> ReflectionTask:
        return self.enqueue(TaskKind.MANUAL_EDIT_CRITIQUE, ManualEditPayload(original, edited, context))

    def record_assistant_result(self, query: str, result: Any) -> ReflectionTask:
        text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, indent=2, default=str)
        return self.enqueue(TaskKind.ASSISTANT_RESULT_CRITIQUE, AssistantResultPayload(query, text))

    def get_pending_task_count(self) -> int:
        return len(self.queue)

    def list_calls(self) -> List[CallRecord]:
        return self.ledger.list()

    def get_critique(self, call_id: str) -> Optional[str]:
        return self.ledger.get_critique(call_id)

    def subscribe_to_ledger(self, listener: Callable[[List[CallRecord]], None]) -> Callable[[], None]:
        return self.ledger.subscribe(listener)

    def clear_calls(self) -> None:
        self.ledger.clear()
        self.persist_state()

    def get_guidance(self, category: str) -> str:
        return self.memory.get_guidance(category)

    def critique_context_json(self) -> str:
        context = {
            "documents": self.memory.documents(),
            "recent_critiques": self.ledger.recent_critiques(self.settings.recent_critique_sample),
        }
        return json.dumps(context, ensure_ascii=False, indent=2)

    def feedback_system_message(self) -> str:
        return build_feedback_system_message(self.critique_context_json())

    # Memory surface

    def export_memory(self) -> Dict[str, Any]:
        return self.memory.export()

    def import_memory(self, snapshot: Mapping[str, Any]) -> None:
        self.memory.import_(snapshot)
        logger.info("[reflection] memory imported calls=%s", len(self.ledger))

    def reset(self) -> None:
        self.trigger.cancel()
        self._cancel_delayed()
        self.queue.clear()
        self.flags.reset()
        self.scheduler.detach_all()
        self.critique_count = 0
        self.memory.reset()

    def persist_state(self) -> None:
        self.memory.save()

    # Scheduling internals

    def note_critique(self) -> None:
        self.critique_count += 1
        every = self.settings.synthesis_every_n_critiques
        if self.critique_count % every == 0:
            self.queue.enqueue(
                TaskKind.MEMORY_SYNTHESIS,
                SynthesisPayload(reason=SYNTHESIS_PERIODIC, details=f"after {self.critique_count} call critiques"),
            )

    def schedule_post_report_synthesis(self, payload: SynthesisPayload) -> None:
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _enqueue() -> None:
            self._delayed.discard(handle)  # type: ignore[arg-type]
            self.queue.enqueue(TaskKind.MEMORY_SYNTHESIS, payload)

        handle = loop.call_later(self.settings.post_report_synthesis_delay_seconds, _enqueue)
        self._delayed.add(handle)

    def _cancel_delayed(self) -> None:
        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()

    def _report_payload(self) -> ReportPayload:
        history = format_history(
            self.chat_history(),
            self.settings.report_history_turns,
            extra_roles=(self.settings.report_role,),
        )
        return ReportPayload(history_context=history)

    def _ledger_changed(self) -> None:
        self.persist_state()
        self.trigger.request()

    def _dispatch_pass(self) -> None:
        self.scheduler.dispatch()

    async def _run_job(self, task: ReflectionTask, generation: int) -> None:
        handler = JOB_HANDLERS[task.kind]
        await handler(JobContext(self, task, generation))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until the queue is empty and no job, pass or delayed synthesis is pending."""

        async def _wait() -> None:
            while True:
                jobs = self.scheduler.running_jobs()
                if jobs:
                    await asyncio.gather(*jobs, return_exceptions=True)
                    continue
                if self.trigger.pending or self._delayed:
                    await asyncio.sleep(self.trigger.delay_seconds or 0.01)
                    continue
                if len(self.queue):
                    if self.scheduler.dispatch() == 0:
                        logger.warning("[reflection] drain stopped with %s undispatchable tasks", len(self.queue))
                        break
                    continue
                break
            await self.persister.flush()

        if timeout is None:
            await _wait()
        else:
            await asyncio.wait_for(_wait(), timeout=timeout)

    async def aclose(self) -> None:
        self.trigger.cancel()
        self._cancel_delayed()
        self.scheduler.cancel_all()
        await self.persister.flush()
        closer = getattr(self.generator, "close", None)
        if callable(closer):
            result = closer()
            if inspect.isawaitable(result):
                await result


def _with_history(payload: Any, history: str) -> Any:
    if getattr(payload, "history_context", ""):
        return payload
    return dataclasses.replace(payload, history_context=history)
