from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .categories import internal_category
from .common import format_history, format_report
from .memory.diffs import MemoryUpdate, parse_memory_update
from .memory.documents import DocumentName
from .prompts.reflection import (
    build_assistant_result_prompt,
    build_call_critique_prompt,
    build_chat_reset_prompt,
    build_chat_text_critique_prompt,
    build_final_report_prompt,
    build_manual_edit_prompt,
    build_synthesis_prompt,
    build_world_edit_critique_prompt,
    format_nodes,
    format_recent_critiques,
)
from .tasks import (
    AssistantResultPayload,
    CallCritiquePayload,
    ManualEditPayload,
    ReflectionTask,
    ReportPayload,
    SynthesisPayload,
    TaskKind,
)

if TYPE_CHECKING:
    from .engine import ReflectionEngine

logger = logging.getLogger("critique_engine")

SYNTHESIS_PERIODIC = "periodic"
SYNTHESIS_CHAT_RESET = "chat_reset"
SYNTHESIS_EVOLUTION = "evolution_consolidation"
SYNTHESIS_POST_REPORT = "post_report"


@dataclass(slots=True)
class JobContext:
    engine: "ReflectionEngine"
    task: ReflectionTask
    generation: int

    @property
    def stale(self) -> bool:
        """True once the engine was reset after this job started."""
        return self.generation != self.engine.generation

    async def generate(self, prompt: str, hint: str) -> Optional[str]:
        raw = await self.engine.generate(prompt, internal_category(hint))
        if self.stale:
            logger.info(
                "[reflection.job] task=%s kind=%s result dropped: engine was reset",
                self.task.id,
                self.task.kind.value,
            )
            return None
        return raw


JobHandler = Callable[[JobContext], Awaitable[None]]


def _strip_reasoning(text: str) -> str:
    return re.sub(r"<think>.*?</think>\s*", "", str(text or ""), flags=re.IGNORECASE | re.DOTALL).strip()


def _payload_history(engine: "ReflectionEngine", history_context: str, snapshot: Tuple[Tuple[str, str], ...] = ()) -> str:
    if history_context:
        return history_context
    turns: List[Dict[str, str]]
    if snapshot:
        turns = [{"role": role, "content": content} for role, content in snapshot]
    else:
        turns = engine.chat_history()
    return format_history(turns, engine.settings.task_history_turns)


def _guidance_text(update: MemoryUpdate) -> str:
    return "\n\n".join(value for value in update.teaching.values() if value)


def _record_call_critique(engine: "ReflectionEngine", call_id: str, update: MemoryUpdate, raw: str) -> None:
    text = update.critique
    if not text:
        text = "(no critique text returned)" if update.structured else _strip_reasoning(raw)
    if engine.ledger.attach_critique(call_id, text):
        engine.persist_state()
        engine.note_critique()


def _absorb_evolution(engine: "ReflectionEngine", update: MemoryUpdate) -> None:
    if not update.evolution:
        return
    pending = engine.memory.add_evolution_note(update.evolution)
    threshold = engine.settings.evolution_consolidation_threshold
    if pending < threshold:
        return
    already_queued = any(
        task.kind == TaskKind.MEMORY_SYNTHESIS
        and isinstance(task.payload, SynthesisPayload)
        and task.payload.reason == SYNTHESIS_EVOLUTION
        for task in engine.queue
    )
    if not already_queued:
        engine.queue.enqueue(
            TaskKind.MEMORY_SYNTHESIS,
            SynthesisPayload(reason=SYNTHESIS_EVOLUTION, details=f"{pending} pending self-reflection notes"),
        )


def _absorb_teaching(engine: "ReflectionEngine", stream: str, update: MemoryUpdate) -> None:
    guidance = _guidance_text(update)
    if guidance:
        engine.memory.set_guidance(stream, guidance)


async def run_call_critique(ctx: JobContext) -> None:
    engine = ctx.engine
    payload: CallCritiquePayload = ctx.task.payload
    prompt = build_call_critique_prompt(
        category=payload.category,
        model=payload.model,
        prompt=payload.prompt,
        response=payload.response,
        history=_payload_history(engine, payload.history_context, payload.chat_history),
        general_memory=engine.memory.read(DocumentName.GENERAL),
    )
    raw = await ctx.generate(prompt, "call_critique")
    if raw is None:
        return
    update = parse_memory_update(raw)
    _record_call_critique(engine, payload.call_id, update, raw)
    _absorb_evolution(engine, update)


async def _run_document_critique(ctx: JobContext, document: DocumentName, prompt: str, hint: str) -> None:
    engine = ctx.engine
    payload: CallCritiquePayload = ctx.task.payload
    raw = await ctx.generate(prompt, hint)
    if raw is None:
        return
    update = parse_memory_update(raw)
    _record_call_critique(engine, payload.call_id, update, raw)
    engine.memory.apply_update(document, update)
    _absorb_teaching(engine, document.value, update)
    _absorb_evolution(engine, update)


async def run_chat_text_critique(ctx: JobContext) -> None:
    engine = ctx.engine
    payload: CallCritiquePayload = ctx.task.payload
    prompt = build_chat_text_critique_prompt(
        category=payload.category,
        model=payload.model,
        prompt=payload.prompt,
        response=payload.response,
        history=_payload_history(engine, payload.history_context, payload.chat_history),
        general_memory=engine.memory.read(DocumentName.GENERAL),
        current_document=engine.memory.read(DocumentName.CHAT_TEXT),
    )
    await _run_document_critique(ctx, DocumentName.CHAT_TEXT, prompt, "chat_text_critique")


async def run_world_edit_critique(ctx: JobContext) -> None:
    engine = ctx.engine
    payload: CallCritiquePayload = ctx.task.payload
    prompt = build_world_edit_critique_prompt(
        category=payload.category,
        model=payload.model,
        prompt=payload.prompt,
        response=payload.response,
        history=_payload_history(engine, payload.history_context, payload.chat_history),
        general_memory=engine.memory.read(DocumentName.GENERAL),
        current_document=engine.memory.read(DocumentName.WORLD_EDIT),
        nodes=format_nodes(engine.nodes()),
    )
    await _run_document_critique(ctx, DocumentName.WORLD_EDIT, prompt, "world_edit_critique")


async def run_manual_edit_critique(ctx: JobContext) -> None:
    engine = ctx.engine
    payload: ManualEditPayload = ctx.task.payload
    prompt = build_manual_edit_prompt(
        original=payload.original,
        edited=payload.edited,
        edit_context=payload.edit_context,
        general_memory=engine.memory.read(DocumentName.GENERAL),
        current_document=engine.memory.read(DocumentName.MANUAL_EDIT),
    )
    raw = await ctx.generate(prompt, "manual_edit_critique")
    if raw is None:
        return
    update = parse_memory_update(raw)
    engine.memory.apply_update(DocumentName.MANUAL_EDIT, update)
    _absorb_evolution(engine, update)


async def run_assistant_result_critique(ctx: JobContext) -> None:
    engine = ctx.engine
    payload: AssistantResultPayload = ctx.task.payload
    prompt = build_assistant_result_prompt(
        query=payload.query,
        result=payload.result,
        history=_payload_history(engine, payload.history_context),
        assistant_nodes=format_nodes(engine.nodes(), node_type="assistant"),
        general_memory=engine.memory.read(DocumentName.GENERAL),
        current_document=engine.memory.read(DocumentName.ASSISTANT_RESULT),
    )
    raw = await ctx.generate(prompt, "assistant_result_critique")
    if raw is None:
        return
    update = parse_memory_update(raw)
    engine.memory.apply_update(DocumentName.ASSISTANT_RESULT, update)
    _absorb_teaching(engine, DocumentName.ASSISTANT_RESULT.value, update)
    _absorb_evolution(engine, update)


async def run_memory_synthesis(ctx: JobContext) -> None:
    engine = ctx.engine
    payload: SynthesisPayload = ctx.task.payload
    settings = engine.settings

    if payload.reason == SYNTHESIS_CHAT_RESET:
        prompt = build_chat_reset_prompt(
            current_general=engine.memory.read(DocumentName.GENERAL),
            previous_history=payload.history_context or "(No chat history available)",
            details=payload.details,
            max_chars=settings.general_memory_max_chars,
        )
        raw = await ctx.generate(prompt, "chat_reset_synthesis")
        if raw is None:
            return
        text = _strip_reasoning(raw)
        if text:
            engine.memory.apply_replacement(DocumentName.GENERAL, text)
        return

    pending = engine.memory.pending_evolution()
    prompt = build_synthesis_prompt(
        documents=engine.memory.documents(),
        recent_critiques=format_recent_critiques(engine.ledger.recent_critiques(settings.recent_critique_sample)),
        pending_evolution=pending,
        report_context=payload.report_context or payload.details,
        assistant_nodes=format_nodes(engine.nodes(), node_type="assistant"),
        max_chars=settings.general_memory_max_chars,
    )
    raw = await ctx.generate(prompt, "memory_synthesis")
    if raw is None:
        return
    update = parse_memory_update(raw)
    if engine.memory.apply_update(DocumentName.GENERAL, update):
        engine.memory.consume_evolution(len(pending))


def _previous_report(history: List[Dict[str, Any]], report_role: str) -> Tuple[Optional[str], int]:
    for index in range(len(history) - 1, -1, -1):
        if str(history[index].get("role") or "") == report_role:
            return str(history[index].get("content") or ""), len(history) - 1 - index
    return None, 0


async def run_final_report(ctx: JobContext) -> None:
    engine = ctx.engine
    payload: ReportPayload = ctx.task.payload
    settings = engine.settings
    full_history = engine.chat_history()
    previous_report, messages_since = _previous_report(full_history, settings.report_role)
    history = payload.history_context or format_history(
        full_history,
        settings.report_history_turns,
        extra_roles=(settings.report_role,),
    )
    prompt = build_final_report_prompt(
        assistant_nodes=format_nodes(engine.nodes(), node_type="assistant"),
        history=history,
        previous_report=previous_report,
        messages_since_report=messages_since,
        documents=engine.memory.documents(),
    )
    raw = await ctx.generate(prompt, "final_report")
    if raw is None:
        return
    report = format_report(_strip_reasoning(raw))
    if not report:
        logger.warning("[reflection.report] task=%s empty report, nothing emitted", ctx.task.id)
        return
    await engine.emit({"role": settings.report_role, "content": report})
    report_info = (
        f"Previous report was {messages_since} messages ago" if previous_report else "No previous report found"
    )
    engine.schedule_post_report_synthesis(
        SynthesisPayload(
            reason=SYNTHESIS_POST_REPORT,
            details=f"post final report for task {ctx.task.id}",
            report_context=f"{report_info}\n\nLatest report:\n{report}",
            history_context=history,
        )
    )


JOB_HANDLERS: Dict[TaskKind, JobHandler] = {
    TaskKind.CALL_CRITIQUE: run_call_critique,
    TaskKind.CHAT_TEXT_CRITIQUE: run_chat_text_critique,
    TaskKind.WORLD_EDIT_CRITIQUE: run_world_edit_critique,
    TaskKind.MANUAL_EDIT_CRITIQUE: run_manual_edit_critique,
    TaskKind.ASSISTANT_RESULT_CRITIQUE: run_assistant_result_critique,
    TaskKind.MEMORY_SYNTHESIS: run_memory_synthesis,
    TaskKind.FINAL_REPORT: run_final_report,
}
