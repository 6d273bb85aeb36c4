from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from critique_engine.config import Settings  # noqa: E402
from critique_engine.engine import ReflectionEngine  # noqa: E402
from critique_engine.memory.blob_store import InMemoryBlobStore  # noqa: E402
from critique_engine.memory.documents import DEFAULT_DOCUMENTS, DocumentName  # noqa: E402
from critique_engine.tasks import CallCritiquePayload, TaskKind  # noqa: E402


def _settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "state_backend": "memory",
        "debounce_ms": 1,
        "post_report_synthesis_delay_seconds": 0.01,
    }
    values.update(overrides)
    return dataclasses.replace(Settings.from_env(), **values)


def _structured(critique: str, **extra: Any) -> str:
    return json.dumps({"critique": critique, **extra})


class _FakeGenerator:
    """Scripted critic: replies are chosen by the category hint."""

    def __init__(self, replies: Dict[str, str] | None = None) -> None:
        self.replies = replies or {}
        self.calls: List[Tuple[str, str]] = []
        self.closed = False

    async def generate_critique(self, prompt: str, category_hint: str) -> str:
        self.calls.append((category_hint, prompt))
        await asyncio.sleep(0)
        return self.replies.get(category_hint, _structured(f"critique for {category_hint}"))

    def hints(self) -> List[str]:
        return [hint for hint, _prompt in self.calls]

    async def close(self) -> None:
        self.closed = True


class _GatedGenerator:
    """Every call parks on a future the test resolves by hand."""

    def __init__(self) -> None:
        self.pending: List[asyncio.Future[str]] = []
        self.hints: List[str] = []

    async def generate_critique(self, prompt: str, category_hint: str) -> str:
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        self.hints.append(category_hint)
        return await future


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


async def _engine(generator: Any, history: List[Dict[str, str]] | None = None, **overrides: Any):
    sent: List[Dict[str, str]] = []
    chat = history if history is not None else []

    def _sink(message: Dict[str, str]) -> None:
        sent.append(message)
        chat.append(message)

    engine = ReflectionEngine(generator, settings=_settings(**overrides), blob_store=InMemoryBlobStore())
    await engine.initialize(
        get_nodes=lambda: [{"id": "n1", "type": "assistant", "name": "Helper", "content": "Be concise."}],
        emit_message=_sink,
        get_chat_history=lambda: list(chat),
    )
    return engine, sent


def test_chat_text_call_is_critiqued_and_attached() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator({"reflection_chat_text_critique": _structured("Vivid but rushed.")})
        engine, sent = await _engine(generator)

        engine.begin_call("c1", "chat_text", "modelX", "Continue the story")
        task = engine.finish_call("c1", "The knight rode north.")

        assert task is not None
        assert task.kind == TaskKind.CHAT_TEXT_CRITIQUE
        assert isinstance(task.payload, CallCritiquePayload)
        assert task.payload.call_id == "c1"
        assert engine.get_pending_task_count() == 1

        await engine.drain(timeout=5)

        assert engine.get_critique("c1") == "Vivid but rushed."
        assert generator.hints() == ["reflection_chat_text_critique"]
        assert sent == []
        await engine.aclose()
        assert generator.closed is True

    asyncio.run(_scenario())


def test_skipped_category_is_logged_but_never_critiqued() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator()
        engine, _sent = await _engine(generator)

        engine.begin_call("c2", "image_prompt", "modelX", "Draw a castle")
        assert engine.finish_call("c2", "castle, dusk, oil painting") is None
        await engine.drain(timeout=5)

        assert engine.get_pending_task_count() == 0
        assert engine.get_critique("c2") is None
        assert [record.id for record in engine.list_calls()] == ["c2"]
        assert generator.calls == []

    asyncio.run(_scenario())


def test_blank_response_is_not_critiqued() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator()
        engine, _sent = await _engine(generator)

        engine.begin_call("c3", "chat_text", "modelX", "Continue the story")
        assert engine.finish_call("c3", "   ") is None
        await engine.drain(timeout=5)

        assert engine.get_pending_task_count() == 0
        assert engine.get_critique("c3") is None
        assert generator.calls == []

    asyncio.run(_scenario())


def test_finish_of_unknown_call_changes_nothing() -> None:
    async def _scenario() -> None:
        engine, _sent = await _engine(_FakeGenerator())

        assert engine.finish_call("ghost", "response") is None
        engine.fail_call("ghost", "boom")

        assert engine.list_calls() == []
        assert engine.get_pending_task_count() == 0

    asyncio.run(_scenario())


def test_both_streams_produce_one_report_and_a_follow_up_synthesis() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator({"reflection_final_report": "# Session Report\nPacing held up.\n# Next\nTighten edits."})
        history = [{"role": "user", "content": "Go on"}, {"role": "assistant", "content": "The door opens."}]
        engine, sent = await _engine(generator, history)

        engine.begin_call("c1", "chat_text", "m", "Continue")
        engine.finish_call("c1", "The door opens.")
        engine.begin_call("w1", "node_edition_yaml", "m", "Update nodes")
        engine.finish_call("w1", "nodes: []")

        await engine.drain(timeout=5)

        assert len(sent) == 1
        assert sent[0]["role"] == "critic"
        assert sent[0]["content"].startswith("# Session Report")
        hints = generator.hints()
        assert hints.count("reflection_final_report") == 1
        assert hints.index("reflection_final_report") < hints.index("reflection_memory_synthesis")
        assert engine.flags.world_edit_done is False
        assert engine.flags.narrative_done is False

    asyncio.run(_scenario())


def test_document_critique_updates_its_document_and_guidance() -> None:
    async def _scenario() -> None:
        reply = _structured(
            "Edits contradicted node n1.",
            memory_update_diffs={"df": [{"prev_txt": "No feedback on world-state edits yet.", "next_txt": "- Check n1 first."}]},
            teaching={"guidance": "Read existing nodes before editing."},
        )
        generator = _FakeGenerator({"reflection_world_edit_critique": reply})
        engine, _sent = await _engine(generator)

        engine.begin_call("w1", "world_edit", "m", "Edit")
        engine.finish_call("w1", "{}")
        await engine.drain(timeout=5)

        assert engine.memory.read(DocumentName.WORLD_EDIT) == "# World Edit Feedback\n\n- Check n1 first."
        assert engine.get_guidance("world_edit") == "Read existing nodes before editing."
        assert engine.get_critique("w1") == "Edits contradicted node n1."
        world_prompt = generator.calls[0][1]
        assert "Helper" in world_prompt

    asyncio.run(_scenario())


def test_every_fifth_critique_enqueues_a_synthesis() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator(
            {"reflection_memory_synthesis": json.dumps({"memory_update_diffs": {"rpl": "# General Reflection Memory\n- synthesized"}})}
        )
        engine, _sent = await _engine(generator)

        for index in range(5):
            engine.begin_call(f"t{index}", "twine_import", "m", "Import")
            engine.finish_call(f"t{index}", "ok")
        await engine.drain(timeout=5)

        hints = generator.hints()
        assert hints.count("reflection_call_critique") == 5
        assert hints.count("reflection_memory_synthesis") == 1
        assert engine.memory.read(DocumentName.GENERAL) == "# General Reflection Memory\n- synthesized"
        assert engine.critique_count == 5

    asyncio.run(_scenario())


def test_chat_reset_event_triggers_reset_synthesis() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator({"reflection_chat_reset_synthesis": "# General Reflection Memory\n- carried lesson"})
        engine, _sent = await _engine(generator)
        previous = [{"role": "user", "content": "hello"}, {"role": "assistant", "content": "hi there"}]

        task = engine.record_system_event("e1", "reset", "user reset the chat", "chat_reset_event", previous_history=previous)

        assert task is not None
        assert task.kind == TaskKind.MEMORY_SYNTHESIS
        assert "assistant: hi there" in task.payload.history_context
        await engine.drain(timeout=5)

        assert engine.memory.read(DocumentName.GENERAL) == "# General Reflection Memory\n- carried lesson"
        record = engine.ledger.get("e1")
        assert record is not None and record.model == "N/A"

    asyncio.run(_scenario())


def test_system_event_without_history_is_only_logged() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator()
        engine, _sent = await _engine(generator)

        assert engine.record_system_event("e2", "refocus", "story refocused", "story_refocus_event") is None
        await engine.drain(timeout=5)

        assert generator.calls == []
        assert len(engine.list_calls()) == 1

    asyncio.run(_scenario())


def test_reset_clears_everything_and_drops_in_flight_results() -> None:
    async def _scenario() -> None:
        generator = _GatedGenerator()
        engine, _sent = await _engine(generator)

        engine.begin_call("c1", "chat_text", "m", "Continue")
        engine.finish_call("c1", "text")
        engine.begin_call("c2", "chat_text", "m", "Continue")
        engine.finish_call("c2", "more text")
        await asyncio.sleep(0.05)
        await _settle()
        assert len(generator.pending) == 1

        engine.reset()
        assert engine.get_pending_task_count() == 0
        assert engine.list_calls() == []

        generator.pending[0].set_result(json.dumps({"critique": "late", "memory_update_diffs": {"rpl": "# Stale"}}))
        await engine.drain(timeout=5)

        assert engine.memory.read(DocumentName.CHAT_TEXT) == DEFAULT_DOCUMENTS[DocumentName.CHAT_TEXT]
        assert engine.get_critique("c1") is None
        assert engine.flags.narrative_done is False
        assert len(generator.pending) == 1

    asyncio.run(_scenario())


def test_concurrent_syntheses_last_writer_wins() -> None:
    async def _scenario() -> None:
        generator = _GatedGenerator()
        engine, _sent = await _engine(generator)
        engine.trigger.cancel()

        engine.enqueue(TaskKind.MEMORY_SYNTHESIS, {"reason": "periodic"})
        engine.enqueue(TaskKind.MEMORY_SYNTHESIS, {"reason": "post_report"})
        engine.trigger.cancel()
        engine.scheduler.dispatch()
        engine.scheduler.dispatch()
        await _settle()
        assert len(generator.pending) == 2

        generator.pending[1].set_result(json.dumps({"memory_update_diffs": {"rpl": "# second started"}}))
        await _settle()
        generator.pending[0].set_result(json.dumps({"memory_update_diffs": {"rpl": "# first started"}}))
        await engine.drain(timeout=5)

        assert engine.memory.read(DocumentName.GENERAL) == "# first started"

    asyncio.run(_scenario())


def test_chat_text_and_world_edit_jobs_update_only_their_own_documents() -> None:
    async def _scenario() -> None:
        generator = _GatedGenerator()
        engine, _sent = await _engine(generator)

        engine.begin_call("c1", "chat_text", "m", "Continue")
        engine.finish_call("c1", "The door opens.")
        engine.begin_call("w1", "world_edit", "m", "Edit nodes")
        engine.finish_call("w1", "{}")
        await asyncio.sleep(0.05)
        await _settle()
        assert sorted(generator.hints) == ["reflection_chat_text_critique", "reflection_world_edit_critique"]

        chat_future = generator.pending[generator.hints.index("reflection_chat_text_critique")]
        world_future = generator.pending[generator.hints.index("reflection_world_edit_critique")]
        world_future.set_result(json.dumps({"critique": "w", "memory_update_diffs": {"rpl": "# World Edit Feedback\n- world lesson"}}))
        await _settle()

        assert engine.memory.read(DocumentName.WORLD_EDIT) == "# World Edit Feedback\n- world lesson"
        assert engine.memory.read(DocumentName.CHAT_TEXT) == DEFAULT_DOCUMENTS[DocumentName.CHAT_TEXT]

        chat_future.set_result(json.dumps({"critique": "c", "memory_update_diffs": {"rpl": "# Narrative Feedback\n- chat lesson"}}))
        await _settle()

        assert engine.memory.read(DocumentName.CHAT_TEXT) == "# Narrative Feedback\n- chat lesson"
        assert engine.memory.read(DocumentName.WORLD_EDIT) == "# World Edit Feedback\n- world lesson"
        assert engine.memory.read(DocumentName.GENERAL) == DEFAULT_DOCUMENTS[DocumentName.GENERAL]
        assert engine.get_critique("c1") == "c"
        assert engine.get_critique("w1") == "w"

        # Both streams done: the final report parks next; release it empty.
        await asyncio.sleep(0.05)
        await _settle()
        assert generator.hints[-1] == "reflection_final_report"
        for future in generator.pending:
            if not future.done():
                future.set_result("")
        await engine.drain(timeout=5)

        assert engine.memory.read(DocumentName.GENERAL) == DEFAULT_DOCUMENTS[DocumentName.GENERAL]

    asyncio.run(_scenario())


def test_eviction_through_the_engine_keeps_capacity() -> None:
    async def _scenario() -> None:
        engine, _sent = await _engine(_FakeGenerator(), ledger_capacity=3)

        for index in range(5):
            engine.begin_call(f"i{index}", "image_prompt", "m", "p")
            engine.finish_call(f"i{index}", "r")
            await asyncio.sleep(0.001)

        ids = [record.id for record in engine.list_calls()]
        assert len(ids) == 3
        assert "i0" not in ids and "i1" not in ids

    asyncio.run(_scenario())


def test_manual_edit_and_assistant_result_update_their_documents() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator(
            {
                "reflection_manual_edit_critique": json.dumps({"memory_update_diffs": {"rpl": "# Manual Edit Learnings\n- user trims adverbs"}}),
                "reflection_assistant_result_critique": "Plain text feedback about the edit.",
            }
        )
        engine, _sent = await _engine(generator)

        engine.record_manual_edit("He ran quickly.", "He ran.", "scene 3")
        engine.record_assistant_result("rename the inn", {"renamed": ["n1"]})
        await engine.drain(timeout=5)

        assert engine.memory.read(DocumentName.MANUAL_EDIT) == "# Manual Edit Learnings\n- user trims adverbs"
        assert engine.memory.read(DocumentName.ASSISTANT_RESULT) == "Plain text feedback about the edit."
        assistant_prompt = dict(generator.calls)["reflection_assistant_result_critique"]
        assert '"renamed"' in assistant_prompt

    asyncio.run(_scenario())


def test_evolution_notes_are_consolidated_at_threshold() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator(
            {
                "reflection_call_critique": _structured("fine", evolution="I value clarity."),
                "reflection_memory_synthesis": json.dumps({"memory_update_diffs": {"df": [{"prev_txt": "", "next_txt": "- clarity matters"}]}}),
            }
        )
        engine, _sent = await _engine(generator, evolution_consolidation_threshold=2, synthesis_every_n_critiques=100)

        for index in range(2):
            engine.begin_call(f"t{index}", "twine_import", "m", "p")
            engine.finish_call(f"t{index}", "r")
        await engine.drain(timeout=5)

        assert generator.hints().count("reflection_memory_synthesis") == 1
        assert engine.memory.read(DocumentName.GENERAL).endswith("- clarity matters")
        assert engine.memory.pending_evolution() == []

    asyncio.run(_scenario())


def test_synthesis_evolution_note_does_not_retrigger_consolidation() -> None:
    async def _scenario() -> None:
        reply = _structured("meh", evolution="I grew")
        generator = _FakeGenerator({"reflection_call_critique": reply, "reflection_memory_synthesis": reply})
        engine, _sent = await _engine(generator, evolution_consolidation_threshold=2, synthesis_every_n_critiques=100)
        engine.memory.add_evolution_note("first note")
        engine.memory.add_evolution_note("second note")

        engine.begin_call("t1", "twine_import", "m", "p")
        engine.finish_call("t1", "r")
        await engine.drain(timeout=5)

        assert generator.hints().count("reflection_memory_synthesis") == 1
        assert engine.get_pending_task_count() == 0
        assert len(engine.memory.pending_evolution()) == 3

    asyncio.run(_scenario())


def test_critique_context_and_export_round_trip() -> None:
    async def _scenario() -> None:
        generator = _FakeGenerator({"reflection_call_critique": _structured("Solid import.")})
        engine, _sent = await _engine(generator)
        engine.begin_call("t1", "twine_import", "m", "p")
        engine.finish_call("t1", "r")
        await engine.drain(timeout=5)

        context = json.loads(engine.critique_context_json())
        assert set(context["documents"]) == {name.value for name in DocumentName}
        assert context["recent_critiques"] == [{"id": "t1", "critique": "Solid import."}]
        assert "Solid import." in engine.feedback_system_message()

        snapshot = engine.export_memory()
        other, _ = await _engine(_FakeGenerator())
        other.import_memory(snapshot)
        assert other.get_critique("t1") == "Solid import."
        assert other.export_memory()["documents"] == snapshot["documents"]

    asyncio.run(_scenario())


def test_state_survives_a_restart_through_the_blob_store() -> None:
    async def _scenario() -> None:
        blobs = InMemoryBlobStore()
        generator = _FakeGenerator({"reflection_call_critique": _structured("Persisted critique.")})
        engine = ReflectionEngine(generator, settings=_settings(), blob_store=blobs)
        await engine.initialize()
        engine.begin_call("t1", "twine_import", "m", "p")
        engine.finish_call("t1", "r")
        await engine.drain(timeout=5)
        await engine.aclose()

        restarted = ReflectionEngine(_FakeGenerator(), settings=_settings(), blob_store=blobs)
        await restarted.initialize()
        assert restarted.get_critique("t1") == "Persisted critique."

    asyncio.run(_scenario())
