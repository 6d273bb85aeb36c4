from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from critique_engine.categories import critique_kind_for, should_skip  # noqa: E402
from critique_engine.common import TRUNCATION_MARKER  # noqa: E402
from critique_engine.ledger import CallLedger, CallStatus, DuplicateCallError  # noqa: E402
from critique_engine.tasks import TaskKind  # noqa: E402


class _FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_begin_finish_records_duration_and_excerpts() -> None:
    clock = _FakeClock()
    ledger = CallLedger(clock=clock)

    record = ledger.begin("c1", "chat_text", "modelX", "Tell a story")
    assert record.status == CallStatus.RUNNING
    assert record.finished_at is None

    clock.advance(1.25)
    finished = ledger.finish("c1", "Once upon a time...")

    assert finished is record
    assert record.status == CallStatus.COMPLETED
    assert record.response_excerpt == "Once upon a time..."
    assert record.duration_ms == 1250
    assert record.finished_at == clock.now


def test_begin_with_duplicate_id_raises() -> None:
    ledger = CallLedger()
    ledger.begin("dup", "chat_text", "m", "p")

    with pytest.raises(DuplicateCallError):
        ledger.begin("dup", "chat_text", "m", "p")


def test_finish_before_begin_is_a_noop() -> None:
    ledger = CallLedger()

    assert ledger.finish("ghost", "response") is None
    assert len(ledger) == 0


def test_fail_and_finish_respect_status_transitions() -> None:
    ledger = CallLedger(error_max_chars=50)
    ledger.begin("c1", "world_edit", "m", "p")

    failed = ledger.fail("c1", "x" * 200)
    assert failed is not None
    assert failed.status == CallStatus.FAILED
    assert failed.error is not None and failed.error.startswith("x" * 50)
    assert len(failed.error) == 53

    assert ledger.finish("c1", "late response") is None
    assert ledger.fail("c1", "again") is None
    assert ledger.get("c1").status == CallStatus.FAILED  # type: ignore[union-attr]


def test_excerpts_are_truncated_with_marker() -> None:
    ledger = CallLedger(excerpt_max_chars=200)
    record = ledger.begin("c1", "chat_text", "m", "p" * 500)

    assert record.prompt_excerpt == "p" * 200 + TRUNCATION_MARKER


def test_eviction_keeps_fifty_newest_by_start_time() -> None:
    clock = _FakeClock()
    ledger = CallLedger(capacity=50, clock=clock)

    for index in range(51):
        ledger.begin(f"c{index}", "chat_text", "m", "p")
        ledger.finish(f"c{index}", "r")
        clock.advance(1.0)

    ids = [record.id for record in ledger.list()]
    assert len(ids) == 50
    assert "c0" not in ids
    assert ids[0] == "c50"
    assert ids[-1] == "c1"


def test_eviction_breaks_start_time_ties_by_registration_order() -> None:
    ledger = CallLedger(capacity=2, clock=lambda: 5.0)
    for call_id in ("a", "b", "c"):
        ledger.begin(call_id, "chat_text", "m", "p")
        ledger.finish(call_id, "r")

    assert [record.id for record in ledger.list()] == ["c", "b"]


def test_critique_is_attached_once_and_only_to_completed_calls() -> None:
    ledger = CallLedger()
    ledger.begin("running", "chat_text", "m", "p")
    ledger.begin("done", "chat_text", "m", "p")
    ledger.finish("done", "r")

    assert ledger.attach_critique("running", "too early") is False
    assert ledger.attach_critique("done", "first") is True
    assert ledger.attach_critique("done", "second") is False
    assert ledger.get_critique("done") == "first"
    assert ledger.get_critique("running") is None
    assert ledger.attach_critique("missing", "nope") is False


def test_external_event_is_precompleted() -> None:
    ledger = CallLedger()
    record = ledger.record_external_event("e1", "chat_reset_event", "reset", "user reset the chat")

    assert record.status == CallStatus.COMPLETED
    assert record.model == "N/A"
    assert record.duration_ms == 0
    assert record.finished_at == record.started_at


def test_listeners_receive_sorted_snapshots_until_unsubscribed() -> None:
    clock = _FakeClock()
    ledger = CallLedger(clock=clock)
    seen: list[list[str]] = []
    unsubscribe = ledger.subscribe(lambda records: seen.append([r.id for r in records]))

    ledger.begin("a", "chat_text", "m", "p")
    clock.advance(1)
    ledger.begin("b", "chat_text", "m", "p")
    unsubscribe()
    ledger.finish("a", "r")

    assert seen == [["a"], ["b", "a"]]


def test_failing_listener_does_not_break_the_ledger() -> None:
    ledger = CallLedger()

    def _boom(_records):  # type: ignore[no-untyped-def]
        raise RuntimeError("listener failed")

    ledger.subscribe(_boom)
    ledger.begin("a", "chat_text", "m", "p")

    assert ledger.finish("a", "r") is not None


def test_payload_round_trip_fills_migration_defaults() -> None:
    ledger = CallLedger()
    ledger.load_payload(
        {
            "old": {"started_at": 10.0, "critique": "kept"},
            "broken": "not-a-record",
            "running": {"status": "running", "started_at": 20.0, "critique": "dropped"},
        }
    )

    old = ledger.get("old")
    assert old is not None
    assert old.status == CallStatus.COMPLETED
    assert old.category == "unknown_migrated"
    assert old.model == "unknown_migrated"
    assert old.prompt_excerpt == "[prompt unavailable]"
    assert old.finished_at == 10.0
    assert old.critique == "kept"

    running = ledger.get("running")
    assert running is not None
    assert running.finished_at is None
    assert running.critique is None
    assert "broken" not in ledger

    restored = CallLedger()
    restored.load_payload(ledger.to_payload())
    assert [r.id for r in restored.list()] == [r.id for r in ledger.list()]


@pytest.mark.parametrize(
    "category",
    [
        "image_prompt",
        "image_prompt_generation",
        "image_generation",
        "image_generation_novelai",
        "action_list",
        "action_generation",
        "reflection_final_report",
        "reflection_call_critique",
        "chat_reset_event",
        "story_refocus_event",
        "assistant_message_edit_event",
        "chat_regenerate_event",
        "chat_input_regenerate_event",
        "refocus_story_generation",
    ],
)
def test_skip_list_categories(category: str) -> None:
    assert should_skip(category) is True


def test_routing_of_critiqued_categories() -> None:
    assert should_skip("chat_text") is False
    assert should_skip("custom_call", extra={"custom_call"}) is True
    assert critique_kind_for("chat_text") == TaskKind.CHAT_TEXT_CRITIQUE
    assert critique_kind_for("chat_text_generation") == TaskKind.CHAT_TEXT_CRITIQUE
    assert critique_kind_for("node_edition_yaml") == TaskKind.WORLD_EDIT_CRITIQUE
    assert critique_kind_for("node_edition_json") == TaskKind.WORLD_EDIT_CRITIQUE
    assert critique_kind_for("twine_import") == TaskKind.CALL_CRITIQUE
