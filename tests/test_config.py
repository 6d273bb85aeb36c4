from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from critique_engine.app import _read_events  # noqa: E402
from critique_engine.config import Settings  # noqa: E402


def test_env_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REFLECTION_DEBOUNCE_MS", "5")
    monkeypatch.setenv("REFLECTION_LEDGER_CAPACITY", "not-a-number")
    monkeypatch.setenv("REFLECTION_EXTRA_SKIP_CATEGORIES", "twine_import, , audio_tts")
    monkeypatch.setenv("REFLECTION_STATE_BACKEND", "MEMORY")

    settings = Settings.from_env()

    assert settings.debounce_ms == 5
    assert settings.ledger_capacity == 50
    assert settings.extra_skip_categories == {"twine_import", "audio_tts"}
    assert settings.state_backend == "memory"


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("critique_backend", "openai", "CRITIQUE_BACKEND"),
        ("state_backend", "postgres", "REFLECTION_STATE_BACKEND"),
        ("excerpt_max_chars", 100, "EXCERPT_MAX_CHARS"),
        ("general_memory_max_chars", 10, "GENERAL_MEMORY_MAX_CHARS"),
        ("report_role", "", "REPORT_ROLE"),
        ("max_prompt_chars", 100, "MAX_PROMPT_CHARS"),
    ],
)
def test_validate_rejects_bad_values(field: str, value: object, message: str) -> None:
    values = {"critique_backend": "ollama", "ollama_model": "m", field: value}
    settings = dataclasses.replace(Settings.from_env(), **values)

    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_gemini_backend_requires_real_key() -> None:
    settings = dataclasses.replace(Settings.from_env(), critique_backend="gemini", gemini_api_key="put_your_gemini_api_key_here")

    with pytest.raises(ValueError, match="placeholder"):
        settings.validate()


def test_replay_reader_skips_comments_and_bad_lines(tmp_path: Path) -> None:
    events = tmp_path / "events.jsonl"
    events.write_text(
        '# replay fixture\n{"op": "begin", "id": "c1"}\nnot json\n[1, 2]\n\n{"op": "finish", "id": "c1"}\n',
        encoding="utf-8",
    )

    assert [event["op"] for event in _read_events(events)] == ["begin", "finish"]
