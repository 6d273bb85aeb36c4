from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Set

from dotenv import load_dotenv


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_str_set(name: str, aliases: tuple[str, ...] = ()) -> Set[str]:
    raw = (_env_lookup(name, aliases) or "").strip()
    if not raw:
        return set()
    result: Set[str] = set()
    for chunk in raw.split(","):
        value = chunk.strip()
        if value:
            result.add(value)
    return result


@dataclass(slots=True)
class Settings:
    critique_backend: str

    ollama_base_url: str
    ollama_model: str
    ollama_timeout_seconds: int
    ollama_temperature: float
    ollama_max_output_tokens: int

    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    gemini_timeout_seconds: int
    gemini_temperature: float
    gemini_max_output_tokens: int

    state_backend: str
    sqlite_path: Path
    state_key: str

    excerpt_max_chars: int
    error_max_chars: int
    ledger_capacity: int
    debounce_ms: int
    synthesis_every_n_critiques: int
    evolution_consolidation_threshold: int
    general_memory_max_chars: int
    recent_critique_sample: int
    report_history_turns: int
    task_history_turns: int
    reset_history_turns: int
    post_report_synthesis_delay_seconds: float
    report_role: str
    max_prompt_chars: int
    extra_skip_categories: Set[str]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            critique_backend=_env_str("CRITIQUE_BACKEND", "ollama").lower(),
            ollama_base_url=_env_str("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
            ollama_model=_env_str("OLLAMA_MODEL", "qwen2.5:7b-instruct"),
            ollama_timeout_seconds=_env_int("OLLAMA_TIMEOUT_SECONDS", 90),
            ollama_temperature=_env_float("OLLAMA_TEMPERATURE", 0.3),
            ollama_max_output_tokens=_env_int("OLLAMA_MAX_OUTPUT_TOKENS", 0),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 90),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.3),
            gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 0),
            state_backend=_env_str("REFLECTION_STATE_BACKEND", "sqlite").lower(),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/reflection_state.db")).expanduser(),
            state_key=_env_str("REFLECTION_STATE_KEY", "reflection_state"),
            excerpt_max_chars=_env_int("REFLECTION_EXCERPT_MAX_CHARS", 5000, aliases=("TRUNCATE_TEXT",)),
            error_max_chars=_env_int("REFLECTION_ERROR_MAX_CHARS", 1000),
            ledger_capacity=_env_int("REFLECTION_LEDGER_CAPACITY", 50),
            debounce_ms=_env_int("REFLECTION_DEBOUNCE_MS", 50),
            synthesis_every_n_critiques=_env_int("REFLECTION_SYNTHESIS_EVERY_N_CRITIQUES", 5),
            evolution_consolidation_threshold=_env_int("REFLECTION_EVOLUTION_CONSOLIDATION_THRESHOLD", 3),
            general_memory_max_chars=_env_int("REFLECTION_GENERAL_MEMORY_MAX_CHARS", 15000),
            recent_critique_sample=_env_int("REFLECTION_RECENT_CRITIQUE_SAMPLE", 5),
            report_history_turns=_env_int("REFLECTION_REPORT_HISTORY_TURNS", 5),
            task_history_turns=_env_int("REFLECTION_TASK_HISTORY_TURNS", 10),
            reset_history_turns=_env_int("REFLECTION_RESET_HISTORY_TURNS", 20),
            post_report_synthesis_delay_seconds=_env_float("REFLECTION_POST_REPORT_SYNTHESIS_DELAY_SECONDS", 0.25),
            report_role=_env_str("REFLECTION_REPORT_ROLE", "critic"),
            max_prompt_chars=_env_int("REFLECTION_MAX_PROMPT_CHARS", 400000),
            extra_skip_categories=_env_str_set("REFLECTION_EXTRA_SKIP_CATEGORIES"),
        )

    def validate(self) -> None:
        if self.critique_backend not in {"ollama", "gemini"}:
            raise ValueError("CRITIQUE_BACKEND must be 'ollama' or 'gemini'")
        if self.critique_backend == "ollama" and not self.ollama_model:
            raise ValueError("OLLAMA_MODEL cannot be empty")
        if self.critique_backend == "gemini":
            if not self.gemini_api_key:
                raise ValueError("GEMINI_API_KEY is required when CRITIQUE_BACKEND=gemini")
            if self.gemini_api_key == "put_your_gemini_api_key_here":
                raise ValueError("GEMINI_API_KEY is still placeholder")
        if self.ollama_timeout_seconds < 5 or self.gemini_timeout_seconds < 5:
            raise ValueError("Critique backend timeouts must be >= 5 seconds")
        if self.ollama_max_output_tokens < 0 or self.gemini_max_output_tokens < 0:
            raise ValueError("*_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")

        if self.state_backend not in {"sqlite", "memory"}:
            raise ValueError("REFLECTION_STATE_BACKEND must be 'sqlite' or 'memory'")
        if not self.state_key:
            raise ValueError("REFLECTION_STATE_KEY cannot be empty")

        if self.excerpt_max_chars < 200:
            raise ValueError("REFLECTION_EXCERPT_MAX_CHARS must be >= 200")
        if self.error_max_chars < 50:
            raise ValueError("REFLECTION_ERROR_MAX_CHARS must be >= 50")
        if self.ledger_capacity < 1:
            raise ValueError("REFLECTION_LEDGER_CAPACITY must be >= 1")
        if self.debounce_ms < 0:
            raise ValueError("REFLECTION_DEBOUNCE_MS must be >= 0")
        if self.synthesis_every_n_critiques < 1:
            raise ValueError("REFLECTION_SYNTHESIS_EVERY_N_CRITIQUES must be >= 1")
        if self.evolution_consolidation_threshold < 1:
            raise ValueError("REFLECTION_EVOLUTION_CONSOLIDATION_THRESHOLD must be >= 1")
        if self.general_memory_max_chars < 1000:
            raise ValueError("REFLECTION_GENERAL_MEMORY_MAX_CHARS must be >= 1000")
        if self.recent_critique_sample < 1:
            raise ValueError("REFLECTION_RECENT_CRITIQUE_SAMPLE must be >= 1")
        if min(self.report_history_turns, self.task_history_turns, self.reset_history_turns) < 1:
            raise ValueError("REFLECTION_*_HISTORY_TURNS must be >= 1")
        if self.post_report_synthesis_delay_seconds < 0.0:
            raise ValueError("REFLECTION_POST_REPORT_SYNTHESIS_DELAY_SECONDS must be >= 0")
        if not self.report_role:
            raise ValueError("REFLECTION_REPORT_ROLE cannot be empty")
        if self.max_prompt_chars < 4000:
            raise ValueError("REFLECTION_MAX_PROMPT_CHARS must be >= 4000")
