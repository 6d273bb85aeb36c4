from __future__ import annotations

from typing import Any

from ..config import Settings
from .gemini_critique_client import GeminiCritiqueClient
from .ollama_critique_client import OllamaCritiqueClient


def build_critique_generator(settings: Settings) -> Any:
    if settings.critique_backend == "gemini":
        return GeminiCritiqueClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=settings.gemini_timeout_seconds,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens,
            base_url=settings.gemini_base_url,
            max_prompt_chars=settings.max_prompt_chars,
        )
    return OllamaCritiqueClient(
        base_url=settings.ollama_base_url,
        model=settings.ollama_model,
        timeout_seconds=settings.ollama_timeout_seconds,
        temperature=settings.ollama_temperature,
        max_output_tokens=settings.ollama_max_output_tokens,
        max_prompt_chars=settings.max_prompt_chars,
    )


__all__ = ["GeminiCritiqueClient", "OllamaCritiqueClient", "build_critique_generator"]
