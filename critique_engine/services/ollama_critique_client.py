from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from typing import Any

import aiohttp

from .prompt_budget import fit_prompt

logger = logging.getLogger("critique_engine")

CRITIC_SYSTEM_PROMPT = (
    "You are a meticulous critic of AI-generated interactive fiction. "
    "Follow the output format requested in the user message exactly."
)


class OllamaCritiqueClient:
    backend_name = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: int = 90,
        temperature: float = 0.3,
        max_output_tokens: int = 0,
        max_prompt_chars: int = 400000,
    ) -> None:
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Ollama critique model cannot be empty")
        self.timeout = aiohttp.ClientTimeout(total=max(5, int(timeout_seconds)))
        self.temperature = float(temperature)
        self.max_output_tokens = max(0, int(max_output_tokens or 0))
        self.max_prompt_chars = int(max_prompt_chars)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    @staticmethod
    def _strip_reasoning_blocks(text: str) -> str:
        return re.sub(r"<think>.*?</think>\s*", "", str(text or ""), flags=re.IGNORECASE | re.DOTALL).strip()

    async def _request(self, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(self._endpoint(), json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        parsed = json.loads(text)
                        if isinstance(parsed, dict):
                            return parsed
                        raise RuntimeError("Ollama returned non-object JSON response")
                    if response.status not in {408, 409, 429, 500, 502, 503, 504}:
                        raise RuntimeError(f"Ollama error {response.status}: {text[:500]}")
                    last_error = RuntimeError(f"Ollama retriable error {response.status}: {text[:500]}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
            if attempt < retries:
                logger.info("[critique.ollama] attempt=%s failed: %s", attempt, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.25))

        if last_error is not None:
            raise RuntimeError(f"Ollama critique request failed after retries: {last_error}")
        raise RuntimeError("Ollama critique request failed without explicit error")

    @staticmethod
    def _extract_message_text(data: dict[str, Any]) -> str:
        message = data.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        response_text = data.get("response")
        if isinstance(response_text, str) and response_text.strip():
            return response_text
        raise RuntimeError("Ollama returned empty critique content")

    async def generate_critique(self, prompt: str, category_hint: str) -> str:
        options: dict[str, Any] = {"temperature": self.temperature}
        if self.max_output_tokens > 0:
            options["num_predict"] = self.max_output_tokens
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": CRITIC_SYSTEM_PROMPT},
                {"role": "user", "content": fit_prompt(prompt, self.max_prompt_chars)},
            ],
            "stream": False,
            "think": False,
            "options": options,
        }
        logger.debug("[critique.ollama] category=%s model=%s chars=%s", category_hint, self.model, len(prompt))
        data = await self._request(payload)
        return self._strip_reasoning_blocks(self._extract_message_text(data))
