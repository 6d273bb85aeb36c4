from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from typing import Any, Dict, List

import aiohttp

from .ollama_critique_client import CRITIC_SYSTEM_PROMPT
from .prompt_budget import fit_prompt

logger = logging.getLogger("critique_engine")


class GeminiCritiqueClient:
    backend_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int = 90,
        temperature: float = 0.3,
        max_output_tokens: int = 0,
        base_url: str = "https://generativelanguage.googleapis.com",
        max_prompt_chars: int = 400000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self.max_prompt_chars = int(max_prompt_chars)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:generateContent?key={self.api_key}"

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(self._endpoint(), json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)
                    if response.status not in {408, 409, 429, 500, 502, 503, 504}:
                        raise RuntimeError(f"Gemini error {response.status}: {text[:500]}")
                    last_error = RuntimeError(f"Gemini retriable error {response.status}: {text[:500]}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc

            if attempt < retries:
                logger.info("[critique.gemini] attempt=%s failed: %s", attempt, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise RuntimeError(f"Gemini critique request failed after retries: {last_error}")
        raise RuntimeError("Gemini critique request failed without explicit error")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise RuntimeError(f"Gemini blocked critique prompt: {block_reason}")
            raise RuntimeError("Gemini returned no candidates")

        first = candidates[0]
        parts = (first.get("content") or {}).get("parts") or []
        chunks: List[str] = [part["text"].strip() for part in parts if isinstance(part.get("text"), str) and part["text"].strip()]
        joined = "\n".join(chunks).strip()
        if joined:
            return joined
        finish_reason = first.get("finishReason")
        if finish_reason:
            raise RuntimeError(f"Gemini empty critique (finishReason={finish_reason})")
        raise RuntimeError("Gemini empty critique")

    async def generate_critique(self, prompt: str, category_hint: str) -> str:
        generation_config: Dict[str, Any] = {"temperature": self.temperature}
        if self.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = self.max_output_tokens
        payload: Dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": CRITIC_SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": fit_prompt(prompt, self.max_prompt_chars)}]}],
            "generationConfig": generation_config,
        }
        logger.debug("[critique.gemini] category=%s model=%s chars=%s", category_hint, self.model, len(prompt))
        data = await self._request(payload)
        return re.sub(r"<think>.*?</think>\s*", "", self._extract_text(data), flags=re.IGNORECASE | re.DOTALL).strip()
