from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("critique_engine.prompts")

# path -> (mtime_ns, merged templates)
_CACHE: dict[str, tuple[int | None, dict[str, Any]]] = {}


def prompt_data_dir() -> Path:
    override = os.getenv("REFLECTION_PROMPTS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).with_name("data")


def clear_prompt_cache() -> None:
    _CACHE.clear()


def _merge_overrides(defaults: dict[str, Any], overrides: dict[str, Any], source: Path) -> dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if key not in defaults:
            logger.debug("[prompts] %s: unknown key %s kept as-is", source.name, key)
            merged[key] = copy.deepcopy(value)
            continue
        base = defaults[key]
        if isinstance(base, dict) and isinstance(value, dict):
            merged[key] = _merge_overrides(base, value, source)
        elif isinstance(base, str) and not isinstance(value, str):
            logger.warning("[prompts] %s: key %s must be a string, keeping default", source.name, key)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _stat_mtime(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def load_prompt_json(filename: str, defaults: dict[str, Any]) -> dict[str, Any]:
    """Return ``defaults`` overlaid with ``<data dir>/<filename>``; reloads when the file changes."""
    path = prompt_data_dir() / filename
    cache_key = str(path.resolve())
    mtime_ns = _stat_mtime(path)

    cached = _CACHE.get(cache_key)
    if cached is not None and cached[0] == mtime_ns:
        return copy.deepcopy(cached[1])

    merged = copy.deepcopy(defaults)
    if mtime_ns is None:
        logger.debug("[prompts] %s not found, using built-in templates", path)
    else:
        try:
            payload = json.loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("[prompts] failed to read %s (%s), using built-in templates", path, exc)
        else:
            if isinstance(payload, dict):
                merged = _merge_overrides(defaults, payload, path)
            else:
                logger.warning("[prompts] %s root must be an object, using built-in templates", path)

    _CACHE[cache_key] = (mtime_ns, copy.deepcopy(merged))
    return merged
