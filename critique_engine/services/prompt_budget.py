from __future__ import annotations

import logging
import re

logger = logging.getLogger("critique_engine")

HARD_CUT_MARKER = "\n\n[... prompt truncated to fit the model context ...]"


def fit_prompt(prompt: str, max_chars: int) -> str:
    """Shrink ``prompt`` to ``max_chars`` by dropping trailing ``# `` sections first."""
    text = str(prompt or "")
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    sections = re.split(r"(?=^# )", text, flags=re.MULTILINE)
    kept = list(sections)
    while len(kept) > 1 and len("".join(kept)) > max_chars:
        kept.pop()
    fitted = "".join(kept)
    if len(fitted) > max_chars:
        keep = max(0, max_chars - len(HARD_CUT_MARKER))
        fitted = fitted[:keep] + HARD_CUT_MARKER
    logger.warning(
        "[critique.prompt] prompt shrunk from %s to %s chars (sections %s -> %s)",
        len(text),
        len(fitted),
        len(sections),
        len(kept),
    )
    return fitted
