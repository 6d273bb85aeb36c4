from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("critique_engine")


class DebouncedTrigger:
    """Collapse bursts of dispatch requests into a single pass.

    Every request re-arms one pending ``call_later`` handle, so only the last
    request inside the window fires.
    """

    def __init__(self, callback: Callable[[], None], delay_seconds: float = 0.05) -> None:
        self._callback = callback
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def request(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[reflection.debounce] request ignored: no running event loop")
            return
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay_seconds, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        except Exception:
            logger.exception("[reflection.debounce] dispatch pass failed")
