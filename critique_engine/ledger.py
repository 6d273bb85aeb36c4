from __future__ import annotations

import itertools
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .common import as_float, as_int, as_str, cap_text

logger = logging.getLogger("critique_engine.ledger")

LedgerListener = Callable[[List["CallRecord"]], None]


class DuplicateCallError(ValueError):
    """Raised when a call id is registered twice."""


class CallStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_TERMINAL = {CallStatus.COMPLETED, CallStatus.FAILED}


@dataclass(slots=True)
class CallRecord:
    id: str
    category: str
    model: str
    prompt_excerpt: str
    status: CallStatus
    started_at: float
    sequence: int = 0
    response_excerpt: Optional[str] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    critique: Optional[str] = None
    chat_history: Optional[List[Dict[str, str]]] = None

    def sort_key(self) -> tuple[float, int]:
        return (self.started_at, self.sequence)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_payload(cls, record_id: str, raw: Mapping[str, Any]) -> "CallRecord":
        try:
            status = CallStatus(str(raw.get("status") or CallStatus.COMPLETED.value))
        except ValueError:
            status = CallStatus.COMPLETED
        started_at = as_float(raw.get("started_at"), 0.0)
        finished_at: Optional[float] = None
        if raw.get("finished_at") is not None:
            finished_at = as_float(raw.get("finished_at"), started_at)
        elif status in _TERMINAL:
            finished_at = started_at
        duration = raw.get("duration_ms")
        history = raw.get("chat_history")
        return cls(
            id=str(raw.get("id") or record_id),
            category=as_str(raw.get("category"), "unknown_migrated") or "unknown_migrated",
            model=as_str(raw.get("model"), "unknown_migrated") or "unknown_migrated",
            prompt_excerpt=as_str(raw.get("prompt_excerpt"), "[prompt unavailable]"),
            status=status,
            started_at=started_at,
            sequence=as_int(raw.get("sequence"), 0),
            response_excerpt=raw.get("response_excerpt"),
            finished_at=finished_at if status in _TERMINAL else None,
            error=raw.get("error"),
            duration_ms=as_int(duration, 0) if duration is not None else None,
            critique=raw.get("critique") if status == CallStatus.COMPLETED else None,
            chat_history=list(history) if isinstance(history, list) else None,
        )


@dataclass(slots=True)
class CallLedger:
    """Bounded record of generative calls and their lifecycle.

    Malformed transitions are logged and ignored so the ledger never gets in the
    way of the caller that owns the real generative call.
    """

    capacity: int = 50
    excerpt_max_chars: int = 5000
    error_max_chars: int = 1000
    clock: Callable[[], float] = time.time
    _records: Dict[str, CallRecord] = field(default_factory=dict)
    _listeners: List[LedgerListener] = field(default_factory=list)
    _sequence: Any = field(default_factory=lambda: itertools.count(1))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._records

    def get(self, call_id: str) -> Optional[CallRecord]:
        return self._records.get(call_id)

    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        entries = self.list()
        for listener in list(self._listeners):
            try:
                listener(entries)
            except Exception:
                logger.exception("[ledger] listener failed")

    def begin(
        self,
        call_id: str,
        category: str,
        model: str,
        prompt: str,
        *,
        chat_history: Optional[List[Dict[str, str]]] = None,
    ) -> CallRecord:
        if call_id in self._records:
            raise DuplicateCallError(f"Call id already registered: {call_id}")
        now = self.clock()
        record = CallRecord(
            id=call_id,
            category=str(category or "").strip() or "unknown",
            model=str(model or "").strip() or "unknown",
            prompt_excerpt=cap_text(prompt, self.excerpt_max_chars),
            status=CallStatus.QUEUED,
            started_at=now,
            sequence=next(self._sequence),
            chat_history=chat_history,
        )
        # Registration happens when the backend request is already being issued.
        record.status = CallStatus.RUNNING
        self._records[call_id] = record
        logger.debug("[ledger] begin id=%s category=%s model=%s", call_id, record.category, record.model)
        self._notify()
        return record

    def finish(self, call_id: str, response: str) -> Optional[CallRecord]:
        record = self._records.get(call_id)
        if record is None or record.status != CallStatus.RUNNING:
            logger.warning("[ledger] finish ignored id=%s reason=not_running", call_id)
            return None
        now = self.clock()
        record.response_excerpt = cap_text(response, self.excerpt_max_chars)
        record.status = CallStatus.COMPLETED
        record.finished_at = now
        record.duration_ms = max(0, int(round((now - record.started_at) * 1000)))
        logger.debug(
            "[ledger] finish id=%s category=%s duration_ms=%s", call_id, record.category, record.duration_ms
        )
        self._evict()
        self._notify()
        return record

    def fail(self, call_id: str, error_message: str) -> Optional[CallRecord]:
        record = self._records.get(call_id)
        if record is None or record.status not in {CallStatus.RUNNING, CallStatus.QUEUED}:
            logger.warning("[ledger] fail ignored id=%s reason=not_failable", call_id)
            return None
        now = self.clock()
        record.status = CallStatus.FAILED
        record.finished_at = now
        record.error = cap_text(error_message, self.error_max_chars, "...")
        record.duration_ms = max(0, int(round((now - record.started_at) * 1000)))
        logger.info("[ledger] failed id=%s category=%s error=%s", call_id, record.category, record.error[:160])
        self._notify()
        return record

    def record_external_event(self, call_id: str, category: str, prompt: str, response: str) -> CallRecord:
        now = self.clock()
        previous = self._records.pop(call_id, None)
        if previous is not None:
            logger.warning("[ledger] external event replaces existing record id=%s", call_id)
        record = CallRecord(
            id=call_id,
            category=str(category or "").strip() or "system_event",
            model="N/A",
            prompt_excerpt=cap_text(prompt, self.excerpt_max_chars),
            status=CallStatus.COMPLETED,
            started_at=now,
            sequence=next(self._sequence),
            response_excerpt=cap_text(response, self.excerpt_max_chars),
            finished_at=now,
            duration_ms=0,
        )
        self._records[call_id] = record
        self._evict()
        self._notify()
        return record

    def attach_critique(self, call_id: str, critique: str) -> bool:
        record = self._records.get(call_id)
        if record is None:
            logger.warning("[ledger] critique dropped id=%s reason=evicted_or_unknown", call_id)
            return False
        if record.status != CallStatus.COMPLETED:
            logger.warning("[ledger] critique dropped id=%s reason=status_%s", call_id, record.status.value)
            return False
        if record.critique is not None:
            logger.warning("[ledger] critique dropped id=%s reason=already_set", call_id)
            return False
        record.critique = cap_text(critique, self.excerpt_max_chars)
        self._notify()
        return True

    def get_critique(self, call_id: str) -> Optional[str]:
        record = self._records.get(call_id)
        return record.critique if record is not None else None

    def list(self) -> List[CallRecord]:
        return sorted(self._records.values(), key=CallRecord.sort_key, reverse=True)

    def recent_critiques(self, limit: int) -> List[Dict[str, str]]:
        latest = sorted(
            self._records.values(),
            key=lambda rec: (rec.finished_at or rec.started_at, rec.sequence),
            reverse=True,
        )[: max(0, limit)]
        return [{"id": rec.id, "critique": rec.critique or "No critique available"} for rec in latest]

    def clear(self) -> None:
        self._records.clear()
        self._notify()

    def _evict(self) -> None:
        overflow = len(self._records) - self.capacity
        if overflow <= 0:
            return
        oldest = sorted(self._records.values(), key=CallRecord.sort_key)[:overflow]
        for record in oldest:
            del self._records[record.id]
        logger.info("[ledger] evicted=%s capacity=%s", len(oldest), self.capacity)

    def to_payload(self) -> dict[str, dict[str, Any]]:
        return {call_id: record.to_payload() for call_id, record in self._records.items()}

    def load_payload(self, raw: object) -> None:
        self._records.clear()
        if not isinstance(raw, Mapping):
            return
        max_sequence = 0
        for call_id, entry in raw.items():
            if not isinstance(entry, Mapping):
                continue
            record = CallRecord.from_payload(str(call_id), entry)
            self._records[record.id] = record
            max_sequence = max(max_sequence, record.sequence)
        self._sequence = itertools.count(max_sequence + 1)
        self._evict()
