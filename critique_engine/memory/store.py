from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..common import TRUNCATION_MARKER, cap_text
from ..ledger import CallLedger
from .diffs import DiffInstruction, DiffResult, MemoryUpdate, apply_diff_instructions
from .documents import DEFAULT_DOCUMENTS, DocumentName, default_document, document_name
from .persistence import StatePersister

logger = logging.getLogger("critique_engine")

STATE_VERSION = 2

# Layout written by older builds: one general document plus a nested per-feature map.
_LEGACY_FEATURE_KEYS = {
    "chatText": DocumentName.CHAT_TEXT,
    "nodeEdition": DocumentName.WORLD_EDIT,
    "nodeEdit": DocumentName.MANUAL_EDIT,
    "assistantFeedback": DocumentName.ASSISTANT_RESULT,
}
_LEGACY_GUIDANCE_KEYS = {
    "chatTextGuidance": "chat_text",
    "nodeEditionGuidance": "world_edit",
    "assistantGuidance": "assistant_result",
}


class MemoryStore:
    """Named critique documents plus the auxiliary state persisted alongside them."""

    def __init__(
        self,
        ledger: CallLedger,
        persister: Optional[StatePersister] = None,
        *,
        general_max_chars: int = 15000,
    ) -> None:
        self.ledger = ledger
        self.persister = persister
        self.general_max_chars = max(1, int(general_max_chars))
        self._documents: Dict[DocumentName, str] = dict(DEFAULT_DOCUMENTS)
        self._guidance: Dict[str, str] = {}
        self._pending_evolution: List[str] = []

    def read(self, name: DocumentName | str) -> str:
        try:
            key = document_name(name)
        except ValueError:
            logger.warning("[memory.store] unknown document=%s", name)
            return ""
        text = self._documents.get(key) or ""
        return text if text.strip() else default_document(key)

    def documents(self) -> Dict[str, str]:
        return {name.value: self.read(name) for name in DocumentName}

    def _store(self, key: DocumentName, text: str) -> str:
        value = str(text or "")
        if not value.strip():
            value = default_document(key)
        if key == DocumentName.GENERAL:
            value = cap_text(value, self.general_max_chars, TRUNCATION_MARKER)
        self._documents[key] = value
        return value

    def apply_replacement(self, name: DocumentName | str, text: str) -> str:
        key = document_name(name)
        value = self._store(key, text)
        logger.info("[memory.store] replaced doc=%s chars=%s", key.value, len(value))
        self.save()
        return value

    def apply_diff(self, name: DocumentName | str, instructions: Iterable[DiffInstruction]) -> DiffResult:
        key = document_name(name)
        result = apply_diff_instructions(self.read(key), list(instructions), label=key.value)
        if result.applied:
            result.text = self._store(key, result.text)
            self.save()
        logger.info("[memory.store] diff doc=%s applied=%s skipped=%s", key.value, result.applied, result.skipped)
        return result

    def apply_update(self, name: DocumentName | str, update: MemoryUpdate) -> bool:
        if update.replacement is not None:
            self.apply_replacement(name, update.replacement)
            return True
        if update.diffs:
            return self.apply_diff(name, update.diffs).applied > 0
        logger.info("[memory.store] no memory update for doc=%s", document_name(name).value)
        return False

    def get_guidance(self, stream: str) -> str:
        return self._guidance.get(str(stream or "").strip(), "")

    def set_guidance(self, stream: str, text: str) -> None:
        key = str(stream or "").strip()
        if not key or not str(text or "").strip():
            return
        self._guidance[key] = str(text).strip()
        self.save()

    def add_evolution_note(self, note: str) -> int:
        cleaned = str(note or "").strip()
        if cleaned:
            self._pending_evolution.append(cleaned)
            self.save()
        return len(self._pending_evolution)

    def pending_evolution(self) -> List[str]:
        return list(self._pending_evolution)

    def consume_evolution(self, count: int) -> None:
        """Drop the ``count`` oldest notes once they were folded into the general document."""
        if count <= 0 or not self._pending_evolution:
            return
        del self._pending_evolution[:count]
        self.save()

    def reset(self) -> None:
        self._documents = dict(DEFAULT_DOCUMENTS)
        self._guidance.clear()
        self._pending_evolution.clear()
        self.ledger.clear()
        logger.info("[memory.store] reset to defaults")
        self.save()

    def export(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "documents": self.documents(),
            "calls": self.ledger.to_payload(),
            "guidance": dict(self._guidance),
            "pending_evolution": list(self._pending_evolution),
        }

    def import_(self, snapshot: Mapping[str, Any]) -> None:
        state = _migrate_state(snapshot)
        self._documents = dict(DEFAULT_DOCUMENTS)
        for name, text in state["documents"].items():
            self._store(name, text)
        self._guidance = state["guidance"]
        self._pending_evolution = state["pending_evolution"]
        self.ledger.load_payload(state["calls"])
        self.save()

    def save(self) -> None:
        if self.persister is not None:
            self.persister.schedule(self.export())

    async def load(self) -> bool:
        if self.persister is None:
            return False
        payload = await self.persister.load()
        if payload is None:
            return False
        state = _migrate_state(payload)
        self._documents = dict(DEFAULT_DOCUMENTS)
        for name, text in state["documents"].items():
            self._store(name, text)
        self._guidance = state["guidance"]
        self._pending_evolution = state["pending_evolution"]
        self.ledger.load_payload(state["calls"])
        logger.info(
            "[memory.store] loaded state version=%s calls=%s",
            payload.get("version", "legacy"),
            len(self.ledger),
        )
        return True


def _migrate_state(raw: Mapping[str, Any]) -> Dict[str, Any]:
    snapshot = copy.deepcopy(dict(raw or {}))
    documents: Dict[DocumentName, str] = {}
    calls: Any = snapshot.get("calls")

    raw_documents = snapshot.get("documents")
    if isinstance(raw_documents, Mapping):
        for key, value in raw_documents.items():
            try:
                name = document_name(str(key))
            except ValueError:
                logger.warning("[memory.store] dropping unknown document=%s", key)
                continue
            if isinstance(value, str) and value.strip():
                documents[name] = value

    legacy_general = snapshot.get("GeneralMemory")
    if isinstance(legacy_general, str) and legacy_general.strip():
        documents.setdefault(DocumentName.GENERAL, legacy_general)
    legacy_features = snapshot.get("featureSpecificMemory")
    if isinstance(legacy_features, Mapping):
        for legacy_key, name in _LEGACY_FEATURE_KEYS.items():
            value = legacy_features.get(legacy_key)
            if isinstance(value, str) and value.strip():
                documents.setdefault(name, value)
        if calls is None:
            calls = _migrate_legacy_calls(legacy_features.get("llmCalls"))

    guidance_raw = snapshot.get("guidance")
    guidance = (
        {str(k): str(v) for k, v in guidance_raw.items() if isinstance(v, str) and v.strip()}
        if isinstance(guidance_raw, Mapping)
        else {}
    )
    legacy_guidance = snapshot.get("cachedGuidance")
    if isinstance(legacy_guidance, Mapping):
        for legacy_key, stream in _LEGACY_GUIDANCE_KEYS.items():
            value = legacy_guidance.get(legacy_key)
            if isinstance(value, str) and value.strip():
                guidance.setdefault(stream, value)
    evolution_raw = snapshot.get("pending_evolution", snapshot.get("pendingConsciousnessEvolution"))
    pending = [str(item) for item in evolution_raw if str(item or "").strip()] if isinstance(evolution_raw, list) else []

    return {
        "documents": documents,
        "calls": calls if isinstance(calls, Mapping) else {},
        "guidance": guidance,
        "pending_evolution": pending,
    }


def _legacy_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Older layouts stored epoch milliseconds.
        return value / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def _migrate_legacy_calls(raw: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return {}
    renamed = {
        "prompt": "prompt_excerpt",
        "response": "response_excerpt",
        "startTime": "started_at",
        "endTime": "finished_at",
        "duration": "duration_ms",
        "modelUsed": "model",
        "callType": "category",
        "feedback": "critique",
        "chatHistory": "chat_history",
    }
    result: Dict[str, Dict[str, Any]] = {}
    for call_id, entry in raw.items():
        if not isinstance(entry, Mapping):
            continue
        migrated: Dict[str, Any] = {}
        for key, value in entry.items():
            migrated[renamed.get(str(key), str(key))] = value
        fallback = _legacy_timestamp(entry.get("timestamp"))
        started = _legacy_timestamp(migrated.get("started_at"))
        migrated["started_at"] = started if started is not None else (fallback or 0.0)
        finished = _legacy_timestamp(migrated.get("finished_at"))
        if finished is not None:
            migrated["finished_at"] = finished
        else:
            migrated.pop("finished_at", None)
        migrated.pop("timestamp", None)
        result[str(call_id)] = migrated
    return result
