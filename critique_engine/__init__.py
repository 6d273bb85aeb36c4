from .config import Settings
from .engine import ReflectionEngine
from .ledger import CallLedger, CallRecord, CallStatus, DuplicateCallError
from .memory.documents import DocumentName
from .tasks import ReflectionTask, TaskKind

__all__ = [
    "CallLedger",
    "CallRecord",
    "CallStatus",
    "DocumentName",
    "DuplicateCallError",
    "ReflectionEngine",
    "ReflectionTask",
    "Settings",
    "TaskKind",
]
