from __future__ import annotations

from enum import Enum
from typing import Dict


class DocumentName(str, Enum):
    GENERAL = "general"
    CHAT_TEXT = "chat_text"
    WORLD_EDIT = "world_edit"
    MANUAL_EDIT = "manual_edit"
    ASSISTANT_RESULT = "assistant_result"


DEFAULT_DOCUMENTS: Dict[DocumentName, str] = {
    DocumentName.GENERAL: (
        "# General Reflection Memory\n\n"
        "## Observed Patterns\n"
        "No patterns recorded yet.\n\n"
        "## Recurring Issues\n"
        "No recurring issues recorded yet.\n\n"
        "## Guidance For Future Calls\n"
        "No guidance recorded yet."
    ),
    DocumentName.CHAT_TEXT: (
        "# Narrative Text Feedback\n\n"
        "No feedback on generated narrative text yet."
    ),
    DocumentName.WORLD_EDIT: (
        "# World Edit Feedback\n\n"
        "No feedback on world-state edits yet."
    ),
    DocumentName.MANUAL_EDIT: (
        "# Manual Edit Learnings\n\n"
        "No manual corrections observed yet."
    ),
    DocumentName.ASSISTANT_RESULT: (
        "# Assistant Result Feedback\n\n"
        "No feedback on assistant-directed edits yet."
    ),
}


def document_name(name: DocumentName | str) -> DocumentName:
    if isinstance(name, DocumentName):
        return name
    return DocumentName(str(name or "").strip())


def default_document(name: DocumentName | str) -> str:
    return DEFAULT_DOCUMENTS[document_name(name)]
