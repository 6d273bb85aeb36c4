from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from .json_loader import load_prompt_json

_DEFAULTS = {
    "memory_update_contract": (
        "Return only a JSON object, with no markdown and no extra commentary, shaped like this:\n"
        '{"critique": "one paragraph: one thing done well, two things to improve",\n'
        ' "memory_update_diffs": {"df": [{"prev_txt": "exact fragment of the current document", '
        '"next_txt": "replacement text", "occ": 1}]},\n'
        ' "teaching": {"guidance": "short actionable advice for the next generation of this kind"},\n'
        ' "evolution": "optional note on how your own critical perspective changed"}\n'
        'Use {"rpl": "full new document"} instead of "df" for large rewrites or when the document is still the '
        "default template. An empty prev_txt appends next_txt to the end of the document."
    ),
    "critique_only_contract": (
        "Return only a JSON object, with no markdown, shaped like this:\n"
        '{"critique": "one paragraph: one thing done well, two things to improve", '
        '"evolution": "optional note on how your own critical perspective changed"}'
    ),
    "call_critique_template": (
        "You are the reflection critic of a story engine. Review one generative call.\n\n"
        "# GENERAL MEMORY\n{general_memory}\n\n"
        "# RECENT CONVERSATION\n{history}\n\n"
        "# CALL\nCategory: {category}\nModel: {model}\n\n"
        "## Prompt excerpt\n{prompt}\n\n"
        "## Response excerpt\n{response}\n\n"
        "# TASK\nCritique the response against its prompt. Focus on problems and missed opportunities."
    ),
    "chat_text_critique_template": (
        "You are the reflection critic of a story engine. Review one piece of generated narrative text "
        "and update the narrative feedback document.\n\n"
        "# GENERAL MEMORY\n{general_memory}\n\n"
        "# CURRENT NARRATIVE FEEDBACK DOCUMENT\n{current_document}\n\n"
        "# RECENT CONVERSATION\n{history}\n\n"
        "# CALL\nCategory: {category}\nModel: {model}\n\n"
        "## Prompt excerpt\n{prompt}\n\n"
        "## Generated text\n{response}\n\n"
        "# TASK\nCritique prose quality, pacing and coherence with the conversation. "
        "Then revise the feedback document so it captures durable lessons, not one-off remarks."
    ),
    "world_edit_critique_template": (
        "You are the reflection critic of a story engine. Review one world-state edit "
        "and update the world edit feedback document.\n\n"
        "# GENERAL MEMORY\n{general_memory}\n\n"
        "# CURRENT WORLD EDIT FEEDBACK DOCUMENT\n{current_document}\n\n"
        "# CURRENT WORLD NODES\n{nodes}\n\n"
        "# RECENT CONVERSATION\n{history}\n\n"
        "# CALL\nCategory: {category}\nModel: {model}\n\n"
        "## Prompt excerpt\n{prompt}\n\n"
        "## Proposed edit\n{response}\n\n"
        "# TASK\nCritique consistency of the edit with existing nodes and the story so far. "
        "Then revise the feedback document so it captures durable lessons."
    ),
    "manual_edit_template": (
        "You are the reflection critic of a story engine. A user corrected a world node by hand; "
        "learn what the generator should have done instead.\n\n"
        "# GENERAL MEMORY\n{general_memory}\n\n"
        "# CURRENT MANUAL EDIT LEARNINGS\n{current_document}\n\n"
        "# EDIT CONTEXT\n{edit_context}\n\n"
        "## Before\n{original}\n\n"
        "## After\n{edited}\n\n"
        "# TASK\nInfer the user's preferences from the difference and revise the learnings document."
    ),
    "assistant_result_template": (
        "You are the reflection critic of a story engine. Review how the assistant handled one request "
        "and update the assistant feedback document.\n\n"
        "# ASSISTANT PERSONALITY\n{assistant_nodes}\n\n"
        "# GENERAL MEMORY\n{general_memory}\n\n"
        "# CURRENT ASSISTANT FEEDBACK DOCUMENT\n{current_document}\n\n"
        "# RECENT CONVERSATION\n{history}\n\n"
        "## User request\n{query}\n\n"
        "## Assistant result\n{result}\n\n"
        "# TASK\nAssess whether the result solved the request well and revise the feedback document."
    ),
    "synthesis_template": (
        "You are the reflection critic of a story engine. Rebuild your general memory document from every "
        "other memory source.\n\n"
        "# ASSISTANT PERSONALITY\n{assistant_nodes}\n\n"
        "# CURRENT GENERAL MEMORY\n{current_general}\n\n"
        "# NARRATIVE FEEDBACK\n{chat_text}\n\n"
        "# WORLD EDIT FEEDBACK\n{world_edit}\n\n"
        "# MANUAL EDIT LEARNINGS\n{manual_edit}\n\n"
        "# ASSISTANT FEEDBACK\n{assistant_result}\n\n"
        "# RECENT CALL CRITIQUES\n{recent_critiques}\n\n"
        "# PENDING SELF-REFLECTION NOTES\n{pending_evolution}\n\n"
        "# REPORT CONTEXT\n{report_context}\n\n"
        "# TASK\nSynthesize the most critical issues, analyze how the user engages with the story, "
        "and list long-term improvements. Keep a separate section for the evolution of your own perspective "
        "and fold the pending self-reflection notes into it. Stay under {max_chars} characters."
    ),
    "chat_reset_template": (
        "You are the reflection critic of a story engine. The user just reset the conversation. "
        "Work out why and record it in your general memory.\n\n"
        "# CURRENT GENERAL MEMORY\n{current_general}\n\n"
        "# CONVERSATION BEFORE THE RESET\n{previous_history}\n\n"
        "# RESET DETAILS\n{details}\n\n"
        "# TASK\nInfer what frustrated or bored the user, what they may try next, and what the engine "
        "should do differently. Return the complete new general memory document as plain text, "
        "under {max_chars} characters."
    ),
    "final_report_template": (
        "You are the reflection critic of a story engine. Write a short end-of-turn report addressed to the "
        "narrative generator. Critique only: no praise paragraphs, no recap of the story.\n\n"
        "# ASSISTANT PERSONALITY\n{assistant_nodes}\n\n"
        "# RECENT CONVERSATION\n{history}\n\n"
        "# PREVIOUS REPORT\n{previous_report_analysis}\n\n"
        "# COMPLIANCE\n{compliance_analysis}\n\n"
        "# GENERAL MEMORY\n{general_memory}\n\n"
        "# NARRATIVE FEEDBACK\n{chat_text}\n\n"
        "# WORLD EDIT FEEDBACK\n{world_edit}\n\n"
        "# TASK\nList the most important problems of the last turns and concrete corrections. "
        "Use short markdown sections. Return plain text."
    ),
    "feedback_system_message_template": (
        "# Reflection feedback\n"
        "The following critique was collected on previous similar requests. Avoid repeating the mistakes "
        "it describes and prioritize any notes written by the user.\n\n"
        "---start of feedback---\n{context}\n---end of feedback---"
    ),
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("reflection.json", _DEFAULTS)


def _template(name: str) -> str:
    return str(_cfg().get(name, _DEFAULTS[name]))


def _or_placeholder(value: str, placeholder: str) -> str:
    text = str(value or "").strip()
    return text if text else placeholder


def format_nodes(nodes: Iterable[Mapping[str, Any]] | None, *, node_type: str | None = None) -> str:
    lines: list[str] = []
    for node in nodes or ():
        if not isinstance(node, Mapping):
            continue
        if node_type is not None and str(node.get("type") or "") != node_type:
            continue
        name = str(node.get("name") or node.get("id") or "(unnamed)")
        description = str(node.get("longDescription") or node.get("description") or "").strip()
        lines.append(f"Name: {name}\nDescription: {description}" if description else f"Name: {name}")
    if not lines:
        return f"(No '{node_type}' type nodes found)" if node_type else "(No nodes available)"
    return "\n\n---\n\n".join(lines)


def format_recent_critiques(entries: Iterable[Mapping[str, str]]) -> str:
    lines = [f"- [{entry.get('id', '?')}] {entry.get('critique', '')}" for entry in entries]
    return "\n".join(lines) if lines else "(No call critiques yet)"


def build_call_critique_prompt(
    *, category: str, model: str, prompt: str, response: str, history: str, general_memory: str
) -> str:
    body = _template("call_critique_template").format(
        category=category,
        model=model,
        prompt=_or_placeholder(prompt, "(empty prompt)"),
        response=_or_placeholder(response, "(empty response)"),
        history=history,
        general_memory=general_memory,
    )
    return f"{body}\n\n{_template('critique_only_contract')}"


def build_chat_text_critique_prompt(
    *,
    category: str,
    model: str,
    prompt: str,
    response: str,
    history: str,
    general_memory: str,
    current_document: str,
) -> str:
    body = _template("chat_text_critique_template").format(
        category=category,
        model=model,
        prompt=_or_placeholder(prompt, "(empty prompt)"),
        response=_or_placeholder(response, "(empty response)"),
        history=history,
        general_memory=general_memory,
        current_document=current_document,
    )
    return f"{body}\n\n{_template('memory_update_contract')}"


def build_world_edit_critique_prompt(
    *,
    category: str,
    model: str,
    prompt: str,
    response: str,
    history: str,
    general_memory: str,
    current_document: str,
    nodes: str,
) -> str:
    body = _template("world_edit_critique_template").format(
        category=category,
        model=model,
        prompt=_or_placeholder(prompt, "(empty prompt)"),
        response=_or_placeholder(response, "(empty response)"),
        history=history,
        general_memory=general_memory,
        current_document=current_document,
        nodes=nodes,
    )
    return f"{body}\n\n{_template('memory_update_contract')}"


def build_manual_edit_prompt(
    *, original: str, edited: str, edit_context: str, general_memory: str, current_document: str
) -> str:
    body = _template("manual_edit_template").format(
        original=_or_placeholder(original, "(empty)"),
        edited=_or_placeholder(edited, "(empty)"),
        edit_context=_or_placeholder(edit_context, "(no extra context)"),
        general_memory=general_memory,
        current_document=current_document,
    )
    return f"{body}\n\n{_template('memory_update_contract')}"


def build_assistant_result_prompt(
    *,
    query: str,
    result: str,
    history: str,
    assistant_nodes: str,
    general_memory: str,
    current_document: str,
) -> str:
    body = _template("assistant_result_template").format(
        query=_or_placeholder(query, "(empty request)"),
        result=_or_placeholder(result, "(empty result)"),
        history=history,
        assistant_nodes=assistant_nodes,
        general_memory=general_memory,
        current_document=current_document,
    )
    return f"{body}\n\n{_template('memory_update_contract')}"


def build_synthesis_prompt(
    *,
    documents: Mapping[str, str],
    recent_critiques: str,
    pending_evolution: Iterable[str],
    report_context: str,
    assistant_nodes: str,
    max_chars: int,
) -> str:
    notes = "\n".join(f"- {note}" for note in pending_evolution)
    body = _template("synthesis_template").format(
        assistant_nodes=assistant_nodes,
        current_general=documents.get("general", ""),
        chat_text=documents.get("chat_text", ""),
        world_edit=documents.get("world_edit", ""),
        manual_edit=documents.get("manual_edit", ""),
        assistant_result=documents.get("assistant_result", ""),
        recent_critiques=recent_critiques,
        pending_evolution=notes or "(none)",
        report_context=_or_placeholder(report_context, "(no report context)"),
        max_chars=max_chars,
    )
    return f"{body}\n\n{_template('memory_update_contract')}"


def build_chat_reset_prompt(*, current_general: str, previous_history: str, details: str, max_chars: int) -> str:
    return _template("chat_reset_template").format(
        current_general=current_general,
        previous_history=previous_history,
        details=_or_placeholder(details, "(no details)"),
        max_chars=max_chars,
    )


def build_final_report_prompt(
    *,
    assistant_nodes: str,
    history: str,
    previous_report: str | None,
    messages_since_report: int,
    documents: Mapping[str, str],
) -> str:
    if previous_report:
        previous_analysis = (
            f"Previous Report Content:\n{previous_report}\n\n"
            f"Messages since previous report: {messages_since_report}"
        )
        compliance = (
            f"You have a previous report from {messages_since_report} messages ago. "
            "Check which of its corrections the narrative generator applied and which it ignored."
        )
    else:
        previous_analysis = "No previous report found in chat history."
        compliance = "No previous report to check compliance against."
    return _template("final_report_template").format(
        assistant_nodes=assistant_nodes,
        history=history,
        previous_report_analysis=previous_analysis,
        compliance_analysis=compliance,
        general_memory=documents.get("general", ""),
        chat_text=documents.get("chat_text", ""),
        world_edit=documents.get("world_edit", ""),
    )


def build_feedback_system_message(context: Mapping[str, Any] | str) -> str:
    text = context if isinstance(context, str) else json.dumps(context, ensure_ascii=False, indent=2)
    return _template("feedback_system_message_template").format(context=text)
