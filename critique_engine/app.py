from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List

from .config import Settings
from .engine import ReflectionEngine
from .ledger import DuplicateCallError
from .memory.factory import build_blob_store
from .services import build_critique_generator

logger = logging.getLogger("critique_engine")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_engine(settings: Settings) -> ReflectionEngine:
    return ReflectionEngine(
        build_critique_generator(settings),
        settings=settings,
        blob_store=build_blob_store(settings),
    )


def _read_events(path: Path) -> Iterator[Dict[str, Any]]:
    with path.open("r", encoding="utf-8-sig") as handle:
        for line_no, raw_line in enumerate(handle, start=1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError as exc:
                logger.warning("[replay] line=%s skipped: %s", line_no, exc)
                continue
            if not isinstance(event, dict):
                logger.warning("[replay] line=%s skipped: event must be an object", line_no)
                continue
            yield event


def _apply_event(engine: ReflectionEngine, event: Dict[str, Any], history: List[Dict[str, Any]]) -> None:
    op = str(event.get("op") or "").strip().lower()
    call_id = str(event.get("id") or "")
    if op == "begin":
        engine.begin_call(
            call_id,
            str(event.get("category") or ""),
            str(event.get("model") or ""),
            str(event.get("prompt") or ""),
            chat_history=list(history),
        )
    elif op == "finish":
        response = str(event.get("response") or "")
        engine.finish_call(call_id, response)
        if event.get("role"):
            history.append({"role": str(event["role"]), "content": response})
    elif op == "fail":
        engine.fail_call(call_id, str(event.get("error") or "unknown error"))
    elif op == "event":
        previous = list(history) if event.get("category") == "chat_reset_event" else None
        engine.record_system_event(
            call_id,
            str(event.get("prompt") or ""),
            str(event.get("response") or ""),
            str(event.get("category") or "system_event"),
            previous_history=previous,
        )
        if previous is not None:
            history.clear()
    elif op == "message":
        history.append({"role": str(event.get("role") or "user"), "content": str(event.get("content") or "")})
    elif op == "manual_edit":
        engine.record_manual_edit(
            str(event.get("original") or ""),
            str(event.get("edited") or ""),
            str(event.get("context") or ""),
        )
    elif op == "assistant_result":
        engine.record_assistant_result(str(event.get("query") or ""), event.get("result"))
    else:
        logger.warning("[replay] unknown op=%s id=%s", op or "(empty)", call_id)


async def replay(settings: Settings, events_path: Path, export_path: Path | None = None) -> List[Dict[str, str]]:
    engine = build_engine(settings)
    history: List[Dict[str, Any]] = []
    reports: List[Dict[str, str]] = []

    def _sink(message: Dict[str, str]) -> None:
        reports.append(message)
        history.append(message)

    await engine.initialize(get_nodes=list, emit_message=_sink, get_chat_history=lambda: list(history))
    try:
        for event in _read_events(events_path):
            try:
                _apply_event(engine, event, history)
            except DuplicateCallError as exc:
                logger.warning("[replay] %s", exc)
            # Let the debounced dispatch see events arrive as a live caller would send them.
            await asyncio.sleep(0)
        await engine.drain()
        if export_path is not None:
            export_path.parent.mkdir(parents=True, exist_ok=True)
            export_path.write_text(json.dumps(engine.export_memory(), ensure_ascii=False, indent=2), encoding="utf-8")
            logger.info("[replay] memory exported to %s", export_path)
    finally:
        await engine.aclose()
    return reports


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="critique_engine",
        description="Replay a JSON-lines stream of generative calls through the reflection engine.",
    )
    parser.add_argument("events", type=Path, help="JSON-lines file with begin/finish/fail/event/... records")
    parser.add_argument("--export", type=Path, default=None, help="write the final memory snapshot to this file")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def main(argv: List[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    settings = Settings.from_env()
    settings.validate()
    reports: List[Dict[str, str]] = []
    with contextlib.suppress(KeyboardInterrupt):
        reports = asyncio.run(replay(settings, args.events, args.export))
    for report in reports:
        print(f"[{report['role']}]\n{report['content']}\n", flush=True)
    return 0
