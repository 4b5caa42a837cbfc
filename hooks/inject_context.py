#!/usr/bin/env python3
"""ELF UserPromptSubmit hook -- inject relevant memory into the prompt.

Reads the hook JSON from stdin (prompt, session_id, cwd), retrieves rules,
learnings and heuristics for the prompt, and prints the formatted block to
stdout, which the host appends to the model's context. The surfaced learning
ids are remembered under the session id so record_outcome.py can score them.
"""
import asyncio
import json
import os
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path


_MAX_LOG_BYTES = 5 * 1024 * 1024  # 5 MB cap


def _hooks_log() -> Path:
    return Path(os.environ.get("ELF_HOME") or Path.home() / ".elf").expanduser() / "hooks.log"


def _rotate_log_if_needed(log_path: Path):
    """Rotate hooks.log if it exceeds the size cap."""
    try:
        if log_path.exists() and log_path.stat().st_size > _MAX_LOG_BYTES:
            rotated = log_path.with_suffix(".log.1")
            if rotated.exists():
                rotated.unlink()
            log_path.rename(rotated)
    except Exception:
        pass


def _append_log(data: str):
    try:
        log_path = _hooks_log()
        log_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        _rotate_log_if_needed(log_path)
        fd = os.open(str(log_path), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        try:
            os.write(fd, data.encode("utf-8"))
        finally:
            os.close(fd)
    except Exception:
        pass


def _log_hook_error(hook_name: str, error: Exception):
    """Log hook errors to $ELF_HOME/hooks.log for debugging."""
    timestamp = datetime.now().isoformat(timespec="seconds")
    _append_log(f"[{timestamp}] {hook_name}: {error}\n{traceback.format_exc()}\n")


def _log_timing(hook_name: str, elapsed_ms: float):
    timestamp = datetime.now().isoformat(timespec="seconds")
    _append_log(f"[{timestamp}] {hook_name}: OK ({elapsed_ms:.0f}ms)\n")


def _read_input() -> dict:
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            return {}
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


async def inject(prompt: str, session_id: str = "", cwd: str = "") -> str:
    """Return the memory block for ``prompt`` ("" when nothing is relevant)."""
    from elfmem.bridge import get_memory

    memory = get_memory(cwd or None)
    context = await memory.get_context(prompt, session_key=session_id or None)
    if context.is_empty():
        return ""
    if context.rules:
        await memory.increment_rule_hits(context.rule_ids())
    return memory.format_for_prompt(context)


def main():
    data = _read_input()
    prompt = (data.get("prompt") or "").strip()
    if not prompt:
        return
    session_id = data.get("session_id", "")
    cwd = data.get("cwd") or os.environ.get("PROJECT_DIR", "")

    try:
        text = asyncio.run(inject(prompt, session_id, cwd))
    except Exception as e:
        _log_hook_error("inject_context", e)
        return
    if text:
        print(text)


if __name__ == "__main__":
    _t0 = time.monotonic()
    main()
    _log_timing("inject_context", (time.monotonic() - _t0) * 1000)
