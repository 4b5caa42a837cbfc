#!/usr/bin/env python3
"""ELF PostToolUse hook -- learn from tool results.

A failed tool run (stderr, an error field, or a non-zero exit code other than
an interrupt) is recorded as a failure learning in the project scope, and the
learnings surfaced earlier in the session are scored down. A clean run
scores them up.
"""
import asyncio
import json
import os
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional


_MAX_LOG_BYTES = 5 * 1024 * 1024  # 5 MB cap
_MAX_COMMAND_CHARS = 100
_INTERRUPTED_EXIT_CODE = 130


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


def _as_dict(value) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return {"output": value}
        return parsed if isinstance(parsed, dict) else {"output": value}
    return {}


def _exit_code(result: dict) -> Optional[int]:
    for key in ("exitCode", "exit_code", "returncode"):
        value = result.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _command_context(args: dict) -> str:
    if isinstance(args.get("command"), str):
        command = args["command"]
    elif isinstance(args.get("cmd"), str):
        command = args["cmd"]
    elif args:
        command = json.dumps(args)
    else:
        command = ""
    if len(command) > _MAX_COMMAND_CHARS:
        command = command[:_MAX_COMMAND_CHARS - 3] + "..."
    return command


def describe_failure(tool_name: str, args: dict, result: dict) -> Optional[str]:
    """Learning text for a failed tool run, or None if the run succeeded.

    >>> describe_failure("bash", {"command": "npm install"}, {"stderr": "ENOENT", "exitCode": 1})
    "Tool 'bash' failed running 'npm install': ENOENT"
    """
    stderr = result.get("stderr") or ""
    error = result.get("error") or ""
    exit_code = _exit_code(result)
    if not (stderr or error or (exit_code is not None and exit_code != 0)):
        return None
    if exit_code == _INTERRUPTED_EXIT_CODE:
        return None

    detail = stderr or error or f"Exit Code {exit_code}"
    command = _command_context(args)
    where = f" running '{command}'" if command else ""
    return f"Tool '{tool_name}' failed{where}: {detail}"


async def record(tool_name: str, args: dict, result: dict, session_id: str = "", cwd: str = "") -> Optional[str]:
    """Record the outcome of one tool run. Returns the learning text on failure."""
    from elfmem.bridge import get_memory
    from elfmem.types import Category, Scope

    memory = get_memory(cwd or None)
    content = describe_failure(tool_name, args, result)
    key = session_id or None
    if content is None:
        if key:
            await memory.apply_feedback(True, key)
        return None

    await memory.record_learning(
        content,
        Category.FAILURE,
        json.dumps({"args": args, "result": result}, sort_keys=True, default=str),
        Scope.PROJECT,
    )
    if key:
        await memory.apply_feedback(False, key)
    return content


def main():
    data = _read_input()
    tool_name = data.get("tool_name") or os.environ.get("TOOL_NAME", "")
    if not tool_name:
        return
    args = _as_dict(data.get("tool_input", os.environ.get("TOOL_INPUT", "{}")))
    result = _as_dict(data.get("tool_response", data.get("tool_output", os.environ.get("TOOL_OUTPUT", ""))))
    session_id = data.get("session_id") or os.environ.get("SESSION_ID", "")
    cwd = data.get("cwd") or os.environ.get("PROJECT_DIR", "")

    try:
        asyncio.run(record(tool_name, args, result, session_id, cwd))
    except Exception as e:
        _log_hook_error("record_outcome", e)


if __name__ == "__main__":
    _t0 = time.monotonic()
    main()
    _log_timing("record_outcome", (time.monotonic() - _t0) * 1000)
