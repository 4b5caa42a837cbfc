#!/usr/bin/env python3
"""ELF SessionStart hook -- seed, maintain, and summarize memory."""
import asyncio
import json
import os
import sys
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path


_MAX_LOG_BYTES = 5 * 1024 * 1024  # 5 MB cap
_CONSOLIDATE_EVERY_DAYS = 7


def _elf_home() -> Path:
    return Path(os.environ.get("ELF_HOME") or Path.home() / ".elf").expanduser()


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
        log_path = _elf_home() / "hooks.log"
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
    timestamp = datetime.now().isoformat(timespec="seconds")
    _append_log(f"[{timestamp}] {hook_name}: {error}\n{traceback.format_exc()}\n")


def _log_timing(hook_name: str, elapsed_ms: float):
    timestamp = datetime.now().isoformat(timespec="seconds")
    _append_log(f"[{timestamp}] {hook_name}: OK ({elapsed_ms:.0f}ms)\n")


def _read_input() -> dict:
    if sys.stdin.isatty():
        return {}
    try:
        raw = sys.stdin.read()
        data = json.loads(raw) if raw.strip() else {}
    except (json.JSONDecodeError, ValueError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _consolidation_due(marker: Path) -> bool:
    if not marker.exists():
        return True
    try:
        last = datetime.fromisoformat(marker.read_text().strip())
    except ValueError:
        return True
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - last).days >= _CONSOLIDATE_EVERY_DAYS


async def _maybe_auto_consolidate(memory) -> int:
    """Promote emergent patterns if more than a week has passed since the last run in this project."""
    from elfmem import config

    if not memory.stores.has_project or memory.stores.project_root is None:
        return 0
    marker = config.project_db_path(memory.stores.project_root).parent / "last-consolidate"
    if not _consolidation_due(marker):
        return 0
    result = await memory.run_consolidation()
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text(datetime.now(timezone.utc).isoformat())
    return len(result["promoted"])


async def start_session(cwd: str = "") -> dict:
    """Warm the embedding model, seed an empty store, and run due maintenance."""
    from elfmem.bridge import get_memory

    memory = get_memory(cwd or None)
    summary = {"seeded": {"rules": 0, "heuristics": 0}, "cleaned": 0, "promoted": 0}

    try:
        await memory.cache.init_async()
    except Exception as e:
        _log_hook_error("embedding_warmup", e)

    try:
        summary["seeded"] = await memory.seed_defaults()
    except Exception as e:
        _log_hook_error("seed_defaults", e)

    try:
        cleaned = await asyncio.to_thread(memory.scheduler.maybe_run)
        summary["cleaned"] = sum(stats.total for stats in (cleaned or {}).values())
    except Exception as e:
        _log_hook_error("cleanup", e)

    try:
        summary["promoted"] = await _maybe_auto_consolidate(memory)
    except Exception as e:
        _log_hook_error("auto_consolidate", e)

    summary["stats"] = await memory.stats()
    return summary


def main():
    data = _read_input()
    cwd = data.get("cwd") or os.environ.get("PROJECT_DIR", os.getcwd())

    try:
        summary = asyncio.run(start_session(cwd))
    except Exception as e:
        _log_hook_error("session_start", e)
        return

    counts = summary["stats"]["counts"]
    parts = []
    for scope, row in counts.items():
        if "error" in row:
            continue
        parts.append(f"{scope}: {row['rules']} rules, {row['learnings']} learnings, {row['heuristics']} heuristics")
    print(f"## ELF memory ready ({'; '.join(parts) or 'empty'})")
    seeded = summary["seeded"]
    if seeded["rules"] or seeded["heuristics"]:
        print(f"  Seeded {seeded['rules']} default rules and {seeded['heuristics']} heuristics.")
    if summary["cleaned"]:
        print(f"  Expired {summary['cleaned']} stale item(s).")
    if summary["promoted"]:
        print(f"  Promoted {summary['promoted']} recurring learning pattern(s) to rules.")


if __name__ == "__main__":
    _t0 = time.monotonic()
    main()
    _log_timing("session_start", (time.monotonic() - _t0) * 1000)
