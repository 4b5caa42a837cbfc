"""
ELF MCP Handlers -- Maps tool names to async handler functions.

Each handler delegates to the process ElfMemory (elfmem.bridge.get_memory)
and returns MCP-compatible response dicts. Handlers never raise.
"""

import json
import logging
from typing import Any, Dict

from elfmem.bridge import get_memory
from elfmem.types import Category, Scope

logger = logging.getLogger("elfmem.server.handlers")


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 1000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _scope(arguments: dict, default: Scope) -> Scope:
    try:
        return Scope(arguments.get("scope") or default)
    except ValueError:
        raise ValueError("scope must be 'global' or 'project'")


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(text: str) -> dict:
    """Build a successful MCP response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


def _suffix(scope: Scope) -> str:
    return " (project)" if scope == Scope.PROJECT else ""


# ============================================================================
# Handler: elf_context
# ============================================================================


async def handle_elf_context(arguments: dict) -> dict:
    """Formatted memory block for a prompt."""
    prompt = (arguments.get("prompt") or "").strip()
    if not prompt:
        return mcp_error("prompt is required")
    memory = get_memory(arguments.get("cwd"))
    context = await memory.get_context(prompt, session_key=arguments.get("session_id"))
    if context.rules:
        await memory.increment_rule_hits(context.rule_ids())
    text = memory.format_for_prompt(context)
    return mcp_response(text or "No relevant memory.")


# ============================================================================
# Handler: elf_search
# ============================================================================


async def handle_elf_search(arguments: dict) -> dict:
    """Hybrid search over learnings."""
    query = (arguments.get("query") or "").strip()
    if not query:
        return mcp_error("query is required")
    limit = _clamp_int(arguments.get("limit", 10), default=10, max_val=100)
    memory = get_memory(arguments.get("cwd"))
    results = await memory.search_hybrid(query, limit=limit)
    if not results:
        return mcp_response(f"No learnings found for: {query}")

    lines = [f"# Search: {query}", f"{len(results)} result(s)", ""]
    for i, scored in enumerate(results, 1):
        item = scored.item
        lines.append(
            f"{i}. [{scored.score * 100:.0f}% {scored.match_type.value}] {item.content}{_suffix(item.scope)}"
        )
        lines.append(
            f"   `{item.id}` {item.category.value}, utility {item.utility_score:.2f}, "
            f"{item.created_at.date().isoformat()}"
        )
    return mcp_response("\n".join(lines))


# ============================================================================
# Handler: elf_rules
# ============================================================================


async def handle_elf_rules(arguments: dict) -> dict:
    """List, add or delete golden rules."""
    action = arguments.get("action", "list")
    memory = get_memory(arguments.get("cwd"))
    try:
        if action == "list":
            scope = arguments.get("scope")
            rules = await memory.list_rules(Scope(scope) if scope else None)
            if not rules:
                return mcp_response("No golden rules.")
            lines = [f"# Golden Rules ({len(rules)})", ""]
            for rule in rules:
                lines.append(f"- {rule.content}{_suffix(rule.scope)}  `{rule.id}` hits={rule.hit_count}")
            return mcp_response("\n".join(lines))

        if action == "add":
            content = (arguments.get("content") or "").strip()
            if not content:
                return mcp_error("content is required for action=add")
            rule = await memory.add_rule(content, _scope(arguments, Scope.GLOBAL))
            if rule is None:
                return mcp_response("Rule skipped (private content).")
            return mcp_response(f"Added {rule.scope.value} rule `{rule.id}`: {rule.content}")

        if action == "delete":
            rule_id = (arguments.get("id") or "").strip()
            if not rule_id:
                return mcp_error("id is required for action=delete")
            if await memory.delete("rule", rule_id):
                return mcp_response(f"Deleted rule `{rule_id}`")
            return mcp_error(f"Rule not found: {rule_id}")

        return mcp_error(f"Unknown action: {action}")
    except ValueError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("elf_rules failed: %s", e)
        return mcp_error(f"Rule operation failed: {e}")


# ============================================================================
# Handler: elf_heuristics
# ============================================================================


async def handle_elf_heuristics(arguments: dict) -> dict:
    """List, add or delete heuristics."""
    action = arguments.get("action", "list")
    memory = get_memory(arguments.get("cwd"))
    try:
        if action == "list":
            scope = arguments.get("scope")
            heuristics = await memory.list_heuristics(Scope(scope) if scope else None)
            if not heuristics:
                return mcp_response("No heuristics.")
            lines = [f"# Heuristics ({len(heuristics)})", ""]
            disabled = memory.engine.disabled_heuristics
            for h in heuristics:
                flag = " [disabled: invalid pattern]" if h.id in disabled else ""
                lines.append(f"- /{h.pattern}/ -> {h.suggestion}{_suffix(h.scope)}  `{h.id}`{flag}")
            return mcp_response("\n".join(lines))

        if action == "add":
            pattern = arguments.get("pattern") or ""
            suggestion = (arguments.get("suggestion") or "").strip()
            heuristic = await memory.add_heuristic(pattern, suggestion, _scope(arguments, Scope.GLOBAL))
            return mcp_response(
                f"Added {heuristic.scope.value} heuristic `{heuristic.id}`: /{heuristic.pattern}/ -> {heuristic.suggestion}"
            )

        if action == "delete":
            heuristic_id = (arguments.get("id") or "").strip()
            if not heuristic_id:
                return mcp_error("id is required for action=delete")
            if await memory.delete("heuristic", heuristic_id):
                return mcp_response(f"Deleted heuristic `{heuristic_id}`")
            return mcp_error(f"Heuristic not found: {heuristic_id}")

        return mcp_error(f"Unknown action: {action}")
    except ValueError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("elf_heuristics failed: %s", e)
        return mcp_error(f"Heuristic operation failed: {e}")


# ============================================================================
# Handler: elf_learnings
# ============================================================================


async def handle_elf_learnings(arguments: dict) -> dict:
    """List, record or delete learnings."""
    action = arguments.get("action", "list")
    memory = get_memory(arguments.get("cwd"))
    try:
        if action == "list":
            scope = arguments.get("scope")
            limit = _clamp_int(arguments.get("limit", 20), default=20, max_val=500)
            learnings = await memory.list_learnings(Scope(scope) if scope else None, limit=limit)
            if not learnings:
                return mcp_response("No learnings recorded.")
            lines = [f"# Learnings ({len(learnings)})", ""]
            for l in learnings:
                marker = "✓" if l.category == Category.SUCCESS else "✗"
                lines.append(
                    f"{marker} {l.content}{_suffix(l.scope)}  `{l.id}` utility={l.utility_score:.2f} "
                    f"{l.created_at.date().isoformat()}"
                )
            return mcp_response("\n".join(lines))

        if action == "record":
            content = (arguments.get("content") or "").strip()
            if not content:
                return mcp_error("content is required for action=record")
            category = Category(arguments.get("category") or "failure")
            learning = await memory.record_learning(
                content,
                category,
                arguments.get("payload"),
                _scope(arguments, Scope.PROJECT),
            )
            if learning is None:
                return mcp_response("Learning skipped (duplicate, private, or embedding unavailable).")
            return mcp_response(f"Recorded {learning.scope.value} {learning.category.value} learning `{learning.id}`")

        if action == "delete":
            learning_id = (arguments.get("id") or "").strip()
            if not learning_id:
                return mcp_error("id is required for action=delete")
            if await memory.delete("learning", learning_id):
                return mcp_response(f"Deleted learning `{learning_id}`")
            return mcp_error(f"Learning not found: {learning_id}")

        return mcp_error(f"Unknown action: {action}")
    except ValueError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("elf_learnings failed: %s", e)
        return mcp_error(f"Learning operation failed: {e}")


# ============================================================================
# Handler: elf_feedback
# ============================================================================


async def handle_elf_feedback(arguments: dict) -> dict:
    """Apply a success/failure outcome to the last surfaced learnings."""
    outcome = (arguments.get("outcome") or "").strip()
    if outcome not in ("success", "failure"):
        return mcp_error("outcome must be one of: success, failure")
    memory = get_memory(arguments.get("cwd"))
    key = arguments.get("session_id") or "default"
    try:
        updated = await memory.apply_feedback(outcome == "success", key)
    except Exception as e:
        logger.error("elf_feedback failed: %s", e)
        return mcp_error("Feedback failed")
    if not updated:
        return mcp_response("No surfaced learnings pending feedback.")
    return mcp_response(f"Feedback recorded: {outcome} applied to {updated} learning(s)")


# ============================================================================
# Handler: elf_maintain
# ============================================================================


async def handle_elf_maintain(arguments: dict) -> dict:
    """Consolidate, clean up, seed, or report status."""
    action = arguments.get("action", "")
    memory = get_memory(arguments.get("cwd"))
    dry_run = bool(arguments.get("dry_run", False))
    try:
        if action == "consolidate":
            kwargs: Dict[str, Any] = {"scope": _scope(arguments, Scope.PROJECT), "dry_run": dry_run}
            if arguments.get("threshold") is not None:
                kwargs["threshold"] = float(arguments["threshold"])
            if arguments.get("min_count") is not None:
                kwargs["min_count"] = _clamp_int(arguments["min_count"], default=3, max_val=100)
            result = await memory.run_consolidation(**kwargs)
            lines = [f"Found {len(result['clusters'])} emergent pattern(s)"]
            for cluster in result["clusters"]:
                lines.append(f"- {len(cluster)}x {cluster.seed.content[:100]}")
            if dry_run:
                lines.append("(dry run, no rules created)")
            else:
                lines.append(f"Promoted {len(result['promoted'])} rule(s)")
                for rule in result["promoted"]:
                    lines.append(f"  `{rule.id}` {rule.content}")
            return mcp_response("\n".join(lines))

        if action == "cleanup":
            results = await memory.run_cleanup(dry_run=dry_run)
            verb = "Would delete" if dry_run else "Deleted"
            lines = []
            for scope, stats in results.items():
                lines.append(
                    f"{scope}: {verb} {stats.rules_deleted} rules, {stats.learnings_deleted} learnings, "
                    f"{stats.heuristics_deleted} heuristics"
                )
            return mcp_response("\n".join(lines) or "No stores active.")

        if action == "seed":
            added = await memory.seed_defaults()
            if not any(added.values()):
                return mcp_response("Global store already has rules or heuristics; nothing seeded.")
            return mcp_response(f"Seeded {added['rules']} rules and {added['heuristics']} heuristics")

        if action == "status":
            return mcp_response(json.dumps(await memory.stats(), indent=2, default=str))

        return mcp_error("action must be one of: consolidate, cleanup, seed, status")
    except ValueError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("elf_maintain %s failed: %s", action, e)
        return mcp_error(f"Maintenance failed: {e}")


# ============================================================================
# Handler: elf_metrics
# ============================================================================


async def handle_elf_metrics(arguments: dict) -> dict:
    memory = get_memory(arguments.get("cwd"))
    try:
        summary = await memory.metrics_summary()
    except Exception as e:
        logger.error("elf_metrics failed: %s", e)
        return mcp_error("Metrics unavailable")
    if not summary:
        return mcp_response("No metrics recorded yet.")
    lines = ["# ELF Metrics", ""]
    for metric_type, row in summary.items():
        lines.append(
            f"- {metric_type}: count={row['count']} avg={row['avg']} min={row['min']} max={row['max']}"
        )
    return mcp_response("\n".join(lines))


# ============================================================================
# Handler Registry
# ============================================================================

HANDLERS: Dict[str, Any] = {
    "elf_context": handle_elf_context,
    "elf_search": handle_elf_search,
    "elf_rules": handle_elf_rules,
    "elf_heuristics": handle_elf_heuristics,
    "elf_learnings": handle_elf_learnings,
    "elf_feedback": handle_elf_feedback,
    "elf_maintain": handle_elf_maintain,
    "elf_metrics": handle_elf_metrics,
}
