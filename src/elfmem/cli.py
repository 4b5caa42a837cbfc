"""ELF CLI -- inspect and curate memory, run maintenance, and serve MCP."""

import argparse
import asyncio
import json
import logging
import sys
import time

from elfmem.types import Category, Scope


def _memory(args):
    from elfmem.bridge import get_memory

    return get_memory(getattr(args, "cwd", None))


def _run(coro):
    return asyncio.run(coro)


def _scope_arg(value):
    return Scope(value) if value else None


def _suffix(scope: Scope) -> str:
    return " (project)" if scope == Scope.PROJECT else ""


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


def cmd_context(args):
    """Print the memory block that would be injected for a prompt."""
    prompt = " ".join(args.prompt).strip()
    if not prompt:
        print("Usage: elfmem context <prompt>", file=sys.stderr)
        sys.exit(1)
    memory = _memory(args)
    start = time.monotonic()
    context = _run(memory.get_context(prompt))
    elapsed = time.monotonic() - start
    if args.json:
        print(json.dumps({
            "rules": [r.to_dict() for r in context.rules],
            "learnings": [s.to_dict() for s in context.learnings],
            "heuristics": [h.to_dict() for h in context.heuristics],
            "elapsed_s": round(elapsed, 3),
        }, indent=2))
        return
    text = memory.format_for_prompt(context)
    print(text or "No relevant memory.")


def cmd_search(args):
    """Hybrid search over learnings."""
    query = " ".join(args.query).strip()
    if not query:
        print("Usage: elfmem search <query>", file=sys.stderr)
        sys.exit(1)
    results = _run(_memory(args).search_hybrid(query, limit=args.limit))
    if args.json:
        print(json.dumps({"results": [s.to_dict() for s in results], "count": len(results)}, indent=2))
        return
    if not results:
        print(f"No learnings found for: {query}")
        return
    for scored in results:
        item = scored.item
        print(f"[{scored.score * 100:3.0f}% {scored.match_type.value:8}] {item.content}{_suffix(item.scope)}")
        print(f"    {item.id}  {item.category.value}  utility={item.utility_score:.2f}  "
              f"{item.created_at.date().isoformat()}")


# ---------------------------------------------------------------------------
# Curation
# ---------------------------------------------------------------------------


def cmd_rules(args):
    """List, add or delete golden rules."""
    memory = _memory(args)
    action = args.rules_command or "list"
    if action == "add":
        rule = _run(memory.add_rule(" ".join(args.content), Scope(args.scope)))
        if rule is None:
            print("Skipped: content is marked private.")
        else:
            print(f"Added {rule.scope.value} rule {rule.id}: {rule.content}")
    elif action == "delete":
        if not _run(memory.delete("rule", args.id)):
            print(f"Rule not found: {args.id}", file=sys.stderr)
            sys.exit(1)
        print(f"Deleted rule {args.id}")
    else:
        rules = _run(memory.list_rules(_scope_arg(getattr(args, "scope", None))))
        if not rules:
            print("No golden rules. Run 'elfmem seed' to add the defaults.")
            return
        for rule in rules:
            print(f"{rule.id}  hits={rule.hit_count:<4} {rule.content}{_suffix(rule.scope)}")


def cmd_heuristics(args):
    """List, add or delete heuristics."""
    memory = _memory(args)
    action = args.heuristics_command or "list"
    if action == "add":
        try:
            h = _run(memory.add_heuristic(args.pattern, " ".join(args.suggestion), Scope(args.scope)))
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Added {h.scope.value} heuristic {h.id}: /{h.pattern}/ -> {h.suggestion}")
    elif action == "delete":
        if not _run(memory.delete("heuristic", args.id)):
            print(f"Heuristic not found: {args.id}", file=sys.stderr)
            sys.exit(1)
        print(f"Deleted heuristic {args.id}")
    else:
        heuristics = _run(memory.list_heuristics(_scope_arg(getattr(args, "scope", None))))
        if not heuristics:
            print("No heuristics. Run 'elfmem seed' to add the defaults.")
            return
        for h in heuristics:
            print(f"{h.id}  /{h.pattern}/ -> {h.suggestion}{_suffix(h.scope)}")


def cmd_learnings(args):
    """List or record learnings."""
    memory = _memory(args)
    action = args.learnings_command or "list"
    if action == "record":
        learning = _run(memory.record_learning(
            " ".join(args.content), Category(args.category), None, Scope(args.scope)
        ))
        if learning is None:
            print("Skipped (duplicate, private, or embedding unavailable).")
        else:
            print(f"Recorded {learning.scope.value} {learning.category.value} learning {learning.id}")
        return
    learnings = _run(memory.list_learnings(_scope_arg(getattr(args, "scope", None)), limit=args.limit))
    if args.json:
        print(json.dumps([l.to_dict() for l in learnings], indent=2))
        return
    if not learnings:
        print("No learnings recorded.")
        return
    for l in learnings:
        marker = "✓" if l.category == Category.SUCCESS else "✗"
        print(f"{marker} {l.created_at.strftime('%Y-%m-%d %H:%M')}  utility={l.utility_score:.2f}  "
              f"{l.content[:120]}{_suffix(l.scope)}")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def cmd_consolidate(args):
    """Promote clusters of similar recent learnings to rules."""
    result = _run(_memory(args).run_consolidation(
        threshold=args.threshold,
        min_count=args.min_count,
        scope=Scope(args.scope),
        dry_run=args.dry_run,
    ))
    clusters = result["clusters"]
    print(f"Found {len(clusters)} emergent pattern(s)")
    for i, cluster in enumerate(clusters, 1):
        print(f"  {i}. {len(cluster)} learnings, seed: {cluster.seed.content[:100]}")
    if args.dry_run:
        print("Dry run: no rules created.")
        return
    print(f"Promoted {len(result['promoted'])} rule(s)")
    for rule in result["promoted"]:
        print(f"  {rule.id}  {rule.content}")


def cmd_cleanup(args):
    """Delete expired rules, learnings and heuristics."""
    results = _run(_memory(args).run_cleanup(dry_run=args.dry_run))
    verb = "Would delete" if args.dry_run else "Deleted"
    for scope, stats in results.items():
        print(f"{scope}: {verb} {stats.rules_deleted} rules, {stats.learnings_deleted} learnings, "
              f"{stats.heuristics_deleted} heuristics")


def cmd_metrics(args):
    """Show recorded retrieval metrics."""
    summary = _run(_memory(args).metrics_summary())
    if args.json:
        print(json.dumps(summary, indent=2))
        return
    if not summary:
        print("No metrics recorded yet.")
        return
    for metric_type, row in summary.items():
        print(f"{metric_type:18} count={row['count']:<6} avg={row['avg']:<10} min={row['min']:<10} max={row['max']}")


def cmd_seed(args):
    """Add the default rules and heuristics to an empty global store."""
    added = _run(_memory(args).seed_defaults(force=args.force))
    if not any(added.values()):
        print("Global store already has rules or heuristics; use --force to seed anyway.")
        return
    print(f"Seeded {added['rules']} rules and {added['heuristics']} heuristics")


def cmd_status(args):
    """Show store locations, record counts and cache state."""
    stats = _run(_memory(args).stats())
    if args.json:
        print(json.dumps(stats, indent=2, default=str))
        return
    stores = stats["stores"]
    print(f"Global store:  {stores['global']}")
    print(f"Project store: {stores['project'] or '(no project detected)'}")
    for scope, counts in stats["counts"].items():
        print(f"  {scope}: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    cache = stats["cache"]
    print(f"Embedding provider: {cache['provider']}  cache {cache['size']}/{cache['max_size']}")
    if stats["disabled_heuristics"]:
        print(f"Disabled heuristics: {len(stats['disabled_heuristics'])}")


def cmd_serve(args):
    """Run the ELF MCP server (stdio, or Streamable HTTP with --http)."""
    if args.http:
        from elfmem.server.http_server import get_or_create_api_key, run_http

        api_key = None if args.no_auth else get_or_create_api_key()
        asyncio.run(run_http(args.host, args.port, api_key))
        return
    from elfmem.server.mcp_server import main as serve_main

    asyncio.run(serve_main())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="elfmem",
        description="ELF -- Emergent Learning Framework memory for AI coding assistants",
    )
    parser.add_argument("--cwd", help="Working directory used to detect the project scope")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    context_parser = subparsers.add_parser("context", help="Show the memory injected for a prompt")
    context_parser.add_argument("prompt", nargs="+", help="Prompt text")
    context_parser.add_argument("--json", action="store_true", help="Output as JSON")

    search_parser = subparsers.add_parser("search", help="Hybrid search over learnings")
    search_parser.add_argument("query", nargs="+", help="Search text")
    search_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    search_parser.add_argument("--json", action="store_true", help="Output as JSON")

    rules_parser = subparsers.add_parser("rules", help="Manage golden rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command", help="Rule subcommands")
    rules_list = rules_sub.add_parser("list", help="List rules (default)")
    rules_list.add_argument("--scope", choices=["global", "project"])
    rules_add = rules_sub.add_parser("add", help="Add a rule")
    rules_add.add_argument("content", nargs="+", help="Rule text")
    rules_add.add_argument("--scope", choices=["global", "project"], default="global")
    rules_delete = rules_sub.add_parser("delete", help="Delete a rule by id")
    rules_delete.add_argument("id")

    heur_parser = subparsers.add_parser("heuristics", help="Manage heuristics")
    heur_sub = heur_parser.add_subparsers(dest="heuristics_command", help="Heuristic subcommands")
    heur_list = heur_sub.add_parser("list", help="List heuristics (default)")
    heur_list.add_argument("--scope", choices=["global", "project"])
    heur_add = heur_sub.add_parser("add", help="Add a heuristic")
    heur_add.add_argument("pattern", help="Regular expression, matched case-insensitively")
    heur_add.add_argument("suggestion", nargs="+", help="Suggestion text")
    heur_add.add_argument("--scope", choices=["global", "project"], default="global")
    heur_delete = heur_sub.add_parser("delete", help="Delete a heuristic by id")
    heur_delete.add_argument("id")

    learn_parser = subparsers.add_parser("learnings", help="View or record learnings")
    learn_sub = learn_parser.add_subparsers(dest="learnings_command", help="Learning subcommands")
    learn_parser.add_argument("--limit", type=int, default=20, help="Max rows (default: 20)")
    learn_parser.add_argument("--scope", choices=["global", "project"])
    learn_parser.add_argument("--json", action="store_true", help="Output as JSON")
    learn_sub.add_parser("list", help="List recent learnings (default)")
    learn_record = learn_sub.add_parser("record", help="Record a learning by hand")
    learn_record.add_argument("content", nargs="+", help="What happened")
    learn_record.add_argument("--category", choices=["success", "failure"], default="failure")
    learn_record.add_argument("--scope", choices=["global", "project"], default="project")

    consolidate_parser = subparsers.add_parser("consolidate", help="Promote recurring learnings to rules")
    consolidate_parser.add_argument("--threshold", type=float, default=0.85, help="Similarity threshold (default: 0.85)")
    consolidate_parser.add_argument("--min-count", type=int, default=3, help="Minimum cluster size (default: 3)")
    consolidate_parser.add_argument("--scope", choices=["global", "project"], default="project")
    consolidate_parser.add_argument("--dry-run", action="store_true", help="Show clusters without creating rules")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete expired memory")
    cleanup_parser.add_argument("--dry-run", action="store_true", help="Show what would be deleted")

    metrics_parser = subparsers.add_parser("metrics", help="Show retrieval metrics")
    metrics_parser.add_argument("--json", action="store_true", help="Output as JSON")

    seed_parser = subparsers.add_parser("seed", help="Add default rules and heuristics")
    seed_parser.add_argument("--force", action="store_true", help="Seed even if the global store is not empty")

    status_parser = subparsers.add_parser("status", help="Show stores, counts and cache state")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio mode)")
    serve_parser.add_argument("--http", action="store_true", help="Serve Streamable HTTP instead of stdio")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8077, help="HTTP port (default: 8077)")
    serve_parser.add_argument("--no-auth", action="store_true", help="Disable API key auth for HTTP")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "context": cmd_context,
        "search": cmd_search,
        "rules": cmd_rules,
        "heuristics": cmd_heuristics,
        "learnings": cmd_learnings,
        "consolidate": cmd_consolidate,
        "cleanup": cmd_cleanup,
        "metrics": cmd_metrics,
        "seed": cmd_seed,
        "status": cmd_status,
        "serve": cmd_serve,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
