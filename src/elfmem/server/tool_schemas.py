"""ELF MCP Tool Schemas -- 8 tools for memory retrieval, curation and maintenance."""

_SCOPE = {
    "type": "string",
    "enum": ["global", "project"],
    "description": "Memory scope. 'project' falls back to global outside a project.",
}
_CWD = {"type": "string", "description": "Working directory used to detect the project scope"}

TOOL_SCHEMAS = [
    {
        "name": "elf_context",
        "description": "Retrieve golden rules, relevant past experiences and applicable heuristics for a prompt, formatted for injection.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "The user request to find memory for"},
                "session_id": {"type": "string", "description": "Track surfaced learnings under this key for later feedback"},
                "cwd": _CWD,
            },
            "required": ["prompt"],
        },
    },
    {
        "name": "elf_search",
        "description": "Hybrid (semantic + keyword) search over recorded learnings.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "limit": {"type": "integer", "default": 10},
                "cwd": _CWD,
            },
            "required": ["query"],
        },
    },
    {
        "name": "elf_rules",
        "description": "Manage golden rules. Actions: 'list' (default), 'add', 'delete'.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["list", "add", "delete"]},
                "content": {"type": "string", "description": "Rule text (action=add)"},
                "id": {"type": "string", "description": "Rule id (action=delete)"},
                "scope": _SCOPE,
                "cwd": _CWD,
            },
        },
    },
    {
        "name": "elf_heuristics",
        "description": "Manage pattern-triggered heuristics. Actions: 'list' (default), 'add', 'delete'.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["list", "add", "delete"]},
                "pattern": {"type": "string", "description": "Regular expression, matched case-insensitively (action=add)"},
                "suggestion": {"type": "string", "description": "Suggestion shown when the pattern matches (action=add)"},
                "id": {"type": "string", "description": "Heuristic id (action=delete)"},
                "scope": _SCOPE,
                "cwd": _CWD,
            },
        },
    },
    {
        "name": "elf_learnings",
        "description": "Inspect or record learnings. Actions: 'list' (default), 'record', 'delete'.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["list", "record", "delete"]},
                "content": {"type": "string", "description": "What happened (action=record)"},
                "category": {"type": "string", "enum": ["success", "failure"]},
                "payload": {"description": "Raw outcome payload used for de-duplication (action=record)"},
                "id": {"type": "string", "description": "Learning id (action=delete)"},
                "limit": {"type": "integer", "default": 20},
                "scope": _SCOPE,
                "cwd": _CWD,
            },
        },
    },
    {
        "name": "elf_feedback",
        "description": "Report the outcome of the last interaction so surfaced learnings gain or lose utility.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "outcome": {"type": "string", "enum": ["success", "failure"]},
                "session_id": {"type": "string"},
                "cwd": _CWD,
            },
            "required": ["outcome"],
        },
    },
    {
        "name": "elf_maintain",
        "description": "Maintenance. Actions: 'consolidate' (promote recurring learnings to rules), 'cleanup' (expire stale data), 'seed' (default rules/heuristics), 'status'.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["consolidate", "cleanup", "seed", "status"]},
                "dry_run": {"type": "boolean", "default": False},
                "threshold": {"type": "number", "description": "Cluster similarity threshold (consolidate)"},
                "min_count": {"type": "integer", "description": "Minimum cluster size (consolidate)"},
                "scope": _SCOPE,
                "cwd": _CWD,
            },
            "required": ["action"],
        },
    },
    {
        "name": "elf_metrics",
        "description": "Retrieval latency, injection and failure-learning counters.",
        "inputSchema": {
            "type": "object",
            "properties": {"cwd": _CWD},
        },
    },
]
