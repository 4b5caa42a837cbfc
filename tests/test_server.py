"""Tests for ELF MCP tool schemas and handlers."""
import json

import pytest

from elfmem.server import handlers
from elfmem.server.handlers import HANDLERS
from elfmem.server.tool_schemas import TOOL_SCHEMAS
from elfmem.types import Category, Scope


@pytest.fixture(autouse=True)
def _use_test_memory(memory, monkeypatch):
    """Route every handler to the fixture ElfMemory."""
    monkeypatch.setattr(handlers, "get_memory", lambda cwd=None: memory)
    return memory


def _text(result):
    return result["content"][0]["text"]


# ============================================================================
# Schemas
# ============================================================================

def test_every_schema_has_a_handler():
    names = {s["name"] for s in TOOL_SCHEMAS}
    assert names == set(HANDLERS)
    for schema in TOOL_SCHEMAS:
        assert schema["description"]
        assert schema["inputSchema"]["type"] == "object"


def test_required_fields_are_declared():
    by_name = {s["name"]: s for s in TOOL_SCHEMAS}
    assert "prompt" in by_name["elf_context"]["inputSchema"].get("required", [])
    assert "query" in by_name["elf_search"]["inputSchema"].get("required", [])


# ============================================================================
# Handlers
# ============================================================================

@pytest.mark.asyncio
async def test_context_requires_prompt():
    result = await HANDLERS["elf_context"]({})
    assert result["isError"] is True


@pytest.mark.asyncio
async def test_context_formats_memory(memory):
    await memory.add_rule("Always check exit codes")
    result = await HANDLERS["elf_context"]({"prompt": "check exit codes"})
    assert "isError" not in result
    assert _text(result).startswith("[ELF MEMORY]")
    assert "- Always check exit codes" in _text(result)


@pytest.mark.asyncio
async def test_context_empty():
    result = await HANDLERS["elf_context"]({"prompt": "nothing stored yet"})
    assert _text(result) == "No relevant memory."


@pytest.mark.asyncio
async def test_search(memory):
    await memory.record_learning("build failed", Category.FAILURE, "p1", Scope.PROJECT)
    result = await HANDLERS["elf_search"]({"query": "build failed", "limit": "5"})
    text = _text(result)
    assert "1 result(s)" in text
    assert "build failed (project)" in text
    assert "hybrid" in text


@pytest.mark.asyncio
async def test_search_no_results():
    result = await HANDLERS["elf_search"]({"query": "zebra"})
    assert "No learnings found" in _text(result)


@pytest.mark.asyncio
async def test_rules_add_list_delete(global_store):
    added = await HANDLERS["elf_rules"]({"action": "add", "content": "Prefer small commits"})
    assert "Added global rule" in _text(added)
    rule_id = global_store.list_rules()[0].id

    listed = await HANDLERS["elf_rules"]({"action": "list"})
    assert "Prefer small commits" in _text(listed)

    deleted = await HANDLERS["elf_rules"]({"action": "delete", "id": rule_id})
    assert rule_id in _text(deleted)
    missing = await HANDLERS["elf_rules"]({"action": "delete", "id": rule_id})
    assert missing["isError"] is True


@pytest.mark.asyncio
async def test_rules_bad_scope():
    result = await HANDLERS["elf_rules"]({"action": "add", "content": "x", "scope": "team"})
    assert result["isError"] is True
    assert "scope" in _text(result)


@pytest.mark.asyncio
async def test_heuristics_add_invalid_pattern():
    result = await HANDLERS["elf_heuristics"]({"action": "add", "pattern": "([", "suggestion": "s"})
    assert result["isError"] is True


@pytest.mark.asyncio
async def test_heuristics_add_and_list(project_store):
    await HANDLERS["elf_heuristics"](
        {"action": "add", "pattern": "migrat", "suggestion": "Back up the DB first", "scope": "project"}
    )
    assert project_store.counts()["heuristics"] == 1
    listed = await HANDLERS["elf_heuristics"]({"action": "list"})
    assert "Back up the DB first (project)" in _text(listed)


@pytest.mark.asyncio
async def test_learnings_record_and_list(project_store):
    first = await HANDLERS["elf_learnings"](
        {"action": "record", "content": "eslint failed on CI", "payload": {"exit": 1}}
    )
    assert "Recorded project failure learning" in _text(first)
    dup = await HANDLERS["elf_learnings"](
        {"action": "record", "content": "eslint failed on CI", "payload": {"exit": 1}}
    )
    assert "skipped" in _text(dup)
    listed = await HANDLERS["elf_learnings"]({"action": "list"})
    assert "✗ eslint failed on CI (project)" in _text(listed)


@pytest.mark.asyncio
async def test_feedback_flow(memory, project_store):
    learning = await memory.record_learning("gradle sync failed", Category.FAILURE)
    await HANDLERS["elf_context"]({"prompt": "gradle sync failed", "session_id": "abc"})

    result = await HANDLERS["elf_feedback"]({"outcome": "success", "session_id": "abc"})
    assert "applied to 1 learning" in _text(result)
    assert project_store.get_learning(learning.id).utility_score == pytest.approx(1.1)

    again = await HANDLERS["elf_feedback"]({"outcome": "success", "session_id": "abc"})
    assert "No surfaced learnings" in _text(again)


@pytest.mark.asyncio
async def test_feedback_bad_outcome():
    result = await HANDLERS["elf_feedback"]({"outcome": "meh"})
    assert result["isError"] is True


@pytest.mark.asyncio
async def test_maintain_seed_and_status(global_store):
    seeded = await HANDLERS["elf_maintain"]({"action": "seed"})
    assert "Seeded" in _text(seeded)
    status = json.loads(_text(await HANDLERS["elf_maintain"]({"action": "status"})))
    assert status["counts"]["global"]["rules"] == global_store.counts()["rules"]


@pytest.mark.asyncio
async def test_maintain_consolidate_dry_run(memory, project_store):
    for i in range(3):
        await memory.record_learning("mvn test failed surefire", Category.FAILURE, f"p{i}")
    result = await HANDLERS["elf_maintain"]({"action": "consolidate", "dry_run": True})
    assert "Found 1 emergent pattern" in _text(result)
    assert project_store.list_rules() == []


@pytest.mark.asyncio
async def test_maintain_cleanup():
    result = await HANDLERS["elf_maintain"]({"action": "cleanup", "dry_run": True})
    assert "global: Would delete 0 rules" in _text(result)


@pytest.mark.asyncio
async def test_maintain_unknown_action():
    result = await HANDLERS["elf_maintain"]({"action": "explode"})
    assert result["isError"] is True


@pytest.mark.asyncio
async def test_metrics(memory):
    assert "No metrics" in _text(await HANDLERS["elf_metrics"]({}))
    await memory.add_rule("r")
    await memory.get_context("anything")
    assert "latency: count=1" in _text(await HANDLERS["elf_metrics"]({}))


@pytest.mark.asyncio
async def test_call_tool_dispatch():
    from elfmem.server.mcp_server import call_tool

    out = await call_tool("elf_context", {"prompt": "nothing here"})
    assert out[0].text == "No relevant memory."
    unknown = await call_tool("elf_nope", {})
    assert "Unknown tool" in unknown[0].text
