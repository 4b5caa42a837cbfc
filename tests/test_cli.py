"""Tests for the elfmem command-line interface."""
import asyncio
import json

import pytest

from elfmem import bridge
from elfmem.cli import build_parser, main
from elfmem.types import Category, Scope


@pytest.fixture(autouse=True)
def _use_test_memory(memory, monkeypatch):
    monkeypatch.setattr(bridge, "get_memory", lambda cwd=None: memory)
    return memory


def _run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert "usage: elfmem" in _run(capsys)


def test_parser_subcommands():
    parser = build_parser()
    args = parser.parse_args(["consolidate", "--threshold", "0.9", "--min-count", "4", "--dry-run"])
    assert args.threshold == 0.9
    assert args.min_count == 4
    assert args.dry_run is True
    assert parser.parse_args(["serve", "--http", "--port", "9000"]).port == 9000


def test_rules_add_and_list(capsys, global_store):
    out = _run(capsys, "rules", "add", "Run", "tests", "before", "pushing")
    assert "Added global rule" in out
    assert global_store.list_rules()[0].content == "Run tests before pushing"
    assert "Run tests before pushing" in _run(capsys, "rules", "list")


def test_rules_delete_missing_exits(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["rules", "delete", "nope"])
    assert exc.value.code == 1


def test_heuristics_add_invalid(capsys):
    with pytest.raises(SystemExit):
        main(["heuristics", "add", "([", "never"])
    assert "invalid pattern" in capsys.readouterr().err


def test_learnings_record_and_list_json(capsys, project_store):
    _run(capsys, "learnings", "record", "poetry", "lock", "timed", "out")
    assert project_store.counts()["learnings"] == 1
    data = json.loads(_run(capsys, "learnings", "--json"))
    assert data[0]["content"] == "poetry lock timed out"
    assert data[0]["scope"] == "project"


def test_search_json(capsys, memory):
    asyncio.run(memory.record_learning("build failed", Category.FAILURE, "g", Scope.GLOBAL))
    asyncio.run(memory.record_learning("build failed", Category.FAILURE, "p", Scope.PROJECT))
    out = _run(capsys, "search", "build", "failed", "--json")
    data = json.loads(out)
    assert data["count"] == 2
    assert [r["scope"] for r in data["results"]] == ["project", "global"]


def test_context_text(capsys, global_store):
    _run(capsys, "rules", "add", "Always", "check", "exit", "codes")
    out = _run(capsys, "context", "check", "exit", "codes")
    assert out.startswith("[ELF MEMORY]")
    assert "- Always check exit codes" in out


def test_seed_then_status(capsys):
    assert "Seeded 10 rules and 10 heuristics" in _run(capsys, "seed")
    assert "already has rules" in _run(capsys, "seed")
    status = json.loads(_run(capsys, "status", "--json"))
    assert status["counts"]["global"]["rules"] == 10


def test_cleanup_dry_run(capsys):
    out = _run(capsys, "cleanup", "--dry-run")
    assert "project: Would delete 0 rules" in out
    assert "global: Would delete 0 rules" in out


def test_consolidate_dry_run(capsys):
    assert "Found 0 emergent pattern(s)" in _run(capsys, "consolidate", "--dry-run")


def test_metrics_empty(capsys):
    assert "No metrics recorded yet." in _run(capsys, "metrics")
