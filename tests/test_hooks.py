"""Tests for the host hook scripts (inject_context, record_outcome, session_start)."""
import io
import json

import pytest

from elfmem import bridge
from elfmem.types import Category


@pytest.fixture(autouse=True)
def _use_test_memory(memory, monkeypatch, tmp_elf_dir):
    monkeypatch.setattr(bridge, "get_memory", lambda cwd=None: memory)
    return memory


def _stdin(monkeypatch, data):
    raw = data if isinstance(data, str) else json.dumps(data)
    monkeypatch.setattr("sys.stdin", io.StringIO(raw))


# ============================================================================
# record_outcome.describe_failure
# ============================================================================

class TestDescribeFailure:

    def test_stderr_failure(self):
        from record_outcome import describe_failure

        text = describe_failure("bash", {"command": "npm install"}, {"stderr": "npm ERR! ENOENT", "exitCode": 1})
        assert text == "Tool 'bash' failed running 'npm install': npm ERR! ENOENT"

    def test_exit_code_only(self):
        from record_outcome import describe_failure

        assert describe_failure("Bash", {"cmd": "make"}, {"exitCode": 2}) == "Tool 'Bash' failed running 'make': Exit Code 2"

    def test_error_field_and_json_args(self):
        from record_outcome import describe_failure

        text = describe_failure("Read", {"file_path": "/x"}, {"error": "No such file"})
        assert text == 'Tool \'Read\' failed running \'{"file_path": "/x"}\': No such file'

    def test_success_and_interrupt_are_ignored(self):
        from record_outcome import describe_failure

        assert describe_failure("bash", {"command": "ls"}, {"stdout": "a b", "exitCode": 0}) is None
        assert describe_failure("bash", {"command": "sleep 100"}, {"exitCode": 130}) is None

    def test_long_command_truncated(self):
        from record_outcome import describe_failure

        text = describe_failure("bash", {"command": "x" * 300}, {"exitCode": 1})
        assert "'" + "x" * 97 + "...'" in text

    def test_no_args(self):
        from record_outcome import describe_failure

        assert describe_failure("task", {}, {"error": "boom"}) == "Tool 'task' failed: boom"


# ============================================================================
# record_outcome.main
# ============================================================================

class TestRecordOutcome:

    def test_failure_recorded_once(self, monkeypatch, project_store):
        import record_outcome

        event = {
            "session_id": "s1",
            "tool_name": "Bash",
            "tool_input": {"command": "pytest -x"},
            "tool_response": {"stderr": "1 failed", "exitCode": 1},
        }
        for _ in range(2):
            _stdin(monkeypatch, event)
            record_outcome.main()
        learnings = project_store.list_learnings()
        assert len(learnings) == 1
        assert learnings[0].content == "Tool 'Bash' failed running 'pytest -x': 1 failed"
        assert learnings[0].category == Category.FAILURE

    def test_outcome_scores_surfaced_learnings(self, monkeypatch, memory, project_store):
        import asyncio
        import record_outcome

        learning = asyncio.run(memory.record_learning("flaky websocket test", Category.FAILURE))
        memory.mark_surfaced([learning.id], "s2")
        _stdin(monkeypatch, {
            "session_id": "s2",
            "tool_name": "Bash",
            "tool_input": {"command": "ls"},
            "tool_response": {"stdout": "ok", "exitCode": 0},
        })
        record_outcome.main()
        assert project_store.get_learning(learning.id).utility_score == pytest.approx(1.1)

    def test_private_output_not_recorded(self, monkeypatch, project_store):
        import record_outcome

        _stdin(monkeypatch, {
            "tool_name": "Bash",
            "tool_input": {"command": "cat .env"},
            "tool_response": {"stderr": "<private>TOKEN=abc</private>", "exitCode": 1},
        })
        record_outcome.main()
        assert project_store.counts()["learnings"] == 0

    def test_garbage_stdin_is_ignored(self, monkeypatch, project_store):
        import record_outcome

        _stdin(monkeypatch, "not json")
        record_outcome.main()
        assert project_store.counts()["learnings"] == 0

    def test_errors_go_to_hooks_log(self, monkeypatch, tmp_elf_dir):
        import record_outcome

        def boom(cwd=None):
            raise RuntimeError("store exploded")

        monkeypatch.setattr(bridge, "get_memory", boom)
        _stdin(monkeypatch, {"tool_name": "Bash", "tool_response": {"exitCode": 1}})
        record_outcome.main()
        assert "store exploded" in (tmp_elf_dir / "hooks.log").read_text()


# ============================================================================
# inject_context
# ============================================================================

class TestInjectContext:

    def test_prints_memory_and_bumps_rule_hits(self, monkeypatch, capsys, memory, global_store):
        import asyncio
        import inject_context

        rule = asyncio.run(memory.add_rule("Always check exit codes"))
        _stdin(monkeypatch, {"prompt": "how do I check command exit codes", "session_id": "s3"})
        inject_context.main()
        out = capsys.readouterr().out
        assert out.startswith("[ELF MEMORY]")
        assert "- Always check exit codes" in out
        assert global_store.get_rule(rule.id).hit_count == 1

    def test_marks_surfaced_for_session(self, monkeypatch, capsys, memory):
        import asyncio
        import inject_context

        learning = asyncio.run(memory.record_learning("terraform plan failed lock", Category.FAILURE))
        _stdin(monkeypatch, {"prompt": "terraform plan failed lock", "session_id": "s4"})
        inject_context.main()
        assert memory.feedback.pending("s4") == [learning.id]

    def test_empty_prompt_prints_nothing(self, monkeypatch, capsys):
        import inject_context

        _stdin(monkeypatch, {"prompt": "  "})
        inject_context.main()
        assert capsys.readouterr().out == ""

    def test_nothing_relevant_prints_nothing(self, monkeypatch, capsys):
        import inject_context

        _stdin(monkeypatch, {"prompt": "hello there"})
        inject_context.main()
        assert capsys.readouterr().out == ""


# ============================================================================
# session_start
# ============================================================================

class TestSessionStart:

    def test_seeds_and_reports(self, monkeypatch, capsys, global_store):
        import session_start

        _stdin(monkeypatch, {"session_id": "s5"})
        session_start.main()
        out = capsys.readouterr().out
        assert out.startswith("## ELF memory ready")
        assert "Seeded 10 default rules and 10 heuristics." in out
        assert global_store.counts()["rules"] == 10

    def test_second_start_does_not_reseed(self, monkeypatch, capsys, global_store):
        import session_start

        for _ in range(2):
            _stdin(monkeypatch, {})
            session_start.main()
        out = capsys.readouterr().out
        assert out.count("Seeded") == 1
        assert global_store.counts()["rules"] == 10

    def test_consolidation_marker_written(self, monkeypatch, capsys, tmp_elf_dir, project_root):
        import session_start

        _stdin(monkeypatch, {})
        session_start.main()
        marker = project_root / ".elf" / "last-consolidate"
        assert marker.exists()
        assert not (tmp_elf_dir / "last-consolidate").exists()
        assert not session_start._consolidation_due(marker)

    def test_consolidation_marker_is_per_project(self, tmp_path, memory):
        import asyncio
        import session_start

        from elfmem.bridge import ElfMemory
        from elfmem.cleanup import CleanupScheduler
        from elfmem.scopes import ScopedStores
        from elfmem.sqlite_store import SQLiteStore
        from elfmem.types import Scope

        asyncio.run(session_start._maybe_auto_consolidate(memory))

        other_root = tmp_path / "other"
        (other_root / ".git").mkdir(parents=True)
        other_store = SQLiteStore(other_root / ".elf" / "memory.db", Scope.PROJECT)
        other_stores = ScopedStores(memory.stores.global_store, other_store, other_root)
        other = ElfMemory(other_stores, memory.cache, scheduler=CleanupScheduler(other_stores, enabled=False))
        try:
            assert session_start._consolidation_due(other_root / ".elf" / "last-consolidate")
            asyncio.run(session_start._maybe_auto_consolidate(other))
            assert (other_root / ".elf" / "last-consolidate").exists()
        finally:
            other_store.close()
