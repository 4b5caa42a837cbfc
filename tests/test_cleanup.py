"""Tests for expiration and the throttled cleanup scheduler."""
from datetime import timedelta

from elfmem.cleanup import CleanupScheduler, preview_cleanup, run_cleanup
from elfmem.types import Category, CleanupStats, utcnow


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _populate(store):
    now = utcnow()
    store.insert_learning("ancient failure", Category.FAILURE, None, "old", created_at=now - timedelta(days=61))
    store.insert_learning("yesterday's failure", Category.FAILURE, None, "new", created_at=now - timedelta(days=1))
    store.insert_learning("useful but old", Category.SUCCESS, None, "useful",
                          created_at=now - timedelta(days=61), utility_score=5.0)
    store.insert_rule("unused old rule", None, created_at=now - timedelta(days=91), hit_count=0)
    store.insert_rule("used old rule", None, created_at=now - timedelta(days=91), hit_count=4)
    store.insert_heuristic("old", "old suggestion", created_at=now - timedelta(days=181))
    store.insert_heuristic("new", "new suggestion")


class TestRunCleanup:

    def test_expiration_windows(self, store):
        _populate(store)
        stats = run_cleanup(store)
        assert stats == CleanupStats(rules_deleted=1, learnings_deleted=2, heuristics_deleted=1)
        assert [l.content for l in store.list_learnings()] == ["yesterday's failure"]
        assert [r.content for r in store.list_rules()] == ["used old rule"]
        assert [h.suggestion for h in store.list_heuristics()] == ["new suggestion"]

    def test_preview_does_not_delete(self, store):
        _populate(store)
        assert preview_cleanup(store).total == 4
        assert store.counts() == {"rules": 2, "learnings": 3, "heuristics": 2}

    def test_windows_follow_environment(self, store, monkeypatch):
        store.insert_learning("two days old", Category.FAILURE, None, "h",
                              created_at=utcnow() - timedelta(days=2))
        monkeypatch.setattr("elfmem.config.LEARNING_EXPIRATION_DAYS", 1)
        assert run_cleanup(store).learnings_deleted == 1

    def test_stats_add(self):
        total = CleanupStats(1, 2, 3) + CleanupStats(1, 0, 0)
        assert total.to_dict() == {"rules_deleted": 2, "learnings_deleted": 2, "heuristics_deleted": 3}
        assert total.total == 7


class TestCleanupScheduler:

    def test_first_call_runs_then_throttles(self, stores, project_store):
        _populate(project_store)
        clock = FakeClock()
        scheduler = CleanupScheduler(stores, interval_s=86400, clock=clock, enabled=True)

        first = scheduler.maybe_run()
        assert first["project"].learnings_deleted == 2
        assert "global" in first

        _populate(project_store)
        clock.now += 3600
        assert scheduler.maybe_run() is None
        assert project_store.counts()["learnings"] == 3

        clock.now += 86400
        assert scheduler.maybe_run()["project"].learnings_deleted == 2

    def test_disabled_never_runs(self, stores):
        scheduler = CleanupScheduler(stores, enabled=False)
        assert not scheduler.due()
        assert scheduler.maybe_run() is None

    def test_env_disables(self, stores, monkeypatch):
        monkeypatch.setenv("ELF_AUTO_CLEANUP", "0")
        assert CleanupScheduler(stores).enabled is False

    def test_failing_store_reports_zero(self, stores, global_store, project_store, monkeypatch):
        _populate(global_store)

        def broken(*args, **kwargs):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(project_store, "delete_expired", broken)
        results = CleanupScheduler(stores, enabled=True).run_all()
        assert results["project"] == CleanupStats()
        assert results["global"].total == 4

    def test_dry_run(self, stores, global_store):
        _populate(global_store)
        results = CleanupScheduler(stores, enabled=True).run_all(dry_run=True)
        assert results["global"].total == 4
        assert global_store.counts()["learnings"] == 3
