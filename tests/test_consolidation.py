"""Tests for emergent-pattern clustering and rule promotion."""
from datetime import timedelta

import pytest

from elfmem.consolidation import ConsolidationEngine, default_summarizer
from elfmem.types import Category, Scope, utcnow


def _add(store, vec, content, created_at=None):
    return store.insert_learning(content, Category.FAILURE, vec, f"h:{content}", created_at=created_at)


def _axis(dim, *weights):
    v = [0.0] * dim
    for i, w in enumerate(weights):
        v[i] = w
    return v


@pytest.fixture
def engine(stores, cache):
    return ConsolidationEngine(stores, cache)


class TestFindEmergentPatterns:

    def test_three_similar_make_one_cluster(self, engine, project_store):
        dim = project_store.dimension
        now = utcnow()
        a = _add(project_store, _axis(dim, 1.0, 0.05), "npm ERR! missing script: build", now - timedelta(hours=3))
        b = _add(project_store, _axis(dim, 1.0, 0.10), "npm ERR! missing script: test", now - timedelta(hours=2))
        c = _add(project_store, _axis(dim, 1.0, 0.00), "npm ERR! missing script: lint", now - timedelta(hours=1))
        _add(project_store, _axis(dim, 0.0, 0.0, 1.0), "unrelated docker failure")

        clusters = engine.find_emergent_patterns(threshold=0.85, min_count=3)
        assert len(clusters) == 1
        assert len(clusters[0]) == 3
        assert clusters[0].ids == [a.id, b.id, c.id]
        assert clusters[0].seed.id == a.id

    def test_min_count_filters_small_clusters(self, engine, project_store):
        dim = project_store.dimension
        _add(project_store, _axis(dim, 1.0), "one")
        _add(project_store, _axis(dim, 1.0, 0.01), "two")
        assert engine.find_emergent_patterns(threshold=0.85, min_count=3) == []

    def test_membership_is_similarity_to_seed_only(self, engine, project_store):
        """A chain A~B~C where A and C are not similar does not pull C in."""
        dim = project_store.dimension
        now = utcnow()
        _add(project_store, _axis(dim, 1.0, 0.0), "A", now - timedelta(minutes=3))
        _add(project_store, _axis(dim, 1.0, 1.0), "B", now - timedelta(minutes=2))
        _add(project_store, _axis(dim, 0.0, 1.0), "C", now - timedelta(minutes=1))
        clusters = engine.find_emergent_patterns(threshold=0.7, min_count=2)
        assert [c.contents for c in clusters] == [["A", "B"]]

    def test_lookback_window(self, engine, project_store):
        dim = project_store.dimension
        old = utcnow() - timedelta(days=30)
        for i in range(3):
            _add(project_store, _axis(dim, 1.0), f"old {i}", old)
        assert engine.find_emergent_patterns(threshold=0.85, min_count=3) == []

    def test_clusters_span_scopes(self, engine, global_store, project_store):
        dim = project_store.dimension
        _add(global_store, _axis(dim, 1.0), "g1")
        _add(project_store, _axis(dim, 1.0), "p1")
        _add(project_store, _axis(dim, 1.0), "p2")
        clusters = engine.find_emergent_patterns(threshold=0.9, min_count=3)
        assert len(clusters) == 1
        assert {l.scope for l in clusters[0].members} == {Scope.GLOBAL, Scope.PROJECT}


class TestPromoteToRule:

    def _cluster(self, engine, project_store):
        dim = project_store.dimension
        for i in range(3):
            _add(project_store, _axis(dim, 1.0, i * 0.01), f"pip install failed resolving deps {i}")
        return engine.find_emergent_patterns(threshold=0.85, min_count=3)[0]

    def test_promote_creates_one_rule(self, engine, project_store):
        cluster = self._cluster(engine, project_store)
        rule = engine.promote_to_rule(cluster, Scope.PROJECT)
        assert rule is not None
        assert rule.scope == Scope.PROJECT
        assert rule.content == default_summarizer(cluster)
        assert rule.content.startswith("Emergent Rule: ")
        assert [r.id for r in project_store.list_rules()] == [rule.id]

    def test_repeat_promotion_is_deduplicated(self, engine, project_store):
        cluster = self._cluster(engine, project_store)
        assert engine.promote_to_rule(cluster) is not None
        assert engine.promote_to_rule(cluster) is None
        assert len(project_store.list_rules()) == 1

    def test_dedup_can_be_disabled(self, stores, cache, project_store):
        engine = ConsolidationEngine(stores, cache, dedup_threshold=0)
        cluster = self._cluster(engine, project_store)
        engine.promote_to_rule(cluster)
        engine.promote_to_rule(cluster)
        assert len(project_store.list_rules()) == 2

    def test_custom_summarizer(self, stores, cache, project_store, global_store):
        engine = ConsolidationEngine(stores, cache, summarizer=lambda c: f"{len(c)} pip failures: pin versions")
        cluster = self._cluster(engine, project_store)
        rule = engine.promote_to_rule(cluster, Scope.GLOBAL)
        assert rule.content == "3 pip failures: pin versions"
        assert global_store.list_rules()[0].id == rule.id


class TestRun:

    def _seed(self, project_store):
        dim = project_store.dimension
        for i in range(3):
            _add(project_store, _axis(dim, 1.0, i * 0.01), f"docker build failed on layer {i}")

    def test_dry_run_promotes_nothing(self, engine, project_store):
        self._seed(project_store)
        clusters, promoted = engine.run(dry_run=True)
        assert len(clusters) == 1
        assert promoted == []
        assert project_store.list_rules() == []

    def test_run_promotes_each_cluster(self, engine, project_store):
        self._seed(project_store)
        clusters, promoted = engine.run()
        assert len(clusters) == 1
        assert [r.id for r in project_store.list_rules()] == [promoted[0].id]
