"""Tests for the embedding cache and cosine similarity."""
import asyncio
import math

import pytest

from elfmem.cache import EmbeddingCache, similarity
from elfmem.embeddings import HashEmbeddingProvider


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# similarity()
# ============================================================================

class TestSimilarity:

    def test_identical_vectors(self):
        assert similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)

    def test_zero_norm_returns_zero_not_nan(self):
        result = similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0])
        assert result == 0.0
        assert not math.isnan(result)

    def test_length_mismatch_returns_zero(self):
        assert similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0

    def test_empty_and_none(self):
        assert similarity([], []) == 0.0
        assert similarity(None, [1.0]) == 0.0

    def test_self_similarity_of_embedded_text(self, provider):
        vec = provider.embed("npm install failed with ENOENT")
        assert similarity(vec, vec) == pytest.approx(1.0, abs=1e-6)

    def test_hash_provider_self_similarity(self):
        p = HashEmbeddingProvider()
        vec = p.embed("Always check exit codes")
        assert len(vec) == 384
        assert similarity(vec, p.embed("Always check exit codes")) == pytest.approx(1.0, abs=1e-6)


# ============================================================================
# EmbeddingCache
# ============================================================================

class TestEmbeddingCache:

    def test_hit_skips_provider(self, provider, clock):
        cache = EmbeddingCache(provider, max_size=10, ttl_s=60, clock=clock)
        first = cache.get("hello world")
        second = cache.get("hello world")
        assert first == second
        assert provider.calls == ["hello world"]
        assert cache.hits == 1
        assert cache.misses == 1

    def test_expired_entry_is_recomputed(self, provider, clock):
        cache = EmbeddingCache(provider, max_size=10, ttl_s=60, clock=clock)
        cache.get("hello")
        clock.advance(61)
        cache.get("hello")
        assert provider.calls == ["hello", "hello"]

    def test_entry_within_ttl_is_reused(self, provider, clock):
        cache = EmbeddingCache(provider, max_size=10, ttl_s=60, clock=clock)
        cache.get("hello")
        clock.advance(59)
        cache.get("hello")
        assert provider.calls == ["hello"]

    def test_capacity_evicts_oldest_inserted(self, provider, clock):
        cache = EmbeddingCache(provider, max_size=2, ttl_s=60, clock=clock)
        cache.get("a")
        cache.get("b")
        cache.get("c")
        assert len(cache) == 2
        assert "a" not in cache
        assert cache.keys() == ["b", "c"]

    def test_hit_does_not_refresh_eviction_order(self, provider, clock):
        """FIFO, not LRU: reading "a" again does not save it from eviction."""
        cache = EmbeddingCache(provider, max_size=2, ttl_s=60, clock=clock)
        cache.get("a")
        cache.get("b")
        cache.get("a")
        cache.get("c")
        assert "a" not in cache
        assert "b" in cache
        assert "c" in cache

    def test_recomputed_entry_moves_to_tail(self, provider, clock):
        cache = EmbeddingCache(provider, max_size=2, ttl_s=60, clock=clock)
        cache.get("a")
        clock.advance(30)
        cache.get("b")
        clock.advance(31)  # "a" expired, "b" still fresh
        cache.get("a")
        assert cache.keys() == ["b", "a"]

    def test_clear_and_stats(self, provider, clock):
        cache = EmbeddingCache(provider, max_size=5, ttl_s=60, clock=clock)
        cache.get("x")
        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["max_size"] == 5
        assert stats["provider"] == "bag-of-words"
        cache.clear()
        assert len(cache) == 0
        assert cache.misses == 0

    def test_dimension_comes_from_provider(self, provider):
        assert EmbeddingCache(provider).dimension == 384

    @pytest.mark.asyncio
    async def test_get_async_uses_cache(self, provider):
        cache = EmbeddingCache(provider)
        try:
            v1, v2 = await asyncio.gather(cache.get_async("same text"), cache.get_async("same text"))
            assert v1 == v2
            await cache.get_async("same text")
            assert "same text" in cache
            assert cache.hits >= 1
        finally:
            cache.close()
