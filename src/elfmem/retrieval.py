"""
ELF Retrieval Engine -- builds the memory Context for a prompt.

Every read fans out across the active stores concurrently (blocking SQLite
work runs in worker threads) and then merges with an explicit, deterministic
sort, so results never depend on completion order. A store that fails
contributes nothing and the failure is logged.

Learnings come from hybrid search:
- semantic: cosine similarity of the prompt vector against every learning
- keyword: FTS5 match at a fixed confidence score
- ids found by both become ``hybrid`` with a boosted score
"""

import asyncio
import logging
import re
from typing import Callable, Dict, List, Optional, Pattern, Tuple

import numpy as np

from elfmem import config
from elfmem.cache import EmbeddingCache
from elfmem.scopes import ScopedStores
from elfmem.sqlite_store import SQLiteStore, sanitize_fts_query
from elfmem.types import (
    Context,
    Heuristic,
    Learning,
    MatchType,
    Rule,
    Scope,
    ScoredLearning,
)

logger = logging.getLogger("elfmem.retrieval")

_SCOPE_RANK = {Scope.PROJECT: 0, Scope.GLOBAL: 1}


def _scope_suffix(scope: Scope) -> str:
    return " (project)" if scope == Scope.PROJECT else ""


def format_for_prompt(context: Context) -> str:
    """Render a Context as the text block injected into the assistant's prompt.

    Empty context renders as an empty string. Project items carry a
    ``(project)`` tag; global items are unmarked.
    """
    if context is None or context.is_empty():
        return ""

    parts = ["[ELF MEMORY]"]
    if context.rules:
        parts.append("\nGolden Rules:")
        for rule in context.rules:
            parts.append(f"- {rule.content}{_scope_suffix(rule.scope)}")
    if context.learnings:
        parts.append("\nRelevant Past Experiences:")
        for scored in context.learnings:
            item = scored.item
            marker = "✓" if item.category.value == "success" else "✗"
            pct = int(round(scored.score * 100))
            parts.append(f"{marker} [{pct}%] {item.content}{_scope_suffix(item.scope)}")
    if context.heuristics:
        parts.append("\nApplicable Heuristics:")
        for heuristic in context.heuristics:
            parts.append(f"- {heuristic.suggestion}{_scope_suffix(heuristic.scope)}")
    return "\n".join(parts)


class RetrievalEngine:
    """Rules, hybrid learning search and heuristic matching over ScopedStores."""

    def __init__(
        self,
        stores: ScopedStores,
        cache: EmbeddingCache,
        max_rules: int = config.MAX_RULES,
        max_learnings: int = config.MAX_LEARNINGS,
        similarity_threshold: float = config.SIMILARITY_THRESHOLD,
        keyword_limit: int = config.KEYWORD_LIMIT_PER_STORE,
        keyword_score: float = config.KEYWORD_SCORE,
        hybrid_boost: float = config.HYBRID_BOOST,
        scope_bias: float = config.SCOPE_BIAS,
    ):
        self.stores = stores
        self.cache = cache
        self.max_rules = max_rules
        self.max_learnings = max_learnings
        self.similarity_threshold = similarity_threshold
        self.keyword_limit = keyword_limit
        self.keyword_score = keyword_score
        self.hybrid_boost = hybrid_boost
        self.scope_bias = scope_bias
        # heuristic id -> (pattern text, compiled)
        self._compiled: Dict[str, Tuple[str, Pattern]] = {}
        # heuristic id -> (pattern text, compile error)
        self.disabled_heuristics: Dict[str, Tuple[str, str]] = {}

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def _fan_out(self, label: str, fn: Callable[[SQLiteStore], list]) -> List[list]:
        """Run ``fn(store)`` for every active store concurrently, project store first.

        A store that raises contributes ``[]``.
        """
        stores = self.stores.active()
        results = await asyncio.gather(
            *(asyncio.to_thread(fn, store) for store in stores),
            return_exceptions=True,
        )
        out: List[list] = []
        for store, result in zip(stores, results):
            if isinstance(result, Exception):
                logger.warning("%s failed on %s store (%s): %s",
                               label, store.scope.value, store.db_path, result)
                out.append([])
            elif isinstance(result, BaseException):
                raise result
            else:
                out.append(result)
        return out

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def get_rules(self) -> List[Rule]:
        """Project rules by hit_count, then global rules by hit_count, truncated."""
        per_store = await self._fan_out("list_rules", lambda s: s.list_rules(limit=self.max_rules))
        rules: List[Rule] = []
        for store_rules in per_store:
            rules.extend(store_rules)
        return rules[: self.max_rules]

    # ------------------------------------------------------------------
    # Learnings
    # ------------------------------------------------------------------

    def _semantic_in_store(self, store: SQLiteStore, query_vec: np.ndarray) -> List[Tuple[Learning, float]]:
        learnings = [l for l in store.list_learnings() if l.embedding is not None]
        if not learnings:
            return []
        matrix = np.asarray([l.embedding for l in learnings], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        q_norm = float(np.linalg.norm(query_vec))
        if q_norm == 0.0:
            return []
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = (matrix @ query_vec) / (norms * q_norm)
        scores = np.where(norms == 0.0, 0.0, scores)
        return [
            (learning, float(score))
            for learning, score in zip(learnings, scores)
            if score >= self.similarity_threshold
        ]

    async def semantic_search(self, query: str) -> List[Tuple[Learning, float]]:
        """Learnings whose cosine similarity to ``query`` meets the threshold.

        Raises EmbeddingError when the prompt cannot be embedded.
        """
        query_vec = np.asarray(await self.cache.get_async(query), dtype=np.float32)
        per_store = await self._fan_out(
            "semantic search", lambda s: self._semantic_in_store(s, query_vec)
        )
        return [hit for hits in per_store for hit in hits]

    def _keyword_in_store(self, store: SQLiteStore, query: str) -> List[Learning]:
        hits = store.keyword_search(query, limit=self.keyword_limit)
        return store.get_learnings([h.id for h in hits])

    async def keyword_search(self, query: str) -> List[Learning]:
        if not sanitize_fts_query(query):
            logger.debug("Keyword search skipped: no searchable terms in %r", query[:80])
            return []
        per_store = await self._fan_out("keyword search", lambda s: self._keyword_in_store(s, query))
        return [learning for hits in per_store for learning in hits]

    def _rank_key(self, scored: ScoredLearning):
        scope = scored.item.scope
        biased = scored.score + (self.scope_bias if scope == Scope.PROJECT else 0.0)
        return (
            -round(biased, 9),
            _SCOPE_RANK[scope],
            -scored.item.created_at.timestamp(),
            scored.item.id,
        )

    def merge(
        self,
        semantic: List[Tuple[Learning, float]],
        keyword: List[Learning],
        limit: Optional[int] = None,
    ) -> List[ScoredLearning]:
        """Union semantic and keyword hits by id, tag them, and order deterministically.

        The scope bias only shifts the sort key; ``score`` stays the raw value.
        """
        merged: Dict[Tuple[str, str], ScoredLearning] = {}
        for learning, score in semantic:
            merged[(learning.scope.value, learning.id)] = ScoredLearning(learning, score, MatchType.SEMANTIC)
        for learning in keyword:
            key = (learning.scope.value, learning.id)
            existing = merged.get(key)
            if existing is None:
                merged[key] = ScoredLearning(learning, self.keyword_score, MatchType.KEYWORD)
            elif existing.match_type == MatchType.SEMANTIC:
                existing.score = min(1.0, existing.score + self.hybrid_boost)
                existing.match_type = MatchType.HYBRID

        ranked = sorted(merged.values(), key=self._rank_key)
        limit = self.max_learnings if limit is None else limit
        return ranked[:limit]

    async def search_hybrid(self, query: str, limit: Optional[int] = None) -> List[ScoredLearning]:
        semantic, keyword = await asyncio.gather(
            self.semantic_search(query),
            self.keyword_search(query),
        )
        return self.merge(semantic, keyword, limit)

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def _compile(self, heuristic: Heuristic) -> Optional[Pattern]:
        cached = self._compiled.get(heuristic.id)
        if cached is not None and cached[0] == heuristic.pattern:
            return cached[1]
        disabled = self.disabled_heuristics.get(heuristic.id)
        if disabled is not None and disabled[0] == heuristic.pattern:
            return None
        try:
            compiled = re.compile(heuristic.pattern, re.IGNORECASE)
        except re.error as e:
            self.disabled_heuristics[heuristic.id] = (heuristic.pattern, str(e))
            self._compiled.pop(heuristic.id, None)
            logger.warning("Disabled heuristic %s: invalid pattern %r (%s)",
                           heuristic.id, heuristic.pattern, e)
            return None
        self.disabled_heuristics.pop(heuristic.id, None)
        self._compiled[heuristic.id] = (heuristic.pattern, compiled)
        return compiled

    def match(self, prompt: str, heuristics: List[Heuristic]) -> List[Heuristic]:
        """Heuristics whose pattern matches ``prompt``; first occurrence of a pattern wins."""
        seen = set()
        matched = []
        for heuristic in heuristics:
            if heuristic.pattern in seen:
                continue
            compiled = self._compile(heuristic)
            if compiled is None or not compiled.search(prompt):
                continue
            seen.add(heuristic.pattern)
            matched.append(heuristic)
        return matched

    async def match_heuristics(self, prompt: str) -> List[Heuristic]:
        per_store = await self._fan_out("list_heuristics", lambda s: s.list_heuristics())
        ordered = [h for store_heuristics in per_store for h in store_heuristics]
        return self.match(prompt, ordered)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def get_context(self, prompt: str) -> Context:
        """Rules, learnings and heuristics for ``prompt``, gathered concurrently.

        Raises EmbeddingError if the prompt cannot be embedded; callers that
        must fail open catch it at their boundary.
        """
        rules, learnings, heuristics = await asyncio.gather(
            self.get_rules(),
            self.search_hybrid(prompt),
            self.match_heuristics(prompt),
        )
        return Context(rules=rules, learnings=learnings, heuristics=heuristics)

    def format_for_prompt(self, context: Context) -> str:
        return format_for_prompt(context)
