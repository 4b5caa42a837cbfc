"""
ELF Bridge -- the caller-facing API of the memory subsystem.

``ElfMemory`` is an explicit context object: it owns the scoped stores and
the embedding cache and wires them into the retrieval, feedback,
consolidation and cleanup components. Host glue (hooks, MCP server, CLI)
holds one per process via ``get_memory()``; tests build their own.

Public API (coroutines unless noted):
    Read:        get_context, search_hybrid, format_for_prompt (sync)
    Write:       record_learning, add_rule, add_heuristic, seed_defaults
    Feedback:    mark_surfaced (sync), apply_feedback, increment_rule_hits
    Maintenance: run_consolidation, run_cleanup
    Inspect:     list_rules, list_learnings, list_heuristics, delete, stats
    Testing:     reset_memory
"""

import asyncio
import atexit
import hashlib
import json
import logging
import re
import threading
import time
from typing import Any, Dict, List, Optional, Sequence

from elfmem import config
from elfmem.cache import EmbeddingCache
from elfmem.cleanup import CleanupScheduler
from elfmem.consolidation import ConsolidationEngine
from elfmem.embeddings import EmbeddingProvider, get_default_provider
from elfmem.feedback import FeedbackLoop
from elfmem.privacy import is_private
from elfmem.retrieval import RetrievalEngine, format_for_prompt
from elfmem.scopes import ScopedStores, find_project_root
from elfmem.seeds import DEFAULT_HEURISTICS, DEFAULT_RULES
from elfmem.types import (
    Category,
    CleanupStats,
    Context,
    Heuristic,
    Learning,
    Rule,
    Scope,
    ScoredLearning,
)

logger = logging.getLogger("elfmem.bridge")

_KIND_DELETERS = {
    "rule": "delete_rule",
    "learning": "delete_learning",
    "heuristic": "delete_heuristic",
}


def compute_context_hash(payload: Any) -> str:
    """Stable 16-hex fingerprint of a raw outcome payload."""
    if isinstance(payload, bytes):
        raw = payload
    elif isinstance(payload, str):
        raw = payload.encode("utf-8")
    else:
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


class ElfMemory:
    """Scoped stores + embedding cache + the engines that operate on them."""

    def __init__(
        self,
        stores: ScopedStores,
        cache: EmbeddingCache,
        engine: Optional[RetrievalEngine] = None,
        feedback: Optional[FeedbackLoop] = None,
        consolidation: Optional[ConsolidationEngine] = None,
        scheduler: Optional[CleanupScheduler] = None,
        record_metrics: bool = True,
    ):
        self.stores = stores
        self.cache = cache
        self.engine = engine or RetrievalEngine(stores, cache)
        self.feedback = feedback or FeedbackLoop(stores)
        self.consolidation = consolidation or ConsolidationEngine(stores, cache)
        self.scheduler = scheduler or CleanupScheduler(stores)
        self.record_metrics = record_metrics

    @classmethod
    def open(
        cls,
        working_dir=None,
        provider: Optional[EmbeddingProvider] = None,
        global_db=None,
        state_dir=None,
        **kwargs,
    ) -> "ElfMemory":
        """Build an ElfMemory for ``working_dir`` with default components.

        ``state_dir`` enables file-backed feedback tokens shared between processes.
        """
        provider = provider or get_default_provider()
        stores = ScopedStores.open(working_dir, global_db=global_db, dimension=provider.dimension)
        cache = EmbeddingCache(provider)
        feedback = FeedbackLoop(stores, state_dir=state_dir)
        return cls(stores, cache, feedback=feedback, **kwargs)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _maybe_cleanup(self) -> None:
        if not self.scheduler.due():
            return
        try:
            await asyncio.to_thread(self.scheduler.maybe_run)
        except Exception as e:
            logger.warning("Lazy cleanup failed: %s", e)

    def _record_metric(self, metric_type: str, value: float, meta: Optional[Dict[str, Any]] = None) -> None:
        if not self.record_metrics:
            return
        try:
            self.stores.global_store.record_metric(metric_type, value, meta)
        except Exception as e:
            logger.debug("Metric %s not recorded: %s", metric_type, e)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_context(self, prompt: str, session_key: Optional[str] = None) -> Context:
        """Memory relevant to ``prompt``. Never raises: failures yield an empty Context.

        With ``session_key``, the surfaced learning ids become that key's
        feedback token.
        """
        start = time.perf_counter()
        await self._maybe_cleanup()
        try:
            context = await self.engine.get_context(prompt)
        except Exception as e:
            logger.warning("Retrieval failed, continuing without memory: %s", e)
            return Context()

        if session_key is not None:
            try:
                self.feedback.mark_surfaced(context.learning_ids(), session_key)
            except OSError as e:
                logger.warning("Surfaced ids for %s not tracked: %s", session_key, e)

        elapsed_ms = (time.perf_counter() - start) * 1000
        await asyncio.to_thread(self._record_metric, "latency", elapsed_ms, {"operation": "get_context"})
        if not context.is_empty():
            await asyncio.to_thread(
                self._record_metric,
                "injection",
                1,
                {
                    "rules": len(context.rules),
                    "learnings": len(context.learnings),
                    "heuristics": len(context.heuristics),
                },
            )
        return context

    async def search_hybrid(self, query: str, limit: Optional[int] = None) -> List[ScoredLearning]:
        try:
            return await self.engine.search_hybrid(query, limit)
        except Exception as e:
            logger.warning("Hybrid search failed: %s", e)
            return []

    def format_for_prompt(self, context: Context) -> str:
        return format_for_prompt(context)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def record_learning(
        self,
        content: str,
        category: Category,
        outcome_payload: Any = None,
        scope: Scope = Scope.PROJECT,
    ) -> Optional[Learning]:
        """Record an observed outcome. Returns None when skipped.

        Skips (in order): private content, a context_hash already in the
        target store, and embedding failure. The duplicate check runs before
        anything is embedded.
        """
        content = (content or "").strip()
        if not content:
            return None
        category = Category(category)
        if is_private(content, outcome_payload):
            return None

        payload = content if outcome_payload is None else outcome_payload
        context_hash = compute_context_hash(payload)
        store = self.stores.for_scope(scope)

        try:
            if await asyncio.to_thread(store.has_context_hash, context_hash):
                logger.debug("Learning %s already recorded", context_hash)
                return None
            embedding = await self.cache.get_async(content)
            learning = await asyncio.to_thread(
                store.insert_learning, content, category, embedding, context_hash
            )
        except Exception as e:
            logger.warning("Could not record learning: %s", e)
            return None

        if learning is not None and category == Category.FAILURE:
            await asyncio.to_thread(
                self._record_metric, "learning_failure", 1, {"scope": learning.scope.value}
            )
        return learning

    async def add_rule(self, content: str, scope: Scope = Scope.GLOBAL) -> Optional[Rule]:
        """Add a golden rule. Returns None if the content is marked private."""
        content = (content or "").strip()
        if not content:
            raise ValueError("rule content is required")
        if is_private(content):
            return None
        embedding = await self.cache.get_async(content)
        store = self.stores.for_scope(scope)
        return await asyncio.to_thread(store.insert_rule, content, embedding)

    async def add_heuristic(self, pattern: str, suggestion: str, scope: Scope = Scope.GLOBAL) -> Heuristic:
        """Add a heuristic. Raises ValueError for an invalid pattern."""
        if not pattern or not suggestion:
            raise ValueError("pattern and suggestion are required")
        try:
            re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise ValueError(f"invalid pattern {pattern!r}: {e}") from e
        store = self.stores.for_scope(scope)
        return await asyncio.to_thread(store.insert_heuristic, pattern, suggestion)

    async def seed_defaults(self, force: bool = False) -> Dict[str, int]:
        """Write the default rules and heuristics to the global store if it is empty."""
        counts = await asyncio.to_thread(self.stores.global_store.counts)
        if not force and (counts["rules"] or counts["heuristics"]):
            return {"rules": 0, "heuristics": 0}
        added = {"rules": 0, "heuristics": 0}
        for rule in DEFAULT_RULES:
            if await self.add_rule(rule, Scope.GLOBAL) is not None:
                added["rules"] += 1
        for pattern, suggestion in DEFAULT_HEURISTICS:
            await self.add_heuristic(pattern, suggestion, Scope.GLOBAL)
            added["heuristics"] += 1
        logger.info("Seeded %d rules and %d heuristics", added["rules"], added["heuristics"])
        return added

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def mark_surfaced(self, ids: Sequence[str], key: str = config.DEFAULT_FEEDBACK_KEY) -> None:
        self.feedback.mark_surfaced(ids, key)

    async def apply_feedback(self, success: bool, key: str = config.DEFAULT_FEEDBACK_KEY) -> int:
        return await asyncio.to_thread(self.feedback.apply_outcome, success, key)

    async def increment_rule_hits(self, rule_ids: Sequence[str]) -> int:
        def _bump() -> int:
            bumped = 0
            for rule_id in dict.fromkeys(rule_ids):
                for store in self.stores.active():
                    try:
                        if store.update_rule_hit_count(rule_id, 1):
                            bumped += 1
                            break
                    except Exception as e:
                        logger.warning("Hit count update for %s failed on %s store: %s",
                                       rule_id, store.scope.value, e)
            return bumped

        return await asyncio.to_thread(_bump)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_consolidation(
        self,
        threshold: float = config.CONSOLIDATION_THRESHOLD,
        min_count: int = config.CONSOLIDATION_MIN_COUNT,
        scope: Scope = Scope.PROJECT,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Find emergent patterns and (unless ``dry_run``) promote each to a rule."""
        clusters, promoted = await asyncio.to_thread(
            self.consolidation.run, threshold, min_count, scope, dry_run
        )
        return {"clusters": clusters, "promoted": promoted}

    async def run_cleanup(self, dry_run: bool = False) -> Dict[str, CleanupStats]:
        """Clean every active store now, ignoring the throttle."""
        return await asyncio.to_thread(self.scheduler.run_all, dry_run)

    # ------------------------------------------------------------------
    # Inspect
    # ------------------------------------------------------------------

    def _selected(self, scope: Optional[Scope]):
        if scope is None:
            return self.stores.active()
        scope = Scope(scope)
        return [s for s in self.stores.active() if s.scope == scope]

    async def list_rules(self, scope: Optional[Scope] = None, limit: Optional[int] = None) -> List[Rule]:
        def _collect():
            return [r for s in self._selected(scope) for r in s.list_rules(limit=limit)]
        return await asyncio.to_thread(_collect)

    async def list_learnings(self, scope: Optional[Scope] = None, limit: Optional[int] = 20) -> List[Learning]:
        def _collect():
            return [l for s in self._selected(scope) for l in s.list_learnings(limit=limit)]
        return await asyncio.to_thread(_collect)

    async def list_heuristics(self, scope: Optional[Scope] = None) -> List[Heuristic]:
        def _collect():
            return [h for s in self._selected(scope) for h in s.list_heuristics()]
        return await asyncio.to_thread(_collect)

    async def delete(self, kind: str, record_id: str) -> bool:
        """Delete a rule, learning or heuristic by id from whichever store holds it."""
        method = _KIND_DELETERS.get(kind)
        if method is None:
            raise ValueError(f"kind must be one of {sorted(_KIND_DELETERS)}")

        def _delete() -> bool:
            return any(getattr(s, method)(record_id) for s in self.stores.active())

        return await asyncio.to_thread(_delete)

    async def metrics_summary(self) -> Dict[str, Dict[str, float]]:
        return await asyncio.to_thread(self.stores.global_store.metric_summary)

    async def stats(self) -> Dict[str, Any]:
        def _collect() -> Dict[str, Any]:
            counts = {}
            for store in self.stores.active():
                try:
                    counts[store.scope.value] = store.counts()
                except Exception as e:
                    counts[store.scope.value] = {"error": str(e)}
            return counts

        return {
            "stores": self.stores.describe(),
            "counts": await asyncio.to_thread(_collect),
            "cache": self.cache.stats(),
            "disabled_heuristics": {
                hid: {"pattern": pattern, "error": err}
                for hid, (pattern, err) in self.engine.disabled_heuristics.items()
            },
        }

    def close(self) -> None:
        self.cache.close()
        self.stores.close()


# ---------------------------------------------------------------------------
# Process default (host glue only)
# ---------------------------------------------------------------------------

_instances: Dict[str, ElfMemory] = {}
_instances_lock = threading.Lock()


def get_memory(working_dir=None) -> ElfMemory:
    """Get or create the process ElfMemory for ``working_dir``'s project (thread-safe)."""
    root = find_project_root(working_dir) if config.project_scope_enabled() else None
    key = str(root) if root else ""
    with _instances_lock:
        memory = _instances.get(key)
        if memory is None:
            memory = ElfMemory.open(
                working_dir or root,
                state_dir=config.elf_home() / "surfaced",
            )
            _instances[key] = memory
            if len(_instances) == 1:
                atexit.register(_close_all)
    return memory


def _close_all() -> None:
    with _instances_lock:
        for memory in _instances.values():
            try:
                memory.close()
            except Exception as e:
                logger.debug("Close failed: %s", e)
        _instances.clear()


def reset_memory() -> None:
    """Close and forget every process ElfMemory (useful for testing)."""
    _close_all()
