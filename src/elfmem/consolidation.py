"""
ELF Consolidation -- promote clusters of similar recent learnings to rules.

Clustering is single-link to the seed: learnings are visited oldest first,
an unassigned learning seeds a new cluster, and every later unassigned
learning whose similarity to that seed meets the threshold joins it. Chains
are not transitive. The pairwise work is O(n^2) in the lookback window,
which is what bounds it.
"""

import logging
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

import numpy as np

from elfmem import config
from elfmem.cache import EmbeddingCache, similarity
from elfmem.scopes import ScopedStores
from elfmem.types import Cluster, Learning, Rule, Scope, utcnow

logger = logging.getLogger("elfmem.consolidation")

Summarizer = Callable[[Cluster], str]


def default_summarizer(cluster: Cluster) -> str:
    return f"Emergent Rule: {cluster.seed.content}"


class ConsolidationEngine:

    def __init__(
        self,
        stores: ScopedStores,
        cache: EmbeddingCache,
        summarizer: Summarizer = default_summarizer,
        lookback_days: int = config.CONSOLIDATION_LOOKBACK_DAYS,
        dedup_threshold: float = config.PROMOTION_DEDUP_THRESHOLD,
    ):
        self.stores = stores
        self.cache = cache
        self.summarizer = summarizer
        self.lookback_days = lookback_days
        self.dedup_threshold = dedup_threshold

    def recent_learnings(self) -> List[Learning]:
        """Learnings inside the lookback window across all stores, oldest first."""
        since = utcnow() - timedelta(days=self.lookback_days)
        learnings: List[Learning] = []
        for store in self.stores.active():
            try:
                learnings.extend(store.list_learnings(since=since))
            except Exception as e:
                logger.warning("Skipping %s store during consolidation: %s", store.scope.value, e)
        learnings = [l for l in learnings if l.embedding is not None]
        learnings.sort(key=lambda l: (l.created_at, l.id))
        return learnings

    def find_emergent_patterns(
        self,
        threshold: float = config.CONSOLIDATION_THRESHOLD,
        min_count: int = config.CONSOLIDATION_MIN_COUNT,
    ) -> List[Cluster]:
        learnings = self.recent_learnings()
        if len(learnings) < max(min_count, 1):
            return []

        matrix = np.asarray([l.embedding for l in learnings], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        unit = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)

        assigned = np.zeros(len(learnings), dtype=bool)
        clusters: List[Cluster] = []
        for i in range(len(learnings)):
            if assigned[i]:
                continue
            assigned[i] = True
            members = [learnings[i]]
            sims = unit[i + 1:] @ unit[i]
            for offset in np.nonzero(sims >= threshold)[0]:
                j = i + 1 + int(offset)
                if not assigned[j]:
                    assigned[j] = True
                    members.append(learnings[j])
            if len(members) >= min_count:
                clusters.append(Cluster(members))

        logger.info("Found %d emergent patterns among %d recent learnings", len(clusters), len(learnings))
        return clusters

    def _duplicate_of(self, store, embedding: List[float]) -> Optional[Rule]:
        if self.dedup_threshold <= 0:
            return None
        for rule in store.list_rules():
            if rule.embedding is not None and similarity(rule.embedding, embedding) >= self.dedup_threshold:
                return rule
        return None

    def promote_to_rule(self, cluster: Cluster, scope: Scope = Scope.PROJECT) -> Optional[Rule]:
        """Write a rule summarizing ``cluster`` into ``scope``'s store.

        Returns None when an existing rule is already at least
        ``dedup_threshold`` similar (0 disables the check).
        """
        content = self.summarizer(cluster)
        embedding = self.cache.get(content)
        store = self.stores.for_scope(scope)
        existing = self._duplicate_of(store, embedding)
        if existing is not None:
            logger.info("Skipped promotion, rule %s already covers: %s", existing.id, content[:80])
            return None
        rule = store.insert_rule(content, embedding)
        logger.info("Promoted %d learnings to rule %s in %s scope", len(cluster), rule.id, rule.scope.value)
        return rule

    def run(
        self,
        threshold: float = config.CONSOLIDATION_THRESHOLD,
        min_count: int = config.CONSOLIDATION_MIN_COUNT,
        scope: Scope = Scope.PROJECT,
        dry_run: bool = False,
    ) -> Tuple[List[Cluster], List[Rule]]:
        """Find emergent patterns and, unless ``dry_run``, promote each one."""
        clusters = self.find_emergent_patterns(threshold, min_count)
        promoted: List[Rule] = []
        if not dry_run:
            for cluster in clusters:
                rule = self.promote_to_rule(cluster, scope)
                if rule is not None:
                    promoted.append(rule)
        return clusters, promoted
