"""ELF Cleanup -- expire stale rules, learnings and heuristics, lazily and throttled."""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from elfmem import config
from elfmem.scopes import ScopedStores
from elfmem.sqlite_store import SQLiteStore
from elfmem.types import CleanupStats, utcnow

logger = logging.getLogger("elfmem.cleanup")


def _cutoffs(now: datetime) -> Dict[str, datetime]:
    return {
        "rules": now - timedelta(days=config.RULE_EXPIRATION_DAYS),
        "learnings": now - timedelta(days=config.LEARNING_EXPIRATION_DAYS),
        "heuristics": now - timedelta(days=config.HEURISTIC_EXPIRATION_DAYS),
    }


def run_cleanup(store: SQLiteStore, now: Optional[datetime] = None) -> CleanupStats:
    """Delete expired rows in one store.

    Rules go only when both old and rarely hit; learnings and heuristics go
    on age alone, whatever their utility.
    """
    now = now or utcnow()
    cut = _cutoffs(now)
    stats = CleanupStats(
        rules_deleted=store.delete_expired("rules", cut["rules"], min_hits=config.RULE_MIN_HITS),
        learnings_deleted=store.delete_expired("learnings", cut["learnings"]),
        heuristics_deleted=store.delete_expired("heuristics", cut["heuristics"]),
    )
    store.clear_old_metrics(now - timedelta(days=config.METRICS_RETENTION_DAYS))
    if stats.total:
        logger.info("Cleanup %s: %s", store.scope.value, stats.to_dict())
    return stats


def preview_cleanup(store: SQLiteStore, now: Optional[datetime] = None) -> CleanupStats:
    """What run_cleanup would delete, without deleting."""
    now = now or utcnow()
    cut = _cutoffs(now)
    return CleanupStats(
        rules_deleted=store.count_expired("rules", cut["rules"], min_hits=config.RULE_MIN_HITS),
        learnings_deleted=store.count_expired("learnings", cut["learnings"]),
        heuristics_deleted=store.count_expired("heuristics", cut["heuristics"]),
    )


class CleanupScheduler:
    """Runs cleanup on every active store at most once per ``interval_s``.

    There is no timer: ``maybe_run()`` is called from the retrieval path and
    only does work when the interval has elapsed. The first call in a
    process always runs.
    """

    def __init__(
        self,
        stores: ScopedStores,
        interval_s: float = config.CLEANUP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        enabled: Optional[bool] = None,
    ):
        self.stores = stores
        self.interval_s = interval_s
        self._clock = clock
        self.enabled = config.auto_cleanup_enabled() if enabled is None else enabled
        self._last_run: Optional[float] = None
        self._lock = threading.Lock()

    def due(self) -> bool:
        if not self.enabled:
            return False
        return self._last_run is None or self._clock() - self._last_run >= self.interval_s

    def run_all(self, dry_run: bool = False) -> Dict[str, CleanupStats]:
        """Clean (or preview) every active store. A failing store is logged and reported as zero."""
        results: Dict[str, CleanupStats] = {}
        for store in self.stores.active():
            try:
                results[store.scope.value] = preview_cleanup(store) if dry_run else run_cleanup(store)
            except Exception as e:
                logger.warning("Cleanup failed on %s store: %s", store.scope.value, e)
                results[store.scope.value] = CleanupStats()
        return results

    def maybe_run(self) -> Optional[Dict[str, CleanupStats]]:
        """Run cleanup if due. Returns per-scope stats, or None when throttled."""
        with self._lock:
            if not self.due():
                return None
            self._last_run = self._clock()
        return self.run_all()
