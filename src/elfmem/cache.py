"""
ELF Embedding Cache -- bounded, time-expiring cache in front of an EmbeddingProvider.

Eviction is by insertion order (FIFO), not access order: a hit does not
refresh an entry's position. An expired entry is dropped and re-inserted at
the tail when recomputed.
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from elfmem.config import CACHE_SIZE, CACHE_TTL_S
from elfmem.embeddings import EmbeddingProvider

logger = logging.getLogger("elfmem.cache")


def similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity. Zero-norm or mismatched vectors score 0.0."""
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


class EmbeddingCache:
    """Memoizes provider.embed(text) for ``ttl_s`` seconds, holding at most ``max_size`` vectors."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_size: int = CACHE_SIZE,
        ttl_s: float = CACHE_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.max_size = max(1, int(max_size))
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, List[float]]]" = OrderedDict()
        # Guards map operations only; provider calls run outside it.
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self.hits = 0
        self.misses = 0

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def init(self) -> None:
        """Warm the provider (loads the model once)."""
        self.provider.init()

    def get(self, text: str) -> List[float]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(text)
            if entry is not None:
                stored_at, vector = entry
                if now - stored_at < self.ttl_s:
                    self.hits += 1
                    return vector
                del self._entries[text]
            self.misses += 1

        vector = self.provider.embed(text)

        with self._lock:
            # Concurrent misses for the same text: last write wins.
            self._entries.pop(text, None)
            self._entries[text] = (self._clock(), vector)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
        return vector

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="embedding")
        return self._executor

    async def get_async(self, text: str) -> List[float]:
        """Non-blocking get: provider work runs on the embedding thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._get_executor(), self.get, text)

    async def init_async(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._get_executor(), self.init)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: str) -> bool:
        return text in self._entries

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> Dict[str, object]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_s": self.ttl_s,
            "hits": self.hits,
            "misses": self.misses,
            "provider": getattr(self.provider, "name", type(self.provider).__name__),
        }

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
