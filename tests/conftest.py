"""ELF test configuration."""
import hashlib
import math
import re
import sys
import pytest
from pathlib import Path

# Ensure elfmem package and hooks are importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent / "hooks"))

from elfmem.embeddings import EmbeddingProvider  # noqa: E402

_WORD_RE = re.compile(r"[a-z0-9]+")


class BagOfWordsProvider(EmbeddingProvider):
    """Deterministic embedding where texts sharing words are similar.

    Each lowercase word adds 1.0 to a bucket picked by its md5, so the cosine
    of two texts is roughly their word overlap. Good enough to exercise the
    similarity threshold, clustering, and ranking without a model.
    """

    name = "bag-of-words"

    def __init__(self, dimension: int = 384):
        self.dimension = dimension
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        vec = [0.0] * self.dimension
        for word in _WORD_RE.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            vec[bucket] += 1.0
        norm = math.sqrt(sum(x * x for x in vec))
        if norm == 0:
            return vec
        return [x / norm for x in vec]


class FailingProvider(EmbeddingProvider):
    """Provider whose model never loads."""

    name = "failing"

    def embed(self, text):
        from elfmem.embeddings import EmbeddingError
        raise EmbeddingError("model unavailable")


@pytest.fixture
def tmp_elf_dir(tmp_path, monkeypatch):
    """Create a temporary ELF_HOME and force the hash embedding fallback."""
    elf_dir = tmp_path / ".elf"
    elf_dir.mkdir()
    monkeypatch.setenv("ELF_HOME", str(elf_dir))
    monkeypatch.setenv("ELF_SKIP_EMBEDDINGS", "1")
    yield elf_dir


@pytest.fixture(autouse=True)
def _reset_bridge():
    """Close any process-level ElfMemory so each test opens fresh stores."""
    from elfmem.bridge import reset_memory

    reset_memory()
    yield
    reset_memory()


@pytest.fixture
def provider():
    return BagOfWordsProvider()


@pytest.fixture
def cache(provider):
    from elfmem.cache import EmbeddingCache

    c = EmbeddingCache(provider)
    yield c
    c.close()


@pytest.fixture
def global_store(tmp_elf_dir):
    """Create a fresh global SQLiteStore for testing."""
    from elfmem.sqlite_store import SQLiteStore
    from elfmem.types import Scope

    s = SQLiteStore(tmp_elf_dir / "memory.db", Scope.GLOBAL)
    yield s
    s.close()


@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "proj"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture
def project_store(project_root):
    from elfmem.sqlite_store import SQLiteStore
    from elfmem.types import Scope

    s = SQLiteStore(project_root / ".elf" / "memory.db", Scope.PROJECT)
    yield s
    s.close()


@pytest.fixture
def store(global_store):
    """Alias for a single store handle."""
    return global_store


@pytest.fixture
def stores(global_store, project_store, project_root):
    from elfmem.scopes import ScopedStores

    return ScopedStores(global_store, project_store, project_root)


@pytest.fixture
def global_only(global_store):
    from elfmem.scopes import ScopedStores

    return ScopedStores(global_store)


@pytest.fixture
def memory(stores, cache):
    """ElfMemory over a global and a project store, lazy cleanup disabled."""
    from elfmem.bridge import ElfMemory
    from elfmem.cleanup import CleanupScheduler

    m = ElfMemory(stores, cache, scheduler=CleanupScheduler(stores, enabled=False))
    yield m
    m.close()

