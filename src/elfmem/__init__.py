"""ELF -- Emergent Learning Framework memory for AI coding assistants.

Direct Python API::

    import asyncio
    from elfmem import ElfMemory, Scope

    memory = ElfMemory.open()
    asyncio.run(memory.add_rule("Always check exit codes", Scope.GLOBAL))
    context = asyncio.run(memory.get_context("how do I check command exit codes"))
    print(memory.format_for_prompt(context))

For Claude Code integration (MCP tools, hooks), install with:
``pip install elfmem[server]``
"""

__version__ = "0.3.0"

from elfmem.bridge import ElfMemory, compute_context_hash, get_memory, reset_memory
from elfmem.cache import EmbeddingCache, similarity
from elfmem.embeddings import EmbeddingError, HashEmbeddingProvider, OnnxEmbeddingProvider
from elfmem.retrieval import RetrievalEngine, format_for_prompt
from elfmem.scopes import ScopedStores, find_project_root
from elfmem.sqlite_store import SQLiteStore
from elfmem.types import (
    Category,
    CleanupStats,
    Cluster,
    Context,
    Heuristic,
    Learning,
    MatchType,
    Rule,
    Scope,
    ScoredLearning,
)

__all__ = [
    "ElfMemory",
    "get_memory",
    "reset_memory",
    "compute_context_hash",
    # Components
    "SQLiteStore",
    "ScopedStores",
    "find_project_root",
    "EmbeddingCache",
    "similarity",
    "RetrievalEngine",
    "format_for_prompt",
    "OnnxEmbeddingProvider",
    "HashEmbeddingProvider",
    "EmbeddingError",
    # Types
    "Scope",
    "Category",
    "MatchType",
    "Rule",
    "Learning",
    "Heuristic",
    "ScoredLearning",
    "Context",
    "CleanupStats",
    "Cluster",
    # Meta
    "__version__",
]
