"""
ELF Config -- Tunable constants for retrieval, caching, expiration and consolidation.

Every constant can be overridden through an ``ELF_*`` environment variable.
Paths are resolved lazily so tests can redirect ``ELF_HOME`` per test.
"""

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_flag(name: str, default: bool = True) -> bool:
    val = os.environ.get(name, "").strip().lower()
    if not val:
        return default
    return val not in ("0", "false", "no", "off")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_MARKERS = (".git", ".elf")
PROJECT_DIR_NAME = ".elf"
DB_FILENAME = "memory.db"


def elf_home() -> Path:
    """Resolve ELF_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("ELF_HOME", str(Path.home() / ".elf")))


def global_db_path() -> Path:
    return elf_home() / DB_FILENAME


def project_db_path(project_root) -> Path:
    return Path(project_root) / PROJECT_DIR_NAME / DB_FILENAME


def project_scope_enabled() -> bool:
    return _env_flag("ELF_ENABLE_PROJECT_SCOPE", True)


def auto_cleanup_enabled() -> bool:
    return _env_flag("ELF_AUTO_CLEANUP", True)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

MAX_RULES = _env_int("ELF_MAX_RULES", 5)
MAX_LEARNINGS = _env_int("ELF_MAX_LEARNINGS", 10)
SIMILARITY_THRESHOLD = _env_float("ELF_SIMILARITY_THRESHOLD", 0.7)
KEYWORD_LIMIT_PER_STORE = _env_int("ELF_KEYWORD_LIMIT", 10)
KEYWORD_SCORE = _env_float("ELF_KEYWORD_SCORE", 0.85)
HYBRID_BOOST = _env_float("ELF_HYBRID_BOOST", 0.15)
SCOPE_BIAS = _env_float("ELF_SCOPE_BIAS", 0.05)

# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

EMBEDDING_DIM = 384
CACHE_SIZE = _env_int("ELF_CACHE_SIZE", 100)
CACHE_TTL_S = _env_float("ELF_CACHE_TTL", 300.0)

# ---------------------------------------------------------------------------
# Expiration
# ---------------------------------------------------------------------------

RULE_EXPIRATION_DAYS = _env_int("ELF_RULE_EXPIRATION_DAYS", 90)
RULE_MIN_HITS = _env_int("ELF_RULE_MIN_HITS", 1)
LEARNING_EXPIRATION_DAYS = _env_int("ELF_LEARNING_EXPIRATION_DAYS", 60)
HEURISTIC_EXPIRATION_DAYS = _env_int("ELF_HEURISTIC_EXPIRATION_DAYS", 180)
METRICS_RETENTION_DAYS = _env_int("ELF_METRICS_RETENTION_DAYS", 30)
CLEANUP_INTERVAL_S = _env_float("ELF_CLEANUP_INTERVAL", 24 * 3600.0)

# ---------------------------------------------------------------------------
# Consolidation
# ---------------------------------------------------------------------------

CONSOLIDATION_LOOKBACK_DAYS = _env_int("ELF_CONSOLIDATION_LOOKBACK_DAYS", 7)
CONSOLIDATION_THRESHOLD = _env_float("ELF_CONSOLIDATION_THRESHOLD", 0.85)
CONSOLIDATION_MIN_COUNT = _env_int("ELF_CONSOLIDATION_MIN_COUNT", 3)
PROMOTION_DEDUP_THRESHOLD = _env_float("ELF_PROMOTION_DEDUP_THRESHOLD", 0.95)

# ---------------------------------------------------------------------------
# Feedback / privacy
# ---------------------------------------------------------------------------

FEEDBACK_DELTA = _env_float("ELF_FEEDBACK_DELTA", 0.1)
DEFAULT_FEEDBACK_KEY = "default"
