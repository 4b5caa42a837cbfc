"""
ELF SQLite Store -- one durable store handle per memory scope.

Each scope (global, project) owns a single SQLite database holding rules,
learnings, heuristics and metrics. Learnings are mirrored into an FTS5 index
for keyword search (LIKE fallback when FTS5 is unavailable). Embeddings are
stored as fixed-length float32 blobs and compared exhaustively by the
retrieval engine.

Usage:
    store = SQLiteStore(db_path, scope=Scope.PROJECT)
    learning = store.insert_learning("npm test failed", Category.FAILURE, vec, "a1b2...")
    hits = store.keyword_search("npm test", limit=10)
"""

import hashlib
import json
import logging
import os
import re
import sqlite3
import stat
import struct
import threading
import time as _time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from elfmem.config import EMBEDDING_DIM
from elfmem.types import (
    Category,
    Heuristic,
    KeywordHit,
    Learning,
    Rule,
    Scope,
    utcnow,
)

logger = logging.getLogger("elfmem.sqlite_store")

SCHEMA_VERSION = 1

_KINDS = ("rules", "learnings", "heuristics")

# ---------------------------------------------------------------------------
# SQLite retry -- hook processes and the MCP server may write the same file.
# WAL + busy_timeout cover most contention; this retries with backoff.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


# FTS5 query syntax characters; anything here would make MATCH raise.
_FTS_RESERVED_RE = re.compile(r"[\"*^:(){}\[\]+\-~<>=!|&,;.?/\\']")
_FTS_OPERATORS = frozenset({"and", "or", "not", "near"})


def sanitize_fts_query(query: str) -> List[str]:
    """Split a free-text query into FTS-safe lowercase terms.

    Reserved characters become spaces, bare operators and words of two
    characters or fewer are dropped. An empty list means "no keyword search".
    """
    cleaned = _FTS_RESERVED_RE.sub(" ", query or "").lower()
    terms = []
    for word in cleaned.split():
        if len(word) <= 2 or word in _FTS_OPERATORS:
            continue
        if word not in terms:
            terms.append(word)
    return terms


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to little-endian bytes."""
    return struct.pack(f"<{len(vector)}f", *vector)


def _deserialize_f32(data: Optional[bytes], dim: int = EMBEDDING_DIM) -> Optional[List[float]]:
    """Deserialize bytes to a float32 vector, or None when the length is not ``4 * dim``."""
    if data is None:
        return None
    if len(data) != 4 * dim:
        return None
    return list(struct.unpack(f"<{dim}f", data))


def _iso(dt: Optional[datetime]) -> str:
    """Canonical UTC timestamp text. Fixed width, so string order is time order."""
    dt = dt or utcnow()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _new_id(seed: str) -> str:
    raw = f"{seed}:{_time.time_ns()}:{uuid.uuid4().hex}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def heuristic_id(pattern: str, suggestion: str) -> str:
    """Stable id so the same pattern/suggestion pair is only stored once."""
    return hashlib.sha256(f"{pattern}{suggestion}".encode("utf-8")).hexdigest()[:16]


def _secure_connect(db_path: Path, **kwargs) -> sqlite3.Connection:
    """Open SQLite with the database file restricted to the owner (0o600)."""
    db_path_str = str(db_path)
    if not db_path.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = db_path.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)
    return sqlite3.connect(db_path_str, **kwargs)


class SQLiteStore:
    """Durable CRUD + keyword search for one scope's memory.

    Every record returned is stamped with this handle's ``scope``; scope is
    never a stored column. All methods are blocking and thread-safe (one
    connection guarded by a lock), so async callers run them in worker
    threads.
    """

    def __init__(self, db_path, scope: Scope = Scope.GLOBAL, dimension: int = EMBEDDING_DIM):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.scope = Scope(scope)
        self.dimension = dimension
        self._lock = threading.Lock()
        self._fts_available = False
        self._bad_vector_ids: set = set()
        self._conn = self._connect()
        self._init_schema()

    def __repr__(self) -> str:
        return f"SQLiteStore({self.scope.value}, {self.db_path})"

    def _connect(self) -> sqlite3.Connection:
        conn = _secure_connect(self.db_path, timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        c = self._conn

        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TABLE IF NOT EXISTS rules (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                embedding BLOB,
                created_at TEXT NOT NULL,
                hit_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS learnings (
                rid INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                content TEXT NOT NULL,
                category TEXT NOT NULL,
                embedding BLOB,
                created_at TEXT NOT NULL,
                context_hash TEXT UNIQUE NOT NULL,
                utility_score REAL NOT NULL DEFAULT 1.0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS heuristics (
                id TEXT PRIMARY KEY,
                pattern TEXT NOT NULL,
                suggestion TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                value REAL NOT NULL,
                meta TEXT,
                created_at TEXT NOT NULL
            )
        """)
        for table, col in (
            ("rules", "created_at"),
            ("rules", "hit_count"),
            ("learnings", "created_at"),
            ("heuristics", "created_at"),
            ("metrics", "created_at"),
            ("metrics", "type"),
        ):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_{col} ON {table}({col})")

        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS learnings_fts
                USING fts5(content, content='learnings', content_rowid='rid')
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS learnings_ai AFTER INSERT ON learnings BEGIN
                    INSERT INTO learnings_fts(rowid, content) VALUES (new.rid, new.content);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS learnings_ad AFTER DELETE ON learnings BEGIN
                    INSERT INTO learnings_fts(learnings_fts, rowid, content) VALUES ('delete', old.rid, old.content);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS learnings_au AFTER UPDATE OF content ON learnings BEGIN
                    INSERT INTO learnings_fts(learnings_fts, rowid, content) VALUES ('delete', old.rid, old.content);
                    INSERT INTO learnings_fts(rowid, content) VALUES (new.rid, new.content);
                END
            """)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.debug("FTS5 not available, keyword search uses LIKE: %s", e)
            self._fts_available = False

        c.commit()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    def _run_sql(self, sql, params=()):
        return _retry_on_locked(self._conn.execute, sql, params)

    def _vector(self, record_id: str, blob: Optional[bytes]) -> Optional[List[float]]:
        vec = _deserialize_f32(blob, self.dimension)
        if vec is None and blob is not None and record_id not in self._bad_vector_ids:
            self._bad_vector_ids.add(record_id)
            logger.warning(
                "%s: embedding for %s has %d bytes, expected %d; excluded from vector search",
                self.scope.value, record_id, len(blob), 4 * self.dimension,
            )
        return vec

    def _encode_vector(self, embedding: Optional[Sequence[float]]) -> Optional[bytes]:
        if embedding is None:
            return None
        if len(embedding) != self.dimension:
            raise ValueError(f"embedding has {len(embedding)} dims, store expects {self.dimension}")
        return _serialize_f32(embedding)

    def _row_to_rule(self, row: tuple) -> Rule:
        rid, content, blob, created_at, hit_count = row
        return Rule(
            id=rid,
            content=content,
            embedding=self._vector(rid, blob),
            created_at=_parse_dt(created_at),
            hit_count=int(hit_count or 0),
            scope=self.scope,
        )

    def _row_to_learning(self, row: tuple) -> Learning:
        lid, content, category, blob, created_at, context_hash, utility = row
        return Learning(
            id=lid,
            content=content,
            category=Category(category),
            context_hash=context_hash,
            embedding=self._vector(lid, blob),
            created_at=_parse_dt(created_at),
            utility_score=float(utility),
            scope=self.scope,
        )

    def _row_to_heuristic(self, row: tuple) -> Heuristic:
        hid, pattern, suggestion, created_at = row
        return Heuristic(
            id=hid,
            pattern=pattern,
            suggestion=suggestion,
            created_at=_parse_dt(created_at),
            scope=self.scope,
        )

    _RULE_COLS = "id, content, embedding, created_at, hit_count"
    _LEARNING_COLS = "id, content, category, embedding, created_at, context_hash, utility_score"
    _HEURISTIC_COLS = "id, pattern, suggestion, created_at"

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def insert_rule(
        self,
        content: str,
        embedding: Optional[Sequence[float]],
        created_at: Optional[datetime] = None,
        hit_count: int = 0,
    ) -> Rule:
        blob = self._encode_vector(embedding)
        rule_id = _new_id(content)
        ts = _iso(created_at)
        with self._lock:
            self._run_sql(
                f"INSERT INTO rules ({self._RULE_COLS}) VALUES (?, ?, ?, ?, ?)",
                (rule_id, content, blob, ts, hit_count),
            )
            self._commit()
        return Rule(
            id=rule_id,
            content=content,
            embedding=list(embedding) if embedding is not None else None,
            created_at=_parse_dt(ts),
            hit_count=hit_count,
            scope=self.scope,
        )

    def insert_learning(
        self,
        content: str,
        category: Category,
        embedding: Optional[Sequence[float]],
        context_hash: str,
        created_at: Optional[datetime] = None,
        utility_score: float = 1.0,
    ) -> Optional[Learning]:
        """Insert a learning. Returns None when ``context_hash`` already exists in this store."""
        category = Category(category)
        blob = self._encode_vector(embedding)
        learning_id = _new_id(context_hash)
        ts = _iso(created_at)
        with self._lock:
            cur = self._run_sql(
                """INSERT OR IGNORE INTO learnings
                   (id, content, category, embedding, created_at, context_hash, utility_score)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (learning_id, content, category.value, blob, ts, context_hash, utility_score),
            )
            self._commit()
            if cur.rowcount == 0:
                logger.debug("%s: duplicate context_hash %s, skipped", self.scope.value, context_hash)
                return None
        return Learning(
            id=learning_id,
            content=content,
            category=category,
            context_hash=context_hash,
            embedding=list(embedding) if embedding is not None else None,
            created_at=_parse_dt(ts),
            utility_score=utility_score,
            scope=self.scope,
        )

    def insert_heuristic(
        self,
        pattern: str,
        suggestion: str,
        created_at: Optional[datetime] = None,
    ) -> Heuristic:
        """Insert a heuristic; re-adding the same pattern/suggestion returns the existing row."""
        hid = heuristic_id(pattern, suggestion)
        with self._lock:
            self._run_sql(
                "INSERT OR IGNORE INTO heuristics (id, pattern, suggestion, created_at) VALUES (?, ?, ?, ?)",
                (hid, pattern, suggestion, _iso(created_at)),
            )
            self._commit()
            row = self._run_sql(
                f"SELECT {self._HEURISTIC_COLS} FROM heuristics WHERE id = ?", (hid,)
            ).fetchone()
        return self._row_to_heuristic(row)

    def has_context_hash(self, context_hash: str) -> bool:
        with self._lock:
            row = self._run_sql(
                "SELECT 1 FROM learnings WHERE context_hash = ? LIMIT 1", (context_hash,)
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_rules(self, limit: Optional[int] = None) -> List[Rule]:
        """Rules ordered by hit_count desc, newest first on ties."""
        sql = f"SELECT {self._RULE_COLS} FROM rules ORDER BY hit_count DESC, created_at DESC, id"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._lock:
            rows = self._run_sql(sql, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            row = self._run_sql(
                f"SELECT {self._RULE_COLS} FROM rules WHERE id = ?", (rule_id,)
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def list_learnings(
        self,
        since: Optional[datetime] = None,
        category: Optional[Category] = None,
        limit: Optional[int] = None,
    ) -> List[Learning]:
        """Learnings newest first, optionally only those created at or after ``since``."""
        clauses = []
        params: list = []
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_iso(since))
        if category is not None:
            clauses.append("category = ?")
            params.append(Category(category).value)
        sql = f"SELECT {self._LEARNING_COLS} FROM learnings"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._run_sql(sql, tuple(params)).fetchall()
        return [self._row_to_learning(r) for r in rows]

    def get_learnings(self, ids: Sequence[str]) -> List[Learning]:
        ids = list(dict.fromkeys(ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._run_sql(
                f"SELECT {self._LEARNING_COLS} FROM learnings WHERE id IN ({placeholders})",
                tuple(ids),
            ).fetchall()
        by_id = {r[0]: self._row_to_learning(r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def get_learning(self, learning_id: str) -> Optional[Learning]:
        found = self.get_learnings([learning_id])
        return found[0] if found else None

    def list_heuristics(self, limit: Optional[int] = None) -> List[Heuristic]:
        """Heuristics oldest first, so long-standing patterns win de-duplication."""
        sql = f"SELECT {self._HEURISTIC_COLS} FROM heuristics ORDER BY created_at, id"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        with self._lock:
            rows = self._run_sql(sql, params).fetchall()
        return [self._row_to_heuristic(r) for r in rows]

    def keyword_search(self, query: str, limit: int = 10) -> List[KeywordHit]:
        """Full-text search over learning content. FTS5 with LIKE fallback."""
        terms = sanitize_fts_query(query)
        if not terms:
            return []

        if self._fts_available:
            fts_query = " OR ".join(f'"{t}"' for t in terms)
            sql = """SELECT l.id, snippet(learnings_fts, 0, '', '', '...', 12)
                     FROM learnings_fts
                     JOIN learnings l ON learnings_fts.rowid = l.rid
                     WHERE learnings_fts MATCH ?
                     ORDER BY rank LIMIT ?"""
            try:
                with self._lock:
                    rows = self._run_sql(sql, (fts_query, int(limit))).fetchall()
                return [KeywordHit(id=r[0], snippet=r[1]) for r in rows]
            except sqlite3.DatabaseError as e:
                logger.warning("FTS5 search failed on %s: %s -- attempting rebuild", self.scope.value, e)
                try:
                    with self._lock:
                        self._run_sql("INSERT INTO learnings_fts(learnings_fts) VALUES('rebuild')")
                        self._commit()
                        rows = self._run_sql(sql, (fts_query, int(limit))).fetchall()
                    return [KeywordHit(id=r[0], snippet=r[1]) for r in rows]
                except sqlite3.DatabaseError as rebuild_err:
                    logger.warning("FTS5 rebuild also failed: %s -- falling back to LIKE", rebuild_err)

        conditions = " OR ".join("LOWER(content) LIKE ?" for _ in terms)
        params = [f"%{t}%" for t in terms]
        params.append(int(limit))
        with self._lock:
            rows = self._run_sql(
                f"""SELECT id, content FROM learnings WHERE ({conditions})
                    ORDER BY created_at DESC, id LIMIT ?""",
                tuple(params),
            ).fetchall()
        return [KeywordHit(id=r[0], snippet=r[1][:120]) for r in rows]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                kind: self._run_sql(f"SELECT COUNT(*) FROM {kind}").fetchone()[0]
                for kind in _KINDS
            }

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_rule_hit_count(self, rule_id: str, delta: int = 1) -> bool:
        with self._lock:
            cur = self._run_sql(
                "UPDATE rules SET hit_count = hit_count + ? WHERE id = ?", (int(delta), rule_id)
            )
            self._commit()
        return cur.rowcount > 0

    def update_learning_utility(self, learning_id: str, delta: float) -> bool:
        with self._lock:
            cur = self._run_sql(
                "UPDATE learnings SET utility_score = utility_score + ? WHERE id = ?",
                (float(delta), learning_id),
            )
            self._commit()
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    @staticmethod
    def _expired_clause(kind: str, older_than: datetime, min_hits: Optional[int]):
        if kind not in _KINDS:
            raise ValueError(f"unknown record kind: {kind!r}")
        where = "created_at < ?"
        params: list = [_iso(older_than)]
        if kind == "rules" and min_hits is not None:
            where += " AND hit_count < ?"
            params.append(int(min_hits))
        return where, tuple(params)

    def delete_expired(self, kind: str, older_than: datetime, min_hits: Optional[int] = None) -> int:
        """Delete ``kind`` rows created before ``older_than``.

        For rules, ``min_hits`` additionally restricts deletion to rows with
        ``hit_count < min_hits``.
        """
        where, params = self._expired_clause(kind, older_than, min_hits)
        with self._lock:
            cur = self._run_sql(f"DELETE FROM {kind} WHERE {where}", params)
            self._commit()
        return max(cur.rowcount, 0)

    def count_expired(self, kind: str, older_than: datetime, min_hits: Optional[int] = None) -> int:
        where, params = self._expired_clause(kind, older_than, min_hits)
        with self._lock:
            return self._run_sql(f"SELECT COUNT(*) FROM {kind} WHERE {where}", params).fetchone()[0]

    def _delete_by_id(self, table: str, record_id: str) -> bool:
        with self._lock:
            cur = self._run_sql(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._commit()
        return cur.rowcount > 0

    def delete_rule(self, rule_id: str) -> bool:
        return self._delete_by_id("rules", rule_id)

    def delete_learning(self, learning_id: str) -> bool:
        return self._delete_by_id("learnings", learning_id)

    def delete_heuristic(self, heuristic_id: str) -> bool:
        return self._delete_by_id("heuristics", heuristic_id)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_metric(self, metric_type: str, value: float, meta: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._run_sql(
                "INSERT INTO metrics (type, value, meta, created_at) VALUES (?, ?, ?, ?)",
                (metric_type, float(value), json.dumps(meta) if meta else None, _iso(None)),
            )
            self._commit()

    def metric_summary(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, float]]:
        """Per metric type: count, avg, min, max."""
        sql = "SELECT type, COUNT(*), AVG(value), MIN(value), MAX(value) FROM metrics"
        params: tuple = ()
        if since is not None:
            sql += " WHERE created_at >= ?"
            params = (_iso(since),)
        sql += " GROUP BY type ORDER BY type"
        with self._lock:
            rows = self._run_sql(sql, params).fetchall()
        return {
            r[0]: {"count": r[1], "avg": round(r[2], 2), "min": r[3], "max": r[4]}
            for r in rows
        }

    def clear_old_metrics(self, older_than: datetime) -> int:
        with self._lock:
            cur = self._run_sql("DELETE FROM metrics WHERE created_at < ?", (_iso(older_than),))
            self._commit()
        return max(cur.rowcount, 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error as e:
                    logger.debug("close failed for %s: %s", self.db_path, e)
                self._conn = None
