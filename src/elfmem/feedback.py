"""
ELF Feedback Loop -- credit or penalize learnings that were surfaced before an outcome.

The set of surfaced ids per interaction key is a one-shot token: applying an
outcome consumes it before any update is issued, so one surfacing is never
applied twice. Tokens live in memory, or as small JSON files under
``$ELF_HOME/surfaced/`` when hook processes need to hand them to each other.
"""

import json
import logging
import os
import re
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from elfmem import config
from elfmem.scopes import ScopedStores

logger = logging.getLogger("elfmem.feedback")

_KEY_SAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")


class FeedbackLoop:
    """Applies +delta on success and -delta on failure to previously surfaced learnings."""

    def __init__(
        self,
        stores: ScopedStores,
        delta: float = config.FEEDBACK_DELTA,
        state_dir: Optional[Path] = None,
    ):
        self.stores = stores
        self.delta = delta
        self.state_dir = Path(state_dir) if state_dir else None
        self._tokens: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Token storage
    # ------------------------------------------------------------------

    def _token_path(self, key: str) -> Path:
        safe = _KEY_SAFE_RE.sub("_", key)[:128] or config.DEFAULT_FEEDBACK_KEY
        return self.state_dir / f"{safe}.surfaced.json"

    def _write_token(self, key: str, ids: List[str]) -> None:
        if self.state_dir is None:
            self._tokens[key] = ids
            return
        self.state_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        path = self._token_path(key)
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, json.dumps(ids).encode("utf-8"))
        finally:
            os.close(fd)

    def _pop_token(self, key: str) -> List[str]:
        if self.state_dir is None:
            return self._tokens.pop(key, [])
        path = self._token_path(key)
        # Renaming is the claim: only one process can move the file away.
        claimed = path.with_name(f"{path.name}.{os.getpid()}.{uuid.uuid4().hex}.claim")
        try:
            os.replace(path, claimed)
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Could not claim surfaced token %s: %s", path.name, e)
            return []
        try:
            raw = claimed.read_text()
        except OSError as e:
            logger.warning("Could not read surfaced token %s: %s", claimed.name, e)
            return []
        finally:
            claimed.unlink(missing_ok=True)
        try:
            ids = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Discarding unreadable surfaced token %s: %s", path.name, e)
            return []
        return [str(i) for i in ids] if isinstance(ids, list) else []

    def pending(self, key: str = config.DEFAULT_FEEDBACK_KEY) -> List[str]:
        """Ids currently waiting for an outcome under ``key`` (does not consume)."""
        with self._lock:
            if self.state_dir is None:
                return list(self._tokens.get(key, []))
            path = self._token_path(key)
            if not path.exists():
                return []
            try:
                return list(json.loads(path.read_text()))
            except (OSError, json.JSONDecodeError):
                return []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def mark_surfaced(self, ids: Sequence[str], key: str = config.DEFAULT_FEEDBACK_KEY) -> None:
        """Replace the token for ``key`` with ``ids``. An empty list clears it."""
        ids = list(dict.fromkeys(ids))
        with self._lock:
            if not ids:
                self._pop_token(key)
                return
            self._write_token(key, ids)
        logger.debug("Marked %d learnings surfaced for %s", len(ids), key)

    def apply_delta(self, ids: Sequence[str], delta: float) -> int:
        """Add ``delta`` to utility_score of each id in whichever store holds it."""
        updated = 0
        for learning_id in dict.fromkeys(ids):
            for store in self.stores.active():
                try:
                    if store.update_learning_utility(learning_id, delta):
                        updated += 1
                        break
                except Exception as e:
                    logger.warning("Utility update for %s failed on %s store: %s",
                                   learning_id, store.scope.value, e)
        return updated

    def apply_outcome(self, success: bool, key: str = config.DEFAULT_FEEDBACK_KEY) -> int:
        """Consume the token for ``key`` and apply the outcome. Returns rows updated."""
        with self._lock:
            ids = self._pop_token(key)
        if not ids:
            return 0
        delta = self.delta if success else -self.delta
        updated = self.apply_delta(ids, delta)
        logger.debug("Applied %+.2f to %d/%d surfaced learnings (%s)", delta, updated, len(ids), key)
        return updated
