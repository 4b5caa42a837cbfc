"""ELF scope resolution -- map a working directory to the active store handles."""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from elfmem import config
from elfmem.sqlite_store import SQLiteStore
from elfmem.types import Scope

logger = logging.getLogger("elfmem.scopes")


def _is_global_home(candidate: Path) -> bool:
    try:
        return candidate.resolve() == config.elf_home().resolve()
    except OSError:
        return False


def find_project_root(start_dir=None, markers=config.PROJECT_MARKERS) -> Optional[Path]:
    """Walk upward from ``start_dir`` to the first directory holding a project marker.

    Returns None when the filesystem root is reached. The walk visits each
    ancestor exactly once, so it terminates even when started at the root.
    A ``.elf`` marker that is the global ELF_HOME itself does not count.
    """
    start = Path(start_dir or os.getcwd()).expanduser()
    try:
        start = start.resolve()
    except OSError:
        start = start.absolute()
    if start.is_file():
        start = start.parent

    for directory in (start, *start.parents):
        for marker in markers:
            candidate = directory / marker
            if not candidate.exists():
                continue
            if marker == config.PROJECT_DIR_NAME and _is_global_home(candidate):
                continue
            return directory
    return None


class ScopedStores:
    """The global store plus, when a project is active, the project store.

    Iteration order is project first, then global. That order is what makes
    project items win ties everywhere downstream.
    """

    def __init__(
        self,
        global_store: SQLiteStore,
        project_store: Optional[SQLiteStore] = None,
        project_root: Optional[Path] = None,
    ):
        self.global_store = global_store
        self.project_store = project_store
        self.project_root = project_root

    @classmethod
    def open(cls, working_dir=None, global_db=None, dimension: int = config.EMBEDDING_DIM) -> "ScopedStores":
        """Open the global store and, if one is found upward from ``working_dir``, the project store."""
        global_store = SQLiteStore(global_db or config.global_db_path(), Scope.GLOBAL, dimension)
        project_store = None
        root = None
        if config.project_scope_enabled():
            root = find_project_root(working_dir)
            if root is not None:
                project_store = SQLiteStore(config.project_db_path(root), Scope.PROJECT, dimension)
                logger.debug("Project scope active at %s", root)
        return cls(global_store, project_store, root)

    @property
    def has_project(self) -> bool:
        return self.project_store is not None

    def active(self) -> List[SQLiteStore]:
        stores = []
        if self.project_store is not None:
            stores.append(self.project_store)
        stores.append(self.global_store)
        return stores

    def __iter__(self):
        return iter(self.active())

    def for_scope(self, scope) -> SQLiteStore:
        """Store to write into for ``scope``; project writes fall back to global outside a project."""
        if Scope(scope) == Scope.PROJECT:
            if self.project_store is not None:
                return self.project_store
            logger.info("No project detected, writing to global scope instead")
        return self.global_store

    def describe(self) -> Dict[str, Optional[str]]:
        return {
            "global": str(self.global_store.db_path),
            "project": str(self.project_store.db_path) if self.project_store else None,
            "project_root": str(self.project_root) if self.project_root else None,
        }

    def close(self) -> None:
        for store in self.active():
            store.close()
