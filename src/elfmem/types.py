"""ELF record types -- rules, learnings, heuristics and the retrieval context."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Scope(str, Enum):
    """Where a record lives. Never stored as a column; stamped by the store handle."""
    GLOBAL = "global"
    PROJECT = "project"


class Category(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class MatchType(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Rule:
    id: str
    content: str
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    hit_count: int = 0
    scope: Scope = Scope.GLOBAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "hit_count": self.hit_count,
            "scope": self.scope.value,
        }


@dataclass
class Learning:
    id: str
    content: str
    category: Category
    context_hash: str
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)
    utility_score: float = 1.0
    scope: Scope = Scope.GLOBAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "category": self.category.value,
            "context_hash": self.context_hash,
            "created_at": self.created_at.isoformat(),
            "utility_score": round(self.utility_score, 4),
            "scope": self.scope.value,
        }


@dataclass
class Heuristic:
    id: str
    pattern: str
    suggestion: str
    created_at: datetime = field(default_factory=utcnow)
    scope: Scope = Scope.GLOBAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "suggestion": self.suggestion,
            "created_at": self.created_at.isoformat(),
            "scope": self.scope.value,
        }


@dataclass
class ScoredLearning:
    """A learning surfaced by retrieval. ``score`` is the raw match score, never the scope-biased one."""
    item: Learning
    score: float
    match_type: MatchType

    def to_dict(self) -> Dict[str, Any]:
        d = self.item.to_dict()
        d["score"] = round(self.score, 4)
        d["match_type"] = self.match_type.value
        return d


@dataclass
class KeywordHit:
    id: str
    snippet: str


@dataclass
class Context:
    rules: List[Rule] = field(default_factory=list)
    learnings: List[ScoredLearning] = field(default_factory=list)
    heuristics: List[Heuristic] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.rules or self.learnings or self.heuristics)

    def learning_ids(self) -> List[str]:
        return [s.item.id for s in self.learnings]

    def rule_ids(self) -> List[str]:
        return [r.id for r in self.rules]


@dataclass
class CleanupStats:
    rules_deleted: int = 0
    learnings_deleted: int = 0
    heuristics_deleted: int = 0

    @property
    def total(self) -> int:
        return self.rules_deleted + self.learnings_deleted + self.heuristics_deleted

    def __add__(self, other: "CleanupStats") -> "CleanupStats":
        return CleanupStats(
            self.rules_deleted + other.rules_deleted,
            self.learnings_deleted + other.learnings_deleted,
            self.heuristics_deleted + other.heuristics_deleted,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "rules_deleted": self.rules_deleted,
            "learnings_deleted": self.learnings_deleted,
            "heuristics_deleted": self.heuristics_deleted,
        }


@dataclass
class Cluster:
    """Learnings grouped around a seed. ``members[0]`` is the seed."""
    members: List[Learning]

    @property
    def seed(self) -> Learning:
        return self.members[0]

    @property
    def ids(self) -> List[str]:
        return [m.id for m in self.members]

    @property
    def contents(self) -> List[str]:
        return [m.content for m in self.members]

    def __len__(self) -> int:
        return len(self.members)
