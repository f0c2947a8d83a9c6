"""
ContextMemory Models - Schema for messages, summaries and the relationship graph.

Persisted documents:
- ContextSummary: current compressed view of one context
- HierarchicalSummary: summary over a group of child summaries
- MetaSummary: summary over hierarchical summaries
- ContextEdge: typed, weighted edge between two contexts

Documents serialize with camelCase keys so files written by earlier
releases of the store load unchanged.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_KEY_INSIGHTS = 7


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dedupe(values: List[str]) -> List[str]:
    """Order-preserving de-duplication."""
    return list(dict.fromkeys(values))


class ContextImportance(float, Enum):
    """Ordered importance scale for messages."""

    LOW = 0.25
    MEDIUM = 0.5
    HIGH = 0.75
    CRITICAL = 1.0


class RelationshipType(str, Enum):
    """
    Edge labels in the relationship graph.

    PARENT(A, B) means A is the parent of B; it always has a reciprocal
    CHILD(B, A) edge.
    """

    SIMILAR = "similar"
    CONTINUES = "continues"
    REFERENCES = "references"
    PARENT = "parent"
    CHILD = "child"


class Direction(str, Enum):
    """Which side of an edge a context must be on."""

    OUTGOING = "outgoing"
    INCOMING = "incoming"
    BOTH = "both"


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class Message(_Document):
    """A single conversation turn. Immutable once appended."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    importance: Optional[ContextImportance] = None
    tags: FrozenSet[str] = frozenset()


class CodeBlock(_Document):
    code: str
    language: Optional[str] = None
    importance: float = Field(default=1.0, ge=0.0, le=1.0)
    source_context_id: Optional[str] = None


class ContextSummary(_Document):
    """One current summary per context; replacing it increments version."""

    context_id: str
    updated_at: datetime = Field(default_factory=utcnow)
    summary: str
    code_blocks: List[CodeBlock] = Field(default_factory=list)
    message_count: int = 0
    version: int = Field(default=1, ge=1)
    key_insights: List[str] = Field(default_factory=list)
    importance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    related_contexts: List[str] = Field(default_factory=list)

    @field_validator("key_insights")
    @classmethod
    def _cap_insights(cls, value: List[str]) -> List[str]:
        return _dedupe(value)[:MAX_KEY_INSIGHTS]

    @field_validator("related_contexts")
    @classmethod
    def _unique_related(cls, value: List[str]) -> List[str]:
        return _dedupe(value)


class HierarchicalSummary(ContextSummary):
    parent_context_id: Optional[str] = None
    child_context_ids: List[str] = Field(default_factory=list)
    hierarchy_level: int = 0  # 0 = directly above leaf summaries

    @field_validator("child_context_ids")
    @classmethod
    def _unique_children(cls, value: List[str]) -> List[str]:
        return _dedupe(value)


class MetaSummary(_Document):
    id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    summary: str
    context_ids: List[str] = Field(default_factory=list)
    shared_code_blocks: List[CodeBlock] = Field(default_factory=list)
    hierarchy_level: int = 1


class ContextEdge(_Document):
    """Graph edge. Uniqueness key is (source, target, type)."""

    source: str
    target: str
    type: RelationshipType
    weight: float
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("weight", mode="before")
    @classmethod
    def _clamp_weight(cls, value: Any) -> float:
        return max(0.0, min(1.0, float(value)))

    @property
    def key(self) -> Tuple[str, str, RelationshipType]:
        return (self.source, self.target, self.type)


class SimilarContext(_Document):
    context_id: str
    similarity: float


class SummaryResult(BaseModel):
    success: bool
    summary: Optional[ContextSummary] = None
    error: Optional[str] = None


@dataclass
class ContextWorkingState:
    """
    In-memory state for one context.

    Created lazily on first access, hydrated from the persisted summary and
    hierarchy, destroyed on eviction.
    """

    context_id: str
    messages: List[Message] = field(default_factory=list)
    token_count: int = 0
    tokens_since_last_summary: int = 0
    messages_since_last_summary: int = 0
    has_summary: bool = False
    last_summarized_at: Optional[datetime] = None
    importance_score: float = 0.5
    related_contexts: List[str] = field(default_factory=list)
    parent_context_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    def add_related(self, context_id: str) -> None:
        if context_id != self.context_id and context_id not in self.related_contexts:
            self.related_contexts.append(context_id)

    def touch(self) -> None:
        self.last_activity_at = utcnow()


@dataclass
class RetainEntry:
    """Why an eviction pass keeps a context."""

    importance: float
    reason: str
