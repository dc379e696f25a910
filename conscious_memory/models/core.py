"""
Core data models for the conscious memory system.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError

DEFAULT_IMPORTANCE = 5
MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 10


class MemorySource(str, Enum):
    """Provenance of a memory."""
    EXPLICIT = 'explicit'
    INFERRED = 'inferred'


class SyncState(str, Enum):
    """Graph projection state of a memory. Owned by the graph sync engine."""
    UNSYNCED = 'unsynced'
    SYNCED = 'synced'
    FAILED = 'failed'


@dataclass
class Memory:
    """A stored note with its embedding, metadata and sync bookkeeping."""
    id: str
    text: str
    embedding: List[float]
    embedding_model: str  # Model that produced the embedding, 'hash' for the fallback
    tags: List[str]
    importance: int
    source: MemorySource
    timestamp: datetime  # Creation time, never changed by updates
    updated_at: datetime
    session_id: Optional[str] = None
    context: Optional[str] = None
    revision: int = 1
    sync_state: SyncState = SyncState.UNSYNCED
    sync_retries: int = 0


@dataclass
class MemoryFilter:
    """Structural filter applied by the store before any scoring.

    ``tags`` matches memories carrying at least one of the given tags.
    ``sync_states`` and ``max_sync_retries`` are only used by the graph sync engine.
    """
    tags: List[str] = field(default_factory=list)
    importance_min: Optional[int] = None
    importance_max: Optional[int] = None
    session_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    sync_states: List[SyncState] = field(default_factory=list)
    max_sync_retries: Optional[int] = None

    def validate(self) -> None:
        """Reject malformed filter combinations.

        Raises:
            ValidationError: If a bound is out of range or a range is inverted
        """
        for name in ('importance_min', 'importance_max'):
            value = getattr(self, name)
            if value is not None and not MIN_IMPORTANCE <= value <= MAX_IMPORTANCE:
                raise ValidationError(f'{name} must be between {MIN_IMPORTANCE} and {MAX_IMPORTANCE}, got {value}')
        if self.importance_min is not None and self.importance_max is not None and self.importance_min > self.importance_max:
            raise ValidationError(f'importance_min ({self.importance_min}) is greater than importance_max ({self.importance_max})')
        if self.start_time is not None and self.end_time is not None and self.start_time > self.end_time:
            raise ValidationError('start_time is after end_time')

    def is_selective(self) -> bool:
        """Whether the filter narrows the collection enough to browse without a query."""
        return bool(self.tags) or bool(self.session_id) or self.start_time is not None or self.end_time is not None

    def matches(self, memory: Memory) -> bool:
        """Evaluate the filter against a single memory."""
        if self.tags and not set(self.tags) & set(memory.tags):
            return False
        if self.importance_min is not None and memory.importance < self.importance_min:
            return False
        if self.importance_max is not None and memory.importance > self.importance_max:
            return False
        if self.session_id and memory.session_id != self.session_id:
            return False
        if self.start_time is not None and memory.timestamp < self.start_time:
            return False
        if self.end_time is not None and memory.timestamp > self.end_time:
            return False
        if self.sync_states and memory.sync_state not in self.sync_states:
            return False
        if self.max_sync_retries is not None and memory.sync_retries >= self.max_sync_retries:
            return False
        return True


@dataclass
class SearchResult:
    """A ranked memory with its score breakdown."""
    memory: Memory
    score: float
    semantic_score: Optional[float] = None
    keyword_score: Optional[float] = None

    @property
    def id(self) -> str:
        return self.memory.id


@dataclass
class SearchPage:
    """One page of ranked search results plus pagination info.

    ``total_is_estimate`` is set when a candidate fetch hit the configured pool size, so more
    matching memories may exist beyond the counted ones.
    """
    results: List[SearchResult]
    page: int
    page_size: int
    total_results: int
    total_is_estimate: bool = False

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_results / self.page_size) if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


@dataclass
class ExtractedEntity:
    """An entity returned by the entity extractor."""
    id: str  # Local to one extraction, used only to resolve relationships
    label: str
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.properties.get('name') or self.id)


@dataclass
class ExtractedRelationship:
    """A typed relationship between two extracted entities."""
    source_entity_id: str
    target_entity_id: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractionResult:
    """Entities and relationships extracted from one memory text."""
    entities: List[ExtractedEntity] = field(default_factory=list)
    relationships: List[ExtractedRelationship] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.entities and not self.relationships


@dataclass
class SyncResult:
    """Outcome counters of one sync run."""
    status: str = 'completed'  # 'completed' or 'skipped'
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    removed: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class MemoryStats:
    """Read-side aggregation over all memories."""
    total_memories: int
    unique_tags: int
    average_importance: float
    source_breakdown: Dict[str, int]


@dataclass
class GraphQueryPage:
    """One page of rows returned by an ad-hoc graph query.

    ``total_results`` is None when no count query could be derived from the statement.
    """
    statement: str
    records: List[Dict[str, Any]]
    page: int
    page_size: int
    total_results: Optional[int] = None

    @property
    def total_pages(self) -> Optional[int]:
        if self.total_results is None:
            return None
        return max(1, math.ceil(self.total_results / self.page_size))

    @property
    def has_next(self) -> bool:
        if self.total_results is None:
            return len(self.records) == self.page_size
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1
