"""
Memory Repository owning the canonical record of every memory in the vector store.

Handles validation, id assignment, importance rescaling, tag normalization and embedding; the
OpenSearch index is the only place a memory lives.
"""

import math
import uuid
from dataclasses import replace
from numbers import Real
from typing import Any, Dict, Iterator, List, Optional

from ..models.core import (DEFAULT_IMPORTANCE, MAX_IMPORTANCE, MIN_IMPORTANCE, Memory, MemoryFilter, MemorySource,
                           SyncState)
from ..models.errors import NotFound, ValidationError
from ..utils.bedrock_embed import FallbackEmbedder
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, build_filter_clauses
from ..utils.timestamp_utils import parse_timestamp, to_iso, utc_now

logger = get_logger(__name__)


def normalize_importance(value: Any) -> int:
    """Validate and rescale an importance value to the 1-10 integer scale.

    Values strictly between 0 and 1 are treated as a fraction (0.7 becomes 7, never below 1).
    Integral values from 1 to 10 pass unchanged, None means the default.

    Raises:
        ValidationError: For anything else
    """
    if value is None:
        return DEFAULT_IMPORTANCE
    if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
        raise ValidationError(f'Importance must be a number, got {value!r}')
    if 0 < value < 1:
        return max(MIN_IMPORTANCE, math.floor(10 * value))
    if value != int(value) or not MIN_IMPORTANCE <= value <= MAX_IMPORTANCE:
        raise ValidationError(f'Importance must be an integer between {MIN_IMPORTANCE} and {MAX_IMPORTANCE} '
                              f'or a fraction between 0 and 1, got {value!r}')
    return int(value)


def normalize_tags(tags: Optional[List[str]]) -> List[str]:
    """Strip tags, drop empties and duplicates. The first occurrence keeps its position."""
    result = []
    for tag in tags or []:
        if not isinstance(tag, str):
            raise ValidationError(f'Tags must be strings, got {tag!r}')
        tag = tag.strip()
        if tag and tag not in result:
            result.append(tag)
    return result


def memory_to_document(memory: Memory) -> Dict[str, Any]:
    return {
        'id': memory.id,
        'text': memory.text,
        'embedding': memory.embedding,
        'embedding_model': memory.embedding_model,
        'tags': list(memory.tags),
        'importance': memory.importance,
        'session_id': memory.session_id,
        'context': memory.context,
        'source': memory.source.value,
        'timestamp': to_iso(memory.timestamp),
        'updated_at': to_iso(memory.updated_at),
        'revision': memory.revision,
        'sync_state': memory.sync_state.value,
        'sync_retries': memory.sync_retries
    }


def memory_from_document(document: Dict[str, Any]) -> Memory:
    timestamp = parse_timestamp(document.get('timestamp'))
    return Memory(id=document['id'],
                  text=document.get('text', ''),
                  embedding=document.get('embedding') or [],
                  embedding_model=document.get('embedding_model', ''),
                  tags=list(document.get('tags') or []),
                  importance=int(document.get('importance', DEFAULT_IMPORTANCE)),
                  source=MemorySource(document.get('source', MemorySource.EXPLICIT.value)),
                  timestamp=timestamp,
                  updated_at=parse_timestamp(document.get('updated_at')) or timestamp,
                  session_id=document.get('session_id'),
                  context=document.get('context'),
                  revision=int(document.get('revision', 1)),
                  sync_state=SyncState(document.get('sync_state', SyncState.UNSYNCED.value)),
                  sync_retries=int(document.get('sync_retries', 0)))


class MemoryScan:
    """Lazy, finite and restartable sequence of memories matching a filter.

    Every ``iter()`` runs a fresh scan against the store.
    """

    def __init__(self, opensearch: OpenSearchClient, memory_filter: Optional[MemoryFilter], include_embedding: bool = False):
        self.opensearch = opensearch
        self.memory_filter = memory_filter
        self.include_embedding = include_embedding

    def __iter__(self) -> Iterator[Memory]:
        clauses = build_filter_clauses(self.memory_filter)
        for document in self.opensearch.scan_documents(clauses, include_embedding=self.include_embedding):
            yield memory_from_document(document)


class MemoryRepository:
    """Canonical store of memories backed by OpenSearch."""

    def __init__(self, opensearch: OpenSearchClient, embedder: FallbackEmbedder):
        """
        Initialize the memory repository.

        Args:
            opensearch: Vector store client holding the memory index
            embedder: Embedding provider with hash fallback
        """
        self.opensearch = opensearch
        self.embedder = embedder
        logger.info(f'Initialized MemoryRepository on index {opensearch.index_name}')

    def save(self,
             text: str,
             tags: Optional[List[str]] = None,
             importance: Any = None,
             session_id: Optional[str] = None,
             context: Optional[str] = None,
             source: Any = MemorySource.EXPLICIT) -> str:
        """
        Validate, embed and persist a new memory.

        Args:
            text: Memory content
            tags: Tags, deduplicated in order
            importance: 1-10, or a fraction in (0, 1) that is rescaled; default 5
            session_id: Optional session the memory belongs to
            context: Optional free-form context
            source: 'explicit' or 'inferred'

        Returns:
            The assigned memory id

        Raises:
            ValidationError: If any field is invalid
            OpenSearchError: If the vector store is unreachable
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError('Memory text must be a non-empty string')
        try:
            source = MemorySource(source)
        except ValueError:
            raise ValidationError(f"Source must be 'explicit' or 'inferred', got {source!r}")

        importance = normalize_importance(importance)
        tags = normalize_tags(tags)
        embedding, embedding_model = self.embedder.embed_document(text)

        now = utc_now()
        memory = Memory(id=str(uuid.uuid4()),
                        text=text,
                        embedding=embedding,
                        embedding_model=embedding_model,
                        tags=tags,
                        importance=importance,
                        source=source,
                        timestamp=now,
                        updated_at=now,
                        session_id=session_id,
                        context=context)

        self.opensearch.upsert_document(memory.id, memory_to_document(memory))
        logger.info(f'Saved memory {memory.id} (importance={importance}, tags={tags}, embedding={embedding_model})')
        return memory.id

    def find(self, memory_id: str) -> Optional[Memory]:
        """Get a memory by id, or None if it does not exist."""
        document = self.opensearch.get_document(memory_id)
        return memory_from_document(document) if document else None

    def get(self, memory_id: str) -> Memory:
        """
        Get a memory by id.

        Raises:
            NotFound: If no memory has this id
        """
        memory = self.find(memory_id)
        if memory is None:
            raise NotFound(memory_id)
        return memory

    def update(self,
               memory_id: str,
               text: Optional[str] = None,
               tags: Optional[List[str]] = None,
               importance: Any = None,
               context: Optional[str] = None) -> Memory:
        """
        Update any subset of text, tags, importance and context.

        Tags replace the previous set. The embedding is only recomputed when the text changes.
        The revision is bumped and the memory is queued for graph sync again.

        Returns:
            The updated memory

        Raises:
            ValidationError: If a supplied field is invalid
            NotFound: If no memory has this id
        """
        if text is not None and (not isinstance(text, str) or not text.strip()):
            raise ValidationError('Memory text must be a non-empty string')

        memory = self.get(memory_id)
        changes = {}

        if text is not None and text != memory.text:
            embedding, embedding_model = self.embedder.embed_document(text)
            changes.update(text=text, embedding=embedding, embedding_model=embedding_model)
        if tags is not None:
            changes['tags'] = normalize_tags(tags)
        if importance is not None:
            changes['importance'] = normalize_importance(importance)
        if context is not None:
            changes['context'] = context

        updated = replace(memory,
                          updated_at=utc_now(),
                          revision=memory.revision + 1,
                          sync_state=SyncState.UNSYNCED,
                          sync_retries=0,
                          **changes)

        self.opensearch.upsert_document(memory_id, memory_to_document(updated))
        logger.info(f'Updated memory {memory_id} to revision {updated.revision} ({", ".join(changes) or "no field changes"})')
        return updated

    def delete(self, memory_id: str) -> bool:
        """
        Delete a memory.

        Returns:
            True if it was deleted, False if it did not exist
        """
        deleted = self.opensearch.delete_document(memory_id)
        if deleted:
            logger.info(f'Deleted memory {memory_id}')
        return deleted

    def list_all(self, memory_filter: Optional[MemoryFilter] = None, include_embedding: bool = False) -> MemoryScan:
        """
        Lazily list every memory matching a structural filter, oldest first.

        Raises:
            ValidationError: If the filter is malformed
        """
        if memory_filter is not None:
            memory_filter.validate()
        return MemoryScan(self.opensearch, memory_filter, include_embedding)

    def nearest(self, embedding: List[float], memory_filter: Optional[MemoryFilter], top_k: int) -> List[Memory]:
        """Fetch the memories closest to an embedding, restricted by the filter in the store."""
        hits = self.opensearch.knn_search(embedding, build_filter_clauses(memory_filter), top_k)
        return [memory_from_document(hit['document']) for hit in hits]

    def keyword_matches(self, text: str, memory_filter: Optional[MemoryFilter], top_k: int) -> List[Memory]:
        """Fetch memories whose text or tags share words with the text, restricted by the filter in the store."""
        hits = self.opensearch.keyword_search(text, build_filter_clauses(memory_filter), top_k)
        return [memory_from_document(hit['document']) for hit in hits]

    def record_sync_outcome(self, memory_id: str, revision: int, state: SyncState, retries: int) -> bool:
        """
        Record the graph sync outcome of one revision of a memory.

        Does nothing if the memory has been updated since that revision was read.

        Returns:
            False if the memory no longer exists
        """
        return self.opensearch.update_sync_state(memory_id, revision, SyncState(state).value, retries)
