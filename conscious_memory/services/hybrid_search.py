"""
Hybrid search over memories: semantic similarity and keyword overlap combined into one ranking.

Structural filters are applied by the store while fetching candidates. Scoring, the minimum score
cutoff, ordering and pagination happen here over the whole candidate set, so pages of the same
query partition one ranked list.
"""

import re
from typing import Iterable, List, Optional, Set

import numpy as np

from ..models.core import Memory, MemoryFilter, SearchPage, SearchResult
from ..models.errors import ValidationError
from ..utils.bedrock_embed import FallbackEmbedder
from ..utils.config import SearchConfig
from ..utils.logging_config import get_logger
from .memory_repository import MemoryRepository

logger = get_logger(__name__)

BROWSE_SCORE = 1.0

STOP_WORDS = frozenset({
    'a', 'about', 'after', 'all', 'also', 'an', 'and', 'any', 'are', 'as', 'at', 'be', 'been', 'but', 'by', 'can',
    'could', 'did', 'do', 'does', 'for', 'from', 'had', 'has', 'have', 'he', 'her', 'his', 'how', 'i', 'if', 'in',
    'into', 'is', 'it', 'its', 'just', 'me', 'my', 'no', 'not', 'of', 'on', 'or', 'our', 'she', 'so', 'than', 'that',
    'the', 'their', 'them', 'then', 'there', 'these', 'they', 'this', 'to', 'was', 'we', 'were', 'what', 'when',
    'where', 'which', 'who', 'why', 'will', 'with', 'would', 'you', 'your'
})

_TOKEN_PATTERN = re.compile(r'[^\W_]+', re.UNICODE)


def _stem(token: str) -> str:
    """Light plural stemming so 'languages' matches 'language'."""
    if len(token) > 4 and token.endswith('ies'):
        return token[:-3] + 'y'
    if len(token) > 3 and token.endswith('s') and not token.endswith(('ss', 'us', 'is')):
        return token[:-1]
    return token


def tokenize(text: str, keep_stop_words: bool = False) -> Set[str]:
    """Normalize text into a set of comparable terms.

    Lowercases, splits on anything that is not a letter or digit, and stems plurals. Stop words
    and single-character tokens are dropped unless ``keep_stop_words`` is set.
    """
    terms = set()
    for token in _TOKEN_PATTERN.findall((text or '').lower()):
        if not keep_stop_words and (len(token) < 2 or token in STOP_WORDS):
            continue
        terms.add(_stem(token))
    return terms


def keyword_score(query: str, text: str, tags: Iterable[str] = ()) -> Optional[float]:
    """Fraction of query terms found in the memory text or tags.

    Queries made only of stop words are compared with stop words kept.

    Returns:
        Score in [0, 1], or None when the query has no terms at all
    """
    query_terms = tokenize(query)
    keep_stop_words = not query_terms
    if keep_stop_words:
        query_terms = tokenize(query, keep_stop_words=True)
        if not query_terms:
            return None

    document_terms = tokenize(text, keep_stop_words)
    for tag in tags:
        document_terms |= tokenize(tag, keep_stop_words)

    return len(query_terms & document_terms) / len(query_terms)


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """Cosine similarity of two vectors, 0.0 when either has zero length."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


class HybridSearchEngine:
    """Rank memories by the better of semantic similarity and weighted keyword overlap."""

    def __init__(self, repository: MemoryRepository, embedder: FallbackEmbedder, config: SearchConfig):
        """
        Initialize the search engine.

        Args:
            repository: Memory repository supplying filtered candidates
            embedder: Embedding provider for queries
            config: Ranking and pagination settings
        """
        self.repository = repository
        self.embedder = embedder
        self.config = config

    def _validate(self, page, page_size, min_score, memory_filter: Optional[MemoryFilter]):
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError(f'page must be an integer >= 1, got {page!r}')
        if isinstance(page_size, bool) or not isinstance(page_size, int) or not 1 <= page_size <= self.config.max_page_size:
            raise ValidationError(f'page_size must be an integer between 1 and {self.config.max_page_size}, got {page_size!r}')
        if isinstance(min_score, bool) or not isinstance(min_score, (int, float)) or not 0 <= min_score <= 1:
            raise ValidationError(f'min_score must be between 0 and 1, got {min_score!r}')
        if memory_filter is not None:
            memory_filter.validate()

    def _semantic_score(self, query_vector, query_model, memory: Memory) -> Optional[float]:
        if query_vector is None or memory.embedding_model != query_model:
            return None
        if not memory.embedding or len(memory.embedding) != len(query_vector):
            return None
        return min(1.0, max(0.0, cosine_similarity(query_vector, memory.embedding)))

    def search(self,
               query: Optional[str],
               memory_filter: Optional[MemoryFilter] = None,
               page: int = 1,
               page_size: Optional[int] = None,
               min_score: Optional[float] = None,
               query_embedding: Optional[List[float]] = None,
               embedding_model: Optional[str] = None,
               exclude_ids: Optional[Iterable[str]] = None) -> SearchPage:
        """
        Search memories.

        Args:
            query: Free-text query; empty switches to browse mode over the filter
            memory_filter: Structural filter applied before scoring
            page: 1-based page number
            page_size: Results per page (config default if None)
            min_score: Minimum final score (config default if None)
            query_embedding: Seed vector used instead of embedding the query
            embedding_model: Model that produced ``query_embedding``
            exclude_ids: Memory ids never returned

        Returns:
            SearchPage with the requested slice of the ranked results

        Raises:
            ValidationError: On invalid paging, score or filter arguments, or an unfiltered empty query
            OpenSearchError: If the vector store is unreachable
        """
        page_size = self.config.default_page_size if page_size is None else page_size
        min_score = self.config.default_min_score if min_score is None else min_score
        self._validate(page, page_size, min_score, memory_filter)

        query = (query or '').strip()
        has_filter = memory_filter is not None and memory_filter.is_selective()
        if not query and query_embedding is None and not has_filter:
            raise ValidationError('An empty query requires a tag, session or time range filter')

        pool_size = self.config.candidate_pool_size
        excluded = set(exclude_ids or [])
        browse = not query and query_embedding is None
        total_is_estimate = False
        query_vector, query_model = None, None

        if browse:
            candidates = {memory.id: memory for memory in self.repository.list_all(memory_filter)}
        else:
            if query_embedding is not None:
                query_vector, query_model = query_embedding, embedding_model
            else:
                query_vector, query_model = self.embedder.embed_query(query)

            nearest = self.repository.nearest(query_vector, memory_filter, pool_size)
            candidates = {memory.id: memory for memory in nearest}
            total_is_estimate = len(nearest) >= pool_size
            if query:
                matches = self.repository.keyword_matches(query, memory_filter, pool_size)
                total_is_estimate = total_is_estimate or len(matches) >= pool_size
                for memory in matches:
                    candidates.setdefault(memory.id, memory)

        scored = []
        for memory_id, memory in candidates.items():
            if memory_id in excluded:
                continue

            if browse:
                scored.append(SearchResult(memory=memory, score=BROWSE_SCORE))
                continue

            semantic = self._semantic_score(query_vector, query_model, memory)
            keyword = keyword_score(query, memory.text, memory.tags) if query else None

            available = []
            if semantic is not None:
                available.append(semantic)
            if keyword is not None:
                available.append(self.config.keyword_weight * keyword)
            score = max(available) if available else 0.0

            if score >= min_score:
                scored.append(SearchResult(memory=memory, score=score, semantic_score=semantic, keyword_score=keyword))

        scored.sort(key=lambda r: (-r.score, -r.memory.importance, -r.memory.timestamp.timestamp(), -(r.keyword_score or 0.0),
                                   r.memory.id))

        start = (page - 1) * page_size
        results = scored[start:start + page_size]

        logger.debug(f'Search {"browse" if browse else repr(query)}: {len(candidates)} candidates, {len(scored)} above '
                     f'{min_score}, page {page} has {len(results)}')
        return SearchPage(results=results,
                          page=page,
                          page_size=page_size,
                          total_results=len(scored),
                          total_is_estimate=total_is_estimate)
