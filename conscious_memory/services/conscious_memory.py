"""
Conscious Memory Service: the single entry point composing storage, search and graph sync.

Built once per process with ``ConsciousMemoryService.from_config`` and handed to the transport.
"""

from collections import Counter
from typing import Any, Dict, List, Optional

from ..models.core import GraphQueryPage, Memory, MemoryFilter, MemorySource, MemoryStats, SearchPage, SearchResult, SyncResult
from ..models.errors import StoreConnectivityError, ValidationError
from ..utils.bedrock_embed import BedrockEmbed, FallbackEmbedder
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.health_check import get_health_status, get_system_info
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, count_statement, paginate_statement
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import parse_timestamp
from .entity_extraction import EntityExtractor
from .graph_sync import GraphSyncEngine, SyncScheduler
from .hybrid_search import HybridSearchEngine
from .memory_repository import MemoryRepository

logger = get_logger(__name__)

DEFAULT_GRAPH_PAGE_SIZE = 20
MAX_GRAPH_PAGE_SIZE = 100
DEFAULT_RELATED_LIMIT = 5


class ConsciousMemoryService:
    """Façade over the memory repository, hybrid search and the knowledge graph sync."""

    def __init__(self,
                 config: AppConfig,
                 opensearch: OpenSearchClient,
                 graph: NeptuneClient,
                 embedder: FallbackEmbedder,
                 extractor: EntityExtractor):
        """
        Initialize the service from already constructed clients.

        Args:
            config: Application configuration
            opensearch: Vector store client
            graph: Graph store client
            embedder: Embedding provider with hash fallback
            extractor: Entity extractor used by the sync engine
        """
        self.config = config
        self.opensearch = opensearch
        self.graph = graph
        self.embedder = embedder
        self.extractor = extractor

        self.repository = MemoryRepository(opensearch, embedder)
        self.search_engine = HybridSearchEngine(self.repository, embedder, config.search)
        self.sync_engine = GraphSyncEngine(self.repository, graph, extractor, config.sync)
        self.scheduler = SyncScheduler(self.sync_engine, config.sync.interval_seconds)

        self._initialized = False
        self._closed = False

    @classmethod
    def from_config(cls, config: AppConfig) -> 'ConsciousMemoryService':
        """Build the service and all its AWS clients from configuration."""
        embedder = FallbackEmbedder(BedrockEmbed(config.bedrock_embed), config.opensearch.dimension)
        extractor = EntityExtractor(BedrockLLM(config.bedrock_llm))
        return cls(config, OpenSearchClient(config.opensearch), NeptuneClient(config.neptune), embedder, extractor)

    def initialize(self, start_scheduler: Optional[bool] = None) -> None:
        """
        Create the memory index, probe the graph store and optionally start background sync.

        An unreachable graph store is logged but does not prevent saving and searching.

        Args:
            start_scheduler: Start the sync scheduler (defaults to the SYNC_ENABLED setting)
        """
        if self._initialized:
            return

        self.opensearch.create_index_if_not_exists()

        try:
            self.graph.check_connection()
        except StoreConnectivityError as e:
            logger.warning(f'Knowledge graph unavailable, memories will be synced once it is reachable: {e}')

        if self.config.sync.enabled if start_scheduler is None else start_scheduler:
            self.scheduler.start()

        self._initialized = True
        self._closed = False
        logger.info('Conscious memory service initialized')

    def close(self) -> None:
        """Stop background sync and release connections. Safe to call repeatedly."""
        if self._closed:
            return

        self.scheduler.stop()
        self.graph.close()
        self._closed = True
        self._initialized = False
        logger.info('Conscious memory service closed')

    def save_memory(self,
                    text: str,
                    tags: Optional[List[str]] = None,
                    importance: Any = None,
                    session_id: Optional[str] = None,
                    context: Optional[str] = None,
                    source: Any = MemorySource.EXPLICIT) -> str:
        """Save a memory and return its id. See MemoryRepository.save."""
        return self.repository.save(text, tags=tags, importance=importance, session_id=session_id, context=context, source=source)

    def get_memory(self, memory_id: str) -> Memory:
        return self.repository.get(memory_id)

    def search_memories(self,
                        query: Optional[str],
                        tags: Optional[List[str]] = None,
                        importance_min: Optional[int] = None,
                        importance_max: Optional[int] = None,
                        session_id: Optional[str] = None,
                        page: int = 1,
                        page_size: Optional[int] = None,
                        min_score: Optional[float] = None) -> SearchPage:
        """
        Search memories by relevance to a query, within optional filters.

        Returns:
            One page of ranked results
        """
        memory_filter = MemoryFilter(tags=list(tags or []),
                                     importance_min=importance_min,
                                     importance_max=importance_max,
                                     session_id=session_id)
        return self.search_engine.search(query, memory_filter, page=page, page_size=page_size, min_score=min_score)

    def search_memories_by_time_range(self,
                                      query: Optional[str] = None,
                                      start_time: Any = None,
                                      end_time: Any = None,
                                      tags: Optional[List[str]] = None,
                                      importance_min: Optional[int] = None,
                                      importance_max: Optional[int] = None,
                                      session_id: Optional[str] = None,
                                      page: int = 1,
                                      page_size: Optional[int] = None,
                                      min_score: Optional[float] = None) -> SearchPage:
        """
        Search memories created within a time range. Without a query every memory in range is listed.

        Args:
            start_time: Inclusive lower bound (ISO 8601 string, epoch seconds or datetime)
            end_time: Inclusive upper bound (ISO 8601 string, epoch seconds or datetime)

        Returns:
            One page of results, newest and most important first when browsing
        """
        memory_filter = MemoryFilter(tags=list(tags or []),
                                     importance_min=importance_min,
                                     importance_max=importance_max,
                                     session_id=session_id,
                                     start_time=parse_timestamp(start_time),
                                     end_time=parse_timestamp(end_time))
        return self.search_engine.search(query, memory_filter, page=page, page_size=page_size, min_score=min_score)

    def update_memory(self,
                      memory_id: str,
                      text: Optional[str] = None,
                      tags: Optional[List[str]] = None,
                      importance: Any = None,
                      context: Optional[str] = None) -> Memory:
        """Update any subset of a memory's fields. See MemoryRepository.update."""
        return self.repository.update(memory_id, text=text, tags=tags, importance=importance, context=context)

    def delete_memory(self, memory_id: str) -> bool:
        """
        Delete a memory. Its graph projection is removed by the next sync run in any process.

        Returns:
            True if it was deleted, False if it did not exist
        """
        return self.repository.delete(memory_id)

    def get_all_tags(self) -> List[str]:
        tags = set()
        for memory in self.repository.list_all():
            tags.update(memory.tags)
        return sorted(tags)

    def get_related_memories(self, memory_id: str, limit: int = DEFAULT_RELATED_LIMIT) -> List[SearchResult]:
        """
        Find memories similar to a given one, seeded by its own embedding.

        Raises:
            NotFound: If the memory does not exist
        """
        memory = self.repository.get(memory_id)
        page = self.search_engine.search(None,
                                         page_size=limit,
                                         query_embedding=memory.embedding,
                                         embedding_model=memory.embedding_model,
                                         exclude_ids=[memory_id])
        return page.results

    def get_stats(self) -> MemoryStats:
        total = 0
        importance_sum = 0
        tags = set()
        sources = Counter()

        for memory in self.repository.list_all():
            total += 1
            importance_sum += memory.importance
            tags.update(memory.tags)
            sources[memory.source.value] += 1

        return MemoryStats(total_memories=total,
                           unique_tags=len(tags),
                           average_importance=importance_sum / total if total else 0.0,
                           source_breakdown=dict(sources))

    def query_graph(self,
                    statement: str,
                    parameters: Optional[Dict[str, Any]] = None,
                    page: int = 1,
                    page_size: int = DEFAULT_GRAPH_PAGE_SIZE) -> GraphQueryPage:
        """
        Run a paginated openCypher query against the knowledge graph.

        Existing SKIP/LIMIT clauses are replaced. The total is counted on a best-effort basis and
        left as None when the statement shape does not allow a count query.

        Raises:
            ValidationError: On a blank statement, invalid paging or a statement the graph rejects
            NeptuneError: If the graph store is unreachable
        """
        if not statement or not statement.strip():
            raise ValidationError('Graph query statement must not be empty')
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError(f'page must be an integer >= 1, got {page!r}')
        if isinstance(page_size, bool) or not isinstance(page_size, int) or not 1 <= page_size <= MAX_GRAPH_PAGE_SIZE:
            raise ValidationError(f'page_size must be an integer between 1 and {MAX_GRAPH_PAGE_SIZE}, got {page_size!r}')

        paginated = paginate_statement(statement, (page - 1) * page_size, page_size)
        records = self.graph.run_query(paginated, parameters)

        total = None
        counting = count_statement(statement)
        if counting:
            try:
                rows = self.graph.run_query(counting, parameters)
                total = int(rows[0].get('total', 0)) if rows else 0
            except (ValidationError, StoreConnectivityError, TypeError, ValueError) as e:
                logger.warning(f'Could not count graph query results: {e}')

        return GraphQueryPage(statement=paginated, records=records, page=page, page_size=page_size, total_results=total)

    def trigger_sync(self, full_resync: bool = False) -> SyncResult:
        """Run one graph sync pass on the calling thread."""
        return self.sync_engine.run_sync(full_resync=full_resync)

    def sync_stats(self) -> Dict[str, Any]:
        stats = self.sync_engine.stats()
        stats['scheduler_running'] = self.scheduler.is_running
        stats['interval_seconds'] = self.scheduler.interval_seconds
        return stats

    def health_status(self) -> Dict[str, Any]:
        """Health of every external component plus configuration summary."""
        components = {
            'bedrock_llm': (self.extractor, {
                'model': self.config.bedrock_llm.model_id
            }),
            'bedrock_embed': (self.embedder, {
                'model': self.config.bedrock_embed.model_id
            }),
            'neptune': (self.graph, {
                'endpoint': self.config.neptune.endpoint
            }),
            'opensearch': (self.opensearch, {
                'endpoint': self.config.opensearch.endpoint
            })
        }
        return get_system_info(self.config, get_health_status(components))
