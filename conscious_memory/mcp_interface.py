"""
MCP Interface Layer using fastmcp for agent orchestration.

Every tool answers a JSON object with a ``success`` flag; failures carry ``error`` and ``details``
instead of raising into the transport.
"""

from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import SearchPage, SearchResult
from .models.errors import NotFound
from .services.conscious_memory import ConsciousMemoryService
from .utils.config import AppConfig, config
from .utils.logging_config import get_logger
from .utils.timestamp_utils import to_iso

logger = get_logger(__name__)


def _failure(error: str, e: Exception) -> Dict[str, Any]:
    return {'success': False, 'error': error, 'details': str(e)}


def _result_summary(result: SearchResult) -> Dict[str, Any]:
    memory = result.memory
    return {
        'id': memory.id,
        'content': memory.text,
        'tags': memory.tags,
        'importance': memory.importance,
        'score': round(result.score, 2),
        'context': memory.context,
        'source': memory.source.value,
        'timestamp': to_iso(memory.timestamp)
    }


def _pagination(page: SearchPage) -> Dict[str, Any]:
    return {
        'page': page.page,
        'pageSize': page.page_size,
        'totalPages': page.total_pages,
        'hasNext': page.has_next,
        'hasPrevious': page.has_previous,
        'totalIsEstimate': page.total_is_estimate
    }


class MemoryTools:
    """Agent-facing memory operations backed by a ConsciousMemoryService."""

    def __init__(self, service: ConsciousMemoryService):
        self.service = service

    def save_memory(self,
                    content: str,
                    tags: Optional[List[str]] = None,
                    importance: Optional[float] = None,
                    context: Optional[str] = None,
                    session_id: Optional[str] = None) -> Dict[str, Any]:
        """Save information to conscious memory.

        Args:
            content: The information to remember
            tags: Tags to categorize this memory
            importance: Importance from 1 (low) to 10 (critical); values between 0 and 1 are scaled up. Default 5
            context: Additional context about when/why this was saved
            session_id: Session ID to associate with this memory
        """
        try:
            memory_id = self.service.save_memory(content, tags=tags, importance=importance, session_id=session_id, context=context)
            memory = self.service.get_memory(memory_id)
            return {
                'success': True,
                'id': memory_id,
                'message': f'Memory saved successfully with ID: {memory_id}',
                'summary': {
                    'content': content[:100] + ('...' if len(content) > 100 else ''),
                    'tags': memory.tags,
                    'importance': memory.importance
                }
            }
        except Exception as e:
            logger.error(f'Failed to save memory: {e}')
            return _failure('Failed to save memory to conscious storage', e)

    def search_memories(self,
                        query: str,
                        tags: Optional[List[str]] = None,
                        importance_min: Optional[int] = None,
                        importance_max: Optional[int] = None,
                        limit: int = 10,
                        page: int = 1,
                        min_score: Optional[float] = None,
                        session_id: Optional[str] = None) -> Dict[str, Any]:
        """Search conscious memories by meaning and keywords.

        Args:
            query: What to search for
            tags: Only memories carrying at least one of these tags
            importance_min: Minimum importance level
            importance_max: Maximum importance level
            limit: Results per page (default 10, max 50)
            page: Page number, 1-based
            min_score: Minimum relevance score between 0 and 1 (default 0.15)
            session_id: Only memories of this session
        """
        try:
            result = self.service.search_memories(query,
                                                  tags=tags,
                                                  importance_min=importance_min,
                                                  importance_max=importance_max,
                                                  session_id=session_id,
                                                  page=page,
                                                  page_size=limit,
                                                  min_score=min_score)
            return {
                'success': True,
                'query': query,
                'found': len(result.results),
                'totalResults': result.total_results,
                'pagination': _pagination(result),
                'memories': [_result_summary(r) for r in result.results]
            }
        except Exception as e:
            logger.error(f'Failed to search memories: {e}')
            return _failure('Failed to search conscious memories', e)

    def search_memories_by_time_range(self,
                                      query: Optional[str] = None,
                                      start_date: Optional[str] = None,
                                      end_date: Optional[str] = None,
                                      tags: Optional[List[str]] = None,
                                      importance_min: Optional[int] = None,
                                      importance_max: Optional[int] = None,
                                      page_size: int = 10,
                                      page: int = 1,
                                      session_id: Optional[str] = None) -> Dict[str, Any]:
        """Search memories created within a time range; without a query, list all memories in range.

        Args:
            query: Optional search query
            start_date: Range start, ISO 8601 (e.g. '2024-01-01T00:00:00Z')
            end_date: Range end, ISO 8601 (e.g. '2024-12-31T23:59:59Z')
            tags: Only memories carrying at least one of these tags
            importance_min: Minimum importance level
            importance_max: Maximum importance level
            page_size: Results per page (default 10, max 50)
            page: Page number, 1-based
            session_id: Only memories of this session
        """
        try:
            result = self.service.search_memories_by_time_range(query,
                                                                start_time=start_date,
                                                                end_time=end_date,
                                                                tags=tags,
                                                                importance_min=importance_min,
                                                                importance_max=importance_max,
                                                                session_id=session_id,
                                                                page=page,
                                                                page_size=page_size)
            return {
                'success': True,
                'query': query or 'all memories in time range',
                'found': len(result.results),
                'totalResults': result.total_results,
                'pagination': _pagination(result),
                'timeRange': {
                    'startDate': start_date,
                    'endDate': end_date
                },
                'memories': [_result_summary(r) for r in result.results]
            }
        except Exception as e:
            logger.error(f'Failed to search memories by time range: {e}')
            return _failure('Failed to search memories by time range', e)

    def update_memory(self,
                      id: str,
                      content: Optional[str] = None,
                      tags: Optional[List[str]] = None,
                      importance: Optional[float] = None,
                      context: Optional[str] = None) -> Dict[str, Any]:
        """Update an existing memory. Supplied tags replace the previous ones.

        Args:
            id: ID of the memory to update
            content: New content
            tags: New tags
            importance: New importance level
            context: New context
        """
        try:
            memory = self.service.update_memory(id, text=content, tags=tags, importance=importance, context=context)
            return {
                'success': True,
                'id': id,
                'message': f'Memory {id} updated successfully',
                'revision': memory.revision
            }
        except NotFound as e:
            return {'success': False, 'id': id, 'message': str(e)}
        except Exception as e:
            logger.error(f'Failed to update memory {id}: {e}')
            return _failure('Failed to update memory', e)

    def delete_memory(self, id: str) -> Dict[str, Any]:
        """Delete a memory.

        Args:
            id: ID of the memory to delete
        """
        try:
            if self.service.delete_memory(id):
                return {'success': True, 'id': id, 'message': f'Memory {id} deleted successfully'}
            return {'success': False, 'id': id, 'message': f'Memory {id} not found'}
        except Exception as e:
            logger.error(f'Failed to delete memory {id}: {e}')
            return _failure('Failed to delete memory', e)

    def get_memory_tags(self) -> Dict[str, Any]:
        """List every tag used by any memory."""
        try:
            tags = self.service.get_all_tags()
            return {'success': True, 'tags': tags, 'count': len(tags)}
        except Exception as e:
            logger.error(f'Failed to get memory tags: {e}')
            return _failure('Failed to retrieve memory tags', e)

    def get_related_memories(self, id: str, limit: int = 5) -> Dict[str, Any]:
        """Find memories related to a given memory.

        Args:
            id: ID of the memory to find relations for
            limit: Maximum number of related memories (default 5)
        """
        try:
            related = self.service.get_related_memories(id, limit)
            return {
                'success': True,
                'sourceId': id,
                'found': len(related),
                'relatedMemories': [_result_summary(r) for r in related]
            }
        except Exception as e:
            logger.error(f'Failed to get related memories for {id}: {e}')
            return _failure('Failed to find related memories', e)

    def get_memory_stats(self) -> Dict[str, Any]:
        """Summary statistics over all memories."""
        try:
            stats = self.service.get_stats()
            return {
                'success': True,
                'stats': {
                    'totalMemories': stats.total_memories,
                    'uniqueTags': stats.unique_tags,
                    'averageImportance': round(stats.average_importance, 2),
                    'sourceBreakdown': stats.source_breakdown
                }
            }
        except Exception as e:
            logger.error(f'Failed to get memory stats: {e}')
            return _failure('Failed to retrieve memory statistics', e)

    def query_knowledge_graph(self,
                              query: str,
                              parameters: Optional[Dict[str, Any]] = None,
                              limit: int = 20,
                              page: int = 1) -> Dict[str, Any]:
        """Run an openCypher query against the knowledge graph of memories, tags and entities.

        Args:
            query: openCypher query
            parameters: Optional query parameters
            limit: Results per page (default 20, max 100)
            page: Page number, 1-based
        """
        try:
            result = self.service.query_graph(query, parameters, page=page, page_size=limit)
            known_total = result.total_results is not None
            return {
                'success': True,
                'query': result.statement,
                'found': len(result.records),
                'totalResults': result.total_results if known_total else 'unknown',
                'pagination': {
                    'page': result.page,
                    'pageSize': result.page_size,
                    'totalPages': result.total_pages if known_total else 'unknown',
                    'hasNext': result.has_next,
                    'hasPrevious': result.has_previous
                },
                'records': result.records
            }
        except Exception as e:
            logger.error(f'Failed to query knowledge graph: {e}')
            return _failure('Failed to query knowledge graph', e)


def create_server(service: ConsciousMemoryService) -> FastMCP:
    """Create the MCP server exposing the memory tools of a service."""
    mcp = FastMCP('Conscious Memory')
    tools = MemoryTools(service)

    for tool in (tools.save_memory, tools.search_memories, tools.search_memories_by_time_range, tools.update_memory,
                 tools.delete_memory, tools.get_memory_tags, tools.get_related_memories, tools.get_memory_stats,
                 tools.query_knowledge_graph):
        mcp.tool(tool)

    return mcp


def main(app_config: AppConfig = config):
    service = ConsciousMemoryService.from_config(app_config)
    service.initialize()
    mcp = create_server(service)

    try:
        if app_config.mcp.transport == 'stdio':
            mcp.run(transport='stdio')
        else:
            mcp.run(transport=app_config.mcp.transport, host=app_config.mcp.host, port=app_config.mcp.port)
    finally:
        service.close()


if __name__ == '__main__':
    main()
