"""
OpenSearch client wrapper for the memory index: keyed storage, filtered k-NN and keyword search.
"""

import time
from typing import Any, Dict, Iterator, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import MemoryFilter
from ..models.errors import StoreConnectivityError
from .config import OpenSearchConfig
from .logging_config import get_logger
from .timestamp_utils import to_iso

logger = get_logger(__name__)

SYNC_STATE_SCRIPT = ("if (ctx._source.revision == params.revision) { "
                     "ctx._source.sync_state = params.state; ctx._source.sync_retries = params.retries "
                     "} else { ctx.op = 'noop' }")


class OpenSearchError(StoreConnectivityError):
    """Custom exception for OpenSearch errors."""
    pass


def build_filter_clauses(memory_filter: Optional[MemoryFilter]) -> List[Dict[str, Any]]:
    """Translate a MemoryFilter into OpenSearch bool filter clauses.

    Args:
        memory_filter: Structural filter, or None for no filtering

    Returns:
        List of filter clauses (empty when nothing is filtered)
    """
    if memory_filter is None:
        return []

    clauses = []
    if memory_filter.tags:
        clauses.append({'terms': {'tags': list(memory_filter.tags)}})

    importance_range = {}
    if memory_filter.importance_min is not None:
        importance_range['gte'] = memory_filter.importance_min
    if memory_filter.importance_max is not None:
        importance_range['lte'] = memory_filter.importance_max
    if importance_range:
        clauses.append({'range': {'importance': importance_range}})

    if memory_filter.session_id:
        clauses.append({'term': {'session_id': memory_filter.session_id}})

    time_range = {}
    if memory_filter.start_time is not None:
        time_range['gte'] = to_iso(memory_filter.start_time)
    if memory_filter.end_time is not None:
        time_range['lte'] = to_iso(memory_filter.end_time)
    if time_range:
        clauses.append({'range': {'timestamp': time_range}})

    if memory_filter.sync_states:
        clauses.append({'terms': {'sync_state': [state.value for state in memory_filter.sync_states]}})
    if memory_filter.max_sync_retries is not None:
        clauses.append({'range': {'sync_retries': {'lt': memory_filter.max_sync_retries}}})

    return clauses


def build_knn_query(query_vector: List[float], filter_clauses: Optional[List[Dict[str, Any]]], top_k: int) -> Dict[str, Any]:
    """Build a k-NN query whose filter restricts the candidate set before the nearest neighbours are chosen.

    The filter sits inside the ``knn`` clause so the lucene engine applies it during the graph search.
    """
    knn = {'vector': query_vector, 'k': top_k}
    if filter_clauses:
        knn['filter'] = {'bool': {'filter': filter_clauses}}
    return {'knn': {'embedding': knn}}


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.index_name = config.index_name

        # Get AWS credentials and create auth ('es' for managed domains, 'aoss' for serverless)
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def _write_params(self) -> Dict[str, Any]:
        if self.config.refresh and self.config.refresh.lower() != 'false':
            return {'refresh': self.config.refresh}
        return {}

    def create_index_if_not_exists(self) -> str:
        """
        Create the memory index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        index_body = {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'text': {
                        'type': 'text'
                    },
                    'tags': {
                        'type': 'keyword'
                    },
                    'importance': {
                        'type': 'integer'
                    },
                    'session_id': {
                        'type': 'keyword'
                    },
                    'context': {
                        'type': 'text'
                    },
                    'source': {
                        'type': 'keyword'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'lucene',
                            'parameters': {
                                'ef_construction': 128,
                                'm': 16
                            }
                        }
                    },
                    'embedding_model': {
                        'type': 'keyword'
                    },
                    'timestamp': {
                        'type': 'date'
                    },
                    'updated_at': {
                        'type': 'date'
                    },
                    'revision': {
                        'type': 'integer'
                    },
                    'sync_state': {
                        'type': 'keyword'
                    },
                    'sync_retries': {
                        'type': 'integer'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True
                }
            }
        }

        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=self.index_name, body=index_body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {self.index_name}')
                return 'created'
            return 'failed'

        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def upsert_document(self, doc_id: str, document: Dict[str, Any]) -> bool:
        """
        Create or fully replace a document under a fixed id.

        Args:
            doc_id: Document ID
            document: Document body

        Returns:
            True if the document was created or updated
        """
        try:
            response = self.client.index(index=self.index_name, id=doc_id, body=document, **self._write_params())

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id} in {self.index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def get_document(self, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a document by id.

        Args:
            doc_id: Document ID

        Returns:
            Document source if found, None otherwise
        """
        try:
            response = self.client.get(index=self.index_name, id=doc_id)
            return response['_source'] if response.get('found') else None

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting document: {e}')

    def delete_document(self, doc_id: str) -> bool:
        """
        Delete a document from the index.

        Args:
            doc_id: Document ID to delete

        Returns:
            True if deletion was successful, False if the document did not exist
        """
        try:
            response = self.client.delete(index=self.index_name, id=doc_id, **self._write_params())

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {self.index_name}')
            else:
                logger.warning(f'Document {doc_id} not found for deletion')

            return success

        except NotFoundError:
            logger.debug(f'Document {doc_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting document: {e}')

    def _search(self, search_body: Dict[str, Any], kind: str) -> List[Dict[str, Any]]:
        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing {kind} search: {e}')
            raise OpenSearchError(f'{kind.capitalize()} search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in {kind} search: {e}')
            raise OpenSearchError(f'Unexpected error in {kind} search: {e}')

        return [{'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']} for hit in response['hits']['hits']]

    def knn_search(self,
                   query_vector: List[float],
                   filter_clauses: Optional[List[Dict[str, Any]]] = None,
                   top_k: int = 20) -> List[Dict[str, Any]]:
        """
        Perform filtered vector similarity search.

        Args:
            query_vector: Query vector for similarity search
            filter_clauses: Bool filter clauses restricting the candidates
            top_k: Number of results to return

        Returns:
            List of search results with scores and documents (embedding included)
        """
        search_body = {'size': top_k, 'query': build_knn_query(query_vector, filter_clauses, top_k)}

        results = self._search(search_body, 'vector')
        logger.debug(f'Vector search returned {len(results)} results')
        return results

    def keyword_search(self,
                       query_text: str,
                       filter_clauses: Optional[List[Dict[str, Any]]] = None,
                       top_k: int = 20) -> List[Dict[str, Any]]:
        """Perform filtered keyword search over memory text and tags.

        Args:
            query_text: Text query for keyword search
            filter_clauses: Bool filter clauses restricting the candidates
            top_k: Number of results to return

        Returns:
            List of search results with scores and documents (embedding included)
        """
        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'should': [{
                        'match': {
                            'text': query_text
                        }
                    }, {
                        'terms': {
                            'tags': sorted(set(query_text.split()) | set(query_text.lower().split()))
                        }
                    }],
                    'minimum_should_match': 1,
                    'filter': filter_clauses or []
                }
            }
        }

        results = self._search(search_body, 'keyword')
        logger.debug(f'Keyword search returned {len(results)} results')
        return results

    def scan_documents(self,
                       filter_clauses: Optional[List[Dict[str, Any]]] = None,
                       include_embedding: bool = False) -> Iterator[Dict[str, Any]]:
        """Lazily iterate over every document matching the filter.

        Pages through the index with ``search_after`` ordered by (timestamp, id), so documents
        changed during the scan are neither skipped nor repeated.

        Args:
            filter_clauses: Bool filter clauses
            include_embedding: Whether to return the embedding field

        Yields:
            Document sources
        """
        search_after = None
        page_size = self.config.scan_page_size

        while True:
            search_body = {
                'size': page_size,
                'query': {
                    'bool': {
                        'filter': filter_clauses or []
                    }
                },
                'sort': [{
                    'timestamp': 'asc'
                }, {
                    'id': 'asc'
                }]
            }
            if not include_embedding:
                search_body['_source'] = {'excludes': ['embedding']}
            if search_after is not None:
                search_body['search_after'] = search_after

            try:
                response = self.client.search(index=self.index_name, body=search_body)
            except OpenSearchException as e:
                logger.error(f'Error scanning {self.index_name}: {e}')
                raise OpenSearchError(f'Scan failed: {e}')
            except Exception as e:
                logger.error(f'Unexpected error scanning {self.index_name}: {e}')
                raise OpenSearchError(f'Unexpected error in scan: {e}')

            hits = response['hits']['hits']
            for hit in hits:
                yield hit['_source']

            if len(hits) < page_size:
                return
            search_after = hits[-1]['sort']

    def update_sync_state(self, doc_id: str, revision: int, state: str, retries: int) -> bool:
        """
        Set sync bookkeeping fields, only if the stored revision still matches.

        Args:
            doc_id: Document ID
            revision: Revision the sync outcome applies to
            state: New sync state value
            retries: New retry counter

        Returns:
            True if the document exists (updated or left untouched because it changed meanwhile),
            False if it no longer exists
        """
        body = {
            'script': {
                'source': SYNC_STATE_SCRIPT,
                'lang': 'painless',
                'params': {
                    'revision': revision,
                    'state': state,
                    'retries': retries
                }
            }
        }

        try:
            response = self.client.update(index=self.index_name, id=doc_id, body=body, **self._write_params())
            if response.get('result') == 'noop':
                logger.debug(f'Sync state of {doc_id} left unchanged (revision moved past {revision} or same state)')
            return True

        except NotFoundError:
            logger.debug(f'Document {doc_id} vanished before its sync state could be recorded')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating sync state of {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update sync state: {e}')
        except Exception as e:
            logger.error(f'Unexpected error updating sync state of {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error updating sync state: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            started = time.monotonic()
            response = self.client.indices.exists(index=self.index_name)
            logger.debug(f'OpenSearch health check took {time.monotonic() - started:.3f}s')
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
