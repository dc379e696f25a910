"""
Shared fixtures: in-memory stand-ins for OpenSearch and Neptune plus stub Bedrock clients.
"""

import copy
from unittest.mock import MagicMock

import numpy as np
import pytest

from conscious_memory.services.conscious_memory import ConsciousMemoryService
from conscious_memory.services.entity_extraction import EntityExtractor
from conscious_memory.services.graph_sync import GraphSyncEngine
from conscious_memory.services.hybrid_search import HybridSearchEngine
from conscious_memory.services.memory_repository import MemoryRepository
from conscious_memory.utils.bedrock_embed import BedrockEmbedError, FallbackEmbedder, hash_embedding
from conscious_memory.utils.config import (AppConfig, BedrockEmbedConfig, BedrockLLMConfig, MCPConfig,
                                           NeptuneConfig, OpenSearchConfig, SearchConfig, SyncConfig)
from conscious_memory.utils.neptune_client import NeptuneError, NeptuneWriteError
from conscious_memory.utils.opensearch_client import OpenSearchError, build_knn_query
from conscious_memory.utils.timestamp_utils import parse_timestamp

DIMENSION = 8
EMPTY_EXTRACTION = '{"entities": [], "relationships": []}'


class InMemoryOpenSearch:
    """Dict-backed stand-in for OpenSearchClient that understands the filter clauses it is sent."""

    index_name = 'test_memories'

    def __init__(self):
        self.documents = {}
        self.available = True
        self.index_created = False

    def _check(self):
        if not self.available:
            raise OpenSearchError('Connection refused')

    @staticmethod
    def _clause_matches(document, clause):
        kind, body = next(iter(clause.items()))
        field, condition = next(iter(body.items()))
        value = document.get(field)

        if kind == 'terms':
            values = value if isinstance(value, list) else [value]
            return bool(set(values) & set(condition))
        if kind == 'term':
            return value == condition
        if kind == 'range':
            if value is None:
                return False
            for op, bound in condition.items():
                left, right = value, bound
                if field in ('timestamp', 'updated_at'):
                    left, right = parse_timestamp(value), parse_timestamp(bound)
                if op == 'gte' and not left >= right:
                    return False
                if op == 'lte' and not left <= right:
                    return False
                if op == 'lt' and not left < right:
                    return False
            return True
        raise AssertionError(f'Unexpected filter clause {clause}')

    def _filtered(self, filter_clauses):
        return [
            document for document in self.documents.values()
            if all(self._clause_matches(document, clause) for clause in filter_clauses or [])
        ]

    def create_index_if_not_exists(self):
        self._check()
        if self.index_created:
            return 'exists'
        self.index_created = True
        return 'created'

    def upsert_document(self, doc_id, document):
        self._check()
        self.documents[doc_id] = copy.deepcopy(document)
        return True

    def get_document(self, doc_id):
        self._check()
        document = self.documents.get(doc_id)
        return copy.deepcopy(document) if document else None

    def delete_document(self, doc_id):
        self._check()
        return self.documents.pop(doc_id, None) is not None

    def knn_search(self, query_vector, filter_clauses=None, top_k=20):
        self._check()
        # Candidates are restricted by the filter inside the knn clause, then ranked
        knn = build_knn_query(query_vector, filter_clauses, top_k)['knn']['embedding']
        assert set(knn) <= {'vector', 'k', 'filter'}
        prefilter = knn.get('filter', {}).get('bool', {}).get('filter', [])

        query = np.asarray(knn['vector'], dtype=float)
        hits = []
        for document in self._filtered(prefilter):
            vector = np.asarray(document['embedding'], dtype=float)
            norm = np.linalg.norm(query) * np.linalg.norm(vector)
            score = float(np.dot(query, vector) / norm) if norm and len(vector) == len(query) else 0.0
            hits.append({'id': document['id'], 'score': score, 'document': copy.deepcopy(document)})
        hits.sort(key=lambda hit: -hit['score'])
        return hits[:knn['k']]

    def keyword_search(self, query_text, filter_clauses=None, top_k=20):
        self._check()
        words = set(query_text.lower().split())
        hits = []
        for document in self._filtered(filter_clauses):
            text_words = set(document['text'].lower().split())
            if words & text_words or set(query_text.split()) & set(document['tags']):
                hits.append({'id': document['id'], 'score': 1.0, 'document': copy.deepcopy(document)})
        return hits[:top_k]

    def scan_documents(self, filter_clauses=None, include_embedding=False):
        self._check()
        documents = sorted(self._filtered(filter_clauses), key=lambda d: (d['timestamp'], d['id']))
        for document in documents:
            document = copy.deepcopy(document)
            if not include_embedding:
                document.pop('embedding', None)
            yield document

    def update_sync_state(self, doc_id, revision, state, retries):
        self._check()
        document = self.documents.get(doc_id)
        if document is None:
            return False
        if document['revision'] == revision:
            document['sync_state'] = state
            document['sync_retries'] = retries
        return True

    def health_check(self):
        return self.available


class InMemoryGraph:
    """Dict-backed stand-in for NeptuneClient with merge-by-id semantics."""

    def __init__(self):
        self.nodes = {}
        self.edges = {}
        self.available = True
        self.closed = False
        self.query_results = []
        self.queries = []
        self.rejected_ids = set()

    def _check(self):
        if not self.available:
            raise NeptuneError('Failed to check_connection: connection refused')

    def check_connection(self):
        self._check()
        return True

    def upsert_node(self, node_id, label, properties):
        self._check()
        if node_id in self.rejected_ids:
            raise NeptuneWriteError(f'Failed to upsert_node: 499: rejected property value on {node_id}')
        node = self.nodes.setdefault(node_id, {'label': label, 'properties': {}})
        node['properties'].update({k: v for k, v in properties.items() if v is not None})

    def upsert_relationship(self, source_id, rel_type, target_id, properties=None):
        self._check()
        if source_id in self.nodes and target_id in self.nodes:
            self.edges.setdefault((source_id, rel_type, target_id), {}).update(properties or {})

    def prune_relationships(self, source_id, rel_type, keep_target_ids):
        self._check()
        keep = set(keep_target_ids)
        for key in [k for k in self.edges if k[0] == source_id and k[1] == rel_type and k[2] not in keep]:
            del self.edges[key]

    def delete_node(self, node_id):
        self._check()
        self.nodes.pop(node_id, None)
        for key in [k for k in self.edges if node_id in (k[0], k[2])]:
            del self.edges[key]

    def list_node_ids(self, label):
        self._check()
        return [node_id for node_id, node in self.nodes.items() if node['label'] == label]

    def run_query(self, statement, parameters=None):
        self._check()
        self.queries.append((statement, parameters))
        return self.query_results.pop(0) if self.query_results else []

    def targets(self, source_id, rel_type):
        return {k[2] for k in self.edges if k[0] == source_id and k[1] == rel_type}

    def close(self):
        self.closed = True

    def health_check(self):
        return self.available


class StubEmbed:
    """Stand-in for BedrockEmbed: fixed vectors for known texts, hash vectors otherwise."""

    model_id = 'stub-embed-v1'

    def __init__(self, vectors=None):
        self.vectors = vectors or {}
        self.available = True
        self.calls = []

    def _embed(self, text):
        self.calls.append(text)
        if not self.available:
            raise BedrockEmbedError('Bedrock Embed failed after 2 attempts: timeout')
        return list(self.vectors.get(text) or hash_embedding(text, DIMENSION))

    def embed_document(self, text):
        return self._embed(text)

    def embed_query(self, text):
        return self._embed(text)

    def health_check(self):
        return self.available


@pytest.fixture
def app_config():
    return AppConfig(environment='test',
                     log_level='DEBUG',
                     bedrock_llm=BedrockLLMConfig(region='us-east-1',
                                                  model_id='anthropic.claude-3-haiku-20240307-v1:0',
                                                  max_tokens=512,
                                                  temperature=0.0,
                                                  retry_attempts=2,
                                                  retry_delay=0.0,
                                                  timeout=5),
                     bedrock_embed=BedrockEmbedConfig(region='us-east-1',
                                                      model_id='amazon.titan-embed-text-v2:0',
                                                      dimension=DIMENSION,
                                                      retry_attempts=2,
                                                      retry_delay=0.0,
                                                      timeout=5),
                     neptune=NeptuneConfig(endpoint='neptune.test', port=8182, region='us-east-1'),
                     opensearch=OpenSearchConfig(endpoint='opensearch.test',
                                                 port=443,
                                                 region='us-east-1',
                                                 service='es',
                                                 index_name='test_memories',
                                                 dimension=DIMENSION,
                                                 refresh='wait_for',
                                                 scan_page_size=2),
                     search=SearchConfig(default_min_score=0.15,
                                         keyword_weight=0.8,
                                         candidate_pool_size=50,
                                         default_page_size=10,
                                         max_page_size=50),
                     sync=SyncConfig(enabled=False, interval_seconds=0.05, batch_size=100, max_retries=3),
                     mcp=MCPConfig(transport='stdio', host='127.0.0.1', port=8000))


@pytest.fixture
def fake_opensearch():
    return InMemoryOpenSearch()


@pytest.fixture
def fake_graph():
    return InMemoryGraph()


@pytest.fixture
def stub_embed():
    return StubEmbed()


@pytest.fixture
def embedder(stub_embed):
    return FallbackEmbedder(stub_embed, DIMENSION)


@pytest.fixture
def llm():
    llm = MagicMock()
    llm.generate_response.return_value = (EMPTY_EXTRACTION, {})
    llm.health_check.return_value = True
    return llm


@pytest.fixture
def extractor(llm):
    return EntityExtractor(llm)


@pytest.fixture
def repository(fake_opensearch, embedder):
    return MemoryRepository(fake_opensearch, embedder)


@pytest.fixture
def search_engine(repository, embedder, app_config):
    return HybridSearchEngine(repository, embedder, app_config.search)


@pytest.fixture
def sync_engine(repository, fake_graph, extractor, app_config):
    return GraphSyncEngine(repository, fake_graph, extractor, app_config.sync)


@pytest.fixture
def service(app_config, fake_opensearch, fake_graph, embedder, extractor):
    service = ConsciousMemoryService(app_config, fake_opensearch, fake_graph, embedder, extractor)
    service.initialize()
    yield service
    service.close()
