"""Tests for the ConsciousMemoryService façade."""

from dataclasses import replace

import pytest

from conscious_memory.models.errors import NotFound, ValidationError
from conscious_memory.services.conscious_memory import ConsciousMemoryService
from conscious_memory.services.graph_sync import memory_node_id


class TestLifecycle:
    def test_initialize_creates_index_once(self, service, fake_opensearch):
        assert fake_opensearch.index_created
        service.initialize()
        assert fake_opensearch.index_created

    def test_initialize_tolerates_graph_outage(self, app_config, fake_opensearch, fake_graph, embedder, extractor):
        fake_graph.available = False
        service = ConsciousMemoryService(app_config, fake_opensearch, fake_graph, embedder, extractor)

        service.initialize()

        assert service.save_memory('Saved while the graph is down')
        service.close()

    def test_close_is_idempotent(self, service, fake_graph):
        service.close()
        service.close()
        assert fake_graph.closed

    def test_scheduler_follows_sync_setting(self, app_config, fake_opensearch, fake_graph, embedder, extractor):
        enabled = replace(app_config, sync=replace(app_config.sync, enabled=True))
        service = ConsciousMemoryService(enabled, fake_opensearch, fake_graph, embedder, extractor)

        service.initialize()
        assert service.scheduler.is_running
        assert service.sync_stats()['scheduler_running'] is True

        service.close()
        assert not service.scheduler.is_running


class TestMemoryOperations:
    def test_save_get_update(self, service):
        memory_id = service.save_memory('Team standup moved to 10am', tags=['meetings'], importance=0.7)

        memory = service.get_memory(memory_id)
        assert memory.importance == 7

        updated = service.update_memory(memory_id, text='Team standup moved to 11am')
        assert updated.text == 'Team standup moved to 11am'
        assert service.get_memory(memory_id).revision == 2

    def test_delete_removes_memory_everywhere(self, service, fake_graph):
        memory_id = service.save_memory('Temporary note about invoices', tags=['finance'])
        service.trigger_sync()
        assert memory_node_id(memory_id) in fake_graph.nodes

        assert service.delete_memory(memory_id) is True

        with pytest.raises(NotFound):
            service.get_memory(memory_id)
        page = service.search_memories('Temporary note about invoices')
        assert memory_id not in [r.id for r in page.results]

        result = service.trigger_sync()
        assert result.removed == 1
        assert memory_node_id(memory_id) not in fake_graph.nodes

    def test_delete_in_one_process_removed_by_sync_in_another(self, app_config, fake_opensearch, fake_graph, embedder,
                                                              extractor):
        server = ConsciousMemoryService(app_config, fake_opensearch, fake_graph, embedder, extractor)
        worker = ConsciousMemoryService(app_config, fake_opensearch, fake_graph, embedder, extractor)
        server.initialize()
        worker.initialize(start_scheduler=False)
        try:
            memory_id = server.save_memory('Vendor contract renewal', tags=['legal'])
            assert worker.trigger_sync().processed == 1
            assert memory_node_id(memory_id) in fake_graph.nodes

            assert server.delete_memory(memory_id) is True
            result = worker.trigger_sync()

            assert result.removed == 1
            assert memory_node_id(memory_id) not in fake_graph.nodes
        finally:
            server.close()
            worker.close()

    def test_delete_missing_returns_false(self, service):
        assert service.delete_memory('missing') is False

    def test_search_with_filters(self, service):
        service.save_memory('Quarterly report draft', tags=['work'], importance=8, session_id='s1')
        service.save_memory('Quarterly garden plan', tags=['home'], importance=3, session_id='s2')

        page = service.search_memories('quarterly', importance_min=5)

        assert [r.memory.text for r in page.results] == ['Quarterly report draft']

    def test_search_by_time_range(self, service, fake_opensearch):
        old_id = service.save_memory('Old note')
        new_id = service.save_memory('New note')
        fake_opensearch.documents[old_id]['timestamp'] = '2023-03-01T00:00:00+00:00'
        fake_opensearch.documents[new_id]['timestamp'] = '2024-03-01T00:00:00+00:00'

        page = service.search_memories_by_time_range(start_time='2024-01-01T00:00:00Z', end_time='2024-12-31T23:59:59Z')

        assert [r.id for r in page.results] == [new_id]

    def test_search_by_time_range_rejects_bad_dates(self, service):
        with pytest.raises(ValidationError):
            service.search_memories_by_time_range(start_time='last tuesday')

    def test_search_by_time_range_rejects_inverted_range(self, service):
        with pytest.raises(ValidationError):
            service.search_memories_by_time_range(start_time='2024-06-01T00:00:00Z', end_time='2024-01-01T00:00:00Z')

    def test_get_all_tags(self, service):
        service.save_memory('One', tags=['b', 'a'])
        service.save_memory('Two', tags=['a', 'c'])

        assert service.get_all_tags() == ['a', 'b', 'c']

    def test_related_memories_exclude_source(self, service, stub_embed):
        stub_embed.vectors.update({
            'Kubernetes cluster upgrade': [1.0, 0.0, 0, 0, 0, 0, 0, 0],
            'Kubernetes node pool resize': [0.9, 0.2, 0, 0, 0, 0, 0, 0],
            'Grocery list': [0.0, 1.0, 0, 0, 0, 0, 0, 0]
        })
        source_id = service.save_memory('Kubernetes cluster upgrade')
        related_id = service.save_memory('Kubernetes node pool resize')
        service.save_memory('Grocery list')

        related = service.get_related_memories(source_id, limit=5)

        assert [r.id for r in related] == [related_id]

    def test_related_memories_of_missing_memory(self, service):
        with pytest.raises(NotFound):
            service.get_related_memories('missing')

    def test_stats(self, service):
        service.save_memory('One', tags=['a'], importance=4)
        service.save_memory('Two', tags=['a', 'b'], importance=8, source='inferred')

        stats = service.get_stats()

        assert stats.total_memories == 2
        assert stats.unique_tags == 2
        assert stats.average_importance == 6.0
        assert stats.source_breakdown == {'explicit': 1, 'inferred': 1}

    def test_stats_when_empty(self, service):
        stats = service.get_stats()
        assert (stats.total_memories, stats.average_importance) == (0, 0.0)


class TestQueryGraph:
    def test_paginates_and_counts(self, service, fake_graph):
        fake_graph.query_results = [[{'id': 'a'}, {'id': 'b'}], [{'total': 42}]]

        page = service.query_graph('MATCH (m:Memory) RETURN m.memory_id AS id LIMIT 5', {'x': 1}, page=3, page_size=10)

        assert fake_graph.queries == [
            ('MATCH (m:Memory) RETURN m.memory_id AS id SKIP 20 LIMIT 10', {
                'x': 1
            }),
            ('MATCH (m:Memory) RETURN count(*) AS total', {
                'x': 1
            }),
        ]
        assert page.records == [{'id': 'a'}, {'id': 'b'}]
        assert page.total_results == 42
        assert page.total_pages == 5
        assert page.has_next and page.has_previous

    def test_total_unknown_for_uncountable_statement(self, service, fake_graph):
        fake_graph.query_results = [[{'n': 1}] * 20]

        page = service.query_graph('CALL db.labels() YIELD label RETURN label')

        assert len(fake_graph.queries) == 1
        assert page.total_results is None
        assert page.total_pages is None
        assert page.has_next

    @pytest.mark.parametrize('kwargs', [{'statement': '  '}, {'statement': 'MATCH (n) RETURN n', 'page': 0},
                                        {'statement': 'MATCH (n) RETURN n', 'page_size': 101}])
    def test_invalid_arguments(self, service, kwargs):
        with pytest.raises(ValidationError):
            service.query_graph(**kwargs)


class TestOperations:
    def test_sync_stats(self, service):
        service.save_memory('Note')
        service.trigger_sync()

        stats = service.sync_stats()

        assert stats['total_runs'] == 1
        assert stats['scheduler_running'] is False
        assert stats['last_result']['processed'] == 1

    def test_health_status(self, service, fake_graph):
        status = service.health_status()
        assert status['healthy'] is True
        assert set(status['health_status']) == {'bedrock_llm', 'bedrock_embed', 'neptune', 'opensearch'}

        fake_graph.available = False
        status = service.health_status()
        assert status['healthy'] is False
        assert status['health_status']['neptune']['healthy'] is False
        assert status['health_status']['opensearch']['healthy'] is True
