"""Tests for the memory repository: validation, normalization, CRUD and sync bookkeeping."""

import pytest

from conscious_memory.models.core import MemoryFilter, MemorySource, SyncState
from conscious_memory.models.errors import NotFound, ValidationError
from conscious_memory.services.memory_repository import normalize_importance, normalize_tags
from conscious_memory.utils.bedrock_embed import HASH_EMBEDDING_MODEL


class TestNormalizeImportance:
    def test_fraction_is_rescaled(self):
        assert normalize_importance(0.7) == 7

    def test_small_fraction_floors_to_one(self):
        assert normalize_importance(0.05) == 1

    def test_integers_pass_unchanged(self):
        assert normalize_importance(8) == 8
        assert normalize_importance(1) == 1
        assert normalize_importance(10) == 10

    def test_integral_float_passes(self):
        assert normalize_importance(3.0) == 3

    def test_none_means_default(self):
        assert normalize_importance(None) == 5

    @pytest.mark.parametrize('value', [0, -1, 11, 1.5, 10.5, True, 'high', float('nan'), float('inf')])
    def test_invalid_values_rejected(self, value):
        with pytest.raises(ValidationError):
            normalize_importance(value)


class TestNormalizeTags:
    def test_dedupes_keeping_first_occurrence(self):
        assert normalize_tags(['python', 'ai', 'python', 'data']) == ['python', 'ai', 'data']

    def test_strips_and_drops_empty(self):
        assert normalize_tags([' python ', '', '   ', 'python']) == ['python']

    def test_none_is_empty(self):
        assert normalize_tags(None) == []

    def test_non_string_rejected(self):
        with pytest.raises(ValidationError):
            normalize_tags(['ok', 3])


class TestSave:
    def test_save_persists_with_defaults(self, repository, stub_embed):
        memory_id = repository.save('Remember the deploy window is Friday', tags=['ops', 'ops'])

        memory = repository.get(memory_id)
        assert memory.text == 'Remember the deploy window is Friday'
        assert memory.tags == ['ops']
        assert memory.importance == 5
        assert memory.source == MemorySource.EXPLICIT
        assert memory.sync_state == SyncState.UNSYNCED
        assert memory.revision == 1
        assert memory.embedding_model == stub_embed.model_id
        assert memory.timestamp.tzinfo is not None

    def test_fractional_importance_persisted_rescaled(self, repository):
        memory_id = repository.save('Note', importance=0.7)
        assert repository.get(memory_id).importance == 7

    def test_integer_importance_persisted_unchanged(self, repository):
        memory_id = repository.save('Note', importance=8)
        assert repository.get(memory_id).importance == 8

    def test_blank_text_rejected(self, repository, fake_opensearch):
        with pytest.raises(ValidationError):
            repository.save('   ')
        assert fake_opensearch.documents == {}

    def test_invalid_source_rejected(self, repository):
        with pytest.raises(ValidationError):
            repository.save('Note', source='guessed')

    def test_inferred_source_accepted(self, repository):
        memory_id = repository.save('Note', source='inferred')
        assert repository.get(memory_id).source == MemorySource.INFERRED

    def test_embedding_outage_falls_back_to_hash(self, repository, stub_embed):
        stub_embed.available = False

        memory_id = repository.save('Provider is down but the save must work')

        memory = repository.get(memory_id)
        assert memory.embedding_model == HASH_EMBEDDING_MODEL
        assert len(memory.embedding) == 8


class TestGetUpdateDelete:
    def test_get_missing_raises_not_found(self, repository):
        with pytest.raises(NotFound) as exc_info:
            repository.get('missing')
        assert exc_info.value.memory_id == 'missing'

    def test_update_replaces_tags_and_bumps_revision(self, repository, fake_opensearch):
        memory_id = repository.save('Note', tags=['a', 'b'])
        fake_opensearch.documents[memory_id]['sync_state'] = 'synced'

        updated = repository.update(memory_id, tags=['c'])

        assert updated.tags == ['c']
        assert updated.revision == 2
        assert updated.sync_state == SyncState.UNSYNCED
        assert repository.get(memory_id).tags == ['c']

    def test_update_reembeds_only_on_text_change(self, repository, stub_embed):
        memory_id = repository.save('Original text')
        stub_embed.calls.clear()

        repository.update(memory_id, importance=9, context='later')
        assert stub_embed.calls == []

        repository.update(memory_id, text='Changed text')
        assert stub_embed.calls == ['Changed text']

    def test_update_keeps_creation_timestamp(self, repository):
        memory_id = repository.save('Note')
        created = repository.get(memory_id).timestamp

        updated = repository.update(memory_id, text='Other note')

        assert updated.timestamp == created
        assert updated.updated_at >= created

    def test_update_resets_retry_counter(self, repository, fake_opensearch):
        memory_id = repository.save('Note')
        fake_opensearch.documents[memory_id].update(sync_state='failed', sync_retries=3)

        updated = repository.update(memory_id, importance=2)

        assert updated.sync_state == SyncState.UNSYNCED
        assert updated.sync_retries == 0

    def test_update_missing_raises_not_found(self, repository):
        with pytest.raises(NotFound):
            repository.update('missing', text='x')

    def test_update_invalid_importance_rejected(self, repository):
        memory_id = repository.save('Note')
        with pytest.raises(ValidationError):
            repository.update(memory_id, importance=42)
        assert repository.get(memory_id).revision == 1

    def test_delete_is_idempotent(self, repository):
        memory_id = repository.save('Note')

        assert repository.delete(memory_id) is True
        assert repository.delete(memory_id) is False
        with pytest.raises(NotFound):
            repository.get(memory_id)


class TestListAll:
    def test_scan_is_restartable(self, repository):
        for i in range(5):
            repository.save(f'Note {i}')

        scan = repository.list_all()

        assert len(list(scan)) == 5
        assert len(list(scan)) == 5

    def test_scan_applies_filter(self, repository):
        repository.save('Tagged', tags=['keep'])
        repository.save('Other', tags=['drop'])

        texts = [memory.text for memory in repository.list_all(MemoryFilter(tags=['keep']))]

        assert texts == ['Tagged']

    def test_scan_omits_embeddings_unless_requested(self, repository):
        repository.save('Note')

        assert list(repository.list_all())[0].embedding == []
        assert len(list(repository.list_all(include_embedding=True))[0].embedding) == 8

    def test_invalid_filter_rejected(self, repository):
        with pytest.raises(ValidationError):
            repository.list_all(MemoryFilter(importance_min=7, importance_max=3))


class TestRecordSyncOutcome:
    def test_applies_when_revision_matches(self, repository):
        memory_id = repository.save('Note')

        assert repository.record_sync_outcome(memory_id, 1, SyncState.SYNCED, 0) is True
        assert repository.get(memory_id).sync_state == SyncState.SYNCED

    def test_ignored_when_memory_changed_meanwhile(self, repository):
        memory_id = repository.save('Note')
        repository.update(memory_id, text='Newer')

        assert repository.record_sync_outcome(memory_id, 1, SyncState.SYNCED, 0) is True
        assert repository.get(memory_id).sync_state == SyncState.UNSYNCED

    def test_missing_memory_reports_false(self, repository):
        assert repository.record_sync_outcome('missing', 1, SyncState.SYNCED, 0) is False
