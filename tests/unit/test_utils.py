"""Tests for configuration loading, timestamps and health reporting."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conscious_memory.models.errors import ValidationError
from conscious_memory.utils.config import load_config
from conscious_memory.utils.health_check import check_health, get_health_status
from conscious_memory.utils.timestamp_utils import parse_timestamp, to_iso


class TestLoadConfig:
    def test_defaults(self, monkeypatch):
        for name in ('SYNC_ENABLED', 'SEARCH_DEFAULT_MIN_SCORE', 'SEARCH_MAX_PAGE_SIZE', 'MCP_TRANSPORT'):
            monkeypatch.delenv(name, raising=False)

        app_config = load_config()

        assert app_config.sync.enabled is False
        assert app_config.search.default_min_score == 0.15
        assert app_config.search.max_page_size == 50
        assert app_config.mcp.transport == 'stdio'

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('SYNC_ENABLED', 'true')
        monkeypatch.setenv('SYNC_INTERVAL_SECONDS', '5')
        monkeypatch.setenv('OPENSEARCH_INDEX', 'team_memories')

        app_config = load_config()

        assert app_config.sync.enabled is True
        assert app_config.sync.interval_seconds == 5.0
        assert app_config.opensearch.index_name == 'team_memories'


class TestTimestamps:
    def test_parse_zulu(self):
        assert parse_timestamp('2024-01-01T00:00:00Z') == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_parse_offset_is_kept_aware(self):
        parsed = parse_timestamp('2024-01-01T02:00:00+02:00')
        assert parsed == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp('2024-01-01T00:00:00').tzinfo == timezone.utc

    def test_epoch_seconds(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize('value', [None, '', '   '])
    def test_empty_is_none(self, value):
        assert parse_timestamp(value) is None

    @pytest.mark.parametrize('value', ['yesterday', '2024-13-01', True])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_timestamp(value)

    def test_to_iso_converts_to_utc(self):
        value = datetime(2024, 1, 1, 2, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso(value) == '2024-01-01T00:00:00+00:00'


class TestHealth:
    def test_component_exceptions_are_unhealthy(self):
        healthy = MagicMock()
        healthy.health_check.return_value = True
        broken = MagicMock()
        broken.health_check.side_effect = RuntimeError('boom')

        status = get_health_status({'opensearch': (healthy, {'endpoint': 'x'}), 'neptune': (broken, {})})

        assert status['opensearch'] == {'healthy': True, 'service': 'Amazon OpenSearch', 'endpoint': 'x'}
        assert status['neptune']['healthy'] is False
        assert status['neptune']['error'] == 'boom'
        assert check_health(status) is False

    def test_all_healthy(self):
        assert check_health({'a': {'healthy': True}, 'b': {'healthy': True}}) is True
