"""Tests for configuration loading and validation."""

import pytest

from hybridmem.utils.config import MemoryConfig, RetentionConfig, load_config, validate_memory_config
from hybridmem.utils.errors import ConfigurationError, MemoryStoreError


class TestLoadConfig:

    def test_defaults(self, monkeypatch):
        for name in ('MEMORY_COLLECTION', 'MEMORY_RETENTION_MAX_TOTAL', 'MEMORY_RETENTION_EVICTION_STRATEGY',
                     'MEMORY_ENABLE_GRAPH', 'LOG_LEVEL', 'OPENSEARCH_SERVICE'):
            monkeypatch.delenv(name, raising=False)

        config = load_config()

        assert config.memory.collection == 'memory_entries'
        assert config.memory.enable_graph is True
        assert config.memory.retention.max_total is None
        assert config.memory.retention.eviction_strategy == 'lru'
        assert config.opensearch.service == 'aoss'
        assert config.log_level == 'INFO'

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv('MEMORY_COLLECTION', 'team_memories')
        monkeypatch.setenv('MEMORY_ENABLE_GRAPH', 'false')
        monkeypatch.setenv('MEMORY_RETENTION_MAX_TOTAL', '500')
        monkeypatch.setenv('MEMORY_RETENTION_MAX_AGE_SECONDS', '86400')
        monkeypatch.setenv('MEMORY_RETENTION_EVICTION_STRATEGY', 'LFU')

        config = load_config()

        assert config.memory.collection == 'team_memories'
        assert config.memory.enable_graph is False
        assert config.memory.retention.max_total == 500
        assert config.memory.retention.max_age_seconds == 86400.0
        assert config.memory.retention.eviction_strategy == 'lfu'

    def test_non_numeric_value(self, monkeypatch):
        monkeypatch.setenv('MEMORY_BATCH_SIZE', 'many')

        with pytest.raises(ConfigurationError) as exc_info:
            load_config()
        assert exc_info.value.context.additional_info['setting'] == 'MEMORY_BATCH_SIZE'

    def test_unknown_log_level(self, monkeypatch):
        monkeypatch.setenv('LOG_LEVEL', 'chatty')

        with pytest.raises(ConfigurationError):
            load_config()


class TestValidateMemoryConfig:

    def test_valid_config_is_returned(self):
        memory = MemoryConfig()
        assert validate_memory_config(memory) is memory

    @pytest.mark.parametrize('overrides', [
        {'collection': 'has spaces'},
        {'collection': ''},
        {'storage_timeout': 0},
        {'embedding_retry_attempts': 0},
        {'batch_size': 0},
        {'retention': RetentionConfig(eviction_strategy='random')},
        {'retention': RetentionConfig(max_per_thread=-1)},
        {'retention': RetentionConfig(cleanup_interval_seconds=-5)},
        {'retention': RetentionConfig(cleanup_interval_seconds=0)},
    ])
    def test_invalid_settings(self, overrides):
        with pytest.raises(ConfigurationError):
            validate_memory_config(MemoryConfig(**overrides))

    def test_configuration_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_memory_config(MemoryConfig(batch_size=0))
        assert issubclass(ConfigurationError, MemoryStoreError)
