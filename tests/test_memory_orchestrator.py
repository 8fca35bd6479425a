"""Tests for the MemoryOrchestrator façade and its partial-failure isolation."""

from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeGraphAdapter, InMemoryVectorAdapter
from hybridmem.models.search import MemorySearchOptions
from hybridmem.services import memory_orchestrator
from hybridmem.services.memory_orchestrator import MemoryOrchestrator, create_orchestrator
from hybridmem.utils.config import AppConfig, BedrockEmbedConfig, MemoryConfig, NeptuneConfig, OpenSearchConfig, RetentionConfig
from hybridmem.utils.errors import ConfigurationError, StorageError


@pytest.fixture
def orchestrator(vector_store, graph_store, embedder, memory_config) -> MemoryOrchestrator:
    return MemoryOrchestrator(vector_store, graph_store, embedder, memory_config)


class TestWrites:

    async def test_store_mirrors_into_graph(self, orchestrator, graph_store):
        entry = await orchestrator.store('thread-1', 'hello there')
        await orchestrator.drain()

        assert len(graph_store.transactions) == 1
        assert graph_store.transactions[0][0].parameters['memoryId'] == entry.id

    async def test_store_succeeds_when_graph_is_down(self, vector_store, embedder, memory_config):
        orchestrator = MemoryOrchestrator(vector_store, FakeGraphAdapter(fail=True), embedder, memory_config)

        entry = await orchestrator.store('thread-1', 'graph is down')
        await orchestrator.drain()

        assert entry.id
        assert entry.content == 'graph is down'
        assert [e.id for e in await orchestrator.retrieve('thread-1')] == [entry.id]

    async def test_vector_failure_propagates(self, graph_store, embedder, memory_config):
        orchestrator = MemoryOrchestrator(InMemoryVectorAdapter(fail=True), graph_store, embedder, memory_config)

        with pytest.raises(StorageError):
            await orchestrator.store('thread-1', 'lost')
        await orchestrator.drain()
        assert graph_store.transactions == []

    async def test_store_batch_mirrors_in_one_transaction(self, orchestrator, graph_store):
        entries = await orchestrator.store_batch('thread-1', [{'content': 'a'}, {'content': 'b'}, {'content': 'c'}])
        await orchestrator.drain()

        assert len(entries) == 3
        assert len(graph_store.transactions) == 1

    async def test_delete_removes_from_both_stores(self, orchestrator, graph_store):
        entry = await orchestrator.store('thread-1', 'short lived')

        assert await orchestrator.delete_by_ids([entry.id]) == 1
        assert await orchestrator.delete_by_ids([entry.id]) == 0
        await orchestrator.drain()

        removals = [t for t in graph_store.transactions if 'ids' in t[0].parameters]
        assert removals and removals[0][0].parameters['ids'] == [entry.id]

    async def test_clear_thread(self, orchestrator):
        for i in range(3):
            await orchestrator.store('thread-1', f'message {i}')
        await orchestrator.store('thread-2', 'other')

        assert await orchestrator.clear_thread('thread-1') == 3
        assert await orchestrator.retrieve('thread-1') == []
        assert len(await orchestrator.retrieve('thread-2')) == 1

    async def test_graph_disabled_by_config(self, vector_store, graph_store, embedder, memory_config):
        memory_config.enable_graph = False
        orchestrator = MemoryOrchestrator(vector_store, graph_store, embedder, memory_config)

        await orchestrator.store('thread-1', 'vector only')
        await orchestrator.drain()

        assert not orchestrator.graph_enabled
        assert graph_store.transactions == []
        assert await orchestrator.get_conversation_flow('thread-1') == []


class TestReadsAndRetention:

    async def test_search_paths(self, orchestrator):
        await orchestrator.store('thread-1', 'remember the milk')

        assert len(await orchestrator.search_similar('milk')) == 1
        assert len(await orchestrator.hybrid_search(MemorySearchOptions(query='milk', include_related=True))) == 1
        answer = await orchestrator.search_for_answer('milk?', 'thread-1')
        assert len(answer.memories) == 1

    async def test_cleanup_applies_per_thread_cap(self, vector_store, graph_store, embedder, memory_config):
        memory_config.retention = RetentionConfig(max_per_thread=2, eviction_strategy='fifo')
        orchestrator = MemoryOrchestrator(vector_store, graph_store, embedder, memory_config)
        stored = await orchestrator.store_batch('thread-1', [{'content': f'm{i}'} for i in range(5)])

        preview = await orchestrator.preview_cleanup()
        removed = await orchestrator.execute_cleanup()

        assert preview.memories_to_delete == 3
        assert removed == 3
        remaining = await orchestrator.retrieve('thread-1')
        assert {e.id for e in remaining} == {stored[3].id, stored[4].id}

    async def test_stats_report_graph_outage(self, vector_store, embedder, memory_config):
        orchestrator = MemoryOrchestrator(vector_store, FakeGraphAdapter(fail=True), embedder, memory_config)
        await orchestrator.store('thread-1', 'counted')

        stats = await orchestrator.get_stats()

        assert stats.total_memories == 1
        assert stats.collection == 'test_memories'
        assert stats.graph_available is False
        assert stats.cleanup.total_cleanups_run == 0

    async def test_health_check(self, orchestrator):
        health = await orchestrator.health_check()

        assert set(health) == {'vector_store', 'graph_store', 'embedding'}
        assert all(status['healthy'] for status in health.values())


class TestLifecycle:

    async def test_start_without_limits_does_not_schedule(self, orchestrator, vector_store, graph_store):
        await orchestrator.start()

        assert 'test_memories' in vector_store.collections
        assert len(graph_store.queries) == 6
        assert orchestrator.retention.scheduler is None
        await orchestrator.close()
        assert graph_store.closed

    async def test_start_with_limits_schedules_cleanup(self, vector_store, graph_store, embedder, memory_config):
        memory_config.retention = RetentionConfig(max_total=100, cleanup_interval_seconds=3600)
        orchestrator = MemoryOrchestrator(vector_store, graph_store, embedder, memory_config)

        await orchestrator.start()
        scheduler = orchestrator.retention.scheduler

        assert scheduler is not None and scheduler.running
        await orchestrator.close()
        assert not scheduler.running


class TestCreateOrchestrator:

    def make_config(self, **memory_overrides) -> AppConfig:
        return AppConfig(environment='test',
                         log_level='INFO',
                         bedrock_embed=BedrockEmbedConfig(region='us-east-1', model_id='amazon.titan-embed-text-v2:0',
                                                          dimension=1024),
                         neptune=NeptuneConfig(endpoint='neptune.local', port=8182, region='us-east-1'),
                         opensearch=OpenSearchConfig(endpoint='search.local', port=443, region='us-east-1',
                                                     dimension=1024),
                         memory=MemoryConfig(**memory_overrides))

    def test_composes_aws_adapters(self):
        with patch.object(memory_orchestrator, 'OpenSearchVectorAdapter') as vector_cls, \
                patch.object(memory_orchestrator, 'NeptuneGraphAdapter') as graph_cls, \
                patch.object(memory_orchestrator, 'BedrockEmbeddingProvider') as embed_cls:
            vector_cls.return_value = MagicMock(supports_nested_metadata=True)
            orchestrator = create_orchestrator(self.make_config())

        vector_cls.assert_called_once()
        graph_cls.assert_called_once()
        embed_cls.assert_called_once()
        assert orchestrator.graph_enabled
        assert orchestrator.storage.semantic_search_enabled

    def test_optional_backends_skipped(self):
        with patch.object(memory_orchestrator, 'OpenSearchVectorAdapter'), \
                patch.object(memory_orchestrator, 'NeptuneGraphAdapter') as graph_cls, \
                patch.object(memory_orchestrator, 'BedrockEmbeddingProvider') as embed_cls:
            orchestrator = create_orchestrator(self.make_config(enable_graph=False, enable_semantic_search=False))

        graph_cls.assert_not_called()
        embed_cls.assert_not_called()
        assert not orchestrator.graph_enabled
        assert not orchestrator.storage.semantic_search_enabled

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            create_orchestrator(self.make_config(collection='bad name!'))
