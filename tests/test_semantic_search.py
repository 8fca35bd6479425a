"""Tests for SemanticSearchService ranking, graph expansion and answer search."""

from datetime import datetime, timezone

import pytest

from conftest import FakeEmbeddingProvider, FakeGraphAdapter, InMemoryVectorAdapter, make_entry
from hybridmem.interfaces.graph_store import GraphPath
from hybridmem.models.search import MemorySearchOptions
from hybridmem.services.memory_graph import MemoryGraphService
from hybridmem.services.memory_storage import MemoryStorageService
from hybridmem.services.semantic_search import SemanticSearchService, answer_confidence, build_where, sort_entries
from hybridmem.utils.errors import InvalidInputError

VECTORS = {
    'query': [1.0, 0.0],
    'alpha': [1.0, 0.0],
    'beta': [0.8, 0.6],
    'gamma': [0.0, 1.0],
    'delta': [0.7, 0.714142842854285],
}


@pytest.fixture
def storage(memory_config) -> MemoryStorageService:
    return MemoryStorageService(InMemoryVectorAdapter(), FakeEmbeddingProvider(VECTORS), memory_config)


@pytest.fixture
def graph() -> FakeGraphAdapter:
    return FakeGraphAdapter()


@pytest.fixture
def search(storage, graph) -> SemanticSearchService:
    return SemanticSearchService(storage, MemoryGraphService(graph))


async def store_all(storage, *contents, **metadata):
    return [await storage.store('t1', content, dict(metadata)) for content in contents]


class TestHybridSearch:

    async def test_without_related_equals_vector_ranking(self, storage, search):
        await store_all(storage, 'gamma', 'alpha', 'beta')
        options = MemorySearchOptions(query='query', include_related=False)

        hybrid = await search.hybrid_search(options)
        plain = await search.vector_search(options)

        assert [e.id for e in hybrid] == [e.id for e in plain]
        assert [e.content for e in hybrid] == ['alpha', 'beta', 'gamma']

    async def test_no_graph_edges_equals_vector_ranking(self, storage, search):
        await store_all(storage, 'gamma', 'alpha', 'beta')

        hybrid = await search.hybrid_search(MemorySearchOptions(query='query', include_related=True))

        assert [e.content for e in hybrid] == ['alpha', 'beta', 'gamma']

    async def test_identical_relevance_orders_newest_first(self, storage, search):
        older, newer = await storage.store_batch('t1', [{'content': 'beta'}, {'content': 'beta'}])

        results = await search.hybrid_search(MemorySearchOptions(query='query'))

        assert results[0].relevance_score == pytest.approx(results[1].relevance_score)
        assert [e.id for e in results] == [newer.id, older.id]

    async def test_related_hit_is_boosted_and_clamped(self, storage, search, graph):
        alpha, beta, gamma = await store_all(storage, 'alpha', 'beta', 'gamma')
        graph.paths[alpha.id] = [GraphPath([alpha.id, gamma.id], ['FOLLOWED_BY'])]
        graph.paths[beta.id] = [GraphPath([beta.id, alpha.id], ['FOLLOWED_BY'])]

        results = await search.hybrid_search(MemorySearchOptions(query='query', include_related=True))

        scores = {e.content: e.relevance_score for e in results}
        assert [e.content for e in results] == ['alpha', 'beta', 'gamma']
        assert scores['alpha'] == 1.0
        assert scores['gamma'] == pytest.approx(0.3)

    async def test_related_non_hit_is_added(self, storage, search, graph):
        alpha, beta, gamma = await store_all(storage, 'alpha', 'beta', 'gamma')
        graph.paths[alpha.id] = [
            GraphPath([alpha.id, beta.id], ['FOLLOWED_BY']),
            GraphPath([alpha.id, beta.id, gamma.id], ['FOLLOWED_BY', 'FOLLOWED_BY']),
        ]

        results = await search.hybrid_search(
            MemorySearchOptions(query='query', min_relevance=0.5, include_related=True, boost_related=0.1))

        scores = {e.content: e.relevance_score for e in results}
        assert [e.content for e in results] == ['alpha', 'beta', 'gamma']
        assert scores['beta'] == pytest.approx(0.9)
        assert scores['gamma'] == pytest.approx(0.05)

    async def test_graph_failure_falls_back_to_vector_results(self, storage):
        await store_all(storage, 'gamma', 'alpha', 'beta')
        search = SemanticSearchService(storage, MemoryGraphService(FakeGraphAdapter(fail=True)))

        results = await search.hybrid_search(MemorySearchOptions(query='query', include_related=True))

        assert [e.content for e in results] == ['alpha', 'beta', 'gamma']

    async def test_limit_applies_after_merge(self, storage, search, graph):
        alpha, beta, gamma = await store_all(storage, 'alpha', 'beta', 'gamma')
        graph.paths[alpha.id] = [GraphPath([alpha.id, gamma.id], ['FOLLOWED_BY'])]

        results = await search.hybrid_search(MemorySearchOptions(query='query', include_related=True, limit=2))

        assert [e.content for e in results] == ['alpha', 'beta']

    @pytest.mark.parametrize('sort_order, expected', [('desc', ['beta', 'gamma', 'alpha']),
                                                     ('asc', ['alpha', 'gamma', 'beta'])])
    async def test_expanded_results_follow_sort_options(self, storage, search, graph, sort_order, expected):
        alpha = await storage.store('t1', 'alpha', {'importance': 0.2})
        await storage.store('t1', 'beta', {'importance': 0.9})
        gamma = await storage.store('t1', 'gamma', {'importance': 0.5})
        graph.paths[alpha.id] = [GraphPath([alpha.id, gamma.id], ['FOLLOWED_BY'])]

        results = await search.hybrid_search(
            MemorySearchOptions(query='query', include_related=True, sort_by='importance', sort_order=sort_order))

        assert [e.content for e in results] == expected
        assert {e.content: e.relevance_score for e in results}['gamma'] == pytest.approx(0.3)

    async def test_unknown_sort_field_rejected_with_expansion(self, search):
        with pytest.raises(InvalidInputError):
            await search.hybrid_search(MemorySearchOptions(query='query', include_related=True, sort_by='colour'))

    async def test_tags_and_sort_options(self, storage, search):
        await storage.store('t1', 'alpha', {'tags': ['x'], 'importance': 0.2})
        await storage.store('t1', 'beta', {'tags': ['x'], 'importance': 0.9})
        await storage.store('t1', 'gamma', {'tags': ['y']})

        results = await search.vector_search(MemorySearchOptions(query='query', tags=['x'], sort_by='importance'))

        assert [e.content for e in results] == ['beta', 'alpha']

    async def test_unknown_sort_field_rejected(self, search):
        with pytest.raises(InvalidInputError):
            await search.vector_search(MemorySearchOptions(query='query', sort_by='colour'))


class TestContextAwareSearch:

    async def test_contextual_matches_follow_preferred_topics(self, storage, search, graph):
        await storage.store('t1', 'alpha', {'type': 'preference', 'tags': ['python']})
        await storage.store('t1', 'alpha', {'type': 'conversation', 'tags': ['python']})
        await storage.store('t1', 'gamma', {'type': 'fact', 'tags': ['java']})
        graph.results = [
            [{'tags': ['python'], 'importance': 0.9}],
            [],
            [{'totalMemories': 3, 'avgImportance': 0.8, 'lastMemoryAt': None}],
        ]

        result = await search.context_aware_search('query', 't1', user_id='u1')

        assert [e.content for e in result.direct_matches] == ['alpha', 'alpha']
        assert [e.metadata.type for e in result.contextual_matches] == ['preference']
        assert result.user_patterns.preferred_topics == ['python']

    async def test_without_user_only_direct_matches(self, storage, search):
        await store_all(storage, 'alpha', 'gamma')

        result = await search.context_aware_search('query', 't1')

        assert [e.content for e in result.direct_matches] == ['alpha']
        assert result.contextual_matches == []
        assert result.user_patterns is None

    async def test_pattern_failure_degrades(self, storage):
        await store_all(storage, 'alpha')
        search = SemanticSearchService(storage, MemoryGraphService(FakeGraphAdapter(fail=True)))

        result = await search.context_aware_search('query', 't1', user_id='u1')

        assert len(result.direct_matches) == 1
        assert result.contextual_matches == []
        assert result.user_patterns is None


class TestSearchForAnswer:

    async def test_confidence_and_sources(self, storage, search):
        await storage.store('t1', 'beta', {'source': 'chat'})
        await storage.store('t2', 'delta', {'type': 'fact', 'source': 'docs'})
        await storage.store('t1', 'gamma', {'source': 'noise'})

        answer = await search.search_for_answer('query')

        assert [e.content for e in answer.memories] == ['beta', 'delta']
        assert answer.sources == ['chat', 'docs']
        assert answer.confidence == pytest.approx((0.8 + 0.7) / 2 + 0.1, abs=1e-6)

    async def test_empty_answer(self, search):
        answer = await search.search_for_answer('query', 't1')

        assert answer.memories == []
        assert answer.confidence == 0.0
        assert answer.sources == []

    def test_confidence_is_clamped(self):
        entries = [make_entry(f'f{i}', memory_type='fact', persistent=True, relevance=0.9) for i in range(5)]
        assert answer_confidence(entries) == 1.0


class TestSimilarityLinks:

    async def test_find_similar_excludes_source(self, storage, search):
        alpha, beta, _ = await store_all(storage, 'alpha', 'beta', 'gamma')

        similar = await search.find_similar_memories(alpha.id)

        assert [e.id for e in similar] == [beta.id]

    async def test_find_similar_unknown_memory(self, search):
        assert await search.find_similar_memories('missing') == []

    async def test_create_semantic_links(self, storage, search, graph):
        await store_all(storage, 'alpha', 'beta', 'gamma')

        linked = await search.create_semantic_links(batch_size=2, threshold=0.7)

        assert linked == 2
        assert all('SEMANTICALLY_SIMILAR' in q.text for q in graph.queries)

    async def test_create_semantic_links_without_graph(self, storage):
        assert await SemanticSearchService(storage).create_semantic_links() == 0


class TestHelpers:

    def test_build_where(self):
        options = MemorySearchOptions(thread_ids=['t1', 't2'],
                                      types=['fact'],
                                      date_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
                                      user_id='u1')

        assert build_where(options) == {
            'thread_id': {'$in': ['t1', 't2']},
            'type': 'fact',
            'user_id': 'u1',
            'created_at': {'$gte': '2024-01-01T00:00:00.000000Z'},
        }
        assert build_where(MemorySearchOptions()) is None

    def test_sort_ties_break_on_created_at_then_id(self):
        entries = [
            make_entry('b', age_seconds=0, relevance=0.5),
            make_entry('a', age_seconds=0, relevance=0.5),
            make_entry('c', age_seconds=100, relevance=0.5),
            make_entry('d', age_seconds=100, relevance=0.9),
        ]
        entries[1].created_at = entries[0].created_at

        assert [e.id for e in sort_entries(entries)] == ['d', 'a', 'b', 'c']
        assert [e.id for e in sort_entries(entries, sort_order='asc')] == ['a', 'b', 'c', 'd']
