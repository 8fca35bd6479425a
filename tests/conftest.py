"""Shared fixtures: in-memory fakes of the vector store, graph store and embedding provider."""

import math
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest

from hybridmem.interfaces.embedding import EmbeddingProvider
from hybridmem.interfaces.graph_store import GraphNode, GraphPath, GraphStats, GraphStoreAdapter, TraversalSpec
from hybridmem.interfaces.vector_store import (GetDocumentsOptions, VectorRecord, VectorSearchQuery, VectorStoreAdapter,
                                               VectorStoreData, VectorStoreStats, VectorUpdate)
from hybridmem.models.core import MemoryEntry, MemoryMetadata
from hybridmem.utils.config import MemoryConfig, RetentionConfig
from hybridmem.utils.cypher import CypherQuery
from hybridmem.utils.timestamp_utils import utc_now

RANGE_CHECKS = {
    '$gte': lambda a, b: a >= b,
    '$lte': lambda a, b: a <= b,
    '$gt': lambda a, b: a > b,
    '$lt': lambda a, b: a < b,
}


def _matches(metadata: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    for key, expected in (where or {}).items():
        actual = metadata.get(key)
        values = actual if isinstance(actual, list) else [actual]
        if isinstance(expected, dict):
            if '$in' in expected and not any(v in expected['$in'] for v in values):
                return False
            for op, operand in expected.items():
                if op in RANGE_CHECKS and (actual is None or not RANGE_CHECKS[op](actual, operand)):
                    return False
        elif isinstance(expected, (list, tuple, set)):
            if not any(v in expected for v in values):
                return False
        elif expected not in values:
            return False
    return True


def _cosine_distance(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if not norm:
        return 1.0
    return 1.0 - dot / norm


class InMemoryVectorAdapter(VectorStoreAdapter):
    """Dict-backed vector store using cosine distance."""

    service_name = 'in_memory'
    supports_nested_metadata = True

    def __init__(self, fail: bool = False):
        self.collections: Dict[str, Dict[str, VectorStoreData]] = {}
        self.fail = fail
        self.updates: List[VectorUpdate] = []

    def _docs(self, collection: str) -> Dict[str, VectorStoreData]:
        if self.fail:
            raise ConnectionError('vector store unreachable')
        return self.collections.setdefault(collection, {})

    def _record(self, data: VectorStoreData, include_embeddings: bool, distance: Optional[float] = None):
        return VectorRecord(id=data.id,
                            content=data.content,
                            metadata=dict(data.metadata),
                            embedding=list(data.embedding) if include_embeddings and data.embedding else None,
                            distance=distance)

    async def health_check(self) -> bool:
        return not self.fail

    async def _ensure_collection(self, collection: str) -> bool:
        created = collection not in self.collections
        self._docs(collection)
        return created

    async def _store(self, collection: str, data: VectorStoreData) -> str:
        self._docs(collection)[data.id] = VectorStoreData(data.id, data.content, dict(data.metadata), data.embedding)
        return data.id

    async def _search(self, collection: str, query: VectorSearchQuery) -> List[VectorRecord]:
        hits = []
        for data in self._docs(collection).values():
            if not data.embedding or not _matches(data.metadata, query.filter):
                continue
            record = self._record(data, query.include_embeddings, _cosine_distance(query.query_embedding, data.embedding))
            if query.min_score is None or record.relevance >= query.min_score:
                hits.append(record)
        hits.sort(key=lambda r: r.distance)
        return hits[:query.limit]

    async def _get_documents(self, collection: str, options: GetDocumentsOptions) -> List[VectorRecord]:
        def sort_key(d):
            return d.metadata.get('created_at') or '', d.id

        docs = [d for d in self._docs(collection).values() if _matches(d.metadata, options.where)]
        if options.ids is not None:
            docs = [d for d in docs if d.id in options.ids]
        docs.sort(key=sort_key, reverse=options.newest_first)
        if options.search_after is not None:
            after = tuple(options.search_after)
            if options.newest_first:
                docs = [d for d in docs if sort_key(d) < after]
            else:
                docs = [d for d in docs if sort_key(d) > after]
        end = None if options.limit is None else options.offset + options.limit
        return [self._record(d, options.include_embeddings) for d in docs[options.offset:end]]

    async def _delete(self, collection: str, ids: List[str]) -> int:
        docs = self._docs(collection)
        return sum(1 for doc_id in ids if docs.pop(doc_id, None) is not None)

    async def _delete_by_filter(self, collection: str, where: Dict[str, Any]) -> int:
        docs = self._docs(collection)
        ids = [doc_id for doc_id, d in docs.items() if _matches(d.metadata, where)]
        return await self._delete(collection, ids)

    async def _update_documents(self, collection: str, updates: List[VectorUpdate]) -> int:
        docs = self._docs(collection)
        updated = 0
        for update in updates:
            self.updates.append(update)
            if update.id in docs:
                docs[update.id].metadata.update(update.metadata)
                updated += 1
        return updated

    async def _get_stats(self, collection: str) -> VectorStoreStats:
        return VectorStoreStats(collection=collection, document_count=len(self._docs(collection)))


class FakeEmbeddingProvider(EmbeddingProvider):
    """Returns fixed vectors per text; unknown texts map to `default`."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=None, fail: bool = False):
        self.vectors = dict(vectors or {})
        self.default = default or [0.5, 0.5]
        self.fail = fail
        self.calls = 0

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.fail:
            raise ConnectionError('embedding service unreachable')
        return [list(self.vectors.get(text, self.default)) for text in texts]


class FakeGraphAdapter(GraphStoreAdapter):
    """Records every Cypher statement; traversal results are configured per start id.

    Traversals honour end_label and rank_by against the labels and properties
    configured per node id.
    """

    service_name = 'fake_graph'

    def __init__(self, fail: bool = False, supports_schema: bool = True, supports_lists: bool = True):
        self.fail = fail
        self.supports_schema_constraints = supports_schema
        self.supports_list_properties = supports_lists
        self.queries: List[CypherQuery] = []
        self.transactions: List[List[CypherQuery]] = []
        self.paths: Dict[str, List[GraphPath]] = {}
        self.labels: Dict[str, List[str]] = {}
        self.properties: Dict[str, Dict[str, Any]] = {}
        self.traversals: List[TraversalSpec] = []
        self.results: List[List[Dict[str, Any]]] = []
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError('graph unreachable')

    async def health_check(self) -> bool:
        return not self.fail

    async def close(self) -> None:
        self.closed = True

    async def _create_node(self, labels, properties) -> str:
        self._check()
        return properties['id']

    async def _create_relationship(self, from_id, to_id, rel_type, properties) -> None:
        self._check()

    async def _traverse(self, spec: TraversalSpec) -> List[GraphPath]:
        self._check()
        self.traversals.append(spec)
        paths = list(self.paths.get(spec.start_id, []))
        if spec.end_label:
            paths = [p for p in paths if spec.end_label in self.labels.get(p.end_id, [spec.end_label])]
        if spec.rank_by:
            paths.sort(key=lambda p: -(self.properties.get(p.end_id, {}).get(spec.rank_by) or 0))
        paths.sort(key=lambda p: p.length)
        return paths[:spec.limit]

    async def _execute_cypher(self, query: CypherQuery) -> List[Dict[str, Any]]:
        self._check()
        self.queries.append(query)
        return self.results.pop(0) if self.results else []

    async def _run_transaction(self, queries: List[CypherQuery]) -> List[List[Dict[str, Any]]]:
        self._check()
        self.transactions.append(list(queries))
        return [await self._execute_cypher(query) for query in queries]

    async def _find_nodes(self, labels, properties, limit) -> List[GraphNode]:
        self._check()
        return []

    async def _delete_nodes(self, ids) -> int:
        self._check()
        return len(ids)

    async def _delete_relationships(self, from_id, to_id, rel_type) -> int:
        self._check()
        return 0

    async def _get_stats(self) -> GraphStats:
        self._check()
        return GraphStats()


def make_entry(memory_id: str,
               thread_id: str = 'thread-1',
               age_seconds: float = 0,
               persistent: bool = False,
               importance: float = 0.5,
               access_count: int = 0,
               last_accessed_seconds_ago: Optional[float] = None,
               content: str = 'some memory',
               memory_type: str = 'conversation',
               relevance: Optional[float] = None,
               now=None) -> MemoryEntry:
    now = now or utc_now()
    return MemoryEntry(id=memory_id,
                       thread_id=thread_id,
                       content=content,
                       metadata=MemoryMetadata(type=memory_type, importance=importance, persistent=persistent),
                       created_at=now - timedelta(seconds=age_seconds),
                       last_accessed_at=None if last_accessed_seconds_ago is None else now -
                       timedelta(seconds=last_accessed_seconds_ago),
                       access_count=access_count,
                       relevance_score=relevance)


@pytest.fixture
def memory_config() -> MemoryConfig:
    return MemoryConfig(collection='test_memories',
                        storage_timeout=5.0,
                        embedding_timeout=5.0,
                        embedding_retry_attempts=2,
                        embedding_retry_delay=0.01,
                        embedding_retry_max_delay=0.02,
                        batch_size=2,
                        retention=RetentionConfig())


@pytest.fixture
def vector_store() -> InMemoryVectorAdapter:
    return InMemoryVectorAdapter()


@pytest.fixture
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def graph_store() -> FakeGraphAdapter:
    return FakeGraphAdapter()
