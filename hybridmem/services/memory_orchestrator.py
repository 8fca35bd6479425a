"""
Memory orchestrator: the single entry point over storage, graph, retention and search.
"""

from typing import Any, Dict, List, Optional

from ..interfaces.embedding import EmbeddingProvider
from ..interfaces.graph_store import GraphStoreAdapter
from ..interfaces.vector_store import VectorStoreAdapter
from ..models.core import MemoryEntry
from ..models.search import (AnswerSearchResult, CleanupPreview, ContextSearchResult, ConversationFlowItem,
                             GraphMemoryStats, MemorySearchOptions, MemoryStats)
from ..utils.async_utils import BackgroundTasks
from ..utils.bedrock_embed import BedrockEmbeddingProvider
from ..utils.config import AppConfig, MemoryConfig, config as app_config, validate_memory_config
from ..utils.health_check import get_health_status
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneGraphAdapter
from ..utils.opensearch_client import OpenSearchVectorAdapter
from .memory_graph import MemoryGraphService
from .memory_retention import MemoryRetentionService
from .memory_storage import MemoryStorageService
from .semantic_search import SemanticSearchService

logger = get_logger(__name__)


class MemoryOrchestrator:
    """Hybrid memory store façade.

    Vector writes are the primary path and their failures propagate. Graph
    mirroring runs in the background after each vector commit, so an unreachable
    graph never fails or delays a store or delete.
    """

    def __init__(self,
                 vector_store: VectorStoreAdapter,
                 graph_store: Optional[GraphStoreAdapter] = None,
                 embedder: Optional[EmbeddingProvider] = None,
                 config: Optional[MemoryConfig] = None):
        """
        Initialize the orchestrator.

        Args:
            vector_store: Vector store adapter
            graph_store: Graph store adapter, None disables graph features
            embedder: Embedding provider, None disables semantic search
            config: Memory configuration, defaults if None
        """
        self.config = config or MemoryConfig()
        self.vector_store = vector_store
        self.graph_store = graph_store if self.config.enable_graph else None

        self.storage = MemoryStorageService(vector_store, embedder, self.config)
        self.graph = MemoryGraphService(self.graph_store) if self.graph_store is not None else None
        self.retention = MemoryRetentionService(self.config.retention)
        self.search = SemanticSearchService(self.storage, self.graph)
        self._background = BackgroundTasks('memory_orchestrator')

        logger.info('Initialized MemoryOrchestrator')

    @property
    def graph_enabled(self) -> bool:
        return self.graph is not None

    # Lifecycle

    async def start(self) -> None:
        """Create the collection and graph schema, then start scheduled cleanup if any limit is set."""
        await self.storage.initialize()
        if self.graph is not None:
            await self.graph.initialize_schema()

        retention = self.config.retention
        if retention.max_age_seconds or retention.max_per_thread or retention.max_total:
            self.retention.start_scheduler(self._fetch_all, self._delete_ids)
        else:
            logger.info('No retention limits configured, cleanup scheduler not started')

    async def close(self) -> None:
        """Stop the scheduler, wait for background work and release connections."""
        await self.retention.stop_scheduler()
        await self._background.drain()
        await self.storage.drain()
        if self.graph_store is not None:
            await self.graph_store.close()
        logger.info('Closed MemoryOrchestrator')

    async def drain(self) -> None:
        """Wait for pending graph mirroring and access bookkeeping."""
        await self._background.drain()
        await self.storage.drain()

    # Writes

    async def store(self, thread_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> MemoryEntry:
        entry = await self.storage.store(thread_id, content, metadata)
        if self.graph is not None:
            self._background.spawn(self.graph.track_memory(entry), f'track_memory:{entry.id}')
        return entry

    async def store_batch(self, thread_id: str, items: List[Dict[str, Any]]) -> List[MemoryEntry]:
        entries = await self.storage.store_batch(thread_id, items)
        if self.graph is not None and entries:
            self._background.spawn(self.graph.track_memories_batch(entries), f'track_memories_batch:{thread_id}')
        return entries

    async def delete_by_ids(self, ids: List[str]) -> int:
        """Delete memories by id from both stores.

        Returns:
            Number of memories removed from the vector store
        """
        return await self._delete_ids(ids)

    async def clear_thread(self, thread_id: str) -> int:
        """Delete every memory of a thread.

        Returns:
            Number of memories removed
        """
        ids = await self.storage.clear_thread(thread_id)
        self._forget_in_graph(ids)
        return len(ids)

    async def _delete_ids(self, ids: List[str]) -> int:
        deleted = await self.storage.delete_by_ids(ids)
        self._forget_in_graph(ids)
        return deleted

    def _forget_in_graph(self, ids: List[str]) -> None:
        if self.graph is not None and ids:
            self._background.spawn(self.graph.remove_memories(list(ids)), f'remove_memories:{len(ids)}')

    async def _fetch_all(self) -> List[MemoryEntry]:
        return await self.storage.get_all()

    # Reads

    async def retrieve(self, thread_id: str, limit: int = 100) -> List[MemoryEntry]:
        return await self.storage.retrieve(thread_id, limit)

    async def search_similar(self,
                             query: str,
                             where: Optional[Dict[str, Any]] = None,
                             limit: int = 10,
                             min_relevance: Optional[float] = None) -> List[MemoryEntry]:
        return await self.storage.search_similar(query, where, limit, min_relevance)

    async def hybrid_search(self, options: MemorySearchOptions) -> List[MemoryEntry]:
        return await self.search.hybrid_search(options)

    async def context_aware_search(self,
                                   query: str,
                                   thread_id: str,
                                   user_id: Optional[str] = None,
                                   options: Optional[MemorySearchOptions] = None) -> ContextSearchResult:
        return await self.search.context_aware_search(query, thread_id, user_id, options)

    async def search_for_answer(self, question: str, thread_id: Optional[str] = None) -> AnswerSearchResult:
        return await self.search.search_for_answer(question, thread_id)

    async def find_similar_memories(self, memory_id: str, limit: int = 5, min_similarity: float = 0.6) -> List[MemoryEntry]:
        return await self.search.find_similar_memories(memory_id, limit, min_similarity)

    async def get_conversation_flow(self, thread_id: str) -> List[ConversationFlowItem]:
        if self.graph is None:
            return []
        return await self.graph.get_conversation_flow(thread_id)

    async def build_semantic_relationships(self, batch_size: int = 50, threshold: float = 0.8) -> int:
        return await self.search.create_semantic_links(batch_size, threshold)

    # Retention

    async def execute_cleanup(self) -> int:
        return await self.retention.execute_cleanup(self._fetch_all, self._delete_ids)

    async def preview_cleanup(self) -> CleanupPreview:
        return await self.retention.preview_cleanup(self._fetch_all)

    # Status

    async def get_stats(self) -> MemoryStats:
        """Vector, graph and cleanup statistics. Graph failures are reported, not raised."""
        vector_stats = await self.storage.get_stats()

        graph_stats = GraphMemoryStats()
        graph_available = False
        if self.graph is not None:
            try:
                graph_stats = await self.graph.get_graph_stats()
                graph_available = True
            except Exception as e:
                logger.warning(f'Graph statistics unavailable: {e}')

        return MemoryStats(total_memories=vector_stats.document_count,
                           collection=vector_stats.collection,
                           graph=graph_stats,
                           cleanup=self.retention.get_cleanup_stats(),
                           graph_available=graph_available,
                           details=dict(vector_stats.details))

    async def health_check(self) -> Dict[str, Any]:
        return await get_health_status(self.vector_store, self.graph_store, self.storage.embedder)


def create_orchestrator(config: Optional[AppConfig] = None) -> MemoryOrchestrator:
    """Compose an orchestrator over OpenSearch, Neptune and Bedrock.

    Args:
        config: Application configuration, the environment-loaded one if None

    Raises:
        ConfigurationError: If the memory configuration is invalid
    """
    config = config or app_config

    memory = validate_memory_config(config.memory)

    vector_store = OpenSearchVectorAdapter(config.opensearch)
    graph_store = NeptuneGraphAdapter(config.neptune) if memory.enable_graph else None
    embedder = BedrockEmbeddingProvider(config.bedrock_embed) if memory.enable_semantic_search else None

    return MemoryOrchestrator(vector_store, graph_store, embedder, memory)
