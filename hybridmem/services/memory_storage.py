"""
Memory storage service: embedding, persistence, retrieval and access bookkeeping.
"""

import asyncio
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..interfaces.embedding import EmbeddingProvider
from ..interfaces.vector_store import GetDocumentsOptions, VectorSearchQuery, VectorStoreAdapter, VectorStoreStats, VectorUpdate
from ..models.core import MEMORY_TYPES, MemoryEntry, MemoryMetadata, from_vector_record, metadata_from_dict, new_memory_id, to_vector_data
from ..utils.async_utils import BackgroundTasks, retry_async, with_timeout
from ..utils.config import MemoryConfig
from ..utils.errors import (EmbeddingError, InvalidCollectionError, InvalidInputError, MemoryTimeoutError,
                            StorageError)
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso, utc_now

logger = get_logger(__name__)

MAX_CONTENT_LENGTH = 100000
DEFAULT_PAGE_SIZE = 500

# Errors that reach callers unchanged
PASSTHROUGH_ERRORS = (InvalidInputError, InvalidCollectionError, MemoryTimeoutError)


def validate_content(content: str, operation: str) -> None:
    if not isinstance(content, str) or not content.strip():
        raise InvalidInputError('Memory content cannot be empty', operation=operation)
    if len(content) > MAX_CONTENT_LENGTH:
        raise InvalidInputError(f'Memory content exceeds {MAX_CONTENT_LENGTH} characters', operation=operation)


def validate_metadata(metadata: MemoryMetadata, operation: str) -> None:
    if metadata.type not in MEMORY_TYPES:
        raise InvalidInputError(f'Unknown memory type {metadata.type!r}, expected one of {", ".join(MEMORY_TYPES)}',
                                operation=operation)
    if not isinstance(metadata.persistent, bool):
        raise InvalidInputError(f'Persistent must be a boolean, got {metadata.persistent!r}', operation=operation)
    if any(not isinstance(tag, str) or not tag.strip() for tag in metadata.tags):
        raise InvalidInputError(f'Tags must be non-empty strings, got {sorted(map(repr, metadata.tags))}', operation=operation)
    try:
        importance = float(metadata.importance)
    except (TypeError, ValueError):
        raise InvalidInputError(f'Importance must be a number, got {metadata.importance!r}', operation=operation)
    if not 0.0 <= importance <= 1.0:
        raise InvalidInputError(f'Importance must be between 0 and 1, got {importance}', operation=operation)
    metadata.importance = importance


class MemoryStorageService:
    """Stores memory entries in the vector store and reads them back.

    Embedding is optional: when the provider is missing, disabled or failing,
    entries are stored without a vector and searches fall back to filtered retrieval.
    """

    def __init__(self,
                 vector_store: VectorStoreAdapter,
                 embedder: Optional[EmbeddingProvider] = None,
                 config: Optional[MemoryConfig] = None):
        """
        Initialize the storage service.

        Args:
            vector_store: Vector store adapter
            embedder: Embedding provider, None disables semantic search
            config: Memory configuration, defaults if None
        """
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = config or MemoryConfig()
        self.collection = self.config.collection
        self._background = BackgroundTasks('memory_storage')

        logger.info(f'Initialized MemoryStorageService on collection {self.collection}')

    @property
    def semantic_search_enabled(self) -> bool:
        return self.config.enable_semantic_search and self.embedder is not None

    async def initialize(self) -> None:
        """Ensure the backing collection exists.

        Raises:
            StorageError: If the collection cannot be created
        """
        try:
            created = await with_timeout(self.vector_store.ensure_collection(self.collection),
                                         self.config.storage_timeout, 'initialize', 'vector_store')
        except PASSTHROUGH_ERRORS:
            raise
        except Exception as e:
            raise StorageError.collection_management('initialize', self.collection, e)

        if created:
            logger.info(f'Created memory collection {self.collection}')

    async def _call(self, operation: str, awaitable, error_factory, thread_id: Optional[str] = None):
        """Run a vector store call with the storage timeout and typed error wrapping."""
        try:
            return await with_timeout(awaitable, self.config.storage_timeout, operation, 'vector_store', thread_id)
        except PASSTHROUGH_ERRORS:
            raise
        except StorageError:
            raise
        except Exception as e:
            error = error_factory(e)
            logger.error(f'Vector store {operation} failed: {e}', extra={'error': error.to_dict()})
            raise error

    async def _embed(self, texts: List[str], operation: str) -> Optional[List[List[float]]]:
        """Embed texts with retries; returns None instead of raising."""
        if not self.semantic_search_enabled:
            return None

        async def attempt():
            return await with_timeout(self.embedder.embed(texts), self.config.embedding_timeout, operation, 'embedding')

        try:
            vectors = await retry_async(attempt, self.config.embedding_retry_attempts, self.config.embedding_retry_delay,
                                        self.config.embedding_retry_max_delay, operation)
        except Exception as e:
            error = EmbeddingError.generation(operation, self.config.embedding_retry_attempts, e)
            logger.warning(f'{error.message}, continuing without embeddings', extra={'error': error.to_dict()})
            return None

        if len(vectors) != len(texts):
            logger.warning(f'Embedding provider returned {len(vectors)} vectors for {len(texts)} texts, ignoring them')
            return None
        return vectors

    def _new_entry(self, thread_id: str, content: str, metadata: Any, operation: str) -> MemoryEntry:
        if not thread_id:
            raise InvalidInputError('Thread id cannot be empty', operation=operation)
        validate_content(content, operation)
        memory_metadata = metadata_from_dict(metadata)
        validate_metadata(memory_metadata, operation)
        return MemoryEntry(id=new_memory_id(), thread_id=thread_id, content=content, metadata=memory_metadata)

    async def store(self, thread_id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> MemoryEntry:
        """Store a memory entry.

        Args:
            thread_id: Conversation thread the memory belongs to
            content: Memory text
            metadata: Optional metadata values (type, source, importance, persistent, tags, user_id, extra)

        Returns:
            The stored MemoryEntry

        Raises:
            InvalidInputError: If content or importance is invalid
            StorageError: If the vector store write fails
            MemoryTimeoutError: If the vector store write times out
        """
        entry = self._new_entry(thread_id, content, metadata, 'store')

        vectors = await self._embed([content], 'store')
        if vectors:
            entry.embedding = vectors[0]

        data = to_vector_data(entry, self.vector_store.supports_nested_metadata)
        await self._call('store', self.vector_store.store(self.collection, data),
                         lambda e: StorageError.document_storage('store', thread_id, e), thread_id)

        logger.debug(f'Stored memory {entry.id} in thread {thread_id}')
        return entry

    async def store_batch(self, thread_id: str, items: List[Dict[str, Any]]) -> List[MemoryEntry]:
        """Store several entries for one thread.

        Args:
            thread_id: Conversation thread
            items: Dicts with 'content' and optional 'metadata'

        Returns:
            Stored entries in input order
        """
        if not items:
            return []

        base_time = utc_now()
        entries = []
        for position, item in enumerate(items):
            entry = self._new_entry(thread_id, item.get('content'), item.get('metadata'), 'store_batch')
            entry.created_at = base_time + timedelta(microseconds=position)
            entries.append(entry)

        vectors = await self._embed([entry.content for entry in entries], 'store_batch')
        if vectors:
            for entry, vector in zip(entries, vectors):
                entry.embedding = vector

        nested = self.vector_store.supports_nested_metadata
        batch_size = self.config.batch_size
        chunks = [entries[i:i + batch_size] for i in range(0, len(entries), batch_size)]

        await asyncio.gather(*(self._call('store_batch',
                                          self.vector_store.store_batch(self.collection,
                                                                        [to_vector_data(e, nested) for e in chunk]),
                                          lambda e: StorageError.document_storage('store_batch', thread_id, e),
                                          thread_id) for chunk in chunks))

        logger.debug(f'Stored {len(entries)} memories in thread {thread_id}')
        return entries

    async def retrieve(self, thread_id: str, limit: int = 100) -> List[MemoryEntry]:
        """Get the newest memories of a thread and record the access.

        The returned entries already carry the incremented access count; persisting it
        happens in the background.
        """
        options = GetDocumentsOptions(where={'thread_id': thread_id}, limit=limit, newest_first=True)
        records = await self._call('retrieve', self.vector_store.get_documents(self.collection, options),
                                   lambda e: StorageError.document_retrieval('retrieve', thread_id, e), thread_id)

        entries = [from_vector_record(record) for record in records]
        entries.sort(key=lambda e: e.id, reverse=True)
        entries.sort(key=lambda e: e.created_at, reverse=True)

        accessed_at = utc_now()
        entries = [replace(e, access_count=e.access_count + 1, last_accessed_at=accessed_at) for e in entries]
        if entries:
            self._background.spawn(self._record_access(entries, thread_id), f'record_access:{thread_id}')
        return entries

    async def _record_access(self, entries: List[MemoryEntry], thread_id: str) -> None:
        updates = [
            VectorUpdate(id=e.id, metadata={
                'access_count': e.access_count,
                'last_accessed_at': to_iso(e.last_accessed_at)
            }) for e in entries
        ]
        try:
            await with_timeout(self.vector_store.update_documents(self.collection, updates), self.config.storage_timeout,
                               'record_access', 'vector_store', thread_id)
        except Exception as e:
            error = StorageError.document_storage('record_access', thread_id, e)
            logger.warning(f'Failed to update access stats for {len(entries)} memories: {e}',
                           extra={'error': error.to_dict()})

    async def search_similar(self,
                             query: str,
                             where: Optional[Dict[str, Any]] = None,
                             limit: int = 10,
                             min_relevance: Optional[float] = None) -> List[MemoryEntry]:
        """Semantic search with a metadata filter.

        Falls back to filtered retrieval when semantic search is disabled, the query
        is blank or the query embedding cannot be computed.
        """
        if not self.semantic_search_enabled or not query or not query.strip():
            return await self._filtered(where, limit)

        vectors = await self._embed([query], 'search_similar')
        if not vectors:
            return await self._filtered(where, limit)

        search_query = VectorSearchQuery(query_embedding=vectors[0], filter=where, limit=limit, min_score=min_relevance)
        records = await self._call('search_similar', self.vector_store.search(self.collection, search_query),
                                   lambda e: StorageError.search_operation('search_similar', query, e))
        return [from_vector_record(record) for record in records]

    async def _filtered(self, where: Optional[Dict[str, Any]], limit: int) -> List[MemoryEntry]:
        options = GetDocumentsOptions(where=where, limit=limit, newest_first=True)
        records = await self._call('search_similar', self.vector_store.get_documents(self.collection, options),
                                   lambda e: StorageError.document_retrieval('search_similar', None, e))
        return [from_vector_record(record) for record in records]

    async def get_by_ids(self, ids: List[str], include_embeddings: bool = False) -> List[MemoryEntry]:
        if not ids:
            return []
        options = GetDocumentsOptions(ids=list(dict.fromkeys(ids)), include_embeddings=include_embeddings)
        records = await self._call('get_by_ids', self.vector_store.get_documents(self.collection, options),
                                   lambda e: StorageError.document_retrieval('get_by_ids', None, e))
        return [from_vector_record(record) for record in records]

    async def get_page(self,
                       limit: int,
                       where: Optional[Dict[str, Any]] = None,
                       include_embeddings: bool = False,
                       after: Optional[MemoryEntry] = None) -> List[MemoryEntry]:
        """Get one page of entries ordered by creation time.

        Args:
            limit: Page size
            where: Optional metadata filter
            include_embeddings: Whether to return stored vectors
            after: Last entry of the previous page, None for the first page
        """
        cursor = None if after is None else [to_iso(after.created_at), after.id]
        options = GetDocumentsOptions(where=where, limit=limit, include_embeddings=include_embeddings, search_after=cursor)
        records = await self._call('get_page', self.vector_store.get_documents(self.collection, options),
                                   lambda e: StorageError.document_retrieval('get_page', None, e))
        return [from_vector_record(record) for record in records]

    async def get_all(self, page_size: int = DEFAULT_PAGE_SIZE, where: Optional[Dict[str, Any]] = None) -> List[MemoryEntry]:
        """Page through every entry (optionally filtered)."""
        entries = []
        page = await self.get_page(page_size, where)
        while True:
            entries.extend(page)
            if len(page) < page_size:
                return entries
            page = await self.get_page(page_size, where, after=page[-1])

    async def delete_by_ids(self, ids: List[str]) -> int:
        """Delete entries by id. Already deleted ids count as zero.

        Returns:
            Number of entries removed
        """
        if not ids:
            return 0
        deleted = await self._call('delete_by_ids', self.vector_store.delete(self.collection, list(dict.fromkeys(ids))),
                                   lambda e: StorageError.document_storage('delete_by_ids', None, e))
        logger.debug(f'Deleted {deleted} of {len(ids)} memories')
        return deleted

    async def clear_thread(self, thread_id: str) -> List[str]:
        """Delete every entry of a thread.

        Returns:
            Ids of the deleted entries
        """
        entries = await self.get_all(where={'thread_id': thread_id})
        ids = [entry.id for entry in entries]
        if ids:
            await self.delete_by_ids(ids)
        logger.info(f'Cleared {len(ids)} memories from thread {thread_id}')
        return ids

    async def get_thread_count(self, thread_id: str) -> int:
        return len(await self.get_all(where={'thread_id': thread_id}))

    async def get_stats(self) -> VectorStoreStats:
        return await self._call('get_stats', self.vector_store.get_stats(self.collection),
                                lambda e: StorageError.collection_management('get_stats', self.collection, e))

    async def drain(self) -> None:
        """Wait for pending background bookkeeping."""
        await self._background.drain()
