"""
Vector store adapter interface and its data types.

Concrete adapters implement the underscore-prefixed hooks; the public methods
validate their input first and wrap unexpected backend failures in OperationError.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..utils.errors import InvalidCollectionError, InvalidInputError, MemoryStoreError, OperationError

COLLECTION_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,100}$')
MAX_CONTENT_LENGTH = 100000
FILTER_OPERATORS = ('$in', '$gte', '$lte', '$gt', '$lt')


@dataclass
class VectorStoreData:
    """A document to be written to the vector store."""
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None


@dataclass
class VectorRecord:
    """A document read back from the vector store.

    distance is only set for similarity search hits (lower is closer).
    """
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    distance: Optional[float] = None

    @property
    def relevance(self) -> Optional[float]:
        if self.distance is None:
            return None
        return max(0.0, 1.0 - self.distance)


@dataclass
class VectorSearchQuery:
    """Similarity query; needs an embedding or text."""
    query_embedding: Optional[List[float]] = None
    query_text: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    limit: int = 10
    min_score: Optional[float] = None
    include_embeddings: bool = False


@dataclass
class GetDocumentsOptions:
    """Plain retrieval by ids and/or metadata filter.

    search_after continues after the (created_at, id) sort key of the last
    document of the previous page and cannot be combined with offset.
    """
    ids: Optional[List[str]] = None
    where: Optional[Dict[str, Any]] = None
    limit: Optional[int] = None
    offset: int = 0
    include_embeddings: bool = False
    newest_first: bool = False
    search_after: Optional[List[Any]] = None


@dataclass
class VectorUpdate:
    """Partial metadata update for one document."""
    id: str
    metadata: Dict[str, Any]


@dataclass
class VectorStoreStats:
    """Collection level statistics."""
    collection: str
    document_count: int
    dimension: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


class VectorStoreAdapter(ABC):
    """Base class for embedding-indexed document stores."""

    service_name = 'vector_store'

    # True when metadata may hold nested maps; otherwise the open map is stored as JSON text
    supports_nested_metadata = False

    # Validation

    def validate_collection_name(self, collection: str) -> None:
        if not isinstance(collection, str) or not COLLECTION_NAME_PATTERN.match(collection):
            raise InvalidCollectionError(f'Invalid collection name: {collection!r}')

    def validate_data(self, data: VectorStoreData) -> None:
        if not data.id:
            raise InvalidInputError('Document id cannot be empty', operation='store')
        if not data.content or not data.content.strip():
            raise InvalidInputError('Document content cannot be empty', operation='store')
        if len(data.content) > MAX_CONTENT_LENGTH:
            raise InvalidInputError(f'Document content exceeds {MAX_CONTENT_LENGTH} characters', operation='store')

    def validate_ids(self, ids: List[str], operation: str) -> None:
        if not ids:
            raise InvalidInputError('Id list cannot be empty', operation=operation)
        if any(not doc_id for doc_id in ids):
            raise InvalidInputError('Ids cannot be empty strings', operation=operation)

    def validate_filter(self, where: Optional[Dict[str, Any]], operation: str) -> None:
        for key, value in (where or {}).items():
            if not key:
                raise InvalidInputError('Filter keys cannot be empty', operation=operation)
            if isinstance(value, dict):
                unknown = [op for op in value if op not in FILTER_OPERATORS]
                if unknown or not value:
                    raise InvalidInputError(f'Unsupported filter operator for {key}: {unknown}', operation=operation)

    def validate_query(self, query: VectorSearchQuery) -> None:
        has_embedding = bool(query.query_embedding)
        has_text = bool(query.query_text and query.query_text.strip())
        if not has_embedding and not has_text:
            raise InvalidInputError('Search query needs an embedding or text', operation='search')
        if query.limit < 1:
            raise InvalidInputError('Search limit must be positive', operation='search')
        self.validate_filter(query.filter, 'search')

    async def _guard(self, operation: str, coro):
        try:
            return await coro
        except MemoryStoreError:
            raise
        except Exception as e:
            raise OperationError(f'{self.service_name} {operation} failed: {e}', operation, self.service_name, e)

    # Public operations

    async def store(self, collection: str, data: VectorStoreData) -> str:
        """Store one document and return its id."""
        self.validate_collection_name(collection)
        self.validate_data(data)
        return await self._guard('store', self._store(collection, data))

    async def store_batch(self, collection: str, data: List[VectorStoreData]) -> List[str]:
        """Store several documents and return their ids in order."""
        self.validate_collection_name(collection)
        if not data:
            raise InvalidInputError('Batch cannot be empty', operation='store_batch')
        for item in data:
            self.validate_data(item)
        return await self._guard('store_batch', self._store_batch(collection, data))

    async def search(self, collection: str, query: VectorSearchQuery) -> List[VectorRecord]:
        """Similarity search ordered by ascending distance."""
        self.validate_collection_name(collection)
        self.validate_query(query)
        return await self._guard('search', self._search(collection, query))

    async def delete(self, collection: str, ids: List[str]) -> int:
        """Delete documents by id; ids that do not exist count as zero."""
        self.validate_collection_name(collection)
        self.validate_ids(ids, 'delete')
        return await self._guard('delete', self._delete(collection, ids))

    async def delete_by_filter(self, collection: str, where: Dict[str, Any]) -> int:
        """Delete every document matching a metadata filter."""
        self.validate_collection_name(collection)
        if not where:
            raise InvalidInputError('Delete filter cannot be empty', operation='delete_by_filter')
        self.validate_filter(where, 'delete_by_filter')
        return await self._guard('delete_by_filter', self._delete_by_filter(collection, where))

    async def get_documents(self, collection: str, options: Optional[GetDocumentsOptions] = None) -> List[VectorRecord]:
        """Fetch documents by ids and/or filter with paging."""
        self.validate_collection_name(collection)
        options = options or GetDocumentsOptions()
        if options.ids is not None:
            self.validate_ids(options.ids, 'get_documents')
        self.validate_filter(options.where, 'get_documents')
        if options.offset < 0 or (options.limit is not None and options.limit < 0):
            raise InvalidInputError('Limit and offset cannot be negative', operation='get_documents')
        if options.search_after is not None and options.offset:
            raise InvalidInputError('search_after cannot be combined with offset', operation='get_documents')
        return await self._guard('get_documents', self._get_documents(collection, options))

    async def update_documents(self, collection: str, updates: List[VectorUpdate]) -> int:
        """Merge metadata fields into existing documents; returns the number updated."""
        self.validate_collection_name(collection)
        if not updates:
            return 0
        self.validate_ids([u.id for u in updates], 'update_documents')
        return await self._guard('update_documents', self._update_documents(collection, updates))

    async def get_stats(self, collection: str) -> VectorStoreStats:
        self.validate_collection_name(collection)
        return await self._guard('get_stats', self._get_stats(collection))

    async def ensure_collection(self, collection: str) -> bool:
        """Create the collection if missing; returns True if it was created."""
        self.validate_collection_name(collection)
        return await self._guard('ensure_collection', self._ensure_collection(collection))

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the backend is reachable."""

    # Backend hooks

    @abstractmethod
    async def _store(self, collection: str, data: VectorStoreData) -> str:
        ...

    async def _store_batch(self, collection: str, data: List[VectorStoreData]) -> List[str]:
        ids = []
        for item in data:
            ids.append(await self._store(collection, item))
        return ids

    @abstractmethod
    async def _search(self, collection: str, query: VectorSearchQuery) -> List[VectorRecord]:
        ...

    @abstractmethod
    async def _delete(self, collection: str, ids: List[str]) -> int:
        ...

    @abstractmethod
    async def _delete_by_filter(self, collection: str, where: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def _get_documents(self, collection: str, options: GetDocumentsOptions) -> List[VectorRecord]:
        ...

    @abstractmethod
    async def _update_documents(self, collection: str, updates: List[VectorUpdate]) -> int:
        ...

    @abstractmethod
    async def _get_stats(self, collection: str) -> VectorStoreStats:
        ...

    @abstractmethod
    async def _ensure_collection(self, collection: str) -> bool:
        ...
