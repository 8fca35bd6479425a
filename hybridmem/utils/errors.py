"""
Error taxonomy for memory operations.

Every error carries the operation name, the thread/memory it concerns (when known),
the backing service, a timestamp and the wrapped cause.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class ErrorContext:
    """Context information attached to memory errors."""
    operation: str
    service: str
    thread_id: Optional[str] = None
    memory_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    additional_info: Dict[str, Any] = field(default_factory=dict)


class MemoryStoreError(Exception):
    """Base class for all memory store errors."""

    service = 'memory'

    def __init__(self, message: str, context: Optional[ErrorContext] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext(operation='unknown', service=self.service)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def detailed_message(self) -> str:
        """Get a detailed error message with context."""
        parts = [f'Operation: {self.context.operation}']
        if self.context.thread_id:
            parts.append(f'Thread: {self.context.thread_id}')
        if self.context.memory_id:
            parts.append(f'Memory: {self.context.memory_id}')
        parts.append(f'Service: {self.context.service}')
        parts.append(f'Time: {self.context.timestamp.isoformat()}')

        cause_str = f'\nCaused by: {self.cause}' if self.cause else ''
        return f"{self.message} ({', '.join(parts)}){cause_str}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a dict for structured logging."""
        context = asdict(self.context)
        context['timestamp'] = self.context.timestamp.isoformat()
        return {
            'name': type(self).__name__,
            'message': self.message,
            'context': context,
            'cause': {
                'name': type(self.cause).__name__,
                'message': str(self.cause)
            } if self.cause else None
        }

    @classmethod
    def _context(cls, operation: str, thread_id: Optional[str] = None, memory_id: Optional[str] = None, **info) -> ErrorContext:
        return ErrorContext(operation=operation,
                            service=cls.service,
                            thread_id=thread_id,
                            memory_id=memory_id,
                            additional_info=info)


class StorageError(MemoryStoreError):
    """Vector backend failures: store, retrieve, search and collection management."""

    service = 'vector_store'

    @classmethod
    def document_storage(cls, operation: str, thread_id: Optional[str], cause: BaseException) -> 'StorageError':
        return cls('Failed to store memory document in vector database',
                   cls._context(operation, thread_id, error_type='document_storage'), cause)

    @classmethod
    def document_retrieval(cls, operation: str, thread_id: Optional[str], cause: BaseException) -> 'StorageError':
        return cls('Failed to retrieve memory documents from vector database',
                   cls._context(operation, thread_id, error_type='document_retrieval'), cause)

    @classmethod
    def search_operation(cls, operation: str, query: str, cause: BaseException) -> 'StorageError':
        return cls('Failed to perform semantic search in vector database',
                   cls._context(operation, error_type='search_operation', query=query), cause)

    @classmethod
    def collection_management(cls, operation: str, collection: str, cause: BaseException) -> 'StorageError':
        return cls('Failed to manage vector database collection',
                   cls._context(operation, error_type='collection_management', collection=collection), cause)


class RelationshipError(MemoryStoreError):
    """Graph backend failures: storage, query, schema and transactions."""

    service = 'graph_store'

    @classmethod
    def graph_storage(cls, operation: str, thread_id: Optional[str], memory_id: Optional[str],
                      cause: BaseException) -> 'RelationshipError':
        return cls('Failed to store memory relationships in graph database',
                   cls._context(operation, thread_id, memory_id, error_type='graph_storage'), cause)

    @classmethod
    def relationship_query(cls, operation: str, memory_id: Optional[str], cause: BaseException) -> 'RelationshipError':
        return cls('Failed to query memory relationships',
                   cls._context(operation, memory_id=memory_id, error_type='relationship_query'), cause)

    @classmethod
    def schema_management(cls, operation: str, cause: BaseException) -> 'RelationshipError':
        return cls('Failed to manage graph database schema', cls._context(operation, error_type='schema_management'),
                   cause)

    @classmethod
    def transaction(cls, operation: str, cause: BaseException) -> 'RelationshipError':
        return cls('Graph database transaction failed', cls._context(operation, error_type='transaction'), cause)


class EmbeddingError(MemoryStoreError):
    """Embedding provider failures: configuration, API and generation."""

    service = 'embedding'

    @classmethod
    def configuration(cls, operation: str, detail: str) -> 'EmbeddingError':
        return cls(f'Embedding provider misconfigured: {detail}', cls._context(operation, error_type='configuration'))

    @classmethod
    def api(cls, operation: str, cause: BaseException) -> 'EmbeddingError':
        return cls('Embedding provider API call failed', cls._context(operation, error_type='api'), cause)

    @classmethod
    def generation(cls, operation: str, attempts: int, cause: Optional[BaseException]) -> 'EmbeddingError':
        return cls(f'Failed to generate embeddings after {attempts} attempts',
                   cls._context(operation, error_type='generation', attempts=attempts), cause)


class MemoryTimeoutError(MemoryStoreError, TimeoutError):
    """Raised when an operation exceeds its deadline."""

    service = 'timeout'

    @classmethod
    def operation_timeout(cls, operation: str, service: str, timeout: float,
                          thread_id: Optional[str] = None) -> 'MemoryTimeoutError':
        context = ErrorContext(operation=operation,
                               service=service,
                               thread_id=thread_id,
                               additional_info={
                                   'error_type': 'timeout',
                                   'timeout_seconds': timeout
                               })
        return cls(f'Operation {operation} timed out after {timeout}s', context)


class ConfigurationError(MemoryStoreError, ValueError):
    """Invalid or missing settings."""

    service = 'configuration'

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(message, ErrorContext(operation='load_config', service=self.service,
                                               additional_info={'setting': setting}))


class OperationError(MemoryStoreError):
    """Catch-all for backend adapter failures."""

    def __init__(self, message: str, operation: str, service: str, cause: Optional[BaseException] = None, **info):
        super().__init__(message, ErrorContext(operation=operation, service=service, additional_info=info), cause)


class InvalidCollectionError(MemoryStoreError, ValueError):
    """Collection or identifier name is invalid."""

    service = 'validation'

    def __init__(self, message: str):
        super().__init__(message, ErrorContext(operation='validate_collection', service=self.service))


class InvalidInputError(MemoryStoreError, ValueError):
    """Input parameters are invalid."""

    service = 'validation'

    def __init__(self, message: str, operation: str = 'validate_input'):
        super().__init__(message, ErrorContext(operation=operation, service=self.service))
