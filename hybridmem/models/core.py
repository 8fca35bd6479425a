"""
Core data models for the hybrid memory store.
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ..interfaces.vector_store import VectorRecord, VectorStoreData
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

MEMORY_TYPES = ('conversation', 'fact', 'context', 'preference', 'summary', 'custom')
DEFAULT_MEMORY_TYPE = 'conversation'
DEFAULT_IMPORTANCE = 0.5


@dataclass
class MemoryMetadata:
    """Classification and policy fields attached to a memory."""
    type: str = DEFAULT_MEMORY_TYPE
    source: Optional[str] = None
    importance: float = DEFAULT_IMPORTANCE
    persistent: bool = False
    tags: Set[str] = field(default_factory=set)
    user_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryEntry:
    """A unit of stored text scoped to a conversation thread.

    relevance_score is only populated on search results.
    """
    id: str
    thread_id: str
    content: str
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    created_at: datetime = field(default_factory=utc_now)
    embedding: Optional[List[float]] = None
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    relevance_score: Optional[float] = None

    def with_relevance(self, score: Optional[float]) -> 'MemoryEntry':
        return replace(self, relevance_score=score)


def new_memory_id() -> str:
    return str(uuid.uuid4())


def parse_tags(value: Any) -> Set[str]:
    """Accept a tag collection or the comma-joined form used by flat backends."""
    if not value:
        return set()
    if isinstance(value, str):
        return {tag.strip() for tag in value.split(',') if tag.strip()}
    return set(value)


def metadata_from_dict(values: Optional[Dict[str, Any]]) -> MemoryMetadata:
    """Build metadata from caller-supplied values, filling defaults.

    Unknown keys are kept in extra.
    """
    if isinstance(values, MemoryMetadata):
        return replace(values, tags=set(values.tags), extra=dict(values.extra))

    values = dict(values or {})
    known = {}
    for key in ('type', 'source', 'importance', 'persistent', 'tags', 'user_id', 'extra'):
        if key in values:
            known[key] = values.pop(key)

    extra = dict(known.get('extra') or {})
    extra.update(values)

    importance = known.get('importance')
    persistent = known.get('persistent')
    return MemoryMetadata(type=known.get('type') or DEFAULT_MEMORY_TYPE,
                          source=known.get('source'),
                          importance=DEFAULT_IMPORTANCE if importance is None else importance,
                          persistent=False if persistent is None else persistent,
                          tags=parse_tags(known.get('tags')),
                          user_id=known.get('user_id'),
                          extra=extra)


def to_storage_metadata(entry: MemoryEntry, nested: bool = True) -> Dict[str, Any]:
    """Flatten an entry into vector store metadata fields.

    Args:
        entry: Memory entry
        nested: Whether the backend accepts nested maps; if not, extra is JSON text

    Returns:
        Metadata dictionary keyed by storage field names
    """
    metadata = {
        'thread_id': entry.thread_id,
        'type': entry.metadata.type,
        'source': entry.metadata.source,
        'importance': float(entry.metadata.importance),
        'persistent': bool(entry.metadata.persistent),
        'tags': sorted(entry.metadata.tags),
        'user_id': entry.metadata.user_id,
        'created_at': to_iso(entry.created_at),
        'last_accessed_at': to_iso(entry.last_accessed_at),
        'access_count': entry.access_count,
    }
    if nested:
        metadata['extra'] = dict(entry.metadata.extra)
    else:
        metadata['additional_metadata'] = json.dumps(entry.metadata.extra, default=str)
        metadata = {key: value for key, value in metadata.items() if value is not None}
    return metadata


def to_vector_data(entry: MemoryEntry, nested: bool = True) -> VectorStoreData:
    return VectorStoreData(id=entry.id,
                           content=entry.content,
                           metadata=to_storage_metadata(entry, nested),
                           embedding=entry.embedding)


def _read_extra(metadata: Dict[str, Any]) -> Dict[str, Any]:
    extra = metadata.get('extra')
    if isinstance(extra, dict):
        return dict(extra)

    raw = metadata.get('additional_metadata')
    if isinstance(raw, dict):
        return dict(raw)
    if raw:
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except (TypeError, ValueError) as e:
            logger.warning(f'Ignoring malformed additional_metadata: {e}')
    return {}


def from_vector_record(record: VectorRecord) -> MemoryEntry:
    """Rebuild a MemoryEntry from a stored document.

    relevance_score is derived from the record distance when present.
    """
    metadata = record.metadata or {}
    importance = metadata.get('importance')
    return MemoryEntry(id=record.id,
                       thread_id=metadata.get('thread_id', ''),
                       content=record.content or '',
                       metadata=MemoryMetadata(type=metadata.get('type') or DEFAULT_MEMORY_TYPE,
                                               source=metadata.get('source'),
                                               importance=DEFAULT_IMPORTANCE if importance is None else float(importance),
                                               persistent=bool(metadata.get('persistent', False)),
                                               tags=parse_tags(metadata.get('tags')),
                                               user_id=metadata.get('user_id'),
                                               extra=_read_extra(metadata)),
                       created_at=from_iso(metadata.get('created_at')) or utc_now(),
                       embedding=record.embedding,
                       last_accessed_at=from_iso(metadata.get('last_accessed_at')),
                       access_count=int(metadata.get('access_count') or 0),
                       relevance_score=record.relevance)
