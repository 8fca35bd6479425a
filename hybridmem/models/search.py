"""
Search, cleanup and statistics models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .core import MemoryEntry

SORT_FIELDS = ('relevance', 'created_at', 'access_count', 'importance')


@dataclass
class MemorySearchOptions:
    """Options for hybrid search."""
    query: Optional[str] = None
    thread_ids: Optional[List[str]] = None
    types: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = 10
    min_relevance: Optional[float] = None
    sort_by: str = 'relevance'
    sort_order: str = 'desc'
    include_related: bool = False
    relationship_depth: int = 2
    boost_related: float = 0.3
    user_id: Optional[str] = None


@dataclass
class RelatedMemory:
    """A memory reached by graph traversal."""
    memory_id: str
    relationship_path: List[str]
    similarity: float


@dataclass
class UserMemoryPatterns:
    preferred_topics: List[str] = field(default_factory=list)
    communication_style: List[str] = field(default_factory=list)
    total_memories: int = 0
    average_importance: float = 0.0
    recent_activity: Optional[datetime] = None


@dataclass
class ContextSearchResult:
    direct_matches: List[MemoryEntry] = field(default_factory=list)
    contextual_matches: List[MemoryEntry] = field(default_factory=list)
    user_patterns: Optional[UserMemoryPatterns] = None


@dataclass
class AnswerSearchResult:
    memories: List[MemoryEntry] = field(default_factory=list)
    confidence: float = 0.0
    sources: List[str] = field(default_factory=list)


@dataclass
class CleanupBreakdown:
    aged: int = 0
    per_thread_excess: int = 0
    total_excess: int = 0


@dataclass
class CleanupPreview:
    total_memories: int
    memories_to_delete: int
    breakdown: CleanupBreakdown
    estimated_space_saved: int


@dataclass
class CleanupStats:
    last_cleanup_time: Optional[datetime] = None
    total_cleanups_run: int = 0
    total_memories_removed: int = 0
    average_cleanup_time: float = 0.0


@dataclass
class GraphMemoryStats:
    total_memories: int = 0
    total_threads: int = 0
    total_relationships: int = 0
    memory_types: Dict[str, int] = field(default_factory=dict)


@dataclass
class MemoryStats:
    """Combined statistics reported by the orchestrator."""
    total_memories: int
    collection: str
    graph: GraphMemoryStats
    cleanup: CleanupStats
    graph_available: bool = True
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationFlowItem:
    """A thread memory and the ids of the memories it is connected to."""
    memory_id: str
    content: str
    type: str
    created_at: Optional[datetime]
    connections: List[str] = field(default_factory=list)
