"""
Graph store adapter interface and its data types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..utils.cypher import CypherQuery, validate_label, validate_relationship_type
from ..utils.errors import InvalidInputError, MemoryStoreError, OperationError

DIRECTIONS = ('out', 'in', 'both')


@dataclass
class GraphNode:
    id: str
    labels: List[str] = field(default_factory=list)
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphPath:
    """A path from the traversal start: node ids and the edge types between them."""
    node_ids: List[str]
    relationship_types: List[str]

    @property
    def length(self) -> int:
        return len(self.relationship_types)

    @property
    def end_id(self) -> str:
        return self.node_ids[-1]


@dataclass
class TraversalSpec:
    """Paths from start_id, shortest first, truncated to limit.

    end_label keeps only paths ending on a node with that label; rank_by orders
    paths of equal length by that endpoint property, highest first.
    """
    start_id: str
    relationship_types: Optional[List[str]] = None
    max_depth: int = 2
    direction: str = 'both'
    limit: int = 10
    end_label: Optional[str] = None
    rank_by: Optional[str] = None


@dataclass
class GraphStats:
    node_count: int = 0
    relationship_count: int = 0
    labels: Dict[str, int] = field(default_factory=dict)
    relationship_types: Dict[str, int] = field(default_factory=dict)


class GraphStoreAdapter(ABC):
    """Base class for property graph backends."""

    service_name = 'graph_store'

    # False for backends without CREATE CONSTRAINT / CREATE INDEX support
    supports_schema_constraints = True

    # False for backends that reject list-valued properties
    supports_list_properties = True

    def _validate_ids(self, ids: List[str], operation: str) -> None:
        if not ids or any(not node_id for node_id in ids):
            raise InvalidInputError('Node ids cannot be empty', operation=operation)

    def _validate_queries(self, queries: List[CypherQuery], operation: str) -> None:
        if not queries:
            raise InvalidInputError('Query list cannot be empty', operation=operation)
        for query in queries:
            if not query.text or not query.text.strip():
                raise InvalidInputError('Query text cannot be empty', operation=operation)

    async def _guard(self, operation: str, coro):
        try:
            return await coro
        except MemoryStoreError:
            raise
        except Exception as e:
            raise OperationError(f'{self.service_name} {operation} failed: {e}', operation, self.service_name, e)

    async def create_node(self, labels: List[str], properties: Dict[str, Any]) -> str:
        """Create a node; properties must carry an 'id'. Returns the id."""
        if not labels:
            raise InvalidInputError('At least one label is required', operation='create_node')
        for label in labels:
            validate_label(label)
        if not properties.get('id'):
            raise InvalidInputError('Node properties must include an id', operation='create_node')
        return await self._guard('create_node', self._create_node(labels, properties))

    async def create_relationship(self,
                                  from_id: str,
                                  to_id: str,
                                  rel_type: str,
                                  properties: Optional[Dict[str, Any]] = None) -> None:
        self._validate_ids([from_id, to_id], 'create_relationship')
        validate_relationship_type(rel_type)
        await self._guard('create_relationship', self._create_relationship(from_id, to_id, rel_type, properties or {}))

    async def traverse(self, spec: TraversalSpec) -> List[GraphPath]:
        """Walk outward from spec.start_id up to spec.max_depth edges."""
        self._validate_ids([spec.start_id], 'traverse')
        for rel_type in spec.relationship_types or []:
            validate_relationship_type(rel_type)
        if spec.max_depth < 1 or spec.limit < 1:
            raise InvalidInputError('Traversal depth and limit must be positive', operation='traverse')
        if spec.direction not in DIRECTIONS:
            raise InvalidInputError(f'Invalid traversal direction: {spec.direction}', operation='traverse')
        if spec.end_label is not None:
            validate_label(spec.end_label)
        if spec.rank_by is not None and not spec.rank_by.isidentifier():
            raise InvalidInputError(f'Invalid ranking property: {spec.rank_by!r}', operation='traverse')
        return await self._guard('traverse', self._traverse(spec))

    async def execute_cypher(self, query: CypherQuery) -> List[Dict[str, Any]]:
        """Run one Cypher statement and return its rows."""
        self._validate_queries([query], 'execute_cypher')
        return await self._guard('execute_cypher', self._execute_cypher(query))

    async def batch_execute(self, queries: List[CypherQuery]) -> List[List[Dict[str, Any]]]:
        """Run independent statements and return the rows of each."""
        self._validate_queries(queries, 'batch_execute')
        return await self._guard('batch_execute', self._batch_execute(queries))

    async def run_transaction(self, queries: List[CypherQuery]) -> List[List[Dict[str, Any]]]:
        """Run statements in order as one unit of work."""
        self._validate_queries(queries, 'run_transaction')
        return await self._guard('run_transaction', self._run_transaction(queries))

    async def find_nodes(self,
                         labels: Optional[List[str]] = None,
                         properties: Optional[Dict[str, Any]] = None,
                         limit: int = 100) -> List[GraphNode]:
        for label in labels or []:
            validate_label(label)
        return await self._guard('find_nodes', self._find_nodes(labels or [], properties or {}, limit))

    async def delete_nodes(self, ids: List[str]) -> int:
        """Detach-delete nodes by id; returns the number removed."""
        self._validate_ids(ids, 'delete_nodes')
        return await self._guard('delete_nodes', self._delete_nodes(ids))

    async def delete_relationships(self, from_id: str, to_id: str, rel_type: Optional[str] = None) -> int:
        self._validate_ids([from_id, to_id], 'delete_relationships')
        if rel_type is not None:
            validate_relationship_type(rel_type)
        return await self._guard('delete_relationships', self._delete_relationships(from_id, to_id, rel_type))

    async def get_stats(self) -> GraphStats:
        return await self._guard('get_stats', self._get_stats())

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the backend is reachable."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def _create_node(self, labels: List[str], properties: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def _create_relationship(self, from_id: str, to_id: str, rel_type: str, properties: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def _traverse(self, spec: TraversalSpec) -> List[GraphPath]:
        ...

    @abstractmethod
    async def _execute_cypher(self, query: CypherQuery) -> List[Dict[str, Any]]:
        ...

    async def _batch_execute(self, queries: List[CypherQuery]) -> List[List[Dict[str, Any]]]:
        return [await self._execute_cypher(query) for query in queries]

    @abstractmethod
    async def _run_transaction(self, queries: List[CypherQuery]) -> List[List[Dict[str, Any]]]:
        ...

    @abstractmethod
    async def _find_nodes(self, labels: List[str], properties: Dict[str, Any], limit: int) -> List[GraphNode]:
        ...

    @abstractmethod
    async def _delete_nodes(self, ids: List[str]) -> int:
        ...

    @abstractmethod
    async def _delete_relationships(self, from_id: str, to_id: str, rel_type: Optional[str]) -> int:
        ...

    @abstractmethod
    async def _get_stats(self) -> GraphStats:
        ...
