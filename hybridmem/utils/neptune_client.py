"""
Amazon Neptune graph adapter with Gremlin Python driver, openCypher data API and AWS SigV4 authentication.
"""

import asyncio
import json
from functools import wraps
from typing import Any, Dict, List, Optional

import boto3
from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, Order, P, Scope, T

from ..interfaces.graph_store import GraphNode, GraphPath, GraphStats, GraphStoreAdapter, TraversalSpec
from .config import NeptuneConfig
from .cypher import CypherQuery
from .errors import OperationError
from .logging_config import get_logger

logger = get_logger(__name__)

LABEL_SEPARATOR = '::'
SERVICE_NAME = 'neptune'


def retry_on_connection_error(func):
    """Decorator to retry idempotent Neptune reads once after reconnecting on a closed transport."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close_connection()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise OperationError(f'Failed to {func.__name__}: {retry_e}', func.__name__, SERVICE_NAME, retry_e)
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise OperationError(f'Failed to {func.__name__}: {e}', func.__name__, SERVICE_NAME, e)

    return wrapper


def path_to_graph_path(path: Any) -> GraphPath:
    """Convert a Gremlin path of alternating node ids and edge labels."""
    objects = list(getattr(path, 'objects', path))
    return GraphPath(node_ids=[str(o) for o in objects[0::2]], relationship_types=[str(o) for o in objects[1::2]])


def element_map_to_node(element: Dict[Any, Any]) -> GraphNode:
    """Convert a Gremlin element_map() result into a GraphNode."""
    properties = {}
    label = ''
    for key, value in element.items():
        if key == T.label:
            label = value
        elif key == T.id:
            continue
        else:
            properties[str(key)] = value
    node_id = properties.get('id') or str(element.get(T.id, ''))
    return GraphNode(id=node_id, labels=[part for part in str(label).split(LABEL_SEPARATOR) if part],
                     properties=properties)


class NeptuneGraphAdapter(GraphStoreAdapter):
    """Amazon Neptune adapter.

    Vertex and edge CRUD and traversal go through Gremlin; Cypher statements go
    through the neptunedata openCypher API. Neptune has no multi-statement
    openCypher transactions over that API, so run_transaction executes the
    statements in order and stops at the first failure.
    """

    service_name = SERVICE_NAME
    supports_schema_constraints = False
    supports_list_properties = False

    def __init__(self, config: NeptuneConfig, traversal_source=None, data_client=None):
        """
        Initialize Neptune adapter.

        Args:
            config: NeptuneConfig instance with connection parameters
            traversal_source: Pre-built Gremlin traversal source, skips connecting
            data_client: Pre-built boto3 neptunedata client
        """
        self.config = config
        self.connection = None
        self.g = traversal_source
        if self.g is None:
            self._connect()

        self.data_client = data_client or boto3.client('neptunedata',
                                                       endpoint_url=f'https://{config.endpoint}:{config.port}',
                                                       region_name=config.region)

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        # Build WebSocket connection string
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        # Get AWS credentials
        credentials = Session().get_credentials()
        if credentials is None:
            raise OperationError('No AWS credentials found', 'connect', SERVICE_NAME)
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close_connection(self):
        """Close the Gremlin connection."""
        if self.connection is not None:
            self.connection.close()

    async def close(self) -> None:
        await asyncio.to_thread(self.close_connection)

    # Gremlin writes

    def _create_node_sync(self, labels: List[str], properties: Dict[str, Any]) -> str:
        node_id = properties['id']

        existing = self.g.V().has('id', node_id).to_list()
        if existing:
            logger.debug(f'Vertex already exists: {node_id}')
            return node_id

        t = self.g.addV(LABEL_SEPARATOR.join(labels))
        for key, value in properties.items():
            if value is None:
                continue
            if isinstance(value, (list, set, tuple)):
                for item in value:
                    t = t.property(Cardinality.set_, key, item)
            else:
                t = t.property(key, value)

        t.next()
        logger.debug(f'Created vertex: {node_id}')
        return node_id

    def _create_relationship_sync(self, from_id: str, to_id: str, rel_type: str, properties: Dict[str, Any]) -> None:
        source = self.g.V().has('id', from_id).next()
        target = self.g.V().has('id', to_id).next()

        t = self.g.V(source).addE(rel_type).to(target)
        for key, value in properties.items():
            if value is not None:
                t = t.property(key, value)

        t.next()
        logger.debug(f'Created edge {from_id} -[{rel_type}]-> {to_id}')

    def _delete_nodes_sync(self, ids: List[str]) -> int:
        count = self.g.V().has('id', P.within(list(ids))).count().next()
        if count:
            self.g.V().has('id', P.within(list(ids))).drop().iterate()
        logger.debug(f'Deleted {count} vertices')
        return int(count)

    def _delete_relationships_sync(self, from_id: str, to_id: str, rel_type: Optional[str]) -> int:
        types = [rel_type] if rel_type else []
        count = self.g.V().has('id', from_id).out_e(*types).where(__.in_v().has('id', to_id)).count().next()
        if count:
            self.g.V().has('id', from_id).out_e(*types).where(__.in_v().has('id', to_id)).drop().iterate()
        return int(count)

    # Gremlin reads

    @retry_on_connection_error
    def _traverse_sync(self, spec: TraversalSpec) -> List[GraphPath]:
        types = list(spec.relationship_types or [])
        if spec.direction == 'out':
            step = __.out_e(*types).in_v()
        elif spec.direction == 'in':
            step = __.in_e(*types).out_v()
        else:
            step = __.both_e(*types).other_v()

        traversal = self.g.V().has('id', spec.start_id)\
            .repeat(step.simple_path())\
            .emit()\
            .times(spec.max_depth)
        if spec.end_label:
            # Neptune matches any label of a multi-label vertex
            traversal = traversal.has_label(spec.end_label)

        traversal = traversal.order().by(__.path().count(Scope.local))
        if spec.rank_by:
            traversal = traversal.by(__.coalesce(__.values(spec.rank_by), __.constant(0)), Order.desc)

        paths = traversal.limit(spec.limit)\
            .path()\
            .by('id')\
            .by(T.label)\
            .to_list()

        result = [path_to_graph_path(path) for path in paths]
        logger.debug(f'Traversal from {spec.start_id} returned {len(result)} paths')
        return result

    @retry_on_connection_error
    def _find_nodes_sync(self, labels: List[str], properties: Dict[str, Any], limit: int) -> List[GraphNode]:
        t = self.g.V()
        for label in labels:
            t = t.has_label(label)
        for key, value in properties.items():
            t = t.has(key, value)
        return [element_map_to_node(element) for element in t.limit(limit).element_map().to_list()]

    @retry_on_connection_error
    def _get_stats_sync(self) -> GraphStats:
        node_count = self.g.V().count().next()
        edge_count = self.g.E().count().next()

        labels: Dict[str, int] = {}
        for label, count in self.g.V().label().group_count().next().items():
            for part in str(label).split(LABEL_SEPARATOR):
                labels[part] = labels.get(part, 0) + int(count)
        edge_types = {str(k): int(v) for k, v in self.g.E().label().group_count().next().items()}

        return GraphStats(node_count=int(node_count),
                          relationship_count=int(edge_count),
                          labels=labels,
                          relationship_types=edge_types)

    @retry_on_connection_error
    def _health_check_sync(self) -> bool:
        # Simple query to test connectivity
        self.g.V().limit(1).count().next()
        return True

    # openCypher

    def _execute_cypher_sync(self, query: CypherQuery) -> List[Dict[str, Any]]:
        kwargs = {'openCypherQuery': query.text}
        if query.parameters:
            kwargs['parameters'] = json.dumps(query.parameters, default=str)
        response = self.data_client.execute_open_cypher_query(**kwargs)
        return list(response.get('results', []))

    def _run_transaction_sync(self, queries: List[CypherQuery]) -> List[List[Dict[str, Any]]]:
        results = []
        for position, query in enumerate(queries):
            try:
                results.append(self._execute_cypher_sync(query))
            except Exception as e:
                logger.error(f'Statement {position + 1}/{len(queries)} failed, {position} already applied: {e}')
                raise
        return results

    # GraphStoreAdapter hooks

    async def _create_node(self, labels: List[str], properties: Dict[str, Any]) -> str:
        return await asyncio.to_thread(self._create_node_sync, labels, properties)

    async def _create_relationship(self, from_id: str, to_id: str, rel_type: str, properties: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._create_relationship_sync, from_id, to_id, rel_type, properties)

    async def _traverse(self, spec: TraversalSpec) -> List[GraphPath]:
        return await asyncio.to_thread(self._traverse_sync, spec)

    async def _execute_cypher(self, query: CypherQuery) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._execute_cypher_sync, query)

    async def _run_transaction(self, queries: List[CypherQuery]) -> List[List[Dict[str, Any]]]:
        return await asyncio.to_thread(self._run_transaction_sync, queries)

    async def _find_nodes(self, labels: List[str], properties: Dict[str, Any], limit: int) -> List[GraphNode]:
        return await asyncio.to_thread(self._find_nodes_sync, labels, properties, limit)

    async def _delete_nodes(self, ids: List[str]) -> int:
        return await asyncio.to_thread(self._delete_nodes_sync, ids)

    async def _delete_relationships(self, from_id: str, to_id: str, rel_type: Optional[str]) -> int:
        return await asyncio.to_thread(self._delete_relationships_sync, from_id, to_id, rel_type)

    async def _get_stats(self) -> GraphStats:
        return await asyncio.to_thread(self._get_stats_sync)

    async def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return await asyncio.to_thread(self._health_check_sync)
        except Exception as e:
            logger.error(f'Neptune health check failed: {e}')
            return False
