"""
Memory graph service: projects memory entries and their relationships into the graph store.

Graph writes are best effort. Failures are logged with structured context and never
reach the caller, so the vector store stays the source of truth.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional

from ..interfaces.graph_store import GraphStoreAdapter, TraversalSpec
from ..models.core import MemoryEntry
from ..models.search import ConversationFlowItem, GraphMemoryStats, RelatedMemory, UserMemoryPatterns
from ..utils.cypher import CypherQuery, cypher, format_labels, validate_relationship_type
from ..utils.errors import RelationshipError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

MEMORY_LABEL = 'Memory'
TYPE_LABELS = {'summary': 'Summary', 'fact': 'Fact', 'context': 'Context'}
RELATED_LIMIT = 20
TOPIC_MIN_IMPORTANCE = 0.7
TOPIC_LIMIT = 10
STYLE_LIMIT = 5


def parse_tags(value: Any) -> List[str]:
    """Read tags stored either as a list or as comma separated text."""
    if not value:
        return []
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(',') if tag.strip()]
    return [str(tag) for tag in value]


def rank_topics(rows: List[Dict[str, Any]], limit: int = TOPIC_LIMIT) -> List[str]:
    """Order tags by frequency, then by average importance of the memories carrying them."""
    frequency: Dict[str, int] = defaultdict(int)
    importance_sum: Dict[str, float] = defaultdict(float)
    for row in rows:
        importance = float(row.get('importance') or 0.0)
        for tag in parse_tags(row.get('tags')):
            frequency[tag] += 1
            importance_sum[tag] += importance

    ranked = sorted(frequency, key=lambda tag: (-frequency[tag], -importance_sum[tag] / frequency[tag], tag))
    return ranked[:limit]


class MemoryGraphService:
    """Tracks memories, threads and their relationships in the graph store."""

    def __init__(self, graph: GraphStoreAdapter):
        """
        Initialize the graph service.

        Args:
            graph: Graph store adapter
        """
        self.graph = graph
        logger.info('Initialized MemoryGraphService')

    # Query construction

    def _tags_value(self, entry: MemoryEntry):
        tags = sorted(entry.metadata.tags)
        return tags if self.graph.supports_list_properties else ','.join(tags)

    def memory_node_query(self, entry: MemoryEntry) -> CypherQuery:
        return cypher()\
            .merge('(m:Memory {id: $memoryId})')\
            .set('m.threadId = $threadId, m.content = $content, m.type = $type, m.source = $source, '
                 'm.importance = $importance, m.persistent = $persistent, m.createdAt = $createdAt, '
                 'm.accessCount = $accessCount, m.tags = $tags, m.userId = $userId',
                 {
                     'memoryId': entry.id,
                     'threadId': entry.thread_id,
                     'content': entry.content,
                     'type': entry.metadata.type,
                     'source': entry.metadata.source,
                     'importance': entry.metadata.importance,
                     'persistent': entry.metadata.persistent,
                     'createdAt': to_iso(entry.created_at),
                     'accessCount': entry.access_count,
                     'tags': self._tags_value(entry),
                     'userId': entry.metadata.user_id
                 })\
            .build()

    def thread_node_query(self, entry: MemoryEntry) -> CypherQuery:
        return cypher()\
            .merge('(t:Thread {id: $threadId})')\
            .set('t.lastActiveAt = $lastActiveAt', {'threadId': entry.thread_id, 'lastActiveAt': to_iso(utc_now())})\
            .build()

    def has_memory_query(self, entry: MemoryEntry) -> CypherQuery:
        return cypher()\
            .match('(t:Thread {id: $threadId})')\
            .match('(m:Memory {id: $memoryId})')\
            .merge('(t)-[r:HAS_MEMORY]->(m)')\
            .set('r.createdAt = $createdAt', {
                'threadId': entry.thread_id,
                'memoryId': entry.id,
                'createdAt': to_iso(entry.created_at)
            })\
            .build()

    def type_specific_queries(self, entry: MemoryEntry) -> List[CypherQuery]:
        """Labels and edges that depend on the memory type."""
        params = {'memoryId': entry.id, 'threadId': entry.thread_id}
        memory_type = entry.metadata.type
        queries = []

        label = TYPE_LABELS.get(memory_type)
        if label:
            queries.append(cypher().match('(m:Memory {id: $memoryId})').set(f'm{format_labels([label])}', {
                'memoryId': entry.id
            }).build())

        if memory_type == 'summary':
            # Link the summary to everything it covers in the thread
            queries.append(cypher()
                           .match('(summary:Memory {id: $memoryId})')
                           .match('(source:Memory {threadId: $threadId})')
                           .where("source.createdAt < summary.createdAt AND source.type <> 'summary'")
                           .merge('(summary)-[:SUMMARIZES]->(source)', params)
                           .build())
        elif memory_type == 'preference':
            queries.append(cypher()
                           .match('(m:Memory {id: $memoryId})')
                           .match('(t:Thread {id: $threadId})')
                           .merge('(t)-[:HAS_PREFERENCE]->(m)', params)
                           .build())
        elif memory_type not in TYPE_LABELS:
            # Extend the temporal chain from the latest memory that has no successor yet
            queries.append(cypher()
                           .match('(current:Memory {id: $memoryId})')
                           .match('(previous:Memory {threadId: $threadId})')
                           .where('previous.createdAt < current.createdAt')
                           .and_where("previous.type <> 'summary'")
                           .and_where('NOT (previous)-[:FOLLOWED_BY]->()')
                           .with_('current, previous')
                           .order_by('previous.createdAt', 'DESC')
                           .limit(1)
                           .merge('(previous)-[:FOLLOWED_BY]->(current)', params)
                           .build())
        return queries

    def track_queries(self, entry: MemoryEntry) -> List[CypherQuery]:
        return [self.memory_node_query(entry),
                self.thread_node_query(entry),
                self.has_memory_query(entry)] + self.type_specific_queries(entry)

    # Tracking

    async def track_memory(self, entry: MemoryEntry) -> bool:
        """Project one memory into the graph. Never raises.

        Returns:
            True if the graph was updated
        """
        try:
            await self.graph.run_transaction(self.track_queries(entry))
            logger.debug(f'Tracked memory {entry.id} in graph')
            return True
        except Exception as e:
            error = RelationshipError.graph_storage('track_memory', entry.thread_id, entry.id, e)
            logger.error(f'Failed to track memory {entry.id} in graph: {e}', extra={'error': error.to_dict()})
            return False

    async def track_memories_batch(self, entries: List[MemoryEntry]) -> bool:
        """Project several memories in one unit of work. Never raises."""
        if not entries:
            return True

        queries = []
        for entry in sorted(entries, key=lambda e: e.created_at):
            queries.extend(self.track_queries(entry))

        try:
            await self.graph.run_transaction(queries)
            logger.debug(f'Tracked {len(entries)} memories in graph')
            return True
        except Exception as e:
            error = RelationshipError.graph_storage('track_memories_batch', entries[0].thread_id, 'batch', e)
            logger.error(f'Failed to track batch of {len(entries)} memories in graph: {e}',
                         extra={'error': error.to_dict()})
            return False

    async def link_memories(self,
                            source_id: str,
                            target_id: str,
                            similarity: float,
                            rel_type: str = 'SEMANTICALLY_SIMILAR') -> bool:
        """Create or refresh a weighted edge between two memories. Never raises on backend failure."""
        rel_type = validate_relationship_type(rel_type)
        query = cypher()\
            .match('(m1:Memory {id: $sourceId})')\
            .match('(m2:Memory {id: $targetId})')\
            .merge(f'(m1)-[r:{rel_type}]->(m2)')\
            .set('r.similarity = $similarity, r.createdAt = $createdAt', {
                'sourceId': source_id,
                'targetId': target_id,
                'similarity': similarity,
                'createdAt': to_iso(utc_now())
            })\
            .build()
        try:
            await self.graph.execute_cypher(query)
            return True
        except Exception as e:
            error = RelationshipError.graph_storage('link_memories', None, source_id, e)
            logger.error(f'Failed to link memory {source_id} to {target_id}: {e}', extra={'error': error.to_dict()})
            return False

    # Queries

    async def find_related_memories(self, memory_id: str, relationship_types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Direct neighbours of a memory, most important and newest first.

        Returns:
            Dicts with 'memory', 'relationship_type' and 'similarity'; empty on failure
        """
        builder = cypher().match('(source:Memory {id: $memoryId})-[r]->(related:Memory)', {'memoryId': memory_id})
        if relationship_types:
            for rel_type in relationship_types:
                validate_relationship_type(rel_type)
            builder.where('type(r) IN $relationshipTypes', {'relationshipTypes': list(relationship_types)})
        query = builder\
            .return_('related.id AS id, related.threadId AS threadId, related.content AS content, '
                     'related.type AS type, related.importance AS importance, related.createdAt AS createdAt, '
                     'type(r) AS relationshipType, r.similarity AS similarity')\
            .order_by('importance', 'DESC')\
            .order_by('createdAt', 'DESC')\
            .limit(RELATED_LIMIT)\
            .build()

        try:
            rows = await self.graph.execute_cypher(query)
        except Exception as e:
            error = RelationshipError.relationship_query('find_related_memories', memory_id, e)
            logger.error(f'Failed to find related memories for {memory_id}: {e}', extra={'error': error.to_dict()})
            return []

        return [{
            'memory': {
                'id': row.get('id'),
                'thread_id': row.get('threadId'),
                'content': row.get('content'),
                'type': row.get('type'),
                'importance': row.get('importance'),
                'created_at': from_iso(row.get('createdAt'))
            },
            'relationship_type': row.get('relationshipType'),
            'similarity': row.get('similarity')
        } for row in rows]

    async def find_related_paths(self, memory_id: str, depth: int = 2, limit: int = 10) -> List[RelatedMemory]:
        """Memories reachable within depth edges, scored 1 / path length.

        Shorter paths come first and equal lengths rank by the related memory's
        importance before the limit applies. Thread nodes are never returned.

        Raises:
            RelationshipError: If the traversal fails
        """
        try:
            paths = await self.graph.traverse(TraversalSpec(start_id=memory_id,
                                                            max_depth=depth,
                                                            limit=limit,
                                                            end_label=MEMORY_LABEL,
                                                            rank_by='importance'))
        except Exception as e:
            raise RelationshipError.relationship_query('find_related_paths', memory_id, e)

        related = []
        for path in paths:
            if path.length == 0 or path.end_id == memory_id:
                continue
            related.append(RelatedMemory(memory_id=path.end_id,
                                         relationship_path=list(path.relationship_types),
                                         similarity=1.0 / path.length))
        return related

    async def get_conversation_flow(self, thread_id: str) -> List[ConversationFlowItem]:
        """Thread memories in creation order with their in-thread connections; empty on failure."""
        query = cypher()\
            .match('(t:Thread {id: $threadId})-[:HAS_MEMORY]->(m:Memory)', {'threadId': thread_id})\
            .optional_match('(m)-[r]-(connected:Memory)')\
            .where('connected.threadId = $threadId')\
            .return_('m.id AS memoryId, m.content AS content, m.type AS type, m.createdAt AS createdAt, '
                     'collect(DISTINCT connected.id) AS connections')\
            .order_by('createdAt', 'ASC')\
            .build()

        try:
            rows = await self.graph.execute_cypher(query)
        except Exception as e:
            error = RelationshipError.relationship_query('get_conversation_flow', None, e)
            logger.error(f'Failed to get conversation flow for thread {thread_id}: {e}', extra={'error': error.to_dict()})
            return []

        return [
            ConversationFlowItem(memory_id=row.get('memoryId'),
                                 content=row.get('content') or '',
                                 type=row.get('type') or '',
                                 created_at=from_iso(row.get('createdAt')),
                                 connections=[c for c in row.get('connections') or [] if c]) for row in rows
        ]

    async def get_user_memory_patterns(self, user_id: str) -> UserMemoryPatterns:
        """Derive preferred topics, communication style and totals for a user.

        Raises:
            RelationshipError: If the graph queries fail
        """
        topics = cypher()\
            .match('(m:Memory {userId: $userId})', {'userId': user_id})\
            .where('m.importance > $minImportance', {'minImportance': TOPIC_MIN_IMPORTANCE})\
            .return_('m.tags AS tags, m.importance AS importance')\
            .build()
        styles = cypher()\
            .match('(m:Memory {userId: $userId})', {'userId': user_id})\
            .where("m.type = 'preference' OR m.source = $feedbackSource", {'feedbackSource': 'user_feedback'})\
            .return_('m.content AS content, m.importance AS importance')\
            .order_by('importance', 'DESC')\
            .limit(STYLE_LIMIT)\
            .build()
        stats = cypher()\
            .match('(m:Memory {userId: $userId})', {'userId': user_id})\
            .return_('count(m) AS totalMemories, avg(m.importance) AS avgImportance, max(m.createdAt) AS lastMemoryAt')\
            .build()

        try:
            topic_rows, style_rows, stat_rows = await self.graph.batch_execute([topics, styles, stats])
        except Exception as e:
            raise RelationshipError.relationship_query('get_user_memory_patterns', None, e)

        stat_row = stat_rows[0] if stat_rows else {}
        return UserMemoryPatterns(preferred_topics=rank_topics(topic_rows),
                                  communication_style=[row['content'] for row in style_rows if row.get('content')],
                                  total_memories=int(stat_row.get('totalMemories') or 0),
                                  average_importance=float(stat_row.get('avgImportance') or 0.0),
                                  recent_activity=from_iso(stat_row.get('lastMemoryAt')))

    async def get_graph_stats(self) -> GraphMemoryStats:
        """Memory, thread and relationship counts.

        Raises:
            RelationshipError: If the graph queries fail
        """
        queries = [
            cypher().match('(m:Memory)').return_('m.type AS type, count(m) AS count').build(),
            cypher().match('(t:Thread)').return_('count(t) AS count').build(),
            cypher().match('()-[r]->()').return_('count(r) AS count').build(),
        ]
        try:
            type_rows, thread_rows, rel_rows = await self.graph.batch_execute(queries)
        except Exception as e:
            raise RelationshipError.relationship_query('get_graph_stats', None, e)

        memory_types = {row.get('type') or 'unknown': int(row.get('count') or 0) for row in type_rows}
        return GraphMemoryStats(total_memories=sum(memory_types.values()),
                                total_threads=int(thread_rows[0].get('count') or 0) if thread_rows else 0,
                                total_relationships=int(rel_rows[0].get('count') or 0) if rel_rows else 0,
                                memory_types=memory_types)

    # Removal and schema

    async def remove_memories(self, memory_ids: List[str]) -> bool:
        """Detach-delete memories, then drop threads left without memories. Never raises."""
        if not memory_ids:
            return True

        queries = [
            cypher().unwind('$ids', 'memoryId').match('(m:Memory {id: memoryId})').detach_delete('m').add_parameter(
                'ids', list(memory_ids)).build(),
            cypher().match('(t:Thread)').where('NOT (t)-[:HAS_MEMORY]->()').detach_delete('t').build(),
        ]
        try:
            await self.graph.run_transaction(queries)
            logger.debug(f'Removed {len(memory_ids)} memories from graph')
            return True
        except Exception as e:
            error = RelationshipError.relationship_query('remove_memories', None, e)
            logger.error(f'Failed to remove memories from graph: {e}', extra={'error': error.to_dict()})
            return False

    def schema_queries(self) -> List[CypherQuery]:
        statements = [
            'CREATE CONSTRAINT memory_id_unique IF NOT EXISTS FOR (m:Memory) REQUIRE m.id IS UNIQUE',
            'CREATE CONSTRAINT thread_id_unique IF NOT EXISTS FOR (t:Thread) REQUIRE t.id IS UNIQUE',
            'CREATE INDEX memory_thread_idx IF NOT EXISTS FOR (m:Memory) ON (m.threadId)',
            'CREATE INDEX memory_type_idx IF NOT EXISTS FOR (m:Memory) ON (m.type)',
            'CREATE INDEX memory_created_idx IF NOT EXISTS FOR (m:Memory) ON (m.createdAt)',
            'CREATE INDEX memory_importance_idx IF NOT EXISTS FOR (m:Memory) ON (m.importance)',
        ]
        return [cypher().raw(statement).build() for statement in statements]

    async def initialize_schema(self) -> bool:
        """Create constraints and indexes where the backend supports them. Never raises."""
        if not self.graph.supports_schema_constraints:
            logger.info(f'{type(self.graph).__name__} does not support schema constraints, skipping graph schema setup')
            return False

        try:
            await self.graph.batch_execute(self.schema_queries())
            logger.info('Initialized memory graph schema')
            return True
        except Exception as e:
            error = RelationshipError.schema_management('initialize_schema', e)
            logger.warning(f'Failed to initialize graph schema (may already exist): {e}', extra={'error': error.to_dict()})
            return False
