"""
Semantic search service combining vector similarity with graph relationships.
"""

import asyncio
from dataclasses import replace
from typing import Any, Dict, List, Optional

from ..models.core import MemoryEntry
from ..models.search import AnswerSearchResult, ContextSearchResult, MemorySearchOptions, SORT_FIELDS
from ..utils.errors import InvalidInputError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_iso
from .memory_graph import MemoryGraphService
from .memory_storage import MemoryStorageService

logger = get_logger(__name__)

EXPANSION_HITS = 5
PATHS_PER_HIT = 10
MAX_RELEVANCE = 1.0

DIRECT_CONTEXT_LIMIT = 5
DIRECT_CONTEXT_MIN_RELEVANCE = 0.7
CONTEXTUAL_TYPES = ['preference', 'fact', 'context']
CONTEXTUAL_TOPICS = 3
CONTEXTUAL_LIMIT = 3
CONTEXTUAL_MIN_RELEVANCE = 0.5

ANSWER_FACT_TYPES = ['fact', 'context', 'summary']
ANSWER_LIMIT = 8


def relevance_of(entry: MemoryEntry) -> float:
    return entry.relevance_score or 0.0


def build_where(options: MemorySearchOptions) -> Optional[Dict[str, Any]]:
    """Translate search options into the vector store filter language."""
    where: Dict[str, Any] = {}
    if options.thread_ids:
        where['thread_id'] = options.thread_ids[0] if len(options.thread_ids) == 1 else {'$in': list(options.thread_ids)}
    if options.types:
        where['type'] = options.types[0] if len(options.types) == 1 else {'$in': list(options.types)}
    if options.user_id:
        where['user_id'] = options.user_id

    created_at = {}
    if options.date_from:
        created_at['$gte'] = to_iso(options.date_from)
    if options.date_to:
        created_at['$lte'] = to_iso(options.date_to)
    if created_at:
        where['created_at'] = created_at

    return where or None


def sort_entries(entries: List[MemoryEntry], sort_by: str = 'relevance', sort_order: str = 'desc') -> List[MemoryEntry]:
    """Sort by the requested field; ties go to the newest entry, then the smaller id."""
    if sort_by == 'created_at':
        primary = lambda e: e.created_at
    elif sort_by == 'access_count':
        primary = lambda e: e.access_count
    elif sort_by == 'importance':
        primary = lambda e: e.metadata.importance
    else:
        primary = relevance_of

    # Stable sorts from the least to the most significant key
    result = sorted(entries, key=lambda e: e.id)
    result.sort(key=lambda e: e.created_at, reverse=True)
    result.sort(key=primary, reverse=sort_order == 'desc')
    return result


def merge_keep_max(*result_sets: List[MemoryEntry]) -> List[MemoryEntry]:
    """Deduplicate by id, keeping the copy with the highest relevance."""
    merged: Dict[str, MemoryEntry] = {}
    for results in result_sets:
        for entry in results:
            existing = merged.get(entry.id)
            if existing is None or relevance_of(entry) > relevance_of(existing):
                merged[entry.id] = entry
    return list(merged.values())


def answer_confidence(entries: List[MemoryEntry]) -> float:
    if not entries:
        return 0.0
    average = sum(relevance_of(e) for e in entries) / len(entries)
    factual_boost = 0.1 * sum(1 for e in entries if e.metadata.type in ('fact', 'context'))
    persistent_boost = 0.05 * sum(1 for e in entries if e.metadata.persistent)
    return min(MAX_RELEVANCE, average + factual_boost + persistent_boost)


class SemanticSearchService:
    """Hybrid search over the memory store.

    Vector similarity comes from the storage service; relationship expansion comes
    from the graph service when one is configured. Graph problems never fail a search.
    """

    def __init__(self, storage: MemoryStorageService, graph_service: Optional[MemoryGraphService] = None):
        """
        Initialize the search service.

        Args:
            storage: Memory storage service
            graph_service: Graph service, None disables relationship expansion
        """
        self.storage = storage
        self.graph_service = graph_service
        logger.info(f"Initialized SemanticSearchService (graph {'enabled' if graph_service else 'disabled'})")

    async def vector_search(self, options: MemorySearchOptions) -> List[MemoryEntry]:
        """Vector search with post-filtering on tags and relevance, sorted per the options.

        Raises:
            InvalidInputError: If sort_by is unknown
            StorageError: If the vector store query fails
        """
        if options.sort_by not in SORT_FIELDS:
            raise InvalidInputError(f'Invalid sort field: {options.sort_by}', operation='search')

        entries = await self.storage.search_similar(options.query or '', build_where(options), options.limit,
                                                    options.min_relevance)

        if options.tags:
            wanted = set(options.tags)
            entries = [e for e in entries if e.metadata.tags & wanted]
        if options.min_relevance is not None:
            entries = [e for e in entries if relevance_of(e) >= options.min_relevance]

        return sort_entries(entries, options.sort_by, options.sort_order)[:options.limit]

    async def hybrid_search(self, options: MemorySearchOptions) -> List[MemoryEntry]:
        """Vector search optionally expanded with graph-related memories.

        Related memories get `path_similarity * boost_related` added to their vector
        relevance (0 if they were not a vector hit), clamped to 1.0. The merged
        result follows options.sort_by and options.sort_order like vector_search.
        """
        vector_results = await self.vector_search(options)

        if not options.include_related or self.graph_service is None or not vector_results:
            return vector_results

        try:
            boosts = await self._related_boosts(vector_results[:EXPANSION_HITS], options)
            if not boosts:
                return vector_results
            related = await self.storage.get_by_ids(list(boosts))
        except Exception as e:
            logger.warning(f'Graph expansion failed, returning vector results only: {e}')
            return vector_results

        hits = {entry.id: entry for entry in vector_results}
        boosted = []
        for entry in related:
            base = relevance_of(hits[entry.id]) if entry.id in hits else 0.0
            boosted.append(entry.with_relevance(min(MAX_RELEVANCE, base + boosts[entry.id])))

        merged = merge_keep_max(vector_results, boosted)
        return sort_entries(merged, options.sort_by, options.sort_order)[:options.limit]

    async def _related_boosts(self, hits: List[MemoryEntry], options: MemorySearchOptions) -> Dict[str, float]:
        boosts: Dict[str, float] = {}
        for hit in hits:
            for related in await self.graph_service.find_related_paths(hit.id, options.relationship_depth, PATHS_PER_HIT):
                score = related.similarity * options.boost_related
                boosts[related.memory_id] = max(boosts.get(related.memory_id, 0.0), score)
        return boosts

    async def context_aware_search(self,
                                   query: str,
                                   thread_id: str,
                                   user_id: Optional[str] = None,
                                   options: Optional[MemorySearchOptions] = None) -> ContextSearchResult:
        """Direct matches in the thread plus matches on the user's preferred topics."""
        if options is None:
            direct_options = MemorySearchOptions(query=query,
                                                 thread_ids=[thread_id],
                                                 limit=DIRECT_CONTEXT_LIMIT,
                                                 min_relevance=DIRECT_CONTEXT_MIN_RELEVANCE)
        else:
            direct_options = replace(options,
                                     query=query,
                                     thread_ids=options.thread_ids or [thread_id],
                                     min_relevance=DIRECT_CONTEXT_MIN_RELEVANCE
                                     if options.min_relevance is None else options.min_relevance)

        patterns = None
        if user_id and self.graph_service is not None:
            try:
                patterns = await self.graph_service.get_user_memory_patterns(user_id)
            except Exception as e:
                logger.warning(f'Could not load memory patterns for user {user_id}: {e}')

        direct_matches = await self.vector_search(direct_options)

        contextual_matches = []
        if patterns and patterns.preferred_topics:
            contextual_matches = await self.vector_search(
                MemorySearchOptions(query=query,
                                    thread_ids=direct_options.thread_ids,
                                    types=CONTEXTUAL_TYPES,
                                    tags=patterns.preferred_topics[:CONTEXTUAL_TOPICS],
                                    limit=CONTEXTUAL_LIMIT,
                                    min_relevance=CONTEXTUAL_MIN_RELEVANCE))

        return ContextSearchResult(direct_matches=direct_matches,
                                   contextual_matches=contextual_matches,
                                   user_patterns=patterns)

    async def search_for_answer(self, question: str, thread_id: Optional[str] = None) -> AnswerSearchResult:
        """Gather memories likely to answer a question and estimate confidence."""
        direct, factual = await asyncio.gather(
            self.vector_search(
                MemorySearchOptions(query=question,
                                    thread_ids=[thread_id] if thread_id else None,
                                    limit=5,
                                    min_relevance=0.6)),
            self.vector_search(MemorySearchOptions(query=question, types=ANSWER_FACT_TYPES, limit=3,
                                                   min_relevance=0.5)))

        memories = sort_entries(merge_keep_max(direct, factual))[:ANSWER_LIMIT]
        sources = list(dict.fromkeys(e.metadata.source for e in memories if e.metadata.source))
        return AnswerSearchResult(memories=memories, confidence=answer_confidence(memories), sources=sources)

    async def find_similar_memories(self, memory_id: str, limit: int = 5, min_similarity: float = 0.6) -> List[MemoryEntry]:
        """Memories whose content is close to the given memory's content, excluding itself."""
        sources = await self.storage.get_by_ids([memory_id])
        if not sources:
            return []

        # One extra result since the source memory usually matches itself
        results = await self.storage.search_similar(sources[0].content, limit=limit + 1, min_relevance=min_similarity)
        similar = [e for e in results if e.id != memory_id and relevance_of(e) >= min_similarity]
        return sort_entries(similar)[:limit]

    async def create_semantic_links(self, batch_size: int = 50, threshold: float = 0.8) -> int:
        """Link every embedded memory to its closest neighbours above the threshold.

        Returns:
            Number of SEMANTICALLY_SIMILAR relationships written
        """
        if self.graph_service is None:
            logger.info('Graph disabled, skipping semantic link creation')
            return 0

        logger.info('Starting semantic link creation')
        processed = 0
        linked = 0
        batch = await self.storage.get_page(batch_size, include_embeddings=True)
        while batch:
            for entry in batch:
                if not entry.embedding:
                    continue
                for similar in await self.find_similar_memories(entry.id, 3, threshold):
                    if relevance_of(similar) <= threshold:
                        continue
                    if await self.graph_service.link_memories(entry.id, similar.id, relevance_of(similar)):
                        linked += 1

            processed += len(batch)
            logger.debug(f'Processed {processed} memories for semantic linking')
            if len(batch) < batch_size:
                break
            batch = await self.storage.get_page(batch_size, include_embeddings=True, after=batch[-1])

        logger.info(f'Completed semantic link creation for {processed} memories, {linked} links written')
        return linked
