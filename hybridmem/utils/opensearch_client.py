"""
OpenSearch vector store adapter for memory documents.
"""

import asyncio
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..interfaces.vector_store import (GetDocumentsOptions, VectorRecord, VectorSearchQuery, VectorStoreAdapter,
                                       VectorStoreData, VectorStoreStats, VectorUpdate)
from .config import OpenSearchConfig
from .errors import OperationError
from .logging_config import get_logger

logger = get_logger(__name__)

MAX_RESULT_WINDOW = 10000
SCAN_PAGE_SIZE = 1000
RANGE_OPERATORS = {'$gte': 'gte', '$lte': 'lte', '$gt': 'gt', '$lt': 'lt'}


def build_filter_clauses(where: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Translate the metadata filter language into OpenSearch bool filter clauses."""
    clauses = []
    for key, value in (where or {}).items():
        if isinstance(value, dict):
            if '$in' in value:
                clauses.append({'terms': {key: list(value['$in'])}})
            ranges = {RANGE_OPERATORS[op]: operand for op, operand in value.items() if op in RANGE_OPERATORS}
            if ranges:
                clauses.append({'range': {key: ranges}})
        elif isinstance(value, (list, tuple, set)):
            clauses.append({'terms': {key: list(value)}})
        else:
            clauses.append({'term': {key: value}})
    return clauses


def score_to_distance(score: float) -> float:
    """Invert the cosinesimil score translation score = 1 / (1 + distance)."""
    if not score or score <= 0:
        return 1.0
    return max(0.0, 1.0 / score - 1.0)


def _is_not_found(error: OpenSearchException) -> bool:
    # OpenSearchException args: (status_code, error_type, error_info)
    return len(error.args) >= 2 and (error.args[0] == 404 or error.args[1] == 'not_found')


class OpenSearchVectorAdapter(VectorStoreAdapter):
    """OpenSearch adapter with AWS authentication and error handling.

    Documents are indexed without a caller-supplied _id (serverless vector
    collections generate their own); lookups go through the 'id' keyword field.
    """

    service_name = 'opensearch'
    supports_nested_metadata = True

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None, index_sync_seconds: float = 15.0):
        """
        Initialize OpenSearch adapter.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client, mostly for tests
            index_sync_seconds: Wait after index creation before the index is used
        """
        self.config = config
        self.index_sync_seconds = index_sync_seconds

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)

        self.client = client
        logger.info(f'Initialized OpenSearch adapter for endpoint: {config.endpoint}')

    @staticmethod
    def index_name(collection: str) -> str:
        return collection.lower()

    def index_body(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'content': {
                        'type': 'text'
                    },
                    'thread_id': {
                        'type': 'keyword'
                    },
                    'type': {
                        'type': 'keyword'
                    },
                    'source': {
                        'type': 'keyword'
                    },
                    'importance': {
                        'type': 'float'
                    },
                    'persistent': {
                        'type': 'boolean'
                    },
                    'tags': {
                        'type': 'keyword'
                    },
                    'user_id': {
                        'type': 'keyword'
                    },
                    # Fixed-width ISO strings sort chronologically as keywords
                    'created_at': {
                        'type': 'keyword'
                    },
                    'last_accessed_at': {
                        'type': 'keyword'
                    },
                    'access_count': {
                        'type': 'integer'
                    },
                    'extra': {
                        'type': 'object',
                        'enabled': False
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

    def _to_document(self, data: VectorStoreData) -> Dict[str, Any]:
        document = {'id': data.id, 'content': data.content}
        document.update(data.metadata)
        if data.embedding:
            document['embedding'] = list(data.embedding)
        return document

    @staticmethod
    def _to_record(hit: Dict[str, Any], with_distance: bool = False) -> VectorRecord:
        source = dict(hit.get('_source') or {})
        doc_id = source.pop('id', None) or hit.get('_id')
        content = source.pop('content', '')
        embedding = source.pop('embedding', None)
        distance = score_to_distance(hit.get('_score')) if with_distance else None
        return VectorRecord(id=doc_id, content=content, metadata=source, embedding=embedding, distance=distance)

    def _source_filter(self, include_embeddings: bool) -> Dict[str, Any]:
        # Don't return embedding in results unless asked
        return {} if include_embeddings else {'excludes': ['embedding']}

    def _resolve_ids(self, index: str, ids: List[str]) -> Dict[str, str]:
        """Map memory ids to OpenSearch _id values."""
        resolved = {}
        for start in range(0, len(ids), MAX_RESULT_WINDOW):
            chunk = ids[start:start + MAX_RESULT_WINDOW]
            body = {'size': len(chunk), 'query': {'terms': {'id': chunk}}, '_source': ['id']}
            try:
                response = self.client.search(index=index, body=body)
            except NotFoundError:
                return resolved
            for hit in response['hits']['hits']:
                resolved[hit['_source']['id']] = hit['_id']
        return resolved

    def _raise(self, operation: str, collection: str, error: Exception):
        logger.error(f'Error during {operation} on {collection}: {error}')
        raise OperationError(f'OpenSearch {operation} failed: {error}', operation, self.service_name, error,
                             collection=collection)

    # Sync implementations run in worker threads

    def _ensure_collection_sync(self, collection: str) -> bool:
        index = self.index_name(collection)
        try:
            if self.client.indices.exists(index=index):
                logger.debug(f'Index {index} already exists')
                return False

            response = self.client.indices.create(index=index, body=self.index_body())
            logger.info(f'Created index {index}')
            return bool(response.get('acknowledged', False))
        except OpenSearchException as e:
            self._raise('ensure_collection', collection, e)

    def _store_sync(self, collection: str, data: VectorStoreData) -> str:
        index = self.index_name(collection)
        try:
            response = self.client.index(index=index, body=self._to_document(data))
        except OpenSearchException as e:
            self._raise('store', collection, e)

        if response.get('result') not in ('created', 'updated'):
            raise OperationError(f'Unexpected result indexing document: {response}', 'store', self.service_name)
        logger.debug(f'Indexed document {data.id} in {index}')
        return data.id

    def _store_batch_sync(self, collection: str, data: List[VectorStoreData]) -> List[str]:
        index = self.index_name(collection)
        actions = []
        for item in data:
            actions.append({'index': {'_index': index}})
            actions.append(self._to_document(item))

        try:
            response = self.client.bulk(body=actions)
        except OpenSearchException as e:
            self._raise('store_batch', collection, e)

        if response.get('errors'):
            failed = [item for item in response.get('items', []) if item.get('index', {}).get('error')]
            raise OperationError(f'Bulk indexing failed for {len(failed)} of {len(data)} documents', 'store_batch',
                                 self.service_name)
        logger.debug(f'Bulk indexed {len(data)} documents in {index}')
        return [item.id for item in data]

    def _search_sync(self, collection: str, query: VectorSearchQuery) -> List[VectorRecord]:
        index = self.index_name(collection)
        filters = build_filter_clauses(query.filter)

        if query.query_embedding:
            must = [{'knn': {'embedding': {'vector': list(query.query_embedding), 'k': query.limit}}}]
        else:
            must = [{'match': {'content': query.query_text}}]

        search_body = {
            'size': query.limit,
            'query': {
                'bool': {
                    'must': must,
                    'filter': filters
                }
            },
            '_source': self._source_filter(query.include_embeddings)
        }

        try:
            response = self.client.search(index=index, body=search_body)
        except NotFoundError:
            logger.debug(f'Index {index} does not exist, returning no results')
            return []
        except OpenSearchException as e:
            self._raise('search', collection, e)

        with_distance = bool(query.query_embedding)
        records = [self._to_record(hit, with_distance) for hit in response['hits']['hits']]
        if query.min_score is not None and with_distance:
            records = [r for r in records if r.relevance >= query.min_score]
        if with_distance:
            records.sort(key=lambda r: r.distance)

        logger.debug(f'Vector search returned {len(records)} results from {index}')
        return records

    def _page_body(self,
                   filters: List[Dict[str, Any]],
                   size: int,
                   options: GetDocumentsOptions,
                   search_after: Optional[List[Any]] = None,
                   offset: int = 0) -> Dict[str, Any]:
        order = 'desc' if options.newest_first else 'asc'
        body = {
            'size': size,
            'query': {
                'bool': {
                    'filter': filters
                }
            } if filters else {
                'match_all': {}
            },
            'sort': [{
                'created_at': {
                    'order': order
                }
            }, {
                'id': {
                    'order': order
                }
            }],
            '_source': self._source_filter(options.include_embeddings)
        }
        if search_after is not None:
            body['search_after'] = list(search_after)
        else:
            body['from'] = offset
        return body

    def _search_page(self, index: str, collection: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            response = self.client.search(index=index, body=body)
        except NotFoundError:
            return []
        except OpenSearchException as e:
            self._raise('get_documents', collection, e)
        return response['hits']['hits']

    def _get_documents_sync(self, collection: str, options: GetDocumentsOptions) -> List[VectorRecord]:
        index = self.index_name(collection)
        filters = build_filter_clauses(options.where)
        if options.ids is not None:
            filters.append({'terms': {'id': list(options.ids)}})

        if options.limit is None:
            return self._scan_documents(index, collection, filters, options)

        if options.search_after is None and options.offset + options.limit > MAX_RESULT_WINDOW:
            raise OperationError(f'Page {options.offset}+{options.limit} exceeds the {MAX_RESULT_WINDOW} result window, '
                                 'use search_after to page further',
                                 'get_documents',
                                 self.service_name,
                                 collection=collection,
                                 offset=options.offset,
                                 limit=options.limit)
        if options.limit == 0:
            return []

        body = self._page_body(filters, options.limit, options, options.search_after, options.offset)
        return [self._to_record(hit) for hit in self._search_page(index, collection, body)]

    def _scan_documents(self,
                        index: str,
                        collection: str,
                        filters: List[Dict[str, Any]],
                        options: GetDocumentsOptions) -> List[VectorRecord]:
        """Read every match with search_after on the (created_at, id) sort, then apply the offset."""
        records = []
        cursor = options.search_after
        while True:
            hits = self._search_page(index, collection, self._page_body(filters, SCAN_PAGE_SIZE, options, cursor))
            records.extend(self._to_record(hit) for hit in hits)
            if len(hits) < SCAN_PAGE_SIZE:
                break
            last = hits[-1]
            cursor = last.get('sort') or [last['_source'].get('created_at'), last['_source'].get('id')]

        logger.debug(f'Scanned {len(records)} documents from {index}')
        return records[options.offset:]

    def _delete_sync(self, collection: str, ids: List[str]) -> int:
        index = self.index_name(collection)
        try:
            resolved = self._resolve_ids(index, ids)
        except OpenSearchException as e:
            self._raise('delete', collection, e)

        deleted = 0
        for memory_id, doc_id in resolved.items():
            try:
                response = self.client.delete(index=index, id=doc_id)
                if response.get('result') == 'deleted':
                    deleted += 1
            except OpenSearchException as e:
                if _is_not_found(e):
                    logger.warning(f'Document {memory_id} not found for deletion')
                    continue
                self._raise('delete', collection, e)

        logger.debug(f'Deleted {deleted} of {len(ids)} documents from {index}')
        return deleted

    def _delete_by_filter_sync(self, collection: str, where: Dict[str, Any]) -> int:
        index = self.index_name(collection)
        search_body = {
            'size': 1000,
            'query': {
                'bool': {
                    'filter': build_filter_clauses(where)
                }
            },
            '_source': ['id']
        }

        deleted = 0
        while True:
            try:
                response = self.client.search(index=index, body=search_body)
            except NotFoundError:
                return deleted
            except OpenSearchException as e:
                self._raise('delete_by_filter', collection, e)

            hits = response['hits']['hits']
            if not hits:
                return deleted

            removed = 0
            for hit in hits:
                try:
                    if self.client.delete(index=index, id=hit['_id']).get('result') == 'deleted':
                        removed += 1
                except OpenSearchException as e:
                    if not _is_not_found(e):
                        self._raise('delete_by_filter', collection, e)
            deleted += removed
            if removed == 0:
                # Search results lag behind deletes; stop rather than spin
                return deleted

    def _update_documents_sync(self, collection: str, updates: List[VectorUpdate]) -> int:
        index = self.index_name(collection)
        try:
            resolved = self._resolve_ids(index, [u.id for u in updates])
        except OpenSearchException as e:
            self._raise('update_documents', collection, e)

        updated = 0
        for update in updates:
            doc_id = resolved.get(update.id)
            if doc_id is None:
                continue
            try:
                self.client.update(index=index, id=doc_id, body={'doc': update.metadata})
                updated += 1
            except OpenSearchException as e:
                if _is_not_found(e):
                    continue
                self._raise('update_documents', collection, e)
        return updated

    def _get_stats_sync(self, collection: str) -> VectorStoreStats:
        index = self.index_name(collection)
        try:
            count = self.client.count(index=index).get('count', 0)
        except NotFoundError:
            count = 0
        except OpenSearchException as e:
            self._raise('get_stats', collection, e)
        return VectorStoreStats(collection=collection,
                                document_count=int(count),
                                dimension=self.config.dimension,
                                details={'index': index})

    # VectorStoreAdapter hooks

    async def _ensure_collection(self, collection: str) -> bool:
        created = await asyncio.to_thread(self._ensure_collection_sync, collection)
        if created and self.index_sync_seconds > 0:
            logger.info(f'Waiting {self.index_sync_seconds}s for index {self.index_name(collection)} sync-up...')
            await asyncio.sleep(self.index_sync_seconds)
        return created

    async def _store(self, collection: str, data: VectorStoreData) -> str:
        return await asyncio.to_thread(self._store_sync, collection, data)

    async def _store_batch(self, collection: str, data: List[VectorStoreData]) -> List[str]:
        return await asyncio.to_thread(self._store_batch_sync, collection, data)

    async def _search(self, collection: str, query: VectorSearchQuery) -> List[VectorRecord]:
        return await asyncio.to_thread(self._search_sync, collection, query)

    async def _get_documents(self, collection: str, options: GetDocumentsOptions) -> List[VectorRecord]:
        return await asyncio.to_thread(self._get_documents_sync, collection, options)

    async def _delete(self, collection: str, ids: List[str]) -> int:
        return await asyncio.to_thread(self._delete_sync, collection, ids)

    async def _delete_by_filter(self, collection: str, where: Dict[str, Any]) -> int:
        return await asyncio.to_thread(self._delete_by_filter_sync, collection, where)

    async def _update_documents(self, collection: str, updates: List[VectorUpdate]) -> int:
        return await asyncio.to_thread(self._update_documents_sync, collection, updates)

    async def _get_stats(self, collection: str) -> VectorStoreStats:
        return await asyncio.to_thread(self._get_stats_sync, collection)

    async def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = await asyncio.to_thread(self.client.indices.exists, index='health_check')
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
