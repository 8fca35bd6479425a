"""
Health check utilities for the memory store backends.
"""

from typing import Any, Dict, Optional

from ..interfaces.embedding import EmbeddingProvider
from ..interfaces.graph_store import GraphStoreAdapter
from ..interfaces.vector_store import VectorStoreAdapter
from .logging_config import get_logger

logger = get_logger(__name__)


async def _component_status(component, service: str, **details) -> Dict[str, Any]:
    try:
        healthy = await component.health_check()
        return {'healthy': bool(healthy), 'service': service, **details}
    except Exception as e:
        return {'healthy': False, 'service': service, 'error': str(e), **details}


async def get_health_status(vector: VectorStoreAdapter,
                            graph: Optional[GraphStoreAdapter] = None,
                            embedder: Optional[EmbeddingProvider] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each configured component
    """
    health_status = {'vector_store': await _component_status(vector, type(vector).__name__)}

    if graph is not None:
        health_status['graph_store'] = await _component_status(graph, type(graph).__name__)

    if embedder is not None:
        health_status['embedding'] = await _component_status(embedder, type(embedder).__name__,
                                                             model=getattr(embedder, 'model_id', None))

    return health_status


async def check_health(vector: VectorStoreAdapter,
                       graph: Optional[GraphStoreAdapter] = None,
                       embedder: Optional[EmbeddingProvider] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = await get_health_status(vector, graph, embedder)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False
