"""
Embedding provider interface.
"""

from abc import ABC, abstractmethod
from typing import List

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class EmbeddingProvider(ABC):
    """Turns texts into vectors. Implementations raise EmbeddingError on failure."""

    service_name = 'embedding'

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per input text, in order."""

    async def health_check(self) -> bool:
        try:
            vectors = await self.embed(['health check'])
            return bool(vectors and vectors[0])
        except Exception as e:
            logger.error(f'Embedding provider health check failed: {e}')
            return False
