"""
Amazon Bedrock embedding provider.
"""

import asyncio
import json
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..interfaces.embedding import EmbeddingProvider
from .config import BedrockEmbedConfig
from .errors import EmbeddingError
from .logging_config import get_logger

logger = get_logger(__name__)

COHERE_BATCH_SIZE = 96


class BedrockEmbeddingProvider(EmbeddingProvider):
    """Amazon Bedrock embedding client.

    Each call is a single attempt; retries and timeouts are applied by the caller.
    """

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        # Create Bedrock runtime client
        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed provider with model: {self.model_id}')

    def _invoke(self, data: dict) -> dict:
        """
        Make a Bedrock API call.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            EmbeddingError: If the call fails
        """
        try:
            response = self.bedrock.invoke_model(body=json.dumps(data),
                                                 modelId=self.model_id,
                                                 accept='application/json',
                                                 contentType='application/json')
            return json.loads(response.get('body').read())
        except (ClientError, BotoCoreError) as e:
            logger.warning(f'Bedrock Embed request failed: {e}')
            raise EmbeddingError.api('invoke_model', e)

    def _embed_titan(self, text: str) -> List[float]:
        if not text or not text.strip():
            logger.warning('Empty text provided for embedding')
            return [0.0] * self.output_embedding_length

        response = self._invoke({'inputText': text, 'dimensions': self.output_embedding_length})
        embedding = response.get('embedding')
        if not embedding:
            raise EmbeddingError.generation('embed', 1, None)
        return embedding

    def _embed_cohere(self, texts: List[str]) -> List[List[float]]:
        if self.output_embedding_length != 1024:
            raise EmbeddingError.configuration(
                'embed', f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

        vectors = []
        for start in range(0, len(texts), COHERE_BATCH_SIZE):
            chunk = texts[start:start + COHERE_BATCH_SIZE]
            response = self._invoke({'input_type': 'search_document', 'texts': chunk})
            embeddings = response.get('embeddings') or []
            if len(embeddings) != len(chunk):
                raise EmbeddingError.generation('embed', 1, None)
            vectors.extend(embeddings)
        return vectors

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for texts.

        Args:
            texts: Texts to embed

        Returns:
            One embedding per text

        Raises:
            EmbeddingError: If embedding generation fails
        """
        if not texts:
            return []

        model = self.model_id.lower()
        if 'titan' in model:
            return list(await asyncio.gather(*(asyncio.to_thread(self._embed_titan, text) for text in texts)))
        if 'cohere' in model:
            return await asyncio.to_thread(self._embed_cohere, list(texts))

        raise EmbeddingError.configuration('embed', f'Unsupported model for embedding: {self.model_id}')
