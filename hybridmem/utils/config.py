"""
Configuration management for AWS services and memory store settings.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

EVICTION_STRATEGIES = ('lru', 'lfu', 'fifo', 'importance')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
COLLECTION_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,100}$')


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    dimension: int
    service: str = 'aoss'


@dataclass
class RetentionConfig:
    """Retention thresholds; None disables a bound."""
    max_age_seconds: Optional[float] = None
    max_per_thread: Optional[int] = None
    max_total: Optional[int] = None
    cleanup_interval_seconds: float = 3600.0
    eviction_strategy: str = 'lru'


@dataclass
class MemoryConfig:
    """Configuration for memory storage, search and retention."""
    collection: str = 'memory_entries'
    enable_semantic_search: bool = True
    enable_graph: bool = True
    storage_timeout: float = 30.0
    embedding_timeout: float = 20.0
    embedding_retry_attempts: int = 3
    embedding_retry_delay: float = 1.0
    embedding_retry_max_delay: float = 5.0
    batch_size: int = 50
    retention: RetentionConfig = field(default_factory=RetentionConfig)


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig


def _optional_number(name: str, cast=float):
    value = os.getenv(name, '').strip()
    if not value:
        return None
    try:
        return cast(value)
    except ValueError:
        raise ConfigurationError(f'{name} must be a number, got {value!r}', setting=name)


def _number(name: str, default: str, cast=float):
    value = os.getenv(name, default)
    try:
        return cast(value)
    except ValueError:
        raise ConfigurationError(f'{name} must be a number, got {value!r}', setting=name)


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def validate_memory_config(memory: MemoryConfig) -> MemoryConfig:
    """Check memory settings for consistency.

    Raises:
        ConfigurationError: If any setting is out of range
    """
    if not COLLECTION_NAME_PATTERN.match(memory.collection or ''):
        raise ConfigurationError(f'Invalid collection name: {memory.collection!r}', setting='collection')

    for name in ('storage_timeout', 'embedding_timeout', 'embedding_retry_delay', 'embedding_retry_max_delay'):
        if getattr(memory, name) <= 0:
            raise ConfigurationError(f'{name} must be positive', setting=name)
    if memory.embedding_retry_attempts < 1:
        raise ConfigurationError('embedding_retry_attempts must be at least 1', setting='embedding_retry_attempts')
    if memory.batch_size < 1:
        raise ConfigurationError('batch_size must be at least 1', setting='batch_size')

    retention = memory.retention
    if retention.eviction_strategy not in EVICTION_STRATEGIES:
        raise ConfigurationError(f'Unknown eviction strategy: {retention.eviction_strategy}', setting='eviction_strategy')
    for name in ('max_age_seconds', 'max_per_thread', 'max_total'):
        value = getattr(retention, name)
        if value is not None and value < 0:
            raise ConfigurationError(f'{name} cannot be negative', setting=name)
    if retention.cleanup_interval_seconds <= 0:
        raise ConfigurationError('cleanup_interval_seconds must be positive', setting='cleanup_interval_seconds')

    return memory


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
    if log_level not in LOG_LEVELS:
        raise ConfigurationError(f'Unknown log level: {log_level}', setting='LOG_LEVEL')

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=_number('BEDROCK_EMBED_DIMENSION', '1024', int))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=_number('NEPTUNE_PORT', '8182', int),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=_number('OPENSEARCH_PORT', '443', int),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         dimension=_number('OPENSEARCH_DIMENSION', '1024', int),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'))

    # Retention configuration
    retention_config = RetentionConfig(max_age_seconds=_optional_number('MEMORY_RETENTION_MAX_AGE_SECONDS'),
                                       max_per_thread=_optional_number('MEMORY_RETENTION_MAX_PER_THREAD', int),
                                       max_total=_optional_number('MEMORY_RETENTION_MAX_TOTAL', int),
                                       cleanup_interval_seconds=_number('MEMORY_RETENTION_CLEANUP_INTERVAL_SECONDS', '3600'),
                                       eviction_strategy=os.getenv('MEMORY_RETENTION_EVICTION_STRATEGY', 'lru').lower())

    # Memory configuration
    memory_config = MemoryConfig(collection=os.getenv('MEMORY_COLLECTION', 'memory_entries'),
                                 enable_semantic_search=_flag('MEMORY_ENABLE_SEMANTIC_SEARCH', 'true'),
                                 enable_graph=_flag('MEMORY_ENABLE_GRAPH', 'true'),
                                 storage_timeout=_number('MEMORY_STORAGE_TIMEOUT_SECONDS', '30'),
                                 embedding_timeout=_number('MEMORY_EMBEDDING_TIMEOUT_SECONDS', '20'),
                                 embedding_retry_attempts=_number('MEMORY_EMBEDDING_RETRY_ATTEMPTS', '3', int),
                                 embedding_retry_delay=_number('MEMORY_EMBEDDING_RETRY_DELAY', '1.0'),
                                 embedding_retry_max_delay=_number('MEMORY_EMBEDDING_RETRY_MAX_DELAY', '5.0'),
                                 batch_size=_number('MEMORY_BATCH_SIZE', '50', int),
                                 retention=retention_config)

    return AppConfig(environment=environment,
                     log_level=log_level,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     memory=validate_memory_config(memory_config))


# Global configuration instance
config = load_config()
