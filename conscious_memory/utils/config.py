"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()
load_dotenv('.env.local', override=True)


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    timeout: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    timeout: int


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
    service: str
    index_name: str
    dimension: int
    refresh: str
    scan_page_size: int


@dataclass
class SearchConfig:
    """Configuration for hybrid search ranking and pagination."""
    default_min_score: float
    keyword_weight: float
    candidate_pool_size: int
    default_page_size: int
    max_page_size: int


@dataclass
class SyncConfig:
    """Configuration for the background knowledge graph sync."""
    enabled: bool
    interval_seconds: float
    batch_size: int
    max_retries: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    search: SearchConfig
    sync: SyncConfig
    mcp: MCPConfig


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.1')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          timeout=int(os.getenv('BEDROCK_LLM_TIMEOUT', '60')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '2')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '0.5')),
                                              timeout=int(os.getenv('BEDROCK_EMBED_TIMEOUT', '10')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'conscious_memories'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         refresh=os.getenv('OPENSEARCH_REFRESH', 'wait_for'),
                                         scan_page_size=int(os.getenv('OPENSEARCH_SCAN_PAGE_SIZE', '200')))

    # Hybrid search configuration
    search_config = SearchConfig(default_min_score=float(os.getenv('SEARCH_DEFAULT_MIN_SCORE', '0.15')),
                                 keyword_weight=float(os.getenv('SEARCH_KEYWORD_WEIGHT', '0.8')),
                                 candidate_pool_size=int(os.getenv('SEARCH_CANDIDATE_POOL_SIZE', '200')),
                                 default_page_size=int(os.getenv('SEARCH_DEFAULT_PAGE_SIZE', '10')),
                                 max_page_size=int(os.getenv('SEARCH_MAX_PAGE_SIZE', '50')))

    # Knowledge graph sync configuration
    sync_config = SyncConfig(enabled=_get_bool('SYNC_ENABLED', 'false'),
                             interval_seconds=float(os.getenv('SYNC_INTERVAL_SECONDS', '30')),
                             batch_size=int(os.getenv('SYNC_BATCH_SIZE', '100')),
                             max_retries=int(os.getenv('SYNC_MAX_RETRIES', '3')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'stdio'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     search=search_config,
                     sync=sync_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
