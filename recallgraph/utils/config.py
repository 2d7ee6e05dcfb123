"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str
    retry_attempts: int
    retry_delay: float


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch vector and fuzzy indexes."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    dimension: int


@dataclass
class StoreConfig:
    """Which persistence substrate to use: 'neptune' or 'memory'."""
    backend: str


@dataclass
class RetrievalConfig:
    """Tuning for hybrid search and entity resolution."""
    neighbor_limit: int
    neighbor_weight: float
    shared_entity_cap: int
    fuzzy_min_score: float
    fuzzy_limit: int
    todo_search_limit: int


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
    store: StoreConfig
    retrieval: RetrievalConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Upstream failures are retried once after a fixed delay
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2000')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.3')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '2')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v1'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1536')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '2')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   retry_attempts=int(os.getenv('NEPTUNE_RETRY_ATTEMPTS', '2')),
                                   retry_delay=float(os.getenv('NEPTUNE_RETRY_DELAY', '1.0')))

    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'recallgraph'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1536')))

    store_config = StoreConfig(backend=os.getenv('STORE_BACKEND', 'neptune').lower())

    retrieval_config = RetrievalConfig(neighbor_limit=int(os.getenv('RETRIEVAL_NEIGHBOR_LIMIT', '5')),
                                       neighbor_weight=float(os.getenv('RETRIEVAL_NEIGHBOR_WEIGHT', '0.5')),
                                       shared_entity_cap=int(os.getenv('RETRIEVAL_SHARED_ENTITY_CAP', '10')),
                                       fuzzy_min_score=float(os.getenv('RETRIEVAL_FUZZY_MIN_SCORE', '0.3')),
                                       fuzzy_limit=int(os.getenv('RETRIEVAL_FUZZY_LIMIT', '10')),
                                       todo_search_limit=int(os.getenv('RETRIEVAL_TODO_SEARCH_LIMIT', '10')))

    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'stdio'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     store=store_config,
                     retrieval=retrieval_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
