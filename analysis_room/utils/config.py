"""
Configuration management for backend services and pipeline settings.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def first_env(*names: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first non-empty environment variable among names.

    Integration keys are listed before direct keys so the integration wins.
    """
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock generation backend."""
    region: str
    model_id: str
    max_tokens: int
    summary_max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    timeout_seconds: float


@dataclass
class WebSearchConfig:
    """Configuration for the grounded web search used by the scout."""
    api_key: Optional[str]
    endpoint: str
    max_results: int
    timeout_seconds: float


@dataclass
class SpeechConfig:
    """Configuration for text-to-speech providers."""
    elevenlabs_api_key: Optional[str]
    elevenlabs_base_url: str
    elevenlabs_model_id: str
    polly_region: str
    polly_engine: str
    timeout_seconds: float


@dataclass
class MemoryConfig:
    """Configuration for episodic memory, summaries and retrieval."""
    vocab_size: int
    retrieval_window: int
    top_k: int
    similarity_threshold: float
    drift_threshold: float
    summary_threshold: int
    history_limit: int


@dataclass
class ScoutConfig:
    """Configuration for the context scout and its cache."""
    cache_max_entries: int
    cache_ttl_seconds: float
    cache_similarity_threshold: float
    short_message_words: int


@dataclass
class PipelineConfig:
    """Configuration for the per-expert generation loop."""
    turn_pause_seconds: float
    keepalive_seconds: float
    monologue_enabled: bool
    response_language: str


@dataclass
class StorageConfig:
    """Configuration for the SQLite store and profile encryption."""
    database_path: str
    encryption_key: Optional[str]


@dataclass
class APIConfig:
    """Configuration for the HTTP interface."""
    host: str
    port: int
    cors_origins: List[str] = field(default_factory=list)


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
    web_search: WebSearchConfig
    speech: SpeechConfig
    memory: MemoryConfig
    scout: ScoutConfig
    pipeline: PipelineConfig
    storage: StorageConfig
    api: APIConfig
    mcp: MCPConfig


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Generation backend configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-5-haiku-20241022-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          summary_max_tokens=int(os.getenv('BEDROCK_LLM_SUMMARY_MAX_TOKENS', '800')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.8')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '2')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          timeout_seconds=float(os.getenv('BEDROCK_LLM_TIMEOUT_SECONDS', '45')))

    # Web search configuration
    web_search_config = WebSearchConfig(api_key=first_env('AI_INTEGRATIONS_TAVILY_API_KEY', 'TAVILY_API_KEY'),
                                        endpoint=os.getenv('WEB_SEARCH_ENDPOINT', 'https://api.tavily.com/search'),
                                        max_results=int(os.getenv('WEB_SEARCH_MAX_RESULTS', '5')),
                                        timeout_seconds=float(os.getenv('WEB_SEARCH_TIMEOUT_SECONDS', '20')))

    # Speech configuration
    speech_config = SpeechConfig(elevenlabs_api_key=first_env('AI_INTEGRATIONS_ELEVENLABS_API_KEY', 'ELEVENLABS_API_KEY'),
                                 elevenlabs_base_url=os.getenv('ELEVENLABS_BASE_URL', 'https://api.elevenlabs.io'),
                                 elevenlabs_model_id=os.getenv('ELEVENLABS_MODEL_ID', 'eleven_multilingual_v2'),
                                 polly_region=os.getenv('POLLY_AWS_REGION', 'us-east-1'),
                                 polly_engine=os.getenv('POLLY_ENGINE', 'neural'),
                                 timeout_seconds=float(os.getenv('SPEECH_TIMEOUT_SECONDS', '30')))

    # Memory configuration
    memory_config = MemoryConfig(vocab_size=int(os.getenv('MEMORY_VOCAB_SIZE', '200')),
                                 retrieval_window=int(os.getenv('MEMORY_RETRIEVAL_WINDOW', '50')),
                                 top_k=int(os.getenv('MEMORY_TOP_K', '3')),
                                 similarity_threshold=float(os.getenv('MEMORY_SIMILARITY_THRESHOLD', '0.7')),
                                 drift_threshold=float(os.getenv('MEMORY_DRIFT_THRESHOLD', '0.4')),
                                 summary_threshold=int(os.getenv('MEMORY_SUMMARY_THRESHOLD', '16')),
                                 history_limit=int(os.getenv('MEMORY_HISTORY_LIMIT', '10')))

    # Scout configuration
    scout_config = ScoutConfig(cache_max_entries=int(os.getenv('SCOUT_CACHE_MAX_ENTRIES', '5')),
                               cache_ttl_seconds=float(os.getenv('SCOUT_CACHE_TTL_SECONDS', '600')),
                               cache_similarity_threshold=float(os.getenv('SCOUT_CACHE_SIMILARITY', '0.85')),
                               short_message_words=int(os.getenv('SCOUT_SHORT_MESSAGE_WORDS', '15')))

    # Pipeline configuration
    pipeline_config = PipelineConfig(turn_pause_seconds=float(os.getenv('PIPELINE_TURN_PAUSE_SECONDS', '0.5')),
                                     keepalive_seconds=float(os.getenv('PIPELINE_KEEPALIVE_SECONDS', '15')),
                                     monologue_enabled=_env_bool('PIPELINE_MONOLOGUE_ENABLED', True),
                                     response_language=os.getenv('PIPELINE_RESPONSE_LANGUAGE', 'Hebrew'))

    # Storage configuration
    storage_config = StorageConfig(database_path=os.getenv('DATABASE_PATH', 'analysis_room.db'),
                                   encryption_key=first_env('PROFILE_ENCRYPTION_KEY', 'DATABASE_URL'))

    # HTTP configuration
    cors_origins = [origin.strip() for origin in os.getenv('API_CORS_ORIGINS', '').split(',') if origin.strip()]
    api_config = APIConfig(host=os.getenv('API_HOST', '127.0.0.1'), port=int(os.getenv('API_PORT', '5000')), cors_origins=cors_origins)

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     web_search=web_search_config,
                     speech=speech_config,
                     memory=memory_config,
                     scout=scout_config,
                     pipeline=pipeline_config,
                     storage=storage_config,
                     api=api_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
