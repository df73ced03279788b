"""
Builds the service graph from configuration.
"""

from dataclasses import dataclass
from typing import Optional

from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.logging_config import get_logger
from ..utils.scout_cache import ScoutCache
from ..utils.sqlite_client import SqliteClient
from ..utils.vector_engine import VocabBuilder
from ..utils.web_search import WebSearchClient
from .chat_pipeline import ChatPipeline
from .context_assembler import ContextAssembler
from .context_scout import ContextScout
from .generation_loop import GenerationLoop
from .memory_management import MemoryManagementService
from .profile_service import ProfileService
from .speech import SpeechService

logger = get_logger(__name__)


@dataclass
class ServiceRegistry:
    config: AppConfig
    store: SqliteClient
    llm: BedrockLLM
    search: WebSearchClient
    vocab_builder: VocabBuilder
    scout_cache: ScoutCache
    memory: MemoryManagementService
    scout: ContextScout
    assembler: ContextAssembler
    generation: GenerationLoop
    pipeline: ChatPipeline
    profiles: ProfileService
    speech: SpeechService


def build_registry(config: AppConfig,
                   store: Optional[SqliteClient] = None,
                   llm: Optional[BedrockLLM] = None,
                   search: Optional[WebSearchClient] = None,
                   speech: Optional[SpeechService] = None) -> ServiceRegistry:
    """Wire every service. Collaborators may be injected, e.g. fakes in tests."""
    store = store or SqliteClient(config.storage)
    llm = llm or BedrockLLM(config.bedrock_llm)
    search = search or WebSearchClient(config.web_search)
    speech = speech or SpeechService.from_config(config.speech)

    vocab_builder = VocabBuilder(config.memory.vocab_size)
    scout_cache = ScoutCache(vocab_builder,
                             max_entries=config.scout.cache_max_entries,
                             ttl_seconds=config.scout.cache_ttl_seconds,
                             similarity_threshold=config.scout.cache_similarity_threshold)
    memory = MemoryManagementService(store, llm, vocab_builder, config.memory)
    scout = ContextScout(llm, search, scout_cache, config.scout)
    assembler = ContextAssembler(memory, scout, llm, vocab_builder, config.memory, config.pipeline)
    generation = GenerationLoop(llm, config.bedrock_llm, config.pipeline)
    pipeline = ChatPipeline(store, assembler, scout, generation, memory)
    profiles = ProfileService(store, llm)

    logger.info('Service registry built')
    return ServiceRegistry(config=config,
                           store=store,
                           llm=llm,
                           search=search,
                           vocab_builder=vocab_builder,
                           scout_cache=scout_cache,
                           memory=memory,
                           scout=scout,
                           assembler=assembler,
                           generation=generation,
                           pipeline=pipeline,
                           profiles=profiles,
                           speech=speech)
