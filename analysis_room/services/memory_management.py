"""
Memory Management Service for episodic memory, rolling summaries, profile refresh and the ledger.
"""

import json
import re
from typing import List, Optional

from ..models.core import AcquiredItem, Conversation, EpisodicMemory, RollingSummary, UserProfile
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, user_message
from ..utils.config import MemoryConfig
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from ..utils.sqlite_client import SqliteClient, SqliteError
from ..utils.vector_engine import VocabBuilder, build_profile_summary, rank_by_similarity
from .personas import LEDGER_SOURCE

logger = get_logger(__name__)

LEDGER_ITEM_PATTERNS = (
    re.compile(r'(?:רכוש|השק|התקן|כתוב)\s+(.+?)(?:\.|,|$)', re.MULTILINE),
    re.compile(r'\b(?:acquire|buy|purchase|launch|install|write)\s+(.+?)(?:\.|,|$)', re.IGNORECASE | re.MULTILINE),
    re.compile(r'(\d+\s*(?:גרם|ג\'|מ"ל|ליטר|ק"ג|יחידות|קילו|kg|g|ml|liters?|units?)\s+[^.,\n]+)', re.IGNORECASE),
)
MIN_ITEM_LENGTH = 4
MAX_ITEM_LENGTH = 199

SUMMARY_PROMPT = """Summarize the conversation segment in 2-4 sentences and list its main topics.
Return strict JSON only: {"summary": "...", "topics": ["topic", "..."]}"""

LIVING_SUMMARY_SEGMENTS = 3


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


def extract_ledger_items(text: str) -> List[str]:
    """Extract candidate acquired-item phrases from an operational turn.

    Over-inclusive: imperative acquisition verbs and quantity+unit phrases.
    Results are trimmed, length-bounded and deduplicated in order.
    """
    items: List[str] = []
    for pattern in LEDGER_ITEM_PATTERNS:
        for match in pattern.finditer(text):
            item = match.group(1).strip()
            if MIN_ITEM_LENGTH <= len(item) <= MAX_ITEM_LENGTH and item not in items:
                items.append(item)
    return items


class MemoryManagementService:
    """Unified service for episodic memory, summaries, profile refresh and the acquired-items ledger."""

    def __init__(self, store: SqliteClient, llm: BedrockLLM, vocab_builder: VocabBuilder, config: MemoryConfig):
        """Initialize the memory management service."""
        self.store = store
        self.llm = llm
        self.vocab_builder = vocab_builder
        self.config = config
        logger.info('Initialized MemoryManagementService')

    def retrieve(self, query: str) -> List[EpisodicMemory]:
        """Find episodic memories relevant to query.

        The vocabulary is rebuilt from the query plus the most recent memory
        texts, and both sides are vectorized under that one build.

        Args:
            query: Current user message

        Returns:
            Up to top_k memories above the threshold, else the top_k best

        Raises:
            MemoryManagementError: If memories cannot be read
        """
        try:
            memories = self.store.recent_memories(self.config.retrieval_window)
        except SqliteError as e:
            raise MemoryManagementError(f'Failed to load memories: {e}')

        ranked = rank_by_similarity(self.vocab_builder,
                                    query, [memory.text for memory in memories],
                                    top_k=self.config.top_k,
                                    threshold=self.config.similarity_threshold)
        logger.debug(f'Episodic retrieval scores: {[round(score, 3) for _, score in ranked]}')
        return [memories[index] for index, _ in ranked]

    def record_episode(self, text: str, category: str) -> EpisodicMemory:
        """Store the user's message as an episodic memory."""
        try:
            recent = self.store.recent_memories(self.config.retrieval_window)
            vocabulary = self.vocab_builder.build([text, *(memory.text for memory in recent)])
            return self.store.add_memory(text, vocabulary.vectorize(text).tolist(), category)
        except SqliteError as e:
            logger.error(f'Failed to record episodic memory: {e}')
            raise MemoryManagementError(f'Failed to record episodic memory: {e}')

    def list_memories(self, limit: int = 50) -> List[EpisodicMemory]:
        return self.store.recent_memories(limit)

    def needs_summary(self, conversation: Conversation) -> bool:
        return len(conversation.messages) - conversation.summarized_count >= self.config.summary_threshold

    async def maybe_summarize(self, conversation: Conversation) -> Optional[RollingSummary]:
        """Summarize the unsummarized suffix once it reaches the threshold.

        Only messages past the watermark are sent; the watermark then moves to
        the end of the transcript.

        Returns:
            The new RollingSummary, or None when below the threshold

        Raises:
            MemoryManagementError: If the backend call or the write fails
        """
        if not self.needs_summary(conversation):
            return None

        segment = conversation.messages[conversation.summarized_count:]
        transcript = '\n'.join(f'{message.role}: {message.content}' for message in segment)

        try:
            raw, _ = await self.llm.agenerate(messages=[user_message(transcript)], system_prompt=SUMMARY_PROMPT, max_tokens=600, temperature=0.3)
        except BedrockLLMError as e:
            logger.error(f'Rolling summary generation failed for conversation {conversation.id}: {e}')
            raise MemoryManagementError(f'Rolling summary generation failed: {e}')

        try:
            parsed = parse_json_response(raw)
            summary = str(parsed.get('summary', '')).strip()
            topics = [str(topic) for topic in parsed.get('topics') or []]
        except (json.JSONDecodeError, AttributeError) as e:
            logger.warning(f'Summary response was not JSON, storing raw text: {e}')
            summary, topics = raw.strip()[:500], []

        if not summary:
            raise MemoryManagementError('Rolling summary generation returned no text')

        try:
            rolling = self.store.add_summary(summary, topics)
            self.store.set_summarized_count(conversation.id, len(conversation.messages))
        except SqliteError as e:
            raise MemoryManagementError(f'Failed to store rolling summary: {e}')

        logger.info(f'Summarized {len(segment)} messages of conversation {conversation.id}')
        return rolling

    def refresh_profile(self) -> UserProfile:
        """Merge derived topics, interests and patterns into the profile.

        core_rules are carried over untouched. An empty living summary is seeded
        from the latest rolling summaries; a non-empty one is left as it is.
        """
        try:
            profile = self.store.get_user_profile()
            memories = self.store.recent_memories(self.config.retrieval_window)
            summaries = self.store.recent_summaries(LIVING_SUMMARY_SEGMENTS)
        except SqliteError as e:
            raise MemoryManagementError(f'Failed to load profile inputs: {e}')

        derived = build_profile_summary([m.text for m in memories], [m.category for m in memories])
        core_profile = {**profile.core_profile, **derived}
        if profile.core_rules:
            core_profile['core_rules'] = profile.core_rules

        living_summary = profile.living_summary
        if summaries and not living_summary.strip():
            living_summary = '\n'.join(s.summary for s in reversed(summaries))

        return self.store.save_user_profile(UserProfile(core_profile=core_profile, living_summary=living_summary))

    def record_ledger_items(self, turn_text: str, context: str) -> List[AcquiredItem]:
        """Append every item extracted from an operational turn to the ledger."""
        items = extract_ledger_items(turn_text)
        recorded = []
        for item in items:
            try:
                recorded.append(self.store.add_acquired_item(item, LEDGER_SOURCE.value, context))
            except SqliteError as e:
                raise MemoryManagementError(f'Failed to record ledger item: {e}')
        if recorded:
            logger.info(f'Recorded {len(recorded)} acquired items')
        return recorded

    def acquired_items(self) -> List[AcquiredItem]:
        return self.store.list_acquired_items()
