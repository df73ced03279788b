"""
Chat pipeline: runs one round from user message to the final result event.

Nothing is persisted until every expert has finished; closing the event
stream early drops the round.
"""

import time
import uuid
from typing import AsyncIterator, List, Optional

from ..models.core import USER_ROLE, Conversation, ExpertId, Message, RouterDecision, Turn, UserProfile
from ..utils.logging_config import get_logger
from ..utils.profile_crypto import ProfileCryptoError
from ..utils.sqlite_client import SqliteClient, SqliteError
from ..utils.timestamp_utils import to_iso
from . import expert_router, safety
from .context_assembler import ContextAssembler, PromptInjection, sanitize_user_message
from .context_scout import ContextScout
from .generation_loop import GenerationLoop, RoundReport
from .memory_management import MemoryManagementError, MemoryManagementService
from .personas import EXPERTS, LEDGER_SOURCE, STOP_TOKENS, default_voice_settings
from .streaming import EventName, StreamEvent, error, sequenced, status

logger = get_logger(__name__)

RATE_LIMIT_MESSAGE = 'המערכת עמוסה כרגע. נסו שוב בעוד כמה שניות.'
GENERIC_ERROR_MESSAGE = 'אירעה שגיאה בעיבוד התשובה. נסו שוב.'
SAFETY_MESSAGE = 'זוהה תוכן רגיש. אם אתם במצוקה: ער"ן 1201, סה"ר *6742.'

TITLE_LENGTH = 50


class ChatPipelineError(Exception):
    """Custom exception for chat pipeline errors."""
    pass


def scout_payload(injection: PromptInjection) -> dict:
    entry = injection.scout_entry
    payload = {
        'active': True,
        'cached': entry.source == 'cached',
        'market_trends': entry.report.market_trends,
        'scqa': entry.report.scqa_formulation,
        'directive': entry.report.expert_directive,
    }
    if entry.source == 'cached':
        payload['cachedTopic'] = entry.topic
        payload['cachedAt'] = entry.timestamp.isoformat()
    return payload


def experts_payload(decision: RouterDecision) -> dict:
    return {
        'selected': [expert.value for expert in decision.experts],
        'summaryMode': decision.summary_mode,
        'safetyOverride': decision.safety_triggered,
        'crisisActive': ExpertId.CRISIS in decision.experts,
        'stopTokens': {expert.value: STOP_TOKENS[expert] for expert in decision.experts},
    }


class ChatPipeline:
    """Orchestrates routing, context assembly, generation, streaming and persistence."""

    def __init__(self,
                 store: SqliteClient,
                 assembler: ContextAssembler,
                 scout: ContextScout,
                 generation: GenerationLoop,
                 memory: MemoryManagementService):
        self.store = store
        self.assembler = assembler
        self.scout = scout
        self.generation = generation
        self.memory = memory

    async def stream(self,
                     message: str,
                     conversation_id: Optional[int] = None,
                     image_base64: Optional[str] = None,
                     audio_base64: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        """Run one round and yield its protocol-ordered events.

        Unexpected failures end the stream with a single error event.
        """
        events = sequenced(self._round(message, conversation_id, image_base64, audio_base64))
        try:
            async for event in events:
                yield event
        except (ChatPipelineError, SqliteError) as e:
            logger.error(f'Chat round failed: {e}')
            yield error(GENERIC_ERROR_MESSAGE)
        except Exception as e:
            logger.exception(f'Unexpected error in chat round: {e}')
            yield error(GENERIC_ERROR_MESSAGE)
        finally:
            await events.aclose()

    async def _round(self,
                     raw_message: str,
                     conversation_id: Optional[int],
                     image_base64: Optional[str],
                     audio_base64: Optional[str]) -> AsyncIterator[StreamEvent]:
        started = time.monotonic()
        message = sanitize_user_message(raw_message) or raw_message.strip()
        if audio_base64:
            logger.info('Audio attachment received; audio is not forwarded to the generation backend')

        yield status('routing', 'Selecting experts')
        safety_triggered = safety.scan(message)
        if safety_triggered:
            logger.warning(f'Safety keywords matched: {safety.matched_keywords(message)}')
            yield StreamEvent(EventName.SAFETY, {'triggered': True, 'message': SAFETY_MESSAGE})

        decision = expert_router.select_experts(message, safety_triggered=safety_triggered)
        conversation = self._load_or_create_conversation(conversation_id, message)

        yield StreamEvent(EventName.META_AGENT, EXPERTS[decision.primary].to_dict())
        yield StreamEvent(EventName.EXPERTS, experts_payload(decision))

        run_scout = self.scout.should_trigger(message, decision.routing_hits, safety_triggered)
        if run_scout:
            yield status('scouting', 'Researching the topic')

        history = [] if decision.clears_history else conversation.messages
        injection = await self.assembler.build_context(message, self._load_profile(), history, decision, run_scout=run_scout)
        if injection.scout_entry:
            yield StreamEvent(EventName.SCOUT, scout_payload(injection))

        yield status('generating', 'Experts are responding', total=len(decision.experts))
        report = RoundReport()
        turns: List[Turn] = []
        turn_stream = self.generation.run(message, decision, injection, report, conversation.voice_settings, image_base64)
        try:
            async for turn in turn_stream:
                turns.append(turn)
                yield StreamEvent(
                    EventName.TURN, {
                        'turn': turn.to_dict(),
                        'index': decision.experts.index(turn.character),
                        'total': len(decision.experts),
                        'conversationId': conversation.id,
                    })
        finally:
            await turn_stream.aclose()

        if report.all_failed:
            logger.error(f'Every expert failed (rate limited: {report.rate_limited}); round not persisted')
            yield error(RATE_LIMIT_MESSAGE if report.rate_limited else GENERIC_ERROR_MESSAGE)
            return

        conversation = self._persist_round(conversation, message, turns, decision)
        await self._update_memory(conversation, message, turns, decision)

        logger.info(f'Round complete for conversation {conversation.id}: {len(turns)}/{len(decision.experts)} turns '
                    f'in {time.monotonic() - started:.2f}s')
        yield status('complete', 'Done')
        yield StreamEvent(
            EventName.RESULT, {
                'turns': [turn.to_dict() for turn in turns],
                'dialogueOrder': [turn.character.value for turn in turns],
                'conversationId': conversation.id,
                'summaryMode': decision.summary_mode,
                'safetyOverride': decision.safety_triggered,
                'metaAgent': EXPERTS[decision.primary].to_dict(),
            })
        yield StreamEvent(EventName.DONE, {})

    def _load_or_create_conversation(self, conversation_id: Optional[int], message: str) -> Conversation:
        if conversation_id is not None:
            conversation = self.store.get_conversation(conversation_id)
            if conversation:
                return conversation
            logger.warning(f'Conversation {conversation_id} not found; starting a new one')
        return self.store.create_conversation(message[:TITLE_LENGTH] or 'New conversation', default_voice_settings())

    def _load_profile(self) -> Optional[UserProfile]:
        try:
            return self.store.get_user_profile()
        except (SqliteError, ProfileCryptoError) as e:
            logger.warning(f'User profile unavailable for this round: {e}')
            return None

    def _persist_round(self, conversation: Conversation, message: str, turns: List[Turn], decision: RouterDecision) -> Conversation:
        timestamp = to_iso()
        messages = [Message(id=uuid.uuid4().hex, role=USER_ROLE, content=message, timestamp=timestamp, is_safety_override=decision.safety_triggered)]
        messages.extend(
            Message(id=uuid.uuid4().hex, role=turn.character.value, content=turn.text, timestamp=timestamp, is_safety_override=decision.safety_triggered)
            for turn in turns)
        try:
            return self.store.append_messages(conversation.id, messages)
        except SqliteError as e:
            raise ChatPipelineError(f'Failed to persist round: {e}')

    async def _update_memory(self, conversation: Conversation, message: str, turns: List[Turn], decision: RouterDecision) -> None:
        """Post-round memory work. Each step fails independently."""
        try:
            self.memory.record_episode(message, decision.primary.value)
        except MemoryManagementError as e:
            logger.warning(f'Episodic memory not recorded: {e}')

        for turn in turns:
            if turn.character == LEDGER_SOURCE:
                try:
                    self.memory.record_ledger_items(turn.text.replace(turn.stop_token, ''), message)
                except MemoryManagementError as e:
                    logger.warning(f'Ledger not updated: {e}')

        try:
            await self.memory.maybe_summarize(conversation)
        except MemoryManagementError as e:
            logger.warning(f'Rolling summary skipped: {e}')

        try:
            self.memory.refresh_profile()
        except (MemoryManagementError, SqliteError, ProfileCryptoError) as e:
            logger.warning(f'Profile refresh skipped: {e}')
