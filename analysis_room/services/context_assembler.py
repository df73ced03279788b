"""
Context Assembler: builds the prompt injection shared by every expert in a round.

Each sub-step is fallible on its own; a failure is logged and the step is
left out rather than aborting the round.
"""

import json
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..models.core import USER_ROLE, AcquiredItem, ExpertId, Message, RouterDecision, ScoutLogEntry, UserProfile
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, user_message
from ..utils.config import MemoryConfig, PipelineConfig
from ..utils.logging_config import get_logger
from ..utils.sqlite_client import SqliteError
from ..utils.vector_engine import VocabBuilder, text_similarity
from .context_scout import ContextScout, format_injection
from .memory_management import MemoryManagementError, MemoryManagementService
from .personas import EXPERTS, LEDGER_SOURCE, RISK_AUTHORITY

logger = get_logger(__name__)

MIN_SUMMARY_FOR_DRIFT = 20

_USER_META_PATTERNS = (
    re.compile(r'פרוטוקול(?:ים)?'),
    re.compile(r'גרס[הא]\s*\d*'),
    re.compile(r'מצב מערכת'),
    re.compile(r'שגיאת מערכת'),
    re.compile(r'חוסר עקביות'),
    re.compile(r'system\s+(?:status|error|protocol|version)', re.IGNORECASE),
    re.compile(r'self[-\s]?correction', re.IGNORECASE),
)
_SUMMARY_META_LINE = re.compile(r'^.*(?:תיקון עצמי|שגיאת מערכת|חוסר עקביות|self[-\s]?correction|system\s+(?:error|inconsistenc)).*$',
                                re.IGNORECASE | re.MULTILINE)
_EXCESS_BLANK_LINES = re.compile(r'\n{3,}')

MONOLOGUE_PROMPT = """Analyse the user's message from first principles in exactly 3 short sentences: the real goal, the hidden assumption, the decisive constraint.
Plain text only."""


def sanitize_user_message(message: str) -> str:
    """Strip meta-language about protocols, versions and system state from user input."""
    cleaned = message
    for pattern in _USER_META_PATTERNS:
        cleaned = pattern.sub('', cleaned)
    return re.sub(r'\s+', ' ', cleaned).strip()


def sanitize_living_summary(summary: str) -> str:
    """Drop lines narrating self-correction, system errors or inconsistencies."""
    cleaned = _SUMMARY_META_LINE.sub('', summary or '')
    return _EXCESS_BLANK_LINES.sub('\n\n', cleaned).strip()


def is_context_drift(builder: VocabBuilder, message: str, living_summary: str, threshold: float) -> bool:
    """True when the message has drifted away from the living summary.

    Summaries shorter than 20 characters never count as drift. Deterministic
    for identical inputs.
    """
    if len((living_summary or '').strip()) < MIN_SUMMARY_FOR_DRIFT:
        return False
    return text_similarity(builder, message, living_summary) < threshold


def format_profile(profile: UserProfile) -> str:
    """Core profile minus rules as compact JSON, then every rule verbatim and numbered."""
    core = {key: value for key, value in profile.core_profile.items() if key != 'core_rules'}
    lines = ['[User profile]']
    if core:
        lines.append(json.dumps(core, ensure_ascii=False, separators=(',', ':')))
    rules = profile.core_rules
    if rules:
        lines.append('[User rules - always apply, never summarize]')
        lines.extend(f'{i}. {rule}' for i, rule in enumerate(rules, start=1))
    return '\n'.join(lines) if len(lines) > 1 else ''


def speaker_name(role: str) -> str:
    if role == USER_ROLE:
        return 'User'
    try:
        return EXPERTS[ExpertId(role)].name
    except ValueError:
        return role


def format_dialogue(history: Sequence[Message], limit: int) -> str:
    recent = list(history)[-limit:]
    if not recent:
        return ''
    lines = [f'{speaker_name(m.role)}: {m.content}' for m in recent]
    return '[Recent dialogue]\n' + '\n'.join(lines)


def format_ledger(items: Sequence[AcquiredItem]) -> str:
    if items:
        listing = '\n'.join(f'- {item.item}' for item in items)
    else:
        listing = '- Nothing has been acquired yet.'
    return f"""
[Acquired-items ledger - fact check]
Items actually acquired in this project so far:
{listing}
Never claim an item was already acquired, bought or installed unless it appears in this list.
Only the {EXPERTS[RISK_AUTHORITY].name} may approve safety or microbiological claims. The {EXPERTS[LEDGER_SOURCE].name} plans acquisitions.
"""


GO_NO_GO_INSTRUCTION = f"""
[Go/No-Go gate]
The {EXPERTS[ExpertId.CRISIS].name} must open with VERDICT:[GO] or VERDICT:[NO-GO] on its own line.
The {EXPERTS[ExpertId.OPERATIONAL].name} must act on that verdict: an MVP plan on GO, a mitigation plan on NO-GO.
"""


@dataclass
class PromptInjection:
    """Context blocks assembled once per round."""
    profile_block: str = ''
    summary_block: str = ''
    dialogue_block: str = ''
    memories_block: str = ''
    scout_block: str = ''
    ledger_block: str = ''
    monologue_block: str = ''
    go_no_go_block: str = ''
    refresh: bool = False
    history_cleared: bool = False
    scout_entry: Optional[ScoutLogEntry] = None
    acquired_items: List[AcquiredItem] = field(default_factory=list)
    history: List[Message] = field(default_factory=list)

    @property
    def context_block(self) -> str:
        parts = [self.profile_block, self.summary_block, self.dialogue_block, self.memories_block]
        return '\n\n'.join(part for part in parts if part)


class ContextAssembler:
    """Gathers profile, summary, dialogue, episodic memories, scout research and the ledger."""

    def __init__(self,
                 memory: MemoryManagementService,
                 scout: ContextScout,
                 llm: BedrockLLM,
                 vocab_builder: VocabBuilder,
                 memory_config: MemoryConfig,
                 pipeline_config: PipelineConfig):
        self.memory = memory
        self.scout = scout
        self.llm = llm
        self.vocab_builder = vocab_builder
        self.memory_config = memory_config
        self.pipeline_config = pipeline_config

    async def build_context(self,
                            message: str,
                            profile: Optional[UserProfile],
                            history: Sequence[Message],
                            decision: RouterDecision,
                            run_scout: bool = False) -> PromptInjection:
        """Assemble the round's prompt injection.

        Args:
            message: Sanitized user message
            profile: Stored user profile (None when it could not be read)
            history: Transcript before this round
            decision: Router outcome for the round
            run_scout: Whether live research should run

        Returns:
            PromptInjection with every block that could be built
        """
        injection = PromptInjection(history_cleared=decision.clears_history)
        profile = profile or UserProfile()

        injection.profile_block = format_profile(profile)

        living_summary = sanitize_living_summary(profile.living_summary)
        injection.refresh = is_context_drift(self.vocab_builder, message, living_summary, self.memory_config.drift_threshold)
        if injection.refresh:
            logger.info('Context drift detected; using profile-only context')

        include_history = not injection.refresh and not injection.history_cleared
        if include_history:
            if living_summary:
                injection.summary_block = f'[Living summary]\n{living_summary}'
            injection.history = list(history)[-self.memory_config.history_limit:]
            injection.dialogue_block = format_dialogue(injection.history, self.memory_config.history_limit)
            injection.memories_block = self._episodic_block(message)

        if run_scout:
            injection.scout_entry = await self.scout.research(message)
            if injection.scout_entry:
                injection.scout_block = format_injection(injection.scout_entry)

        try:
            injection.acquired_items = self.memory.acquired_items()
        except SqliteError as e:
            logger.warning(f'Ledger unavailable for this round: {e}')
        injection.ledger_block = format_ledger(injection.acquired_items)

        if self.pipeline_config.monologue_enabled:
            injection.monologue_block = await self._monologue(message)

        if ExpertId.CRISIS in decision.experts and ExpertId.OPERATIONAL in decision.experts:
            injection.go_no_go_block = GO_NO_GO_INSTRUCTION

        return injection

    def _episodic_block(self, message: str) -> str:
        try:
            memories = self.memory.retrieve(message)
        except MemoryManagementError as e:
            logger.warning(f'Episodic retrieval failed: {e}')
            return ''
        if not memories:
            return ''
        return '[Related past messages]\n' + '\n'.join(f'- {memory.text}' for memory in memories)

    async def _monologue(self, message: str) -> str:
        try:
            analysis, _ = await self.llm.agenerate(messages=[user_message(message)], system_prompt=MONOLOGUE_PROMPT, max_tokens=300, temperature=0.4)
        except BedrockLLMError as e:
            logger.warning(f'Internal pre-analysis failed: {e}')
            return ''
        analysis = analysis.strip()
        if not analysis:
            return ''
        return f'\n[Internal pre-analysis - internal only, never quote or mention it]\n{analysis}\n'
