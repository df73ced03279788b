"""
Per-expert generation loop.

Experts run strictly in router order. Each one sees the turns already
finalized this round, and every raw output goes through cleaning, the empty
and repetition guards, the hallucination veto and stop-token enforcement
before it is emitted.

States per expert: IDLE -> GENERATING -> VALIDATING -> EMITTING, with
SKIPPED as the validation outcome for dropped output. DONE ends the round.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, FrozenSet, List, Optional, Pattern, Sequence, Tuple

from ..models.core import AcquiredItem, ExpertId, RouterDecision, Turn
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, is_rate_limit_error, user_message
from ..utils.config import BedrockLLMConfig, PipelineConfig
from ..utils.logging_config import get_logger
from .context_assembler import PromptInjection, speaker_name
from .personas import EXPERTS, RISK_AUTHORITY, STOP_TOKENS, build_base_system_prompt, get_expert_prompt, get_voice
from .safety import SAFETY_HOTLINE_NOTICE

logger = get_logger(__name__)

MIN_TURN_LENGTH = 5
REPETITION_THRESHOLD = 0.6
MIN_OVERLAP_WORD_LENGTH = 4
TRAILING_FRAGMENT_LENGTH = 15
VETO_MARKER = '[blocked: safety veto]'

# A period ends a sentence only before whitespace or end of text
_SENTENCE_END = re.compile(r'[!?״]|\.(?=\s|$)')

# (pattern, replacement) applied in order
_CLEANUP_RULES: Tuple[Tuple[Pattern, str], ...] = (
    (re.compile(r'```[\s\S]*?```'), ''),
    (re.compile(r'`([^`]*)`'), r'\1'),
    (re.compile(r'\*\*\*'), ''),
    (re.compile(r'\*\*'), ''),
    (re.compile(r'\*'), ''),
    (re.compile(r'^#{1,6}\s+(.+)$', re.MULTILINE), r'【H】\1'),
    (re.compile(r'-{3,}'), ''),
    (re.compile(r'\.{3,}'), ''),
    (re.compile(r'\n{3,}'), '\n\n'),
)

# Claims no expert except the risk authority may make
VETO_RULES: Tuple[Pattern, ...] = (
    re.compile(r'חלבונ(?:ים)?\s*מיקרוביאל(?:י|יים|ית)'),
    re.compile(r'microbial\s*proteins?', re.IGNORECASE),
)

_ACQUIRED_CLAIM = re.compile(
    r'(?:כבר\s+(?:רכשנו|קנינו|רכשת|קנית|התקנו|התקנת|השגנו)|already\s+(?:acquired|bought|purchased|installed|have))\s+([^.,\n]+)',
    re.IGNORECASE)


class GenerationState(str, Enum):
    IDLE = 'idle'
    GENERATING = 'generating'
    VALIDATING = 'validating'
    EMITTING = 'emitting'
    SKIPPED = 'skipped'
    DONE = 'done'


class GenerationStateError(Exception):
    """Custom exception for illegal generation state transitions."""
    pass


_STATE_TRANSITIONS: Dict[GenerationState, FrozenSet[GenerationState]] = {
    GenerationState.IDLE: frozenset({GenerationState.GENERATING, GenerationState.DONE}),
    GenerationState.GENERATING: frozenset({GenerationState.VALIDATING, GenerationState.SKIPPED}),
    GenerationState.VALIDATING: frozenset({GenerationState.EMITTING, GenerationState.SKIPPED}),
    GenerationState.EMITTING: frozenset({GenerationState.IDLE}),
    GenerationState.SKIPPED: frozenset({GenerationState.IDLE}),
    GenerationState.DONE: frozenset(),
}


class GenerationStateMachine:
    """Tracks where the loop is for the current expert and rejects illegal moves."""

    def __init__(self, trace: Optional[List[Tuple[str, GenerationState]]] = None):
        self.state = GenerationState.IDLE
        self.trace = trace if trace is not None else []

    def advance(self, next_state: GenerationState, expert: Optional[ExpertId] = None) -> None:
        """Move to next_state.

        Raises:
            GenerationStateError: If next_state is not reachable from the current state
        """
        if next_state not in _STATE_TRANSITIONS[self.state]:
            raise GenerationStateError(f'Illegal transition {self.state.value} -> {next_state.value}')
        label = expert.value if expert else 'round'
        logger.debug(f'{label}: {self.state.value} -> {next_state.value}')
        self.state = next_state
        self.trace.append((label, next_state))


class TurnOutcome(str, Enum):
    EMITTED = 'emitted'
    EMPTY = 'empty'
    REPETITION = 'repetition'
    BACKEND_ERROR = 'backend_error'


@dataclass
class RoundReport:
    """What happened to each expert in one round."""
    outcomes: Dict[ExpertId, TurnOutcome] = field(default_factory=dict)
    rate_limited: bool = False
    transitions: List[Tuple[str, GenerationState]] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and all(outcome == TurnOutcome.BACKEND_ERROR for outcome in self.outcomes.values())


def clean_text(raw: str) -> str:
    """Strip markup, mark headings and collapse blank lines."""
    text = raw or ''
    for pattern, replacement in _CLEANUP_RULES:
        text = pattern.sub(replacement, text)
    return trim_trailing_fragment(text.strip())


def trim_trailing_fragment(text: str) -> str:
    """Drop a dangling fragment shorter than 15 characters after the last sentence end."""
    ends = [match.start() for match in _SENTENCE_END.finditer(text)]
    last_end = ends[-1] if ends else -1
    if last_end <= 0 or last_end == len(text) - 1:
        return text
    if len(text[last_end + 1:].strip()) < TRAILING_FRAGMENT_LENGTH:
        return text[:last_end + 1]
    return text


def _overlap_words(text: str) -> List[str]:
    return [word for word in re.findall(r'\w+', text.lower()) if len(word) >= MIN_OVERLAP_WORD_LENGTH]


def word_overlap(current: str, previous: str) -> float:
    """Share of the current turn's long words, repeats included, that also appear in previous."""
    current_words = _overlap_words(current)
    if not current_words:
        return 0.0
    previous_words = set(_overlap_words(previous))
    return sum(1 for word in current_words if word in previous_words) / len(current_words)


def is_repetition(text: str, earlier: Sequence[str], threshold: float = REPETITION_THRESHOLD) -> bool:
    return any(word_overlap(text, previous) > threshold for previous in earlier)


def _in_ledger(claimed: str, items: Sequence[AcquiredItem]) -> bool:
    claimed = claimed.strip().lower()
    return any(claimed in item.item.lower() or item.item.lower() in claimed for item in items)


def apply_veto(text: str, expert: ExpertId, acquired_items: Sequence[AcquiredItem]) -> Tuple[str, int]:
    """Redact disallowed claims in place.

    Safety-sensitive claims are redacted for every expert except the risk
    authority. "Already acquired" claims missing from the ledger are redacted
    for everyone.

    Returns:
        Tuple of (text, number of redactions)
    """
    redactions = 0
    if expert != RISK_AUTHORITY:
        for pattern in VETO_RULES:
            text, count = pattern.subn(VETO_MARKER, text)
            redactions += count

    def _redact_unlisted(match: re.Match) -> str:
        nonlocal redactions
        if _in_ledger(match.group(1), acquired_items):
            return match.group(0)
        redactions += 1
        return VETO_MARKER

    text = _ACQUIRED_CLAIM.sub(_redact_unlisted, text)
    return text, redactions


def split_at_stop_token(text: str, stop_token: str) -> str:
    """Text before the first stop token occurrence (all of it when absent)."""
    index = text.find(stop_token)
    return text if index < 0 else text[:index]


def enforce_stop_token(text: str, stop_token: str) -> str:
    """Guarantee the text ends with exactly one stop token."""
    index = text.find(stop_token)
    if index >= 0:
        return text[:index + len(stop_token)]
    return f'{text}\n{stop_token}'


def strip_stop_tokens(text: str) -> str:
    for token in STOP_TOKENS.values():
        text = text.replace(token, '')
    return text


SUMMARY_MODE_NOTICE = """
[Summary mode]
Several experts answer this round. Be extremely brief: at most 80 words, only the single most important point.
"""

VISION_NOTICE = """
[Image attached]
The user attached an image. Refer to what it shows where relevant to your framework.
"""


def format_prior_turns(turns: Sequence[Turn]) -> str:
    if not turns:
        return ''
    lines = [f'{speaker_name(turn.character.value)}: {strip_stop_tokens(turn.text).strip()}' for turn in turns]
    return '\n[Earlier experts this round - do not restate any of it]\n' + '\n\n'.join(lines) + '\n'


def build_system_prompt(expert: ExpertId,
                        decision: RouterDecision,
                        injection: PromptInjection,
                        prior_turns: Sequence[Turn],
                        response_language: str,
                        has_image: bool = False) -> str:
    """Compose one expert's system prompt for this round."""
    info = EXPERTS[expert]
    parts = [
        build_base_system_prompt(response_language),
        injection.context_block,
        injection.scout_block,
        get_expert_prompt(expert),
        SUMMARY_MODE_NOTICE if decision.summary_mode else '',
        SAFETY_HOTLINE_NOTICE if decision.safety_triggered else '',
        injection.monologue_block,
        injection.ledger_block,
        format_prior_turns(prior_turns),
        injection.go_no_go_block,
        VISION_NOTICE if has_image else '',
        f'\n[Round directive]\nYou are the {info.name} ({info.framework}). Answer the user\'s latest message in {response_language}. '
        f'End with {info.stop_token}.',
    ]
    return '\n'.join(part for part in parts if part)


class GenerationLoop:
    """Runs the experts of one round in order and yields finalized turns."""

    def __init__(self, llm: BedrockLLM, llm_config: BedrockLLMConfig, pipeline_config: PipelineConfig):
        self.llm = llm
        self.llm_config = llm_config
        self.pipeline_config = pipeline_config

    def token_budget(self, decision: RouterDecision) -> int:
        return self.llm_config.summary_max_tokens if decision.summary_mode else self.llm_config.max_tokens

    async def run(self,
                  message: str,
                  decision: RouterDecision,
                  injection: PromptInjection,
                  report: RoundReport,
                  voice_settings: Optional[Dict[str, str]] = None,
                  image_base64: Optional[str] = None) -> AsyncIterator[Turn]:
        """Generate, validate and yield one turn per surviving expert.

        Args:
            message: Sanitized user message
            decision: Router outcome with ordered experts
            injection: Context assembled for this round
            report: Receives each expert's outcome
            voice_settings: Conversation voice overrides (optional)
            image_base64: Attached image (optional)

        Yields:
            Finalized turns in router order
        """
        turns: List[Turn] = []
        max_tokens = self.token_budget(decision)
        machine = GenerationStateMachine(report.transitions)

        for position, expert in enumerate(decision.experts):
            machine.advance(GenerationState.GENERATING, expert)
            turn = await self._generate_turn(expert, message, decision, injection, turns, report, max_tokens, voice_settings, image_base64,
                                             machine)
            if turn is None:
                machine.advance(GenerationState.IDLE, expert)
                continue

            machine.advance(GenerationState.EMITTING, expert)
            turns.append(turn)
            report.outcomes[expert] = TurnOutcome.EMITTED
            yield turn
            machine.advance(GenerationState.IDLE, expert)

            if position < len(decision.experts) - 1 and self.pipeline_config.turn_pause_seconds > 0:
                await asyncio.sleep(self.pipeline_config.turn_pause_seconds)

        machine.advance(GenerationState.DONE)
        logger.debug(f'Round done: {len(turns)}/{len(decision.experts)} turns emitted')

    async def _generate_turn(self,
                             expert: ExpertId,
                             message: str,
                             decision: RouterDecision,
                             injection: PromptInjection,
                             prior_turns: List[Turn],
                             report: RoundReport,
                             max_tokens: int,
                             voice_settings: Optional[Dict[str, str]],
                             image_base64: Optional[str],
                             machine: GenerationStateMachine) -> Optional[Turn]:
        stop_token = STOP_TOKENS[expert]
        system_prompt = build_system_prompt(expert, decision, injection, prior_turns, self.pipeline_config.response_language,
                                            has_image=bool(image_base64))

        started = time.monotonic()
        try:
            raw, metrics = await self.llm.agenerate(messages=[user_message(message, image_base64)],
                                                    system_prompt=system_prompt,
                                                    max_tokens=max_tokens,
                                                    temperature=self.llm_config.temperature,
                                                    stop_sequences=[stop_token])
        except BedrockLLMError as e:
            logger.warning(f'{expert.value} generation failed, skipping: {e}')
            report.outcomes[expert] = TurnOutcome.BACKEND_ERROR
            report.rate_limited = report.rate_limited or is_rate_limit_error(e)
            machine.advance(GenerationState.SKIPPED, expert)
            return None
        logger.info(f'{expert.value} generated {len(raw)} chars in {time.monotonic() - started:.2f}s (metrics: {metrics})')

        machine.advance(GenerationState.VALIDATING, expert)
        body = clean_text(strip_stop_tokens(split_at_stop_token(raw, stop_token)))

        if len(body) < MIN_TURN_LENGTH:
            logger.info(f'{expert.value}: skipped (empty output)')
            report.outcomes[expert] = TurnOutcome.EMPTY
            machine.advance(GenerationState.SKIPPED, expert)
            return None

        if is_repetition(body, [strip_stop_tokens(turn.text) for turn in prior_turns]):
            logger.info(f'{expert.value}: skipped (repeats an earlier turn)')
            report.outcomes[expert] = TurnOutcome.REPETITION
            machine.advance(GenerationState.SKIPPED, expert)
            return None

        body, redactions = apply_veto(body, expert, injection.acquired_items)
        if redactions:
            logger.warning(f'{expert.value}: redacted {redactions} vetoed claim(s)')

        voice = get_voice(expert, voice_settings)
        return Turn(character=expert,
                    text=enforce_stop_token(body, stop_token),
                    stop_token=stop_token,
                    voice_id=str(voice['voice_id']),
                    pitch=float(voice['pitch']))
