"""Fake collaborators for pipeline testing."""

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from analysis_room.models.core import ExpertId
from analysis_room.services.personas import STOP_TOKENS
from analysis_room.utils.web_search import WebSearchError

EXPERT_REPLIES: Dict[ExpertId, str] = {
    ExpertId.ONTOLOGICAL: 'The foundation here is ownership of distribution channels. Hidden assumption: customers stay loyal.',
    ExpertId.RENAISSANCE: '• Nocturne kiosk: sells frozen desserts only after midnight.\n• Reverse menu: guests design flavours first.',
    ExpertId.CRISIS: 'VERDICT:[GO]\nPermits and refrigeration costs dominate early losses; secure supplier contracts.',
    ExpertId.OPERATIONAL: 'Immediate first step: acquire a commercial freezer, then install inventory tracking software.',
}

Reply = Union[str, Exception]


def run(coro) -> Any:
    return asyncio.run(coro)


async def _drain(stream: AsyncIterator) -> List:
    return [item async for item in stream]


def collect(stream: AsyncIterator) -> List:
    """Run an async iterator to completion and return its items."""
    return run(_drain(stream))


class FakeLLM:
    """Records every call and answers from a script keyed by expert.

    Calls that carry no expert stop token go to the fallback responder.
    """

    def __init__(self, replies: Optional[Dict[ExpertId, Reply]] = None, fallback: Optional[Callable[[str, str], Reply]] = None):
        self.replies: Dict[ExpertId, Reply] = dict(EXPERT_REPLIES)
        if replies:
            self.replies.update(replies)
        self.fallback = fallback or (lambda system_prompt, text: '{"summary": "A short summary.", "topics": ["testing"]}')
        self.calls: List[Dict[str, Any]] = []

    def _expert_for(self, stop_sequences: Optional[List[str]]) -> Optional[ExpertId]:
        for expert, token in STOP_TOKENS.items():
            if stop_sequences and token in stop_sequences:
                return expert
        return None

    async def agenerate(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None, timeout=None):
        expert = self._expert_for(stop_sequences)
        text = messages[-1]['content'][-1]['text']
        self.calls.append({
            'expert': expert,
            'system_prompt': system_prompt,
            'text': text,
            'messages': messages,
            'max_tokens': max_tokens,
        })
        reply = self.replies[expert] if expert else self.fallback(system_prompt, text)
        if isinstance(reply, Exception):
            raise reply
        return reply, None

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        return 'OK', None

    def health_check(self) -> bool:
        return True

    def expert_calls(self) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call['expert'] is not None]


class FakeSearch:
    """Search client that either returns canned findings or is not configured."""

    def __init__(self, findings: Optional[str] = None):
        self.findings = findings
        self.queries: List[str] = []

    @property
    def enabled(self) -> bool:
        return self.findings is not None

    async def search(self, query: str) -> str:
        self.queries.append(query)
        if self.findings is None:
            raise WebSearchError('Web search API key is not configured')
        return self.findings


class BrokenSearch(FakeSearch):
    """Search client that fails with an error the client does not wrap."""

    async def search(self, query: str) -> str:
        self.queries.append(query)
        raise AttributeError("'list' object has no attribute 'get'")


class FakeSpeechProvider:
    """Speech provider returning fixed bytes, or failing when audio is None."""

    def __init__(self, name: str, audio: Optional[bytes] = None):
        self.name = name
        self.audio = audio
        self.calls: List[Dict[str, str]] = []

    async def synthesize(self, text: str, voice_name: str) -> bytes:
        from analysis_room.services.speech import SpeechSynthesisError

        self.calls.append({'text': text, 'voice': voice_name})
        if self.audio is None:
            raise SpeechSynthesisError(f'{self.name} unavailable')
        return self.audio


REPORT_JSON: Dict[str, Any] = {
    'market_trends': ['Premium gelato demand is growing', 'Vegan flavours sell out first', 'Delivery apps take 30% margins'],
    'scqa_formulation': {
        'Situation': 'Crowded market',
        'Complication': 'High rent',
        'Question': 'How to stand out?',
        'Answer_Hypothesis': 'Night-only kiosk',
    },
    'expert_directive': 'Focus on unit economics before branding.',
}


def scripted_research(knowledge: str = '- Gelato demand grows 8% yearly in urban areas',
                      synthesis: Optional[List[str]] = None) -> Callable[[str, str], Reply]:
    """Fallback responder answering the scout's knowledge and synthesis stages.

    Synthesis outputs are consumed in order; the last one repeats.
    """
    from analysis_room.services.context_scout import KNOWLEDGE_PROMPT, SYNTHESIS_PROMPT

    outputs = list(synthesis or [json.dumps(REPORT_JSON)])

    def respond(system_prompt: str, text: str) -> Reply:
        if system_prompt == KNOWLEDGE_PROMPT:
            return knowledge
        if system_prompt == SYNTHESIS_PROMPT:
            return outputs.pop(0) if len(outputs) > 1 else outputs[0]
        return '{"summary": "A short summary.", "topics": ["testing"]}'

    return respond
