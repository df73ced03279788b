"""
Context Scout: live research injected as ground truth for business-style questions.
"""

import json
from typing import Optional

from ..models.core import ScoutLogEntry, ScoutReport
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, user_message
from ..utils.config import ScoutConfig
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from ..utils.scout_cache import ScoutCache
from ..utils.web_search import WebSearchClient, WebSearchError

logger = get_logger(__name__)

BUSINESS_KEYWORDS = ('מיזם', 'סטארטאפ', 'שוק', 'מוצר', 'business', 'saas', 'plan', 'תוכנית עסקית', 'אסטרטגיה', 'מודל כלכלי', 'השקעה',
                     'שיווק', 'startup', 'market', 'product', 'venture', 'investment')

MIN_FINDINGS_LENGTH = 20
SYNTHESIS_ATTEMPTS = 2

KNOWLEDGE_PROMPT = """You are a market research analyst. Using only your own knowledge, list the concrete, current facts, trends, regulations and competitors relevant to the user's topic.
Plain text, short bullet lines, no introductions."""

SYNTHESIS_PROMPT = """Convert the research findings into strict JSON with exactly this shape and nothing else:
{
  "market_trends": ["trend 1", "trend 2", "trend 3"],
  "scqa_formulation": {
    "Situation": "...",
    "Complication": "...",
    "Question": "...",
    "Answer_Hypothesis": "..."
  },
  "expert_directive": "one instruction the expert panel must follow"
}
Use only facts present in the findings. No Markdown, no commentary."""


def should_trigger(message: str, routing_hits: int, safety_triggered: bool, short_message_words: int = 15) -> bool:
    """Decide whether a round gets live research.

    Business vocabulary always triggers. A short message triggers only when it
    also hit at least one routing keyword, so small talk stays local. Safety
    rounds never trigger.
    """
    if safety_triggered:
        return False
    lowered = message.lower()
    if any(keyword in lowered for keyword in BUSINESS_KEYWORDS):
        return True
    return len(message.split()) < short_message_words and routing_hits > 0


def format_injection(entry: ScoutLogEntry) -> str:
    """Render a scout report as an authoritative prompt block."""
    report = entry.report
    trends = '\n'.join(f'- {trend}' for trend in report.market_trends)
    scqa = '\n'.join(f'{key}: {report.scqa_formulation.get(key, "")}' for key in ScoutReport.SCQA_FIELDS)
    return f"""
[Context scout report - ground truth]
The following research is authoritative. Do not contradict it and do not extend it with data of your own.
Market trends:
{trends}
SCQA:
{scqa}
Directive: {report.expert_directive}
"""


class ContextScout:
    """Two-stage research (grounded search, then model knowledge) with a similarity cache."""

    def __init__(self, llm: BedrockLLM, search_client: WebSearchClient, cache: ScoutCache, config: ScoutConfig):
        self.llm = llm
        self.search_client = search_client
        self.cache = cache
        self.config = config

    def should_trigger(self, message: str, routing_hits: int, safety_triggered: bool) -> bool:
        return should_trigger(message, routing_hits, safety_triggered, self.config.short_message_words)

    async def research(self, topic: str) -> Optional[ScoutLogEntry]:
        """Return a cached or freshly synthesized report, or None.

        Failures are logged and yield None; the round continues without research.
        """
        try:
            return await self._research(topic)
        except Exception as e:
            logger.exception(f'Scout research failed unexpectedly, continuing without it: {e}')
            return None

    async def _research(self, topic: str) -> Optional[ScoutLogEntry]:
        cached = self.cache.lookup(topic)
        if cached:
            return cached

        findings = await self._gather_findings(topic)
        if len(findings.strip()) < MIN_FINDINGS_LENGTH:
            logger.info('Scout gathered too little material; skipping report')
            return None

        report = await self._synthesize(topic, findings)
        if report is None:
            return None

        entry = self.cache.add(topic, report)
        logger.info(f'Scout produced live report with {len(report.market_trends)} trends')
        return entry

    async def _gather_findings(self, topic: str) -> str:
        try:
            return await self.search_client.search(topic)
        except WebSearchError as e:
            logger.info(f'Grounded search unavailable, falling back to model knowledge: {e}')

        try:
            findings, _ = await self.llm.agenerate(messages=[user_message(topic)], system_prompt=KNOWLEDGE_PROMPT, max_tokens=800, temperature=0.3)
            return findings
        except BedrockLLMError as e:
            logger.warning(f'Scout model-knowledge stage failed: {e}')
            return ''

    async def _synthesize(self, topic: str, findings: str) -> Optional[ScoutReport]:
        prompt = f'Topic: {topic}\n\nFindings:\n{findings}'
        for attempt in range(SYNTHESIS_ATTEMPTS):
            try:
                raw, _ = await self.llm.agenerate(messages=[user_message(prompt)], system_prompt=SYNTHESIS_PROMPT, max_tokens=1000, temperature=0.2)
                report = ScoutReport.from_dict(parse_json_response(raw))
                if report is not None:
                    return report
                logger.warning(f'Scout synthesis attempt {attempt + 1}/{SYNTHESIS_ATTEMPTS} missing required fields')
            except json.JSONDecodeError as e:
                logger.warning(f'Scout synthesis attempt {attempt + 1}/{SYNTHESIS_ATTEMPTS} returned invalid JSON: {e}')
            except BedrockLLMError as e:
                logger.warning(f'Scout synthesis attempt {attempt + 1}/{SYNTHESIS_ATTEMPTS} failed: {e}')
        return None
