"""
Expert Router: decides which experts answer a message and in what order.

Selection priority:
1. Explicit override ("only X", "don't activate Y"), which beats everything
2. Safety override, the fixed crisis/operational pairing
3. Direct mention of experts by name, exactly those experts
4. Keyword scoring, plus business hard-triggers that force the crisis expert
5. Default pairing when nothing matched, padding when only one matched
Output is always in canonical rank order.
"""

import re
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.core import ExpertId, RouterDecision
from ..utils.logging_config import get_logger
from . import safety
from .personas import EXPERTS

logger = get_logger(__name__)

SUMMARY_MODE_THRESHOLD = 3

SAFETY_PAIR: Tuple[ExpertId, ...] = (ExpertId.CRISIS, ExpertId.OPERATIONAL)
DEFAULT_PAIR: Tuple[ExpertId, ...] = (ExpertId.ONTOLOGICAL, ExpertId.OPERATIONAL)

CRISIS_HARD_TRIGGERS: Tuple[str, ...] = ('תוכנית עסקית', 'אסטרטגיה', 'מודל כלכלי', 'מיזם', 'השקעה', 'שיווק', 'saas', 'plan')

KEYWORD_RULES: Dict[ExpertId, Tuple[str, ...]] = {
    ExpertId.CRISIS: ('משבר', 'חירום', 'סכנה', 'קריסה', 'כשל', 'נפילה', 'איום', 'פחד', 'מלחמה', 'אסון', 'התמוטטות', 'סיכון', 'בעיה',
                      'תקלה', 'crisis', 'emergency', 'threat', 'collapse', 'risk', 'danger') + CRISIS_HARD_TRIGGERS,
    ExpertId.OPERATIONAL: ('תוכנית', 'פעולה', 'שלבים', 'ביצוע', 'מבצע', 'יעד', 'מטרה', 'איך לעשות', 'פרקטי', 'מעשי', 'לתכנן', 'ליישם',
                           'צעדים', 'plan', 'action', 'execute', 'practical', 'steps', 'how to'),
    ExpertId.RENAISSANCE: ('יצירתי', 'חדשנות', 'המצאה', 'אמנות', 'חשיבה', 'רעיון', 'רעיונות', 'דמיון', 'אלטרנטיבה', 'שונה', 'חלופה', 'חדש',
                           'חדשה', 'קונספט', 'חנות', 'מיזם', 'גלידה', 'עסק', 'סטארטאפ', 'creative', 'innovation', 'alternative',
                           'imagine', 'idea', 'art', 'new', 'concept', 'startup'),
    ExpertId.ONTOLOGICAL: ('מהות', 'משמעות', 'מבנה', 'מערכת', 'הגדרה', 'עקרון', 'בסיס', 'שורש', 'מהו', 'מדוע', 'למה', 'נתונים', 'עובדות',
                           'ניתוח', 'what is', 'why', 'definition', 'data', 'analysis', 'structure', 'system'),
}

DIRECT_CALL_PATTERNS: Dict[ExpertId, Tuple[str, ...]] = {
    ExpertId.ONTOLOGICAL: ('אונטולוגי', 'מהנדס אונטולוגי', 'המהנדס האונטולוגי', 'ontological engineer'),
    ExpertId.RENAISSANCE: ('רנסנס', 'איש הרנסנס', 'renaissance man', 'renaissance'),
    ExpertId.CRISIS: ('משברים', 'מנהל המשברים', 'מנהל משברים', 'crisis manager'),
    ExpertId.OPERATIONAL: ('שועל מבצעי', 'השועל המבצעי', 'שועל', 'operational fox', 'fox'),
}

# A message must show override intent before aliases are inspected
OVERRIDE_INTENT_PATTERNS = (
    re.compile(r'הפעל\s+(?:רק|אך ורק)\s+את\s+'),
    re.compile(r'רק\s+(?:את\s+)?(?:ה)?'),
    re.compile(r'(?:only|just)\s+(?:the\s+)?'),
    re.compile(r'אל\s+תפעיל'),
    re.compile(r'(?:בלי|ללא)\s+'),
    re.compile(r'דיכוי'),
    re.compile(r'suppress'),
    re.compile(r"don'?t\s+activate"),
)

OVERRIDE_WINDOW = 30
_EXCLUDE_MARKER = re.compile(r"(?:אל\s+תפעיל|בלי|ללא|דיכוי|don'?t|suppress|אל\s+תשתמש)")
_INCLUDE_MARKER = re.compile(r'(?:רק\s+(?:את)?|הפעל\s+(?:רק\s+)?את|only|just)')


def _first_alias_position(lowered: str, aliases: Iterable[str]) -> int:
    positions = [lowered.find(alias) for alias in aliases if alias in lowered]
    return min(positions) if positions else -1


def sort_by_canonical_order(experts: Iterable[ExpertId]) -> List[ExpertId]:
    """Deduplicate and order experts by rank."""
    return sorted(set(experts), key=lambda expert: EXPERTS[expert].rank)


def is_summary_mode(experts: List[ExpertId]) -> bool:
    return len(experts) > SUMMARY_MODE_THRESHOLD


def detect_explicit_override(message: str) -> Optional[List[ExpertId]]:
    """Resolve "only X" / "don't activate Y" phrasing.

    For each expert the text just before its first alias decides whether it
    is included or excluded. Included experts win; otherwise every expert
    except the excluded ones.

    Returns:
        Canonically ordered experts, or None when no usable override is present
    """
    lowered = message.lower()
    if not any(pattern.search(lowered) for pattern in OVERRIDE_INTENT_PATTERNS):
        return None

    included: List[ExpertId] = []
    excluded: List[ExpertId] = []
    for expert, aliases in DIRECT_CALL_PATTERNS.items():
        position = _first_alias_position(lowered, aliases)
        if position < 0:
            continue
        window = lowered[max(0, position - OVERRIDE_WINDOW):position]
        if _EXCLUDE_MARKER.search(window):
            excluded.append(expert)
        elif _INCLUDE_MARKER.search(window):
            included.append(expert)

    if included:
        return sort_by_canonical_order(included)
    if excluded:
        remaining = [expert for expert in ExpertId if expert not in excluded]
        if remaining:
            return remaining
    return None


def detect_all_direct_calls(message: str) -> List[ExpertId]:
    """Experts named directly in the message, canonically ordered."""
    lowered = message.lower()
    return [expert for expert, aliases in DIRECT_CALL_PATTERNS.items() if any(alias in lowered for alias in aliases)]


def score_keywords(message: str) -> Dict[ExpertId, int]:
    """Count distinct keyword hits per expert; experts without hits are omitted."""
    lowered = message.lower()
    scores: Dict[ExpertId, int] = {}
    for expert, keywords in KEYWORD_RULES.items():
        hits = sum(1 for keyword in set(keywords) if keyword in lowered)
        if hits:
            scores[expert] = hits
    return scores


def has_hard_trigger(message: str) -> bool:
    lowered = message.lower()
    return any(trigger in lowered for trigger in CRISIS_HARD_TRIGGERS)


def _pad_single(experts: List[ExpertId]) -> List[ExpertId]:
    if len(experts) != 1:
        return experts
    partner = ExpertId.ONTOLOGICAL if experts[0] == ExpertId.OPERATIONAL else ExpertId.OPERATIONAL
    return experts + [partner]


def select_experts(message: str, safety_triggered: Optional[bool] = None) -> RouterDecision:
    """Select and order the experts for one message.

    Args:
        message: Sanitized user message
        safety_triggered: Precomputed safety scan result (optional, scans if None)

    Returns:
        RouterDecision with canonically ordered experts
    """
    if safety_triggered is None:
        safety_triggered = safety.scan(message)

    scores = score_keywords(message)
    routing_hits = sum(scores.values())
    direct_calls = detect_all_direct_calls(message)

    override = detect_explicit_override(message)
    if override:
        logger.info(f'Explicit override selected: {[e.value for e in override]}')
        return RouterDecision(experts=override,
                              summary_mode=is_summary_mode(override),
                              safety_triggered=safety_triggered,
                              direct_calls=list(direct_calls),
                              override_applied=True,
                              routing_hits=routing_hits)

    if safety_triggered:
        experts = sort_by_canonical_order(SAFETY_PAIR)
        logger.info('Safety override selected the safety pairing')
        return RouterDecision(experts=experts, summary_mode=False, safety_triggered=True, direct_calls=list(direct_calls), routing_hits=routing_hits)

    if direct_calls:
        logger.info(f'Direct call to: {[e.value for e in direct_calls]}')
        return RouterDecision(experts=list(direct_calls),
                              summary_mode=is_summary_mode(direct_calls),
                              direct_calls=list(direct_calls),
                              routing_hits=routing_hits)

    ranked = [expert for expert, _ in sorted(scores.items(), key=lambda item: -item[1])]
    if has_hard_trigger(message) and ExpertId.CRISIS not in ranked:
        ranked.append(ExpertId.CRISIS)

    if not ranked:
        ranked = list(DEFAULT_PAIR)
    ranked = _pad_single(ranked)

    experts = sort_by_canonical_order(ranked)
    logger.info(f'Keyword routing selected {[e.value for e in experts]} (scores: {({e.value: s for e, s in scores.items()})})')
    return RouterDecision(experts=experts, summary_mode=is_summary_mode(experts), routing_hits=routing_hits)
