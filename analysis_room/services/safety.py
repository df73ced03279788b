"""
Keyword safety scanner for incoming messages.

The list is advisory, not exhaustive. A hit never blocks the round; the
router reroutes to the safety pairing and hotline guidance is injected.
"""

from typing import List, Tuple

SAFETY_KEYWORDS: Tuple[str, ...] = (
    # Hebrew
    'התאבדות', 'לשים קץ', 'למות', 'אין טעם לחיים', 'סמים', 'סם', 'קוקאין', 'הרואין',
    'אקסטזי', 'מריחואנה', 'פגיעה עצמית', 'חיתוך', 'לפגוע בעצמי', 'אלימות', 'לרצוח',
    'רצח', 'נשק', 'פצצה', 'טרור', 'פיגוע', 'שוד', 'גניבה', 'הונאה', 'מעשה פלילי',
    # English
    'suicide', 'self-harm', 'kill myself', 'drugs', 'cocaine', 'heroin', 'murder',
    'weapon', 'bomb', 'terror', 'illegal', 'overdose', 'cutting', 'end my life',
)

SAFETY_HOTLINE_NOTICE = """
[Safety override - active]
Sensitive content detected. The Crisis Manager leads. Provide emergency lines: ERAN 1201, SAHAR *6742. Refer the user to a professional.
"""


def matched_keywords(message: str) -> List[str]:
    """All safety keywords present in message (case-insensitive)."""
    lowered = message.lower()
    return [keyword for keyword in SAFETY_KEYWORDS if keyword in lowered]


def scan(message: str) -> bool:
    """True when the message contains any safety keyword."""
    lowered = message.lower()
    return any(keyword in lowered for keyword in SAFETY_KEYWORDS)
