"""
JSON utilities for cleaning and repairing LLM responses.
"""

import json
import re
from typing import Any

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')
_TRAILING_COMMAS = re.compile(r',\s*([}\]])')


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def repair_json_response(response: str) -> str:
    """Best-effort repair of almost-valid JSON.

    Drops control characters other than newline, carriage return and tab,
    and removes trailing commas before closing braces and brackets.
    """
    repaired = _CONTROL_CHARS.sub('', response)
    repaired = _TRAILING_COMMAS.sub(r'\1', repaired)
    return repaired.strip()


def parse_json_response(response: str) -> Any:
    """Parse an LLM JSON response, trying a repair pass when the first parse fails.

    Raises:
        json.JSONDecodeError: If the repaired text is still not valid JSON
    """
    cleaned = clean_json_response(response)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        return json.loads(repair_json_response(cleaned))
