"""
User profile service: reading, updating and the "save as rule" action.
"""

import json
from typing import Any, Dict, Optional

from ..models.core import UserProfile
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, user_message
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from ..utils.profile_crypto import ProfileCryptoError
from ..utils.sqlite_client import SqliteClient, SqliteError
from .personas import EXPERTS

logger = get_logger(__name__)

MIN_RULE_SOURCE_LENGTH = 5
FALLBACK_RULE_LENGTH = 150

RULE_EXTRACTION_PROMPT = """Extract one concise, standalone rule the user wants applied to every future answer.
Keep the user's language. Return strict JSON only: {"rule": "..."}"""


class ProfileServiceError(Exception):
    """Custom exception for profile service errors."""
    pass


class ProfileService:
    """Reads and updates the singleton user profile through the encrypted store."""

    def __init__(self, store: SqliteClient, llm: BedrockLLM):
        self.store = store
        self.llm = llm

    def get_profile(self) -> UserProfile:
        try:
            return self.store.get_user_profile()
        except (SqliteError, ProfileCryptoError) as e:
            logger.error(f'Failed to read user profile: {e}')
            raise ProfileServiceError(f'Failed to read user profile: {e}')

    def update_profile(self, core_profile: Optional[Dict[str, Any]] = None, living_summary: Optional[str] = None) -> UserProfile:
        """Replace the given parts of the profile; saved rules survive a core-profile replace."""
        profile = self.get_profile()
        if core_profile is not None:
            merged = dict(core_profile)
            if 'core_rules' not in merged and profile.core_rules:
                merged['core_rules'] = profile.core_rules
            profile.core_profile = merged
        if living_summary is not None:
            profile.living_summary = living_summary
        return self._save(profile)

    async def save_rule(self, text: str) -> Dict[str, Any]:
        """Condense text into a rule and append it to the profile's core rules.

        Args:
            text: The expert turn or user text to turn into a rule

        Returns:
            Dictionary with success flag, the stored rule and the rule count

        Raises:
            ProfileServiceError: If text is too short or the profile cannot be saved
        """
        text = (text or '').strip()
        if len(text) < MIN_RULE_SOURCE_LENGTH:
            raise ProfileServiceError('Rule text is too short')

        rule = await self._extract_rule(text)
        profile = self.get_profile()
        rules = profile.core_rules
        rules.append(rule)
        profile.core_profile = {**profile.core_profile, 'core_rules': rules}
        self._save(profile)

        logger.info(f'Saved user rule #{len(rules)}')
        return {'success': True, 'rule': rule, 'totalRules': len(rules)}

    async def _extract_rule(self, text: str) -> str:
        try:
            raw, _ = await self.llm.agenerate(messages=[user_message(text)], system_prompt=RULE_EXTRACTION_PROMPT, max_tokens=200, temperature=0.2)
            rule = str(parse_json_response(raw).get('rule', '')).strip()
            if rule:
                return rule
            logger.warning('Rule extraction returned an empty rule; using fallback')
        except (BedrockLLMError, json.JSONDecodeError, AttributeError) as e:
            logger.warning(f'Rule extraction failed, using fallback: {e}')
        return text[:FALLBACK_RULE_LENGTH]

    def agent_profile(self) -> Dict[str, Any]:
        """Summary of what the panel knows about the user, for the agent-profile view."""
        profile = self.get_profile()
        core = profile.core_profile
        return {
            'topics': core.get('topics', []),
            'interests': core.get('interests', []),
            'patterns': core.get('patterns', {}),
            'coreRules': profile.core_rules,
            'livingPromptSummary': profile.living_summary,
            'experts': [info.to_dict() for info in EXPERTS.values()],
            'updatedAt': profile.updated_at.isoformat() if profile.updated_at else None,
        }

    def _save(self, profile: UserProfile) -> UserProfile:
        try:
            return self.store.save_user_profile(profile)
        except (SqliteError, ProfileCryptoError) as e:
            logger.error(f'Failed to save user profile: {e}')
            raise ProfileServiceError(f'Failed to save user profile: {e}')
