"""
Text-to-speech boundary: cleaned turn text and a voice hint in, audio bytes out.

Providers are tried in order and the first success wins. Failure of every
provider returns None; speech never breaks the chat round.
"""

import asyncio
import re
from typing import List, Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import ExpertId
from ..utils.config import SpeechConfig
from ..utils.logging_config import get_logger
from .generation_loop import VETO_MARKER, strip_stop_tokens
from .personas import get_voice

logger = get_logger(__name__)

# Panel voice names mapped onto each provider's catalogue
ELEVENLABS_VOICES = {
    'Charon': 'pNInz6obpgDQGcFmaJgB',
    'Puck': 'ErXwobaYiN019PkySvjV',
    'Orus': 'VR6AewLTigWG4xSOukaG',
    'Fenrir': 'TxGEqnHWrfWFTfGW9XjX',
}
POLLY_VOICES = {
    'Charon': 'Matthew',
    'Puck': 'Joey',
    'Orus': 'Stephen',
    'Fenrir': 'Gregory',
}
AVAILABLE_VOICES = tuple(ELEVENLABS_VOICES)

MAX_SPEECH_CHARS = 3000


class SpeechSynthesisError(Exception):
    """Custom exception for speech synthesis errors."""
    pass


def clean_for_speech(text: str) -> str:
    """Remove stop tokens and markers, and space out run-together punctuation."""
    text = strip_stop_tokens(text).replace(VETO_MARKER, '').replace('【H】', '')
    text = re.sub(r'([.!?,:;])(?=[^\s\d.!?,:;])', r'\1 ', text)
    return re.sub(r'\s+', ' ', text).strip()


class ElevenLabsProvider:
    name = 'elevenlabs'

    def __init__(self, config: SpeechConfig):
        self.config = config

    async def synthesize(self, text: str, voice_name: str) -> bytes:
        if not self.config.elevenlabs_api_key:
            raise SpeechSynthesisError('ElevenLabs API key is not configured')

        voice_id = ELEVENLABS_VOICES.get(voice_name, voice_name)
        url = f'{self.config.elevenlabs_base_url}/v1/text-to-speech/{voice_id}'
        headers = {'xi-api-key': self.config.elevenlabs_api_key, 'Accept': 'audio/mpeg'}
        payload = {'text': text, 'model_id': self.config.elevenlabs_model_id}
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise SpeechSynthesisError(f'ElevenLabs request failed: {e}')
        if not response.content:
            raise SpeechSynthesisError('ElevenLabs returned no audio')
        return response.content


class PollyProvider:
    name = 'polly'

    def __init__(self, config: SpeechConfig):
        self.config = config
        self.client = boto3.client('polly', region_name=config.polly_region)

    def _synthesize_sync(self, text: str, voice_name: str) -> bytes:
        try:
            response = self.client.synthesize_speech(Text=text,
                                                     OutputFormat='mp3',
                                                     VoiceId=POLLY_VOICES.get(voice_name, 'Matthew'),
                                                     Engine=self.config.polly_engine)
            with response['AudioStream'] as stream:
                return stream.read()
        except (ClientError, BotoCoreError) as e:
            raise SpeechSynthesisError(f'Polly request failed: {e}')

    async def synthesize(self, text: str, voice_name: str) -> bytes:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._synthesize_sync, text, voice_name), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            raise SpeechSynthesisError(f'Polly timed out after {self.config.timeout_seconds}s')


class SpeechService:
    """Tries each provider in order; first audio wins."""

    def __init__(self, providers: List[object]):
        self.providers = providers

    @classmethod
    def from_config(cls, config: SpeechConfig) -> 'SpeechService':
        return cls([ElevenLabsProvider(config), PollyProvider(config)])

    async def synthesize(self, text: str, role: ExpertId, voice_name: Optional[str] = None) -> Optional[bytes]:
        """Synthesize a turn's text in the role's voice.

        Args:
            text: Finalized turn text (stop tokens allowed)
            role: Expert whose voice to use
            voice_name: Conversation-level voice override (optional)

        Returns:
            MP3 audio bytes, or None when every provider failed
        """
        spoken = clean_for_speech(text)[:MAX_SPEECH_CHARS]
        if not spoken:
            return None
        voice_name = voice_name or str(get_voice(role)['voice_id'])

        for provider in self.providers:
            try:
                audio = await provider.synthesize(spoken, voice_name)
                logger.info(f'Synthesized {len(audio)} bytes with {provider.name} for {role.value}')
                return audio
            except SpeechSynthesisError as e:
                logger.warning(f'TTS provider {provider.name} failed: {e}')

        logger.error(f'All TTS providers failed for {role.value}')
        return None
