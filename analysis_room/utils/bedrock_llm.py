"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import asyncio
import base64
import json
import random
import re
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

RATE_LIMIT_CODES = ('ThrottlingException', 'TooManyRequestsException', 'ServiceQuotaExceededException')
_RATE_LIMIT_MARKERS = re.compile(r'\b429\b|quota|rate.?limit|RESOURCE_EXHAUSTED|throttl', re.IGNORECASE)

_IMAGE_SIGNATURES = {
    b'\x89PNG': 'png',
    b'\xff\xd8\xff': 'jpeg',
    b'GIF8': 'gif',
    b'RIFF': 'webp',
}


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockRateLimitError(BedrockLLMError):
    """Custom exception for Bedrock throttling and quota errors."""
    pass


def is_rate_limit_error(error: BaseException) -> bool:
    """True for throttling/quota failures, from the exception type or its message."""
    if isinstance(error, BedrockRateLimitError):
        return True
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
        if code in RATE_LIMIT_CODES:
            return True
    return bool(_RATE_LIMIT_MARKERS.search(str(error)))


def image_content_block(image_base64: str) -> Optional[Dict[str, Any]]:
    """Build a converse image block from base64 (data-URL prefix allowed).

    Returns None when the payload is not a recognised image.
    """
    if ',' in image_base64 and image_base64.startswith('data:'):
        image_base64 = image_base64.split(',', 1)[1]
    try:
        raw = base64.b64decode(image_base64, validate=True)
    except ValueError as e:
        logger.warning(f'Discarding undecodable image payload: {e}')
        return None

    for signature, image_format in _IMAGE_SIGNATURES.items():
        if raw.startswith(signature):
            return {'image': {'format': image_format, 'source': {'bytes': raw}}}

    logger.warning('Discarding image payload with unknown format')
    return None


def user_message(text: str, image_base64: Optional[str] = None) -> Dict[str, Any]:
    """Single user message in Bedrock converse format, optionally with an image."""
    content: List[Dict[str, Any]] = [{'text': text}]
    if image_base64:
        block = image_content_block(image_base64)
        if block:
            content.insert(0, block)
    return {'role': 'user', 'content': content}


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=config.timeout_seconds,
                read_timeout=config.timeout_seconds,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Throttling is not retried; it surfaces immediately so the caller can
        choose the rate-limit copy.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockRateLimitError: If the backend throttles the request
            BedrockLLMError: If all retry attempts fail
        """
        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature
        stop_sequences = stop_sequences or []

        system = [{'text': system_prompt}]
        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences,
        }

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata']['usage'], **event['metadata']['metrics']}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                if is_rate_limit_error(e):
                    logger.warning(f'Bedrock LLM throttled: {e}')
                    raise BedrockRateLimitError(f'Bedrock LLM rate limited: {e}')

                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    async def agenerate(self,
                        messages: List[Dict[str, Any]],
                        system_prompt: str,
                        max_tokens: Optional[int] = None,
                        temperature: Optional[float] = None,
                        stop_sequences: Optional[List[str]] = None,
                        timeout: Optional[float] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Await generate_response on a worker thread with a bounded wait.

        Raises:
            BedrockLLMError: On backend failure or when the wait times out
        """
        timeout = timeout or self.config.timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.generate_response, messages, system_prompt, max_tokens, temperature, stop_sequences),
                timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f'Bedrock LLM call timed out after {timeout}s')
            raise BedrockLLMError(f'Bedrock LLM call timed out after {timeout}s')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
