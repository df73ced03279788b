"""
Health check utilities for the application.
"""

from typing import Any, Dict

from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .sqlite_client import SqliteClient

logger = get_logger(__name__)


def check_health(llm: BedrockLLM, store: SqliteClient, app_config: AppConfig = config) -> bool:
    """Check the health of all system components.

    Returns:
        True if all required components are healthy, False otherwise
    """
    health_status = get_health_status(llm, store, app_config)

    # Optional collaborators do not decide overall health
    all_healthy = all(status.get('healthy', False) for status in health_status.values() if status.get('required', True))

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        logger.warning('Some system components are unhealthy')

    return all_healthy


def get_health_status(llm: BedrockLLM, store: SqliteClient, app_config: AppConfig = config, live: bool = True) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        llm: Generation backend client
        store: Storage client
        app_config: Configuration to report on
        live: Whether to make a real generation call

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    # Check Bedrock LLM
    if live:
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    else:
        health_status['bedrock_llm'] = {'healthy': True, 'service': 'Amazon Bedrock LLM', 'model': app_config.bedrock_llm.model_id, 'checked': False}

    # Check storage
    health_status['storage'] = {'healthy': store.health_check(), 'service': 'SQLite', 'database': app_config.storage.database_path}

    health_status['profile_encryption'] = {
        'healthy': bool(app_config.storage.encryption_key),
        'service': 'AES-256-GCM profile encryption',
        'required': False
    }

    # Optional collaborators: configured or skipped
    health_status['web_search'] = {'healthy': bool(app_config.web_search.api_key), 'service': 'Web search', 'required': False}
    health_status['speech'] = {
        'healthy': True,
        'service': 'Text-to-speech',
        'providers': ['elevenlabs', 'polly'] if app_config.speech.elevenlabs_api_key else ['polly'],
        'required': False
    }

    return health_status


def get_system_info(llm: BedrockLLM, store: SqliteClient, app_config: AppConfig = config) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'Analysis Room',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'aws_region': app_config.bedrock_llm.region,
            'vocab_size': app_config.memory.vocab_size,
            'summary_threshold': app_config.memory.summary_threshold,
            'monologue_enabled': app_config.pipeline.monologue_enabled,
        },
        'health_status': get_health_status(llm, store, app_config)
    }
