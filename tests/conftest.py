"""Shared fixtures for the test suite."""

import dataclasses

import pytest

from analysis_room.services.service_registry import build_registry
from analysis_room.services.speech import SpeechService
from analysis_room.utils.config import StorageConfig, load_config
from analysis_room.utils.sqlite_client import SqliteClient

from .fakes import FakeLLM, FakeSearch, FakeSpeechProvider


@pytest.fixture
def app_config():
    """Configuration with fast, offline settings."""
    config = load_config()
    return dataclasses.replace(config,
                               storage=StorageConfig(database_path=':memory:', encryption_key='test-secret'),
                               pipeline=dataclasses.replace(config.pipeline, turn_pause_seconds=0, monologue_enabled=False, keepalive_seconds=5),
                               bedrock_llm=dataclasses.replace(config.bedrock_llm, max_tokens=4096, summary_max_tokens=800),
                               memory=dataclasses.replace(config.memory, summary_threshold=16, history_limit=10),
                               api=dataclasses.replace(config.api, cors_origins=[]))


@pytest.fixture
def store(app_config):
    client = SqliteClient(app_config.storage)
    yield client
    client.close()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_search():
    return FakeSearch()


@pytest.fixture
def speech_provider():
    return FakeSpeechProvider('fake', audio=b'ID3-fake-audio')


@pytest.fixture
def registry(app_config, store, fake_llm, fake_search, speech_provider):
    """Full service graph with fake collaborators."""
    return build_registry(app_config, store=store, llm=fake_llm, search=fake_search, speech=SpeechService([speech_provider]))
