"""Tests for the HTTP interface."""

import json

import pytest
from fastapi.testclient import TestClient

from analysis_room.api import create_app
from analysis_room.services.speech import SpeechService

from .fakes import FakeSpeechProvider, scripted_research


def parse_sse(body):
    """Split an SSE body into (event, data) pairs, skipping comments."""
    events = []
    for block in body.strip().split('\n\n'):
        lines = [line for line in block.split('\n') if line and not line.startswith(':')]
        if not lines:
            continue
        fields = dict(line.split(': ', 1) for line in lines)
        events.append((fields['event'], json.loads(fields['data'])))
    return events


@pytest.fixture
def client(registry):
    with TestClient(create_app(registry)) as test_client:
        yield test_client


def _chat(client, message='why does the data matter', **extra):
    response = client.post('/api/chat', json={'message': message, **extra})
    assert response.status_code == 200
    assert response.headers['content-type'].startswith('text/event-stream')
    return parse_sse(response.text)


def test_chat_streams_events(client):
    events = _chat(client)
    names = [name for name, _ in events if name != 'status']

    assert names == ['meta_agent', 'experts', 'turn', 'turn', 'result', 'done']
    turn = events[[name for name, _ in events].index('turn')][1]
    assert set(turn['turn']) == {'character', 'text', 'stopToken', 'voice_id', 'pitch'}


@pytest.mark.parametrize('body', [{}, {'message': '   '}, {'message': 42}, {'message': 'hi', 'conversationId': 'abc'}])
def test_invalid_chat_request_is_rejected(client, body):
    response = client.post('/api/chat', json=body)

    assert response.status_code == 400
    assert response.json() == {'message': 'Invalid request'}


def test_conversation_endpoints(client):
    result = dict(_chat(client))['result']
    conversation_id = result['conversationId']

    listing = client.get('/api/conversations').json()
    assert [c['id'] for c in listing] == [conversation_id]
    assert listing[0]['messageCount'] == 3

    conversation = client.get(f'/api/conversations/{conversation_id}').json()
    assert [m['role'] for m in conversation['messages']] == ['user', 'ontological', 'operational']

    export = client.get(f'/api/conversations/{conversation_id}/export')
    assert export.status_code == 200
    assert 'why does the data matter' in export.text
    assert 'Operational Fox' in export.text

    assert client.delete(f'/api/conversations/{conversation_id}').json() == {'success': True}
    assert client.get(f'/api/conversations/{conversation_id}').status_code == 404


def test_voice_settings(client):
    conversation_id = dict(_chat(client))['result']['conversationId']

    updated = client.patch(f'/api/conversations/{conversation_id}/voice-settings', json={'voiceSettings': {'crisis': 'Puck'}})
    assert updated.status_code == 200
    assert updated.json()['voiceSettings']['crisis'] == 'Puck'
    assert updated.json()['voiceSettings']['ontological'] == 'Charon'

    rejected = client.patch(f'/api/conversations/{conversation_id}/voice-settings', json={'voiceSettings': {'crisis': 'Nobody'}})
    assert rejected.status_code == 400


def test_tts_returns_audio(client, speech_provider):
    response = client.post('/api/chat/tts', json={'text': 'Buy a freezer. [FOX_END]', 'role': 'operational'})

    assert response.status_code == 200
    assert response.headers['content-type'] == 'audio/mpeg'
    assert response.content == b'ID3-fake-audio'
    assert speech_provider.calls == [{'text': 'Buy a freezer.', 'voice': 'Fenrir'}]


def test_tts_falls_through_providers(client, registry):
    backup = FakeSpeechProvider('backup', audio=b'backup-audio')
    registry.speech = SpeechService([FakeSpeechProvider('broken'), backup])

    response = client.post('/api/chat/tts', json={'text': 'Hello there.', 'role': 'crisis'})

    assert response.content == b'backup-audio'
    assert backup.calls[0]['voice'] == 'Orus'


def test_tts_failure_is_503(client, registry):
    registry.speech = SpeechService([FakeSpeechProvider('broken')])

    response = client.post('/api/chat/tts', json={'text': 'Hello there.', 'role': 'crisis'})

    assert response.status_code == 503


def test_tts_rejects_unknown_role(client):
    assert client.post('/api/chat/tts', json={'text': 'Hello', 'role': 'narrator'}).status_code == 400


def test_save_rule(client, fake_llm):
    fake_llm.fallback = lambda system_prompt, text: '{"rule": "Always answer in two sentences"}'

    saved = client.post('/api/save-rule', json={'text': 'Please keep every answer to two sentences.'}).json()

    assert saved == {'success': True, 'rule': 'Always answer in two sentences', 'totalRules': 1}
    profile = client.get('/api/user-profile').json()
    assert profile['coreProfile']['core_rules'] == ['Always answer in two sentences']


def test_save_rule_falls_back_to_text(client, fake_llm):
    fake_llm.fallback = lambda system_prompt, text: 'not json'

    saved = client.post('/api/save-rule', json={'text': 'Never use emojis in answers.'}).json()

    assert saved['rule'] == 'Never use emojis in answers.'


def test_save_rule_rejects_short_text(client):
    assert client.post('/api/save-rule', json={'text': 'hi'}).status_code == 400


def test_profile_update_keeps_rules(client, fake_llm):
    fake_llm.fallback = lambda system_prompt, text: '{"rule": "Be brief"}'
    client.post('/api/save-rule', json={'text': 'Keep it brief please.'})

    updated = client.post('/api/user-profile', json={'coreProfile': {'topics': ['ice cream']}, 'livingPromptSummary': 'Shop plans'}).json()

    assert updated['coreProfile'] == {'topics': ['ice cream'], 'core_rules': ['Be brief']}
    assert updated['livingPromptSummary'] == 'Shop plans'
    assert client.get('/api/agent/profile').json()['coreRules'] == ['Be brief']


def test_memories_and_ledger(client):
    client.post('/api/memories', json={'text': 'opening a gelato kiosk', 'category': 'renaissance'})
    _chat(client)

    memories = client.get('/api/memories').json()
    assert [m['text'] for m in memories] == ['why does the data matter', 'opening a gelato kiosk']

    items = client.get('/api/acquired-items').json()
    assert [i['item'] for i in items] == ['a commercial freezer', 'inventory tracking software']
    assert client.delete(f'/api/acquired-items/{items[0]["id"]}').json() == {'success': True}
    assert client.delete(f'/api/acquired-items/{items[0]["id"]}').status_code == 404

    exported = client.get('/api/export-all').json()
    assert len(exported['conversations']) == 1
    assert len(exported['acquiredItems']) == 1


def test_scout_logs(client, fake_llm):
    fake_llm.fallback = scripted_research()
    _chat(client, 'saas pricing for dental clinics')

    logs = client.get('/api/scout-logs').json()
    assert [log['topic'] for log in logs] == ['saas pricing for dental clinics']
    assert logs[0]['source'] == 'live'


def test_personas_and_voices(client):
    personas = client.get('/api/agent/personas').json()
    voices = client.get('/api/voices').json()

    assert [p['id'] for p in personas] == ['ontological', 'renaissance', 'crisis', 'operational']
    assert personas[3]['stopToken'] == '[FOX_END]'
    assert voices['defaults'] == {'ontological': 'Charon', 'renaissance': 'Puck', 'crisis': 'Orus', 'operational': 'Fenrir'}


def test_ping_and_health(client):
    assert client.get('/api/ping').json()['status'] == 'ok'

    health = client.get('/api/health')
    assert health.status_code == 200
    assert health.json()['healthy'] is True
    assert health.json()['components']['bedrock_llm']['checked'] is False
