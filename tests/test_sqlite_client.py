"""Tests for the SQLite store."""

import pytest

from analysis_room.models.core import Message, UserProfile
from analysis_room.services.personas import default_voice_settings
from analysis_room.utils.config import StorageConfig
from analysis_room.utils.profile_crypto import ProfileCryptoError
from analysis_room.utils.sqlite_client import SqliteClient, SqliteError


def _message(index, role='user'):
    return Message(id=f'm{index}', role=role, content=f'content {index}', timestamp='2026-01-01T00:00:00+00:00')


def test_conversation_lifecycle(store):
    conversation = store.create_conversation('Ice cream', default_voice_settings())

    assert conversation.messages == []
    assert conversation.summarized_count == 0
    assert conversation.voice_settings['crisis'] == 'Orus'

    updated = store.append_messages(conversation.id, [_message(1), _message(2, role='operational')])
    assert [m.content for m in updated.messages] == ['content 1', 'content 2']

    store.append_messages(conversation.id, [_message(3)])
    assert [m.id for m in store.get_conversation(conversation.id).messages] == ['m1', 'm2', 'm3']

    assert store.delete_conversation(conversation.id) is True
    assert store.get_conversation(conversation.id) is None
    assert store.delete_conversation(conversation.id) is False


def test_append_to_missing_conversation_fails(store):
    with pytest.raises(SqliteError):
        store.append_messages(999, [_message(1)])


def test_safety_flag_survives_storage(store):
    conversation = store.create_conversation('Safety', {})
    flagged = Message(id='s1', role='user', content='help', timestamp='2026-01-01T00:00:00+00:00', is_safety_override=True)

    stored = store.append_messages(conversation.id, [flagged])

    assert stored.messages[0].is_safety_override is True


def test_watermark_and_voice_settings(store):
    conversation = store.create_conversation('Voices', default_voice_settings())

    store.set_summarized_count(conversation.id, 16)
    updated = store.update_voice_settings(conversation.id, {**conversation.voice_settings, 'crisis': 'Puck'})

    assert updated.summarized_count == 16
    assert updated.voice_settings['crisis'] == 'Puck'


def test_memories_are_returned_newest_first(store):
    store.add_memory('first', [0.1, 0.2], 'ontological')
    store.add_memory('second', [0.3], 'crisis')

    memories = store.recent_memories(10)

    assert [m.text for m in memories] == ['second', 'first']
    assert memories[1].vector == [0.1, 0.2]


def test_profile_is_encrypted_at_rest(store):
    assert store.get_user_profile().core_profile == {}

    store.save_user_profile(UserProfile(core_profile={'core_rules': ['Be brief']}, living_summary='Ice cream plans'))
    raw = store._fetchone('SELECT core_profile FROM user_profiles WHERE id = 1')['core_profile']

    assert 'Be brief' not in raw
    assert len(raw.split(':')) == 3
    profile = store.get_user_profile()
    assert profile.core_rules == ['Be brief']
    assert profile.living_summary == 'Ice cream plans'


def test_profile_requires_encryption_key():
    client = SqliteClient(StorageConfig(database_path=':memory:', encryption_key=None))
    try:
        with pytest.raises(ProfileCryptoError):
            client.save_user_profile(UserProfile(core_profile={'topics': []}))
    finally:
        client.close()


def test_acquired_items_ledger(store):
    first = store.add_acquired_item('commercial freezer', 'operational', 'opening a shop')
    store.add_acquired_item('500 g sugar', 'operational', 'first batch')

    assert [item.item for item in store.list_acquired_items()] == ['commercial freezer', '500 g sugar']
    assert store.delete_acquired_item(first.id) is True
    assert [item.item for item in store.list_acquired_items()] == ['500 g sugar']


def test_health_check(store):
    assert store.health_check() is True
