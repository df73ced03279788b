"""Tests for profile encryption."""

import json

import pytest

from analysis_room.utils.profile_crypto import ProfileCipher, ProfileCryptoError

PROFILE = {'topics': ['גלידה', 'pricing'], 'core_rules': ['Always answer in Hebrew']}


@pytest.fixture
def cipher():
    return ProfileCipher('test-secret')


def test_encrypted_format(cipher):
    stored = cipher.encrypt(PROFILE)
    iv, tag, ciphertext = stored.split(':')

    assert len(iv) == 24
    assert len(tag) == 32
    assert 'pricing' not in stored
    assert cipher.decrypt(stored) == PROFILE


def test_each_encryption_uses_fresh_iv(cipher):
    assert cipher.encrypt(PROFILE) != cipher.encrypt(PROFILE)


def test_wrong_key_is_rejected(cipher):
    stored = cipher.encrypt(PROFILE)

    with pytest.raises(ProfileCryptoError):
        ProfileCipher('another-secret').decrypt(stored)


def test_legacy_plaintext_profile_is_readable(cipher):
    assert cipher.decrypt(json.dumps(PROFILE)) == PROFILE


def test_empty_value_gives_empty_profile(cipher):
    assert cipher.decrypt('') == {}
    assert cipher.decrypt(None) == {}


def test_garbage_is_rejected(cipher):
    with pytest.raises(ProfileCryptoError):
        cipher.decrypt('zz:yy:xx')


def test_missing_secret_is_rejected():
    with pytest.raises(ProfileCryptoError):
        ProfileCipher(None)
