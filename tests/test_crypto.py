"""
Credential encryption tests.
"""
import pytest

from msgrelay.exceptions import EncryptionKeyError
from msgrelay.services import crypto


def test_round_trip():
    packed = crypto.encrypt('{"token": "bot-token-123"}')

    iv, tag, cipher = packed.split(":")
    assert len(iv) == 32
    assert len(tag) == 32
    assert crypto.decrypt(packed) == '{"token": "bot-token-123"}'


def test_ciphertexts_are_randomised():
    assert crypto.encrypt("secret") != crypto.encrypt("secret")


def test_unicode_round_trip():
    assert crypto.decrypt(crypto.encrypt("héllo ✓")) == "héllo ✓"


def test_tampered_ciphertext_is_rejected():
    iv, tag, cipher = crypto.encrypt("secret").split(":")
    flipped = format(int(cipher[:2], 16) ^ 0xFF, "02x") + cipher[2:]

    with pytest.raises(ValueError, match="authentication"):
        crypto.decrypt(f"{iv}:{tag}:{flipped}")


def test_wrong_key_is_rejected():
    packed = crypto.encrypt("secret")
    crypto.initialize_encryption_key("ab" * 32)

    with pytest.raises(ValueError):
        crypto.decrypt(packed)


@pytest.mark.parametrize("packed", ["", "abc", "00:11", "00:11:22:33", "zz:11:22"])
def test_bad_format(packed):
    with pytest.raises(ValueError):
        crypto.decrypt(packed)


@pytest.mark.parametrize("key", ["", "not-hex", "ab" * 16, "ab" * 33])
def test_invalid_keys(key):
    with pytest.raises(EncryptionKeyError):
        crypto.initialize_encryption_key(key)
