"""
Credential encryption.

AES-256-GCM with a single process-wide key read from ENCRYPTION_KEY.
Ciphertext is packed as "ivHex:authTagHex:cipherHex" so values written by
earlier deployments stay readable.
"""
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from msgrelay.config import settings
from msgrelay.exceptions import EncryptionKeyError

IV_LENGTH = 16
TAG_LENGTH = 16

_encryption_key: bytes | None = None


def initialize_encryption_key(key_hex: str | None = None) -> None:
    """
    Load the process-wide key.

    Args:
        key_hex: 64 hex characters; defaults to settings.ENCRYPTION_KEY

    Raises:
        EncryptionKeyError: If the key is missing or not 32 bytes of hex
    """
    global _encryption_key
    key_hex = key_hex if key_hex is not None else settings.ENCRYPTION_KEY

    if not key_hex:
        raise EncryptionKeyError(
            "ENCRYPTION_KEY environment variable is required. "
            "Generate a secure key using: openssl rand -hex 32"
        )

    try:
        key = bytes.fromhex(key_hex)
    except ValueError as e:
        raise EncryptionKeyError("ENCRYPTION_KEY must be hex encoded") from e

    if len(key) != 32:
        raise EncryptionKeyError(
            "ENCRYPTION_KEY must be exactly 32 bytes when decoded from hex. "
            "Generate a secure key using: openssl rand -hex 32"
        )

    _encryption_key = key


def get_encryption_key() -> bytes:
    if _encryption_key is None:
        initialize_encryption_key()
    return _encryption_key


def encrypt(plaintext: str) -> str:
    """Encrypt a string and return the packed ciphertext."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(get_encryption_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag to the ciphertext
    cipher, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{cipher.hex()}"


def decrypt(packed: str) -> str:
    """
    Decrypt a packed ciphertext.

    Raises:
        ValueError: If the format is wrong or authentication fails
    """
    parts = packed.split(":")
    if len(parts) != 3:
        raise ValueError("Invalid encrypted data format")

    try:
        iv, tag, cipher = (bytes.fromhex(part) for part in parts)
    except ValueError as e:
        raise ValueError("Invalid encrypted data format") from e

    try:
        plaintext = AESGCM(get_encryption_key()).decrypt(iv, cipher + tag, None)
    except InvalidTag as e:
        raise ValueError("Encrypted data failed authentication") from e

    return plaintext.decode("utf-8")
