"""
Encryption of OAuth tokens at rest using AES-256-GCM (from cryptography).

Tokens are encrypted before being stored on the session row and decrypted only
when a refresh is needed. Ciphertext and nonce are hex so they fit in text
columns next to each other. A fresh 96-bit nonce is drawn for every call.
"""
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import ConfigError, MalformedCiphertextError, TamperedCiphertextError

KEY_SIZE = 32
NONCE_SIZE = 12


def load_key(hex_key: str) -> bytes:
    """Decode the 64-char hex ENCRYPTION_KEY into 32 raw bytes."""
    hex_key = hex_key.strip()
    if len(hex_key) != KEY_SIZE * 2:
        raise ConfigError("ENCRYPTION_KEY must be 64 hex characters (256 bits)")
    try:
        return bytes.fromhex(hex_key)
    except ValueError:
        raise ConfigError("ENCRYPTION_KEY is not valid hex")


def encrypt(key: bytes, plaintext: str) -> tuple[str, str]:
    """Encrypt plaintext; returns (ciphertext_hex, nonce_hex)."""
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode(), None)
    return ciphertext.hex(), nonce.hex()


def decrypt(key: bytes, ciphertext_hex: str, nonce_hex: str) -> str:
    """
    Decrypt a stored token.

    Raises MalformedCiphertextError for bad hex or a wrong-size nonce, and
    TamperedCiphertextError when the authentication tag does not verify.
    """
    try:
        ciphertext = binascii.unhexlify(ciphertext_hex)
        nonce = binascii.unhexlify(nonce_hex)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedCiphertextError(f"Invalid hex encoding: {e}") from e
    if len(nonce) != NONCE_SIZE:
        raise MalformedCiphertextError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise TamperedCiphertextError("Ciphertext failed authentication") from e
    try:
        return plaintext.decode()
    except UnicodeDecodeError as e:
        raise MalformedCiphertextError("Decrypted token is not valid UTF-8") from e


class TokenCipher:
    """Holds the process-wide key; built once in main.create_app and injected."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ConfigError(f"Encryption key must be {KEY_SIZE} bytes")
        self._key = key

    def encrypt(self, plaintext: str) -> tuple[str, str]:
        return encrypt(self._key, plaintext)

    def decrypt(self, ciphertext_hex: str, nonce_hex: str) -> str:
        return decrypt(self._key, ciphertext_hex, nonce_hex)
