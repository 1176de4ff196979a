"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations every other part of the
package is built from: randomness, password-based key derivation
(PBKDF2-HMAC-SHA256) and authenticated encryption (AES-256-GCM).

Nonce handling is the caller's job. ``seal`` never checks whether a nonce has
been used before with the same key, so every call site must pass a fresh
``random_bytes(NONCE_SIZE)`` value.
"""

import os
import base64
import binascii
import logging
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
SALT_SIZE = 16
TAG_SIZE = 16

PRIVATE_KEY_ITERATIONS = 100000


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class AuthenticationFailure(CryptoError):
    """AEAD tag mismatch: wrong key or tampered ciphertext"""
    pass


class WrongPassphrase(CryptoError):
    """The private key envelope could not be opened with this passphrase"""
    pass


class WrongPassword(CryptoError):
    """The backup could not be opened with this password"""
    pass


class InvalidFormat(CryptoError):
    """Structurally invalid envelope, bundle or key encoding"""
    pass


class DecryptFailure(CryptoError):
    """A message bundle could not be decrypted with the given private key"""
    pass


class EntropyFailure(CryptoError):
    """The operating system randomness source is unavailable"""
    pass


def random_bytes(size: int) -> bytes:
    """
    Read ``size`` bytes from the OS CSPRNG.

    Raises:
        EntropyFailure: If the entropy source fails. Never retried.
    """
    try:
        return os.urandom(size)
    except (OSError, NotImplementedError) as e:
        logger.critical("Entropy source failure")
        raise EntropyFailure("Secure random source unavailable") from e


def b64encode(data: bytes) -> str:
    """Standard padded base64, as text"""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Strict standard base64 decoding.

    Raises:
        InvalidFormat: If the text is not valid base64
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise InvalidFormat("Invalid base64 data") from e


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def derive_key(passphrase: Union[str, bytes], salt: bytes, iterations: int) -> bytes:
    """
    Derive a 256-bit symmetric key from a passphrase using PBKDF2-HMAC-SHA256.

    Deliberately slow. Iteration counts are fixed per call site
    (PRIVATE_KEY_ITERATIONS for the key vault, the backup table in
    ``cipherchat.backup`` for backups) and must not change for existing
    envelopes.

    Args:
        passphrase: User passphrase (str is UTF-8 encoded)
        salt: 16 random bytes stored beside the ciphertext
        iterations: PBKDF2 iteration count

    Returns:
        32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(_as_bytes(passphrase))


def generate_key() -> bytes:
    """Fresh random 256-bit AES key"""
    return random_bytes(KEY_SIZE)


def generate_nonce() -> bytes:
    """Fresh random 96-bit GCM nonce"""
    return random_bytes(NONCE_SIZE)


def generate_salt() -> bytes:
    """Fresh random 16-byte KDF salt"""
    return random_bytes(SALT_SIZE)


def _check_params(key: bytes, nonce: bytes):
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")


def seal(key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt a payload using AES-256-GCM.

    The caller must never reuse ``nonce`` with the same ``key``.

    Args:
        key: 32-byte encryption key
        nonce: 12-byte nonce, fresh for every call
        plaintext: Data to encrypt

    Returns:
        ciphertext + tag (16 bytes)
    """
    _check_params(key, nonce)
    return AESGCM(key).encrypt(nonce, plaintext, None)


def unseal(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt a payload sealed with ``seal``.

    Args:
        key: 32-byte encryption key
        nonce: The nonce used when sealing
        ciphertext: ciphertext + tag

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationFailure: On any tag mismatch; no partial plaintext
    """
    _check_params(key, nonce)
    if len(ciphertext) < TAG_SIZE:
        raise AuthenticationFailure("Ciphertext too short")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationFailure("Authentication failed") from e
