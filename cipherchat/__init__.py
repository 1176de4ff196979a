"""
Cryptographic core for end-to-end encrypted chat.

Implements hybrid encryption with:
- RSA-OAEP (2048-bit, SHA-256) wrapping of one-time message keys
- AES-256-GCM message and envelope encryption
- PBKDF2-HMAC-SHA256 passphrase protection for private keys and backups
"""

from .primitives import (
    derive_key,
    seal,
    unseal,
    CryptoError,
    AuthenticationFailure,
    WrongPassphrase,
    WrongPassword,
    InvalidFormat,
    DecryptFailure,
    EntropyFailure
)
from .keys import KeyPair, generate_keypair, fingerprint, to_pem, from_pem
from .vault import PrivateKeyEnvelope, wrap_private_key, unwrap_private_key
from .hybrid import MessageBundle, EncryptedMessage, encrypt_for, encrypt_for_both, decrypt_with, decrypt_text
from .backup import BackupEnvelope, BackupPayload, build_backup_payload, encode_backup, decode_backup
from .restore import OwnershipMismatch, verify_backup_owner, open_backup
from .session import KeySession, SessionClosed, register_identity

__all__ = [
    'derive_key',
    'seal',
    'unseal',
    'CryptoError',
    'AuthenticationFailure',
    'WrongPassphrase',
    'WrongPassword',
    'InvalidFormat',
    'DecryptFailure',
    'EntropyFailure',
    'KeyPair',
    'generate_keypair',
    'fingerprint',
    'to_pem',
    'from_pem',
    'PrivateKeyEnvelope',
    'wrap_private_key',
    'unwrap_private_key',
    'MessageBundle',
    'EncryptedMessage',
    'encrypt_for',
    'encrypt_for_both',
    'decrypt_with',
    'decrypt_text',
    'BackupEnvelope',
    'BackupPayload',
    'build_backup_payload',
    'encode_backup',
    'decode_backup',
    'OwnershipMismatch',
    'verify_backup_owner',
    'open_backup',
    'KeySession',
    'SessionClosed',
    'register_identity'
]
