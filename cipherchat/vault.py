"""
Passphrase protection for identity private keys.

The exported private key is sealed under a PBKDF2-derived key so the stored
envelope is opaque to the server. A failed unwrap is always reported as
WrongPassphrase, whether the passphrase was wrong or the envelope was
corrupted.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Union

from .primitives import (
    NONCE_SIZE,
    SALT_SIZE,
    PRIVATE_KEY_ITERATIONS,
    derive_key,
    generate_nonce,
    generate_salt,
    seal,
    unseal,
    b64encode,
    b64decode,
    AuthenticationFailure,
    InvalidFormat,
    WrongPassphrase,
)

logger = logging.getLogger(__name__)


@dataclass
class PrivateKeyEnvelope:
    """
    Encrypted private key as stored by the server.

    Attributes:
        ct: AES-GCM ciphertext + tag of the exported private key text
        salt: 16-byte PBKDF2 salt
        iv: 12-byte GCM nonce
    """
    ct: bytes
    salt: bytes
    iv: bytes

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'ct': b64encode(self.ct),
            'salt': b64encode(self.salt),
            'iv': b64encode(self.iv)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PrivateKeyEnvelope':
        """
        Create from dictionary.

        Raises:
            InvalidFormat: On missing fields, bad base64 or wrong lengths
        """
        try:
            envelope = cls(
                ct=b64decode(data['ct']),
                salt=b64decode(data['salt']),
                iv=b64decode(data['iv'])
            )
        except (KeyError, TypeError) as e:
            raise InvalidFormat("Malformed private key envelope") from e

        if len(envelope.salt) != SALT_SIZE or len(envelope.iv) != NONCE_SIZE:
            raise InvalidFormat("Malformed private key envelope")
        return envelope


def wrap_private_key(private_key: str, passphrase: str) -> PrivateKeyEnvelope:
    """
    Encrypt an exported private key with a passphrase.

    Args:
        private_key: base64 PKCS#8 export from ``generate_keypair``
        passphrase: User passphrase

    Returns:
        PrivateKeyEnvelope with fresh salt and nonce
    """
    salt = generate_salt()
    iv = generate_nonce()
    key = derive_key(passphrase, salt, PRIVATE_KEY_ITERATIONS)
    ct = seal(key, iv, private_key.encode("utf-8"))
    logger.debug("Wrapped private key (%d bytes)", len(ct))
    return PrivateKeyEnvelope(ct=ct, salt=salt, iv=iv)


def unwrap_private_key(envelope: Union[PrivateKeyEnvelope, Dict], passphrase: str) -> str:
    """
    Recover an exported private key from its envelope.

    Args:
        envelope: PrivateKeyEnvelope or its serialized dictionary
        passphrase: User passphrase

    Returns:
        base64 PKCS#8 private key

    Raises:
        WrongPassphrase: Wrong passphrase or corrupted envelope
    """
    if not isinstance(envelope, PrivateKeyEnvelope):
        try:
            envelope = PrivateKeyEnvelope.from_dict(envelope)
        except InvalidFormat as e:
            logger.warning("Private key unwrap failed")
            raise WrongPassphrase("Wrong passphrase") from e

    key = derive_key(passphrase, envelope.salt, PRIVATE_KEY_ITERATIONS)
    try:
        plaintext = unseal(key, envelope.iv, envelope.ct)
        return plaintext.decode("utf-8")
    except (AuthenticationFailure, ValueError) as e:
        logger.warning("Private key unwrap failed")
        raise WrongPassphrase("Wrong passphrase") from e
