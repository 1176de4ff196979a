"""
Hybrid RSA-OAEP + AES-256-GCM message encryption.

Each bundle carries its own one-time AES key, wrapped with one reader's RSA
public key. A sent message is encrypted twice, once for the recipient and
once for the sender, with independent one-time keys, so the two copies share
no secret.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .keys import load_public_key, load_private_key
from .primitives import (
    KEY_SIZE,
    NONCE_SIZE,
    generate_key,
    generate_nonce,
    seal,
    unseal,
    b64encode,
    b64decode,
    CryptoError,
    InvalidFormat,
    DecryptFailure,
)

logger = logging.getLogger(__name__)

OAEP_PADDING = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None
)


@dataclass
class MessageBundle:
    """
    One encrypted copy of a message for one reader.

    Attributes:
        ciphertext: AES-GCM ciphertext + tag
        enc_key: One-time AES key encrypted with the reader's RSA public key
        iv: 12-byte GCM nonce
    """
    ciphertext: bytes
    enc_key: bytes
    iv: bytes

    def to_dict(self) -> Dict:
        """Convert to the wire form ``{ciphertext, encKey, iv}``"""
        return {
            'ciphertext': b64encode(self.ciphertext),
            'encKey': b64encode(self.enc_key),
            'iv': b64encode(self.iv)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'MessageBundle':
        """
        Create from the wire form.

        Raises:
            InvalidFormat: On missing fields or bad base64
        """
        try:
            return cls(
                ciphertext=b64decode(data['ciphertext']),
                enc_key=b64decode(data['encKey']),
                iv=b64decode(data['iv'])
            )
        except (KeyError, TypeError) as e:
            raise InvalidFormat("Malformed message bundle") from e


@dataclass
class EncryptedMessage:
    """Both readable copies of a sent message"""
    for_recipient: MessageBundle
    for_sender: MessageBundle

    def to_dict(self) -> Dict:
        return {
            'encryptedForRecipient': self.for_recipient.to_dict(),
            'encryptedForSender': self.for_sender.to_dict()
        }


def _as_plaintext(plaintext: Union[str, bytes]) -> bytes:
    if isinstance(plaintext, str):
        return plaintext.encode("utf-8")
    return bytes(plaintext)


def encrypt_for(plaintext: Union[str, bytes], public_key: Union[str, rsa.RSAPublicKey]) -> MessageBundle:
    """
    Encrypt a message for one reader.

    Args:
        plaintext: Message (str is UTF-8 encoded)
        public_key: Reader's RSA public key or its base64 SPKI export

    Returns:
        MessageBundle with a fresh one-time key and nonce
    """
    rsa_key = load_public_key(public_key)

    session_key = generate_key()
    iv = generate_nonce()
    ciphertext = seal(session_key, iv, _as_plaintext(plaintext))
    enc_key = rsa_key.encrypt(session_key, OAEP_PADDING)

    return MessageBundle(ciphertext=ciphertext, enc_key=enc_key, iv=iv)


def encrypt_for_both(
    plaintext: Union[str, bytes],
    recipient_public_key: Union[str, rsa.RSAPublicKey],
    sender_public_key: Union[str, rsa.RSAPublicKey]
) -> EncryptedMessage:
    """
    Encrypt a message so both recipient and sender can read it later.

    Each copy is produced by an independent ``encrypt_for`` call.
    """
    return EncryptedMessage(
        for_recipient=encrypt_for(plaintext, recipient_public_key),
        for_sender=encrypt_for(plaintext, sender_public_key)
    )


def decrypt_with(bundle: Union[MessageBundle, Dict], private_key: Union[str, rsa.RSAPrivateKey]) -> bytes:
    """
    Decrypt a bundle with the reader's private key.

    Args:
        bundle: MessageBundle or its wire dictionary
        private_key: RSA private key or its base64 PKCS#8 export

    Returns:
        Decrypted plaintext bytes

    Raises:
        DecryptFailure: For any failure (wrong key, corrupted or malformed bundle)
    """
    try:
        if not isinstance(bundle, MessageBundle):
            bundle = MessageBundle.from_dict(bundle)
        if len(bundle.iv) != NONCE_SIZE:
            raise InvalidFormat("Bad nonce length")

        rsa_key = load_private_key(private_key)
        session_key = rsa_key.decrypt(bundle.enc_key, OAEP_PADDING)
        if len(session_key) != KEY_SIZE:
            raise InvalidFormat("Bad session key length")

        return unseal(session_key, bundle.iv, bundle.ciphertext)
    except (CryptoError, ValueError, TypeError) as e:
        logger.debug("Message bundle could not be decrypted")
        raise DecryptFailure("Message could not be decrypted") from e


def decrypt_text(bundle: Union[MessageBundle, Dict], private_key: Union[str, rsa.RSAPrivateKey]) -> str:
    """``decrypt_with`` followed by UTF-8 decoding"""
    plaintext = decrypt_with(bundle, private_key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptFailure("Message could not be decrypted") from e
