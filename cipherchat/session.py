"""
Logged-in key session.

Holds the unwrapped identity private key for one user between login and
logout. The key lives only in process memory: the session cannot be pickled,
and closing it drops the parsed key object. Python offers no way to wipe the
underlying memory, so invalidation is by reference only.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import TypeAdapter, ValidationError

from .backup import MessageRecord
from .hybrid import MessageBundle, EncryptedMessage, encrypt_for_both, decrypt_with
from .keys import generate_keypair, load_private_key, export_public_key
from .primitives import CryptoError
from .vault import PrivateKeyEnvelope, wrap_private_key, unwrap_private_key

logger = logging.getLogger(__name__)

DECRYPT_PLACEHOLDER = "[Unable to decrypt]"

_timestamp = TypeAdapter(datetime)


class SessionClosed(CryptoError):
    """The session has been logged out"""
    pass


@dataclass
class Registration:
    """
    What the server stores for a new account.

    Attributes:
        username: Account name
        public_key: base64 SPKI public key
        encrypted_private_key: Passphrase-wrapped private key
    """
    username: str
    public_key: str
    encrypted_private_key: PrivateKeyEnvelope

    def to_dict(self) -> Dict:
        return {
            'username': self.username,
            'publicKey': self.public_key,
            'encryptedPrivateKey': self.encrypted_private_key.to_dict()
        }


@dataclass
class DecryptedMessage:
    """
    A conversation entry after decryption.

    ``message`` is None when the stored record itself was malformed; the id
    and timestamp are then whatever could be recovered from it.
    """
    message: Optional[MessageRecord]
    plaintext: str
    decrypt_failed: bool = False
    message_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.message is not None:
            self.message_id = self.message.id
            self.created_at = self.message.created_at


def _timeline_key(entry: DecryptedMessage):
    # entries without a usable timestamp go last
    if entry.created_at is None:
        return (1, "")
    return (0, entry.created_at)


def _recover_failed(raw: Any) -> DecryptedMessage:
    message_id = None
    created_at = None
    if isinstance(raw, dict):
        if raw.get("_id") is not None:
            message_id = str(raw["_id"])
        try:
            created_at = _timestamp.validate_python(raw.get("createdAt"))
        except ValidationError:
            pass
    return DecryptedMessage(
        message=None,
        plaintext=DECRYPT_PLACEHOLDER,
        decrypt_failed=True,
        message_id=message_id,
        created_at=created_at
    )


def register_identity(username: str, passphrase: str) -> Registration:
    """
    Issue a key pair for a new account and wrap its private half.

    The unwrapped private key is not returned; log in with
    ``KeySession.unlock`` to use it.
    """
    keypair = generate_keypair()
    envelope = wrap_private_key(keypair.private_key, passphrase)
    logger.info("Issued identity key pair for %s", username)
    return Registration(username=username, public_key=keypair.public_key, encrypted_private_key=envelope)


class KeySession:
    """
    In-memory private key for the active login.

    Created by ``unlock`` and invalidated by ``close`` (also on leaving a
    ``with`` block).
    """

    def __init__(self, username: str, private_key: str):
        """
        Args:
            username: Identity owning the key
            private_key: base64 PKCS#8 private key
        """
        self.username = username
        self._rsa_key: Optional[rsa.RSAPrivateKey] = load_private_key(private_key)
        self.public_key = export_public_key(self._rsa_key.public_key())

    @classmethod
    def unlock(cls, username: str, envelope: Union[PrivateKeyEnvelope, Dict], passphrase: str) -> 'KeySession':
        """
        Unwrap the stored private key and start a session.

        Raises:
            WrongPassphrase: Wrong passphrase or corrupted envelope
        """
        session = cls(username, unwrap_private_key(envelope, passphrase))
        logger.info("Key session opened for %s", username)
        return session

    @classmethod
    async def unlock_async(cls, username: str, envelope: Union[PrivateKeyEnvelope, Dict], passphrase: str) -> 'KeySession':
        """``unlock`` with key derivation on a worker thread"""
        return await asyncio.to_thread(cls.unlock, username, envelope, passphrase)

    @property
    def active(self) -> bool:
        return self._rsa_key is not None

    def _key(self) -> rsa.RSAPrivateKey:
        if self._rsa_key is None:
            raise SessionClosed("Session has been closed")
        return self._rsa_key

    def encrypt_outgoing(self, plaintext: Union[str, bytes], recipient_public_key: str) -> EncryptedMessage:
        """Encrypt a message for the recipient and for ourselves"""
        self._key()
        return encrypt_for_both(plaintext, recipient_public_key, self.public_key)

    def decrypt(self, bundle: Union[MessageBundle, Dict]) -> bytes:
        """
        Decrypt one bundle addressed to us.

        Raises:
            DecryptFailure: If the bundle cannot be decrypted
            SessionClosed: After logout
        """
        return decrypt_with(bundle, self._key())

    def _select_copy(self, message: MessageRecord) -> MessageBundle:
        if message.sender.username == self.username:
            return message.encrypted_for_sender.to_bundle()
        return message.encrypted_for_recipient.to_bundle()

    def decrypt_message(self, message: Union[MessageRecord, Dict]) -> DecryptedMessage:
        """
        Decrypt a stored message, picking the copy meant for us.

        A failure, including a malformed stored record, yields a placeholder
        entry instead of an exception, so one bad message does not hide the
        rest of a conversation.
        """
        key = self._key()
        raw = message
        try:
            if not isinstance(message, MessageRecord):
                message = MessageRecord.model_validate(message)
        except ValidationError:
            logger.warning("Malformed stored message %s", raw.get("_id") if isinstance(raw, dict) else None)
            return _recover_failed(raw)

        try:
            plaintext = decrypt_with(self._select_copy(message), key).decode("utf-8")
        except (CryptoError, UnicodeDecodeError):
            logger.warning("Could not decrypt message %s", message.id)
            return DecryptedMessage(message=message, plaintext=DECRYPT_PLACEHOLDER, decrypt_failed=True)

        return DecryptedMessage(message=message, plaintext=plaintext)

    def decrypt_conversation(self, messages: Iterable[Union[MessageRecord, Dict]]) -> List[DecryptedMessage]:
        """Decrypt every message, ordered by the messages' own timestamps"""
        results = [self.decrypt_message(message) for message in messages]
        return sorted(results, key=_timeline_key)

    async def decrypt_conversation_async(self, messages: Iterable[Union[MessageRecord, Dict]]) -> List[DecryptedMessage]:
        """
        Decrypt messages concurrently on worker threads.

        Completion order is irrelevant; results are re-sorted by timestamp.
        """
        results = await asyncio.gather(*(
            asyncio.to_thread(self.decrypt_message, message)
            for message in messages
        ))
        return sorted(results, key=_timeline_key)

    def close(self):
        """Forget the parsed key; later use raises SessionClosed"""
        if self._rsa_key is not None:
            self._rsa_key = None
            logger.info("Key session closed for %s", self.username)

    logout = close

    def __enter__(self) -> 'KeySession':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __reduce__(self):
        raise TypeError("KeySession cannot be serialized")

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"KeySession(username={self.username!r}, {state})"
