"""
Encrypted backup files.

A backup is double-encrypted: the messages inside are still the per-reader
E2E bundles produced by ``cipherchat.hybrid``, and the whole JSON payload is
then sealed again under a key derived from a separate backup password.

File layout::

    {
      "magic": "CIPHERCHAT_BACKUP_V1",
      "version": "1.0",
      "createdAt": "...",
      "salt": base64(16 bytes),
      "iv": base64(12 bytes),
      "ciphertext": base64,
      "stats": {"totalMessages": n, "totalContacts": n},
      "owner": "username"
    }

``stats`` and ``owner`` are cleartext so a user can tell backup files apart
without the password. The decoder does not check ownership; restore code must
call ``cipherchat.restore.verify_backup_owner`` before using the payload.
"""

import json
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .hybrid import MessageBundle
from .primitives import (
    NONCE_SIZE,
    SALT_SIZE,
    derive_key,
    generate_nonce,
    generate_salt,
    seal,
    unseal,
    b64encode,
    b64decode,
    AuthenticationFailure,
    InvalidFormat,
    WrongPassword,
)

logger = logging.getLogger(__name__)

BACKUP_MAGIC = "CIPHERCHAT_BACKUP_V1"
BACKUP_VERSION = "1.0"

# PBKDF2 iterations per envelope version. Raising the cost means adding a
# new version here; old files keep decoding with their original count.
BACKUP_KDF_ITERATIONS = {
    "1.0": 150000,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Model(BaseModel):
    # unknown stored fields are kept so they survive a backup round trip
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Identity(_Model):
    """A user as recorded in a backup (owner, sender, recipient)"""
    username: str
    public_key: str = Field(alias="publicKey")


class Contact(Identity):
    """A contact entry; older accounts may have stored contacts without a key"""
    public_key: Optional[str] = Field(default=None, alias="publicKey")


class BundleRecord(_Model):
    """A MessageBundle in its stored base64 form, carried through untouched"""
    ciphertext: str
    enc_key: str = Field(alias="encKey")
    iv: str

    def to_bundle(self) -> MessageBundle:
        return MessageBundle.from_dict(self.model_dump(by_alias=True))

    @classmethod
    def from_bundle(cls, bundle: MessageBundle) -> 'BundleRecord':
        return cls.model_validate(bundle.to_dict())


class MessageRecord(_Model):
    """A stored message with both of its encrypted copies"""
    id: str = Field(alias="_id")
    sender: Identity
    recipient: Identity
    encrypted_for_recipient: BundleRecord = Field(alias="encryptedForRecipient")
    encrypted_for_sender: BundleRecord = Field(alias="encryptedForSender")
    read: bool = False
    created_at: datetime = Field(alias="createdAt")


class BackupStats(_Model):
    total_messages: int = Field(alias="totalMessages", ge=0)
    total_contacts: int = Field(alias="totalContacts", ge=0)


class BackupPayload(_Model):
    """Decrypted backup contents"""
    version: str = BACKUP_VERSION
    created_at: datetime = Field(alias="createdAt", default_factory=_utcnow)
    owner: Identity
    contacts: List[Contact] = Field(default_factory=list)
    messages: List[MessageRecord] = Field(default_factory=list)
    stats: BackupStats


class BackupEnvelope(_Model):
    """Outer, password-protected backup document"""
    magic: str
    version: str
    created_at: datetime = Field(alias="createdAt")
    salt: str
    iv: str
    ciphertext: str
    stats: BackupStats
    owner: str

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        """Render the backup file contents"""
        return json.dumps(self.to_dict(), indent=2)


def build_backup_payload(
    owner: Union[Identity, Dict],
    contacts: Iterable[Union[Contact, Dict]],
    messages: Iterable[Union[MessageRecord, Dict]]
) -> BackupPayload:
    """
    Assemble a backup payload and compute its stats.

    Args:
        owner: Identity performing the export
        contacts: Contact identities
        messages: Stored messages, still in encrypted form

    Raises:
        InvalidFormat: If any record is malformed
    """
    contacts = list(contacts)
    messages = list(messages)
    try:
        return BackupPayload(
            version=BACKUP_VERSION,
            created_at=_utcnow(),
            owner=owner,
            contacts=contacts,
            messages=messages,
            stats=BackupStats(total_messages=len(messages), total_contacts=len(contacts))
        )
    except ValidationError as e:
        raise InvalidFormat("Invalid backup data structure") from e


def encode_backup(payload: BackupPayload, password: str) -> BackupEnvelope:
    """
    Encrypt a backup payload with a backup password.

    Args:
        payload: Backup contents
        password: Backup password (independent of the key passphrase)

    Returns:
        BackupEnvelope; use ``to_json()`` for the file contents
    """
    salt = generate_salt()
    iv = generate_nonce()
    key = derive_key(password, salt, BACKUP_KDF_ITERATIONS[BACKUP_VERSION])

    serialized = payload.model_dump_json(by_alias=True).encode("utf-8")
    ciphertext = seal(key, iv, serialized)

    logger.info(
        "Encrypted backup for %s: %d messages, %d contacts",
        payload.owner.username,
        payload.stats.total_messages,
        payload.stats.total_contacts
    )

    return BackupEnvelope(
        magic=BACKUP_MAGIC,
        version=BACKUP_VERSION,
        created_at=_utcnow(),
        salt=b64encode(salt),
        iv=b64encode(iv),
        ciphertext=b64encode(ciphertext),
        stats=payload.stats,
        owner=payload.owner.username
    )


def _parse_document(content: Union[str, bytes, Dict, BackupEnvelope]) -> Dict:
    if isinstance(content, BackupEnvelope):
        return content.to_dict()
    if isinstance(content, dict):
        return content
    try:
        document = json.loads(content)
    except (ValueError, TypeError) as e:
        raise InvalidFormat("Invalid backup file - could not parse JSON") from e
    if not isinstance(document, dict):
        raise InvalidFormat("Invalid backup file - not a CipherChat backup")
    return document


def read_envelope(content: Union[str, bytes, Dict, BackupEnvelope]) -> BackupEnvelope:
    """
    Parse and validate a backup document without decrypting it.

    Magic and version are checked before anything else, so non-backup files
    are rejected without paying for key derivation.

    Raises:
        InvalidFormat: If the document is not a supported backup
    """
    document = _parse_document(content)

    if document.get("magic") != BACKUP_MAGIC:
        raise InvalidFormat("Invalid backup file - not a CipherChat backup")
    version = document.get("version")
    if not isinstance(version, str) or version not in BACKUP_KDF_ITERATIONS:
        raise InvalidFormat(f"Unsupported backup version: {version!r}")

    try:
        return BackupEnvelope.model_validate(document)
    except ValidationError as e:
        raise InvalidFormat("Invalid backup file - missing or malformed fields") from e


def decode_backup(content: Union[str, bytes, Dict, BackupEnvelope], password: str) -> BackupPayload:
    """
    Decrypt a backup document.

    Args:
        content: File text, raw bytes, parsed dictionary or BackupEnvelope
        password: Backup password

    Returns:
        The decrypted BackupPayload. Ownership is NOT verified here.

    Raises:
        InvalidFormat: Not a backup, unsupported version or malformed fields
        WrongPassword: Wrong password or tampered ciphertext
    """
    envelope = read_envelope(content)

    salt = b64decode(envelope.salt)
    iv = b64decode(envelope.iv)
    ciphertext = b64decode(envelope.ciphertext)
    if len(salt) != SALT_SIZE or len(iv) != NONCE_SIZE:
        raise InvalidFormat("Invalid backup file - bad salt or iv")

    key = derive_key(password, salt, BACKUP_KDF_ITERATIONS[envelope.version])
    try:
        plaintext = unseal(key, iv, ciphertext)
    except AuthenticationFailure as e:
        logger.warning("Backup decryption failed for owner %s", envelope.owner)
        raise WrongPassword("Wrong backup password - could not decrypt") from e

    try:
        payload = BackupPayload.model_validate_json(plaintext)
    except ValidationError as e:
        raise InvalidFormat("Invalid backup data structure") from e

    logger.info("Decrypted backup for %s: %d messages", payload.owner.username, len(payload.messages))
    return payload


async def encode_backup_async(payload: BackupPayload, password: str) -> BackupEnvelope:
    """``encode_backup`` on a worker thread"""
    return await asyncio.to_thread(encode_backup, payload, password)


async def decode_backup_async(content: Union[str, bytes, Dict, BackupEnvelope], password: str) -> BackupPayload:
    """``decode_backup`` on a worker thread"""
    return await asyncio.to_thread(decode_backup, content, password)


def format_size(size: int) -> str:
    """Human readable size of a backup file"""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"
