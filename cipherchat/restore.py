"""
Backup restore checks.

The backup codec decrypts faithfully but does not know who is asking. Restore
code calls ``open_backup`` (or ``verify_backup_owner`` after its own decode)
and only writes anything once every check has passed.
"""

import asyncio
import logging
from typing import Dict, Union

from .backup import BackupEnvelope, BackupPayload, decode_backup
from .primitives import CryptoError

logger = logging.getLogger(__name__)


class OwnershipMismatch(CryptoError):
    """The backup belongs to a different user"""
    pass


def verify_backup_owner(payload: BackupPayload, username: str):
    """
    Ensure a decrypted backup belongs to the restoring user.

    Raises:
        OwnershipMismatch: If ``payload.owner.username`` differs
    """
    if payload.owner.username != username:
        logger.warning(
            "Rejected backup owned by %s for restore by %s",
            payload.owner.username,
            username
        )
        raise OwnershipMismatch("This backup belongs to a different user")


def open_backup(
    content: Union[str, bytes, Dict, BackupEnvelope],
    password: str,
    username: str
) -> BackupPayload:
    """
    Decrypt a backup and verify it belongs to ``username``.

    Nothing is returned unless decoding and the ownership check both succeed,
    so callers never see a partially trusted payload.

    Raises:
        InvalidFormat: Not a backup file
        WrongPassword: Wrong backup password or tampered file
        OwnershipMismatch: Backup belongs to someone else
    """
    payload = decode_backup(content, password)
    verify_backup_owner(payload, username)
    return payload


async def open_backup_async(
    content: Union[str, bytes, Dict, BackupEnvelope],
    password: str,
    username: str
) -> BackupPayload:
    """``open_backup`` on a worker thread"""
    return await asyncio.to_thread(open_backup, content, password, username)
