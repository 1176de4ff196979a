"""
Identity key pairs.

RSA-2048 key pairs for wrapping one-time message keys with OAEP(SHA-256).
Keys travel as base64 DER text: SubjectPublicKeyInfo for the public half,
PKCS#8 for the private half.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .primitives import b64encode, b64decode, InvalidFormat

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537

PEM_HEADER = "-----BEGIN PUBLIC KEY-----"
PEM_FOOTER = "-----END PUBLIC KEY-----"
PEM_LINE_LENGTH = 64


@dataclass
class KeyPair:
    """
    Exported identity key pair.

    Attributes:
        public_key: base64 DER SubjectPublicKeyInfo, freely shareable
        private_key: base64 DER PKCS#8, must be wrapped before storage
    """
    public_key: str
    private_key: str

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key[:16]}..., private_key=<hidden>)"


def generate_keypair() -> KeyPair:
    """
    Generate a fresh RSA-2048 key pair for a new identity.

    Returns:
        KeyPair with both halves exported
    """
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=RSA_KEY_SIZE,
    )
    logger.debug("Generated RSA-%d key pair", RSA_KEY_SIZE)
    return KeyPair(
        public_key=export_public_key(private_key.public_key()),
        private_key=export_private_key(private_key),
    )


def export_public_key(public_key: rsa.RSAPublicKey) -> str:
    """Serialize an RSA public key to base64 SPKI"""
    return b64encode(public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ))


def export_private_key(private_key: rsa.RSAPrivateKey) -> str:
    """Serialize an RSA private key to base64 PKCS#8"""
    return b64encode(private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ))


def load_public_key(public_key: Union[str, rsa.RSAPublicKey]) -> rsa.RSAPublicKey:
    """
    Load an RSA public key from its base64 SPKI export.

    Raises:
        InvalidFormat: If the text is not an RSA public key
    """
    if isinstance(public_key, rsa.RSAPublicKey):
        return public_key
    try:
        key = serialization.load_der_public_key(b64decode(public_key))
    except (ValueError, TypeError) as e:
        raise InvalidFormat("Invalid public key encoding") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidFormat("Public key is not an RSA key")
    return key


def load_private_key(private_key: Union[str, rsa.RSAPrivateKey]) -> rsa.RSAPrivateKey:
    """
    Load an RSA private key from its base64 PKCS#8 export.

    Raises:
        InvalidFormat: If the text is not an RSA private key
    """
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key
    try:
        key = serialization.load_der_private_key(b64decode(private_key), password=None)
    except (ValueError, TypeError) as e:
        raise InvalidFormat("Invalid private key encoding") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidFormat("Private key is not an RSA key")
    return key


def public_key_of(private_key: Union[str, rsa.RSAPrivateKey]) -> str:
    """Exported public half of a private key"""
    return export_public_key(load_private_key(private_key).public_key())


def fingerprint(public_key: str) -> str:
    """
    SHA-256 fingerprint of an exported public key for out-of-band checks.

    Returns:
        Uppercase hex in 4-character blocks, e.g. ``"3F2A 91C0 ..."``
    """
    digest = hashlib.sha256(b64decode(public_key)).hexdigest().upper()
    return " ".join(digest[i:i + 4] for i in range(0, len(digest), 4))


def to_pem(public_key: str) -> str:
    """Wrap a base64 SPKI export in PEM markers for display"""
    lines = [public_key[i:i + PEM_LINE_LENGTH] for i in range(0, len(public_key), PEM_LINE_LENGTH)]
    return "\n".join([PEM_HEADER, *lines, PEM_FOOTER])


def from_pem(pem: str) -> str:
    """Strip PEM markers and line breaks, returning the base64 body"""
    body = pem.replace(PEM_HEADER, "").replace(PEM_FOOTER, "")
    return body.replace("\r", "").replace("\n", "").strip()
