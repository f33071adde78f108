"""
Credential resolver for stored ClickUp API keys.

Keys are sealed with AES-GCM. The 256-bit key is the SHA-256 digest of
``CREDENTIAL_ENCRYPTION_KEY``; each secret gets a fresh 12-byte nonce that is
stored hex-encoded next to the base64 ciphertext.
"""
import base64
import binascii
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import settings
from connectors.base import CredentialError

logger = logging.getLogger(__name__)

NONCE_BYTES: int = 12


def _cipher() -> AESGCM:
    key_material: str = settings.CREDENTIAL_ENCRYPTION_KEY
    if not key_material:
        raise CredentialError("CREDENTIAL_ENCRYPTION_KEY is not configured")
    return AESGCM(hashlib.sha256(key_material.encode("utf-8")).digest())


def encrypt_secret(secret: str) -> tuple[str, str]:
    """Encrypt ``secret``; returns ``(blob, iv)`` for the workspaces table."""
    if not secret:
        raise CredentialError("Cannot store an empty API key")
    nonce: bytes = os.urandom(NONCE_BYTES)
    ciphertext: bytes = _cipher().encrypt(nonce, secret.encode("utf-8"), None)
    return base64.b64encode(ciphertext).decode("ascii"), nonce.hex()


def decrypt_secret(blob: str, iv: str) -> str:
    """
    Decrypt a stored API key.

    Raises:
        CredentialError: the blob or iv is missing or corrupt, the key does
            not match, or the plaintext is empty.
    """
    if not blob or not iv:
        raise CredentialError("Workspace has no stored API key")

    try:
        nonce: bytes = bytes.fromhex(iv)
        ciphertext: bytes = base64.b64decode(blob, validate=True)
        plaintext: bytes = _cipher().decrypt(nonce, ciphertext, None)
        secret: str = plaintext.decode("utf-8")
    except (ValueError, binascii.Error, InvalidTag, UnicodeDecodeError) as exc:
        logger.error(
            "Failed to decrypt API key",
            extra={"encrypted_length": len(blob), "iv_length": len(iv)},
        )
        raise CredentialError("Stored API key could not be decrypted") from exc

    if not secret:
        raise CredentialError("Invalid API key after decryption")
    return secret
