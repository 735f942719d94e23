import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import config


logger = logging.getLogger(__name__)

IV_LENGTH = 12
KEY_LENGTH = 32


class EncryptionKeyMissing(RuntimeError):
    pass


class DecryptionError(Exception):
    """Stored credentials could not be decrypted; the user must re-enter them."""


def derive_key(secret: str) -> bytes:
    raw = secret.encode("utf-8")
    # Zero-padded or truncated to 32 bytes for AES-256
    return raw[:KEY_LENGTH].ljust(KEY_LENGTH, b"\0")


class CredentialCipher:
    """AES-256-GCM for exchange credentials at rest.

    Wire format: base64(iv[12] || ciphertext || tag[16]).
    """

    def __init__(self, secret: Optional[str] = None):
        if secret is None:
            secret = os.getenv("ENCRYPTION_KEY") or config.section("security").get("encryption_key")
        if not secret or (secret.startswith("${") and secret.endswith("}")):
            raise EncryptionKeyMissing("ENCRYPTION_KEY not configured")
        self._aead = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise DecryptionError("Encrypted value is not valid base64") from exc
        if len(combined) <= IV_LENGTH:
            raise DecryptionError("Encrypted value is too short")
        iv, sealed = combined[:IV_LENGTH], combined[IV_LENGTH:]
        try:
            plaintext = self._aead.decrypt(iv, sealed, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication tag mismatch") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not UTF-8") from exc
