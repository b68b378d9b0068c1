"""Token vault: AES-256-GCM encryption for OAuth tokens at rest."""

import binascii
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.config import get_settings
from app.errors import ConfigurationError, MalformedTokenError

NONCE_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32
PBKDF2_ITERATIONS = 100_000
SECRET_ENV_NAME = "CALENDAR_TOKEN_ENCRYPTION_KEY"


@lru_cache(maxsize=8)
def _derive_key(secret: str) -> bytes:
    """Derive the 256-bit key from the secret, salted with its first 16 chars."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=secret[:16].encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


class TokenVault:
    """Encrypts and decrypts token strings with a key derived from a secret.

    Blobs are ``nonce_hex:tag_hex:ciphertext_hex``.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError(f"{SECRET_ENV_NAME} environment variable is not set")
        self._aesgcm = AESGCM(_derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token.

        Args:
            plaintext: Token string to encrypt

        Returns:
            Colon-delimited hex blob (nonce, tag, ciphertext)
        """
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a token blob.

        Raises:
            MalformedTokenError: if the blob is not three hex fields or fails
                tag verification
        """
        parts = blob.split(":") if isinstance(blob, str) else []
        if len(parts) != 3:
            raise MalformedTokenError("Invalid encrypted token format")

        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except (ValueError, binascii.Error) as e:
            raise MalformedTokenError(f"Invalid encrypted token encoding: {e}") from e

        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise MalformedTokenError("Invalid encrypted token format")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise MalformedTokenError("Token authentication failed") from e

        return plaintext.decode("utf-8")


def get_token_vault(secret: Optional[str] = None) -> TokenVault:
    """Build a vault for the given secret, or the configured one."""
    if secret is None:
        secret = get_settings().calendar_token_encryption_key
    return TokenVault(secret or "")


def encrypt_token(plaintext: str, secret: Optional[str] = None) -> str:
    """Convenience function to encrypt a token."""
    return get_token_vault(secret).encrypt(plaintext)


def decrypt_token(blob: str, secret: Optional[str] = None) -> str:
    """Convenience function to decrypt a token."""
    return get_token_vault(secret).decrypt(blob)
