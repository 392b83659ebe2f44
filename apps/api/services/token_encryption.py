"""
Token Encryption Service

Encrypts provider secrets (Foursquare/Strava OAuth tokens, Garmin password
and session dump) with Fernet symmetric encryption. Nothing is stored in
plain text.

- Key from TOKEN_ENCRYPTION_KEY
- Production refuses to start without a key; development generates a
  throwaway key and says so loudly
- Decrypt failures raise instead of returning None, so a corrupt token
  surfaces as an auth problem for that user rather than an empty header
"""

from cryptography.fernet import Fernet, InvalidToken
from typing import Optional
import logging
from core.config import settings

logger = logging.getLogger(__name__)


class TokenDecryptionError(ValueError):
    """Stored ciphertext could not be decrypted with the configured key."""


class TokenCipher:
    def __init__(self, key: Optional[str] = None):
        key = key or settings.TOKEN_ENCRYPTION_KEY
        if not key:
            if settings.ENVIRONMENT == "production":
                raise RuntimeError(
                    "TOKEN_ENCRYPTION_KEY must be set in production. "
                    "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            logger.warning("TOKEN_ENCRYPTION_KEY not set. Generating temporary key (NOT FOR PRODUCTION)")
            key = Fernet.generate_key().decode()

        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key format: {e}") from e

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise TokenDecryptionError("Stored token could not be decrypted") from e


_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    """Get or create the process-wide cipher."""
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher()
    return _cipher


def encrypt_token(token: Optional[str]) -> Optional[str]:
    return get_token_cipher().encrypt(token)


def decrypt_token(token: Optional[str]) -> Optional[str]:
    return get_token_cipher().decrypt(token)
