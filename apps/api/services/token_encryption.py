"""
Token Encryption Service

Encrypts and decrypts provider OAuth tokens using Fernet symmetric encryption.
Access and refresh tokens are only ever stored encrypted.
"""

from cryptography.fernet import Fernet, InvalidToken
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TokenEncryption:
    """Handles encryption/decryption of OAuth tokens."""

    def __init__(self, encryption_key: Optional[str], environment: str = "development"):
        if not encryption_key:
            # SECURITY: Fail hard in production - no auto-generated keys
            if environment == "production":
                raise RuntimeError(
                    "TOKEN_ENCRYPTION_KEY must be set in production. "
                    "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            logger.warning("TOKEN_ENCRYPTION_KEY not set. Generating temporary key (NOT FOR PRODUCTION)")
            encryption_key = Fernet.generate_key().decode()

        key = encryption_key.encode() if isinstance(encryption_key, str) else encryption_key
        try:
            self.cipher = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key format: {e}") from e

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return None
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Returns None if the value is empty or was encrypted under another key.
        """
        if not ciphertext:
            return None
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Token decryption failed: invalid token or wrong key")
            return None
