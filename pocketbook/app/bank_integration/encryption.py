"""
Token Encryption Module

Encrypts provider OAuth tokens before they are written to the users table,
using Fernet symmetric encryption keyed from SECRET_KEY.
"""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenEncryption:
    """
    Encrypt and decrypt provider tokens for storage.

    The Fernet key is the SHA-256 digest of the application secret, so any
    SECRET_KEY length works. Rotating SECRET_KEY makes stored tokens
    unreadable; they are then treated as absent and the user reconnects.
    """

    def __init__(self, secret_key: str):
        key_bytes = hashlib.sha256(secret_key.encode()).digest()
        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        """
        Encrypt a token for database storage.

        Args:
            token: Plain text token (None/empty passes through as None)

        Returns:
            Fernet token string suitable for a TEXT column
        """
        if not token:
            return None

        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: Optional[str]) -> Optional[str]:
        """
        Decrypt a token read from the database.

        Returns:
            Plain text token, or None if the value is empty or cannot be
            decrypted with the current key
        """
        if not encrypted_token:
            return None

        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken:
            logger.warning("Stored provider token could not be decrypted with the current SECRET_KEY")
            return None
