"""Credential encryption using Fernet with a PBKDF2-derived key.

Credential values are stored as Fernet tokens. The key is derived from
API_KEY_ENCRYPTION_KEY and a salt persisted in the database, so ciphertext
survives restarts. Plaintext exists only in memory, inside one executor
invocation.
"""

import base64
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.logging import get_logger

logger = get_logger(__name__)


class EncryptionService:
    """Fernet-based encryption service with PBKDF2 key derivation.

    Usage:
        encryption = EncryptionService()
        salt = await database.get_or_create_salt(EncryptionService.generate_salt)
        encryption.initialize(settings.api_key_encryption_key, salt)
    """

    PBKDF2_ITERATIONS = 600_000
    SALT_LENGTH = 32

    def __init__(self, iterations: Optional[int] = None):
        self._fernet: Optional[Fernet] = None
        self._iterations = iterations or self.PBKDF2_ITERATIONS

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive a URL-safe base64 Fernet key from the server passphrase."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def initialize(self, password: str, salt: bytes) -> None:
        self._fernet = Fernet(self.derive_key(password, salt))
        logger.debug("Encryption service initialized")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential value. Raises RuntimeError before initialize()."""
        if not self._fernet:
            raise RuntimeError("Encryption service not initialized - check server startup")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a Fernet token.

        Raises:
            RuntimeError: If encryption service not initialized
            ValueError: If the token was produced with another key or is corrupted
        """
        if not self._fernet:
            raise RuntimeError("Encryption service not initialized - check server startup")
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            logger.error("Credential decryption failed")
            raise ValueError("Decryption failed - invalid key or corrupted data") from e

    def is_initialized(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(EncryptionService.SALT_LENGTH)
