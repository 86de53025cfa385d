"""Credential lookup for node executors.

Executors fetch the encrypted record inside a durable step (so only
ciphertext is ever memoized) and decrypt it just-in-time with `reveal`.
"""

import json
from typing import Any, Dict, Optional

from core.database import Database
from core.encryption import EncryptionService
from core.logging import get_logger
from models.database import Credential
from services.execution.errors import ConfigurationError

logger = get_logger(__name__)


class CredentialStore:
    def __init__(self, database: Database, encryption: EncryptionService):
        self.database = database
        self.encryption = encryption

    async def fetch(self, credential_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Encrypted credential record owned by `user_id`, or None."""
        credential = await self.database.get_credential(credential_id, user_id)
        if credential is None:
            logger.info("Credential not found", credential_id=credential_id, user_id=user_id)
            return None
        return {
            "id": credential.id,
            "name": credential.name,
            "type": credential.type,
            "value": credential.value,
        }

    def reveal(self, record: Dict[str, Any]) -> str:
        """Decrypt a fetched record's value."""
        try:
            return self.encryption.decrypt(record["value"])
        except ValueError as e:
            raise ConfigurationError("Credential could not be decrypted") from e

    def reveal_json(self, record: Dict[str, Any]) -> Dict[str, Any]:
        plaintext = self.reveal(record)
        try:
            value = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Credential {record.get('name')} is not valid JSON") from e
        if not isinstance(value, dict):
            raise ConfigurationError(f"Credential {record.get('name')} must be a JSON object")
        return value

    async def create(self, credential_id: str, user_id: str, name: str,
                     credential_type: str, plaintext: str) -> Credential:
        """Encrypt and store a credential. Used by seeding scripts and tests."""
        credential = Credential(
            id=credential_id,
            user_id=user_id,
            name=name,
            type=credential_type,
            value=self.encryption.encrypt(plaintext),
        )
        return await self.database.save_credential(credential)
