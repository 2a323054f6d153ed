"""
Encryption Service
Credential encryption at rest using AES-256-GCM
"""

import base64
import binascii
import json
import logging
import os
from typing import Optional, Dict, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from filegate.config import settings

logger = logging.getLogger(__name__)

SALT_SIZE = 16
NONCE_SIZE = 12  # GCM
KDF_ITERATIONS = 100000
ENCRYPTED_PREFIX = "ENC:"


class EncryptionService:
    """
    Encrypts credential records with a key derived per storage account

    Output format: base64(salt + nonce + ciphertext), where the ciphertext
    carries the GCM tag.
    """

    def __init__(self, master_key: Optional[str] = None):
        """
        Initialize encryption service

        Args:
            master_key: Master encryption key, defaults to CREDENTIALS_MASTER_KEY
        """
        self.master_key = master_key or settings.CREDENTIALS_MASTER_KEY
        if not self.master_key:
            raise ValueError("CREDENTIALS_MASTER_KEY is not configured")
        if len(self.master_key) < 32:
            logger.warning("Master key is too short! Use at least 32 characters in production")

    def _derive_key(self, account_id: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,  # AES-256
            salt=salt,
            iterations=KDF_ITERATIONS
        )
        password = f"{self.master_key}:{account_id}".encode('utf-8')
        return kdf.derive(password)

    def encrypt(self, plaintext: str, account_id: str) -> str:
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        key = self._derive_key(account_id, salt)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.b64encode(salt + nonce + ciphertext).decode('utf-8')

    def decrypt(self, encrypted_data: str, account_id: str) -> str:
        """
        Decrypt data produced by `encrypt`

        Raises:
            ValueError: If the data is malformed, was encrypted for another
                account, or was tampered with
        """
        try:
            data = base64.b64decode(encrypted_data.encode('utf-8'), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Failed to decrypt data: {e}") from e

        if len(data) <= SALT_SIZE + NONCE_SIZE:
            raise ValueError("Failed to decrypt data: payload too short")

        salt = data[:SALT_SIZE]
        nonce = data[SALT_SIZE:SALT_SIZE + NONCE_SIZE]
        ciphertext = data[SALT_SIZE + NONCE_SIZE:]
        key = self._derive_key(account_id, salt)

        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            logger.error(f"Decryption failed for account {account_id}: authentication tag mismatch")
            raise ValueError("Failed to decrypt data: authentication failed") from e
        return plaintext.decode('utf-8')

    def encrypt_credentials(self, credentials: Dict[str, Any], account_id: str) -> str:
        """Serialize and encrypt a whole credential record"""
        return ENCRYPTED_PREFIX + self.encrypt(json.dumps(credentials, sort_keys=True), account_id)

    def decrypt_credentials(self, stored: str, account_id: str) -> Dict[str, Any]:
        if not self.is_encrypted(stored):
            raise ValueError("Stored credentials are not encrypted")
        return json.loads(self.decrypt(stored[len(ENCRYPTED_PREFIX):], account_id))

    def is_encrypted(self, value: Any) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)
