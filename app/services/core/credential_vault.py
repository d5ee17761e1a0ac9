"""
Credential vault for Twizzit API credentials.

Passwords are encrypted at rest with AES-256-GCM under a process-wide master
key (``TWIZZIT_ENCRYPTION_KEY``). A 64-character hex key is used as the raw
32-byte key; any other value is hashed with SHA-256 to 32 bytes. Every
encryption draws a fresh random 96-bit IV, stored next to the ciphertext.

Plaintext passwords only ever live in memory: they are never written to the
database and never passed to a logger.

Usage:
    vault = CredentialVault(db)
    credential_id = vault.store("KC Antwerpen", "api-user", "s3cret")
    credential = vault.retrieve(credential_id)
    credential.password  # decrypted
"""
import hashlib
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ConfigurationError, CryptoError, CredentialNotFoundError
from app.core.logging import get_logger
from app.repositories.twizzit import CredentialRepository

logger = get_logger(__name__)

KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def derive_key(master_key: Optional[str]) -> bytes:
    """
    Turn the configured master key into 32 key bytes.

    Raises:
        ConfigurationError: If no key is configured
    """
    if not master_key:
        raise ConfigurationError("TWIZZIT_ENCRYPTION_KEY environment variable is required")
    if _HEX_KEY.match(master_key):
        return bytes.fromhex(master_key)
    return hashlib.sha256(master_key.encode("utf-8")).digest()


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str  # hex, includes the GCM tag
    iv: str  # hex


@dataclass(frozen=True)
class DecryptedCredential:
    """A credential with its password decrypted. Keep in memory only."""

    id: str
    organization_name: str
    username: str
    endpoint: str
    last_verified_at: Optional[datetime] = None
    password: str = field(default="", repr=False)


class CredentialVault:
    """Encrypts, stores and retrieves Twizzit credentials."""

    def __init__(self, db: Session, master_key: Optional[str] = None):
        """
        Args:
            db: SQLAlchemy database session
            master_key: Override for ``settings.TWIZZIT_ENCRYPTION_KEY``.
                        Resolved lazily, so a missing key only fails on first use.
        """
        self.db = db
        self.repo = CredentialRepository(db)
        self._master_key = master_key

    def _key(self) -> bytes:
        return derive_key(self._master_key or settings.TWIZZIT_ENCRYPTION_KEY)

    # ========================================================================
    # Cipher
    # ========================================================================

    def encrypt(self, secret: str) -> EncryptedSecret:
        """Encrypt a secret with a fresh random IV."""
        if secret is None:
            raise CryptoError("Cannot encrypt an empty secret")
        iv = os.urandom(IV_BYTES)
        ciphertext = AESGCM(self._key()).encrypt(iv, secret.encode("utf-8"), None)
        return EncryptedSecret(ciphertext=ciphertext.hex(), iv=iv.hex())

    def decrypt(self, ciphertext: str, iv: str) -> str:
        """
        Decrypt a secret.

        Raises:
            CryptoError: Malformed hex, wrong IV length, or authentication failure
                         (wrong key, wrong IV, tampered ciphertext)
        """
        key = self._key()
        try:
            iv_bytes = bytes.fromhex(iv)
            ciphertext_bytes = bytes.fromhex(ciphertext)
        except (TypeError, ValueError) as e:
            raise CryptoError("Encrypted credential is not valid hex", cause=e) from e

        if len(iv_bytes) != IV_BYTES:
            raise CryptoError(
                f"Invalid IV length: expected {IV_BYTES} bytes, got {len(iv_bytes)}"
            )
        if len(ciphertext_bytes) < TAG_BYTES:
            raise CryptoError("Ciphertext is too short")

        try:
            plaintext = AESGCM(key).decrypt(iv_bytes, ciphertext_bytes, None)
        except InvalidTag as e:
            raise CryptoError("Failed to decrypt credential", cause=e) from e
        return plaintext.decode("utf-8")

    # ========================================================================
    # Storage
    # ========================================================================

    def store(
        self,
        organization_name: str,
        username: str,
        password: str,
        endpoint: Optional[str] = None
    ) -> str:
        """
        Encrypt and persist a credential.

        Returns:
            New credential id
        """
        encrypted = self.encrypt(password)
        credential = self.repo.create(
            organization_name=organization_name,
            api_username=username,
            encrypted_password=encrypted.ciphertext,
            encryption_iv=encrypted.iv,
            api_endpoint=endpoint or settings.TWIZZIT_API_ENDPOINT,
            is_active=True,
        )
        self.repo.save()

        logger.info(
            "Stored Twizzit credential",
            extra={"credential_id": credential.id, "organization_name": organization_name}
        )
        return credential.id

    def retrieve(self, credential_id: str) -> DecryptedCredential:
        """
        Load and decrypt an active credential.

        Raises:
            CredentialNotFoundError: Missing or deactivated
            CryptoError: Stored ciphertext cannot be decrypted
        """
        credential = self.repo.find_active(credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)

        password = self.decrypt(credential.encrypted_password, credential.encryption_iv)
        return DecryptedCredential(
            id=credential.id,
            organization_name=credential.organization_name,
            username=credential.api_username,
            endpoint=credential.api_endpoint,
            last_verified_at=credential.last_verified_at,
            password=password,
        )

    def retrieve_by_organization(self, organization_name: str) -> DecryptedCredential:
        credential = self.repo.find_active_by_organization(organization_name)
        if credential is None:
            raise CredentialNotFoundError(organization_name)
        return self.retrieve(credential.id)

    def list_credentials(self) -> List[Dict]:
        """Active credentials without any secret material."""
        return [
            {
                "id": c.id,
                "organization_name": c.organization_name,
                "username": c.api_username,
                "endpoint": c.api_endpoint,
                "last_verified_at": c.last_verified_at,
                "created_at": c.created_at,
            }
            for c in self.repo.list_active()
        ]

    def deactivate(self, credential_id: str) -> None:
        if not self.repo.deactivate(credential_id):
            raise CredentialNotFoundError(credential_id)
        self.repo.save()
        logger.info("Deactivated Twizzit credential", extra={"credential_id": credential_id})

    def delete(self, credential_id: str) -> None:
        if not self.repo.delete(credential_id):
            raise CredentialNotFoundError(credential_id)
        self.repo.save()
        logger.info("Deleted Twizzit credential", extra={"credential_id": credential_id})

    def mark_verified(self, credential_id: str) -> None:
        self.repo.mark_verified(credential_id)
        self.repo.save()
