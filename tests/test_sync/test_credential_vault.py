"""Unit tests for the credential vault.

Test Strategy:
1. Encrypt/decrypt with AES-256-GCM and a fresh IV per call
2. Tampered ciphertext, wrong IV and malformed hex raise CryptoError
3. Store/retrieve keeps plaintext out of the database
4. Deactivated and deleted credentials are not retrievable
5. A missing master key fails on first use with ConfigurationError
"""
import logging

import pytest
from sqlalchemy.orm import Session

from app.core.exceptions import ConfigurationError, CredentialNotFoundError, CryptoError
from app.models import TwizzitCredential
from app.services.core.credential_vault import CredentialVault, derive_key


class TestKeyDerivation:
    """Master key handling."""

    def test_hex_key_used_as_raw_bytes(self):
        key = "ab" * 32
        assert derive_key(key) == bytes.fromhex(key)

    def test_passphrase_hashed_to_32_bytes(self):
        assert len(derive_key("correct horse battery staple")) == 32

    def test_missing_key_raises_configuration_error(self):
        with pytest.raises(ConfigurationError):
            derive_key(None)
        with pytest.raises(ConfigurationError):
            derive_key("")


class TestCipher:
    """Encryption round trips and tamper detection."""

    # Encryption
    # ─────────────────────────────────────────────────────────────

    def test_encrypt_decrypt(self, vault: CredentialVault):
        secret = vault.encrypt("hunter2")
        assert vault.decrypt(secret.ciphertext, secret.iv) == "hunter2"

    def test_fresh_iv_per_encryption(self, vault: CredentialVault):
        """Same plaintext twice must give different IVs and ciphertexts."""
        first = vault.encrypt("same")
        second = vault.encrypt("same")
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext
        assert len(bytes.fromhex(first.iv)) == 12

    def test_unicode_secret(self, vault: CredentialVault):
        secret = vault.encrypt("wachtwoord-é-ü-✓")
        assert vault.decrypt(secret.ciphertext, secret.iv) == "wachtwoord-é-ü-✓"

    # Failures
    # ─────────────────────────────────────────────────────────────

    def test_tampered_ciphertext(self, vault: CredentialVault):
        secret = vault.encrypt("hunter2")
        flipped = ("0" if secret.ciphertext[0] != "0" else "1") + secret.ciphertext[1:]
        with pytest.raises(CryptoError):
            vault.decrypt(flipped, secret.iv)

    def test_wrong_iv(self, vault: CredentialVault):
        secret = vault.encrypt("hunter2")
        other = vault.encrypt("hunter2")
        with pytest.raises(CryptoError):
            vault.decrypt(secret.ciphertext, other.iv)

    def test_iv_of_wrong_length(self, vault: CredentialVault):
        secret = vault.encrypt("hunter2")
        with pytest.raises(CryptoError, match="IV length"):
            vault.decrypt(secret.ciphertext, "00" * 8)

    def test_malformed_hex(self, vault: CredentialVault):
        with pytest.raises(CryptoError):
            vault.decrypt("not-hex", "00" * 12)

    def test_wrong_master_key(self, db_session: Session, vault: CredentialVault):
        secret = vault.encrypt("hunter2")
        other = CredentialVault(db_session, master_key="a different passphrase")
        with pytest.raises(CryptoError):
            other.decrypt(secret.ciphertext, secret.iv)


class TestCredentialStorage:
    """Persistence through the vault."""

    def test_store_and_retrieve(self, vault: CredentialVault):
        credential_id = vault.store("KC Antwerpen", "api-user", "s3cret", "https://twizzit.test")

        credential = vault.retrieve(credential_id)

        assert credential.id == credential_id
        assert credential.organization_name == "KC Antwerpen"
        assert credential.username == "api-user"
        assert credential.password == "s3cret"
        assert credential.endpoint == "https://twizzit.test"

    def test_plaintext_never_persisted(self, db_session: Session, vault: CredentialVault):
        credential_id = vault.store("KC Antwerpen", "api-user", "s3cret-plain")

        row = db_session.get(TwizzitCredential, credential_id)

        assert "s3cret-plain" not in row.encrypted_password
        assert "s3cret-plain".encode().hex() not in row.encrypted_password
        assert row.api_endpoint == "https://app.twizzit.com"

    def test_password_not_in_repr_or_listing(self, vault: CredentialVault):
        credential_id = vault.store("KC Antwerpen", "api-user", "s3cret-plain")

        assert "s3cret-plain" not in repr(vault.retrieve(credential_id))
        listing = vault.list_credentials()
        assert [c["id"] for c in listing] == [credential_id]
        assert "s3cret-plain" not in str(listing)

    def test_password_never_logged(self, vault: CredentialVault, caplog):
        with caplog.at_level(logging.DEBUG):
            credential_id = vault.store("KC Antwerpen", "api-user", "s3cret-plain")
            vault.retrieve(credential_id)
        assert "s3cret-plain" not in caplog.text
        for record in caplog.records:
            assert "s3cret-plain" not in str(record.__dict__)

    def test_unknown_credential(self, vault: CredentialVault):
        with pytest.raises(CredentialNotFoundError):
            vault.retrieve("does-not-exist")

    def test_deactivated_credential_not_retrievable(self, vault: CredentialVault):
        credential_id = vault.store("KC Antwerpen", "api-user", "s3cret")
        vault.deactivate(credential_id)

        with pytest.raises(CredentialNotFoundError):
            vault.retrieve(credential_id)
        assert vault.list_credentials() == []

    def test_delete(self, db_session: Session, vault: CredentialVault):
        credential_id = vault.store("KC Antwerpen", "api-user", "s3cret")
        vault.delete(credential_id)

        assert db_session.get(TwizzitCredential, credential_id) is None
        with pytest.raises(CredentialNotFoundError):
            vault.delete(credential_id)

    def test_duplicate_organization_names_allowed(self, vault: CredentialVault):
        first = vault.store("KC Antwerpen", "user-a", "a")
        second = vault.store("KC Antwerpen", "user-b", "b")
        assert first != second
        assert len(vault.list_credentials()) == 2

    def test_retrieve_by_organization(self, vault: CredentialVault):
        credential_id = vault.store("KC Antwerpen", "api-user", "s3cret")

        credential = vault.retrieve_by_organization("KC Antwerpen")

        assert credential.id == credential_id
        assert credential.password == "s3cret"
        with pytest.raises(CredentialNotFoundError):
            vault.retrieve_by_organization("Zulte HC")

    def test_missing_master_key_fails_on_use(self, db_session: Session, monkeypatch):
        from app.core.config import settings

        monkeypatch.setattr(settings, "TWIZZIT_ENCRYPTION_KEY", None)
        vault = CredentialVault(db_session)

        with pytest.raises(ConfigurationError):
            vault.store("KC Antwerpen", "api-user", "s3cret")
