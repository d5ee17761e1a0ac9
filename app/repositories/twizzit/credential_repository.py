"""
Credential Repository for stored Twizzit API credentials.

Only the credential vault writes through this repository; everything else
asks the vault for decrypted credentials.
"""
from typing import Optional, List

from app.models import TwizzitCredential
from app.repositories.base import BaseRepository
from app.utils.timezone import utc_now


class CredentialRepository(BaseRepository[TwizzitCredential]):
    """Repository for encrypted credential rows."""

    def __init__(self, db):
        super().__init__(TwizzitCredential, db)

    def find_active(self, credential_id: str) -> Optional[TwizzitCredential]:
        """Find a credential by id, ignoring deactivated rows."""
        return self.where_first(
            TwizzitCredential.id == credential_id,
            TwizzitCredential.is_active.is_(True)
        )

    def find_active_by_organization(self, organization_name: str) -> Optional[TwizzitCredential]:
        """Most recently created active credential for an organization label."""
        return (
            self.query()
            .filter(
                TwizzitCredential.organization_name == organization_name,
                TwizzitCredential.is_active.is_(True)
            )
            .order_by(TwizzitCredential.created_at.desc())
            .first()
        )

    def list_active(self) -> List[TwizzitCredential]:
        return (
            self.query()
            .filter(TwizzitCredential.is_active.is_(True))
            .order_by(TwizzitCredential.organization_name)
            .all()
        )

    def deactivate(self, credential_id: str) -> bool:
        credential = self.find_by_id(credential_id)
        if credential is None:
            return False
        credential.is_active = False
        credential.updated_at = utc_now()
        return True

    def mark_verified(self, credential_id: str) -> None:
        credential = self.find_by_id(credential_id)
        if credential is not None:
            credential.last_verified_at = utc_now()
