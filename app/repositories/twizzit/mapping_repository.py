"""
External-id mapping repositories (organization→club, group→team, contact→player).

Each mapping table has a unique external id; lookups by external id are the
first step of every reconciliation.
"""
from typing import Optional, List

from app.models import TwizzitClubMapping, TwizzitTeamMapping, TwizzitPlayerMapping
from app.repositories.base import BaseRepository
from app.utils.timezone import utc_now


class ExternalMappingRepository(BaseRepository):
    """Shared behaviour for the three mapping tables.

    Subclasses name the external id / display name / local id columns.
    """

    external_id_field: str = ""
    external_name_field: str = ""
    local_id_field: str = ""

    @property
    def external_id_column(self):
        return getattr(self.model_type, self.external_id_field)

    def find_by_external_id(self, external_id) -> Optional[object]:
        return self.where_first(self.external_id_column == str(external_id))

    def find_by_local_id(self, local_id: str) -> Optional[object]:
        return self.where_first(getattr(self.model_type, self.local_id_field) == local_id)

    def link(self, external_id, external_name: Optional[str], local_id: str, **extra):
        """Create a mapping row in the success state (not committed)."""
        values = {
            self.external_id_field: str(external_id),
            self.external_name_field: external_name,
            self.local_id_field: local_id,
            "last_synced_at": utc_now(),
            "sync_status": "success",
            "sync_error": None,
        }
        values.update(extra)
        return self.create(**values)

    def mark_success(self, mapping, external_name: Optional[str], **extra) -> None:
        setattr(mapping, self.external_name_field, external_name)
        mapping.last_synced_at = utc_now()
        mapping.sync_status = "success"
        mapping.sync_error = None
        for key, value in extra.items():
            setattr(mapping, key, value)

    def mark_error(self, external_id, error: str) -> bool:
        """Record a failed sync on an existing mapping. Returns False if unmapped."""
        mapping = self.find_by_external_id(external_id)
        if mapping is None:
            return False
        mapping.sync_status = "error"
        mapping.sync_error = error[:2000]
        mapping.last_synced_at = utc_now()
        return True


class ClubMappingRepository(ExternalMappingRepository):
    external_id_field = "twizzit_organization_id"
    external_name_field = "twizzit_organization_name"
    local_id_field = "local_club_id"

    def __init__(self, db):
        super().__init__(TwizzitClubMapping, db)


class TeamMappingRepository(ExternalMappingRepository):
    external_id_field = "twizzit_team_id"
    external_name_field = "twizzit_team_name"
    local_id_field = "local_team_id"

    def __init__(self, db):
        super().__init__(TwizzitTeamMapping, db)

    def list_for_credential(self, credential_id: str) -> List[TwizzitTeamMapping]:
        return (
            self.query()
            .filter(TwizzitTeamMapping.credential_id == credential_id)
            .order_by(TwizzitTeamMapping.twizzit_team_name)
            .all()
        )


class PlayerMappingRepository(ExternalMappingRepository):
    external_id_field = "twizzit_player_id"
    external_name_field = "twizzit_player_name"
    local_id_field = "local_player_id"

    def __init__(self, db):
        super().__init__(TwizzitPlayerMapping, db)

    def list_for_credential(
        self,
        credential_id: str,
        team_mapping_id: Optional[str] = None
    ) -> List[TwizzitPlayerMapping]:
        query = self.query().filter(TwizzitPlayerMapping.credential_id == credential_id)
        if team_mapping_id:
            query = query.filter(TwizzitPlayerMapping.team_mapping_id == team_mapping_id)
        return query.order_by(TwizzitPlayerMapping.twizzit_player_name).all()
