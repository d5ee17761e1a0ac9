"""Organization → club reconciliation."""
from typing import Optional

from app.repositories.twizzit import ClubMappingRepository, ClubRepository
from app.services.sync.reconcilers.base import BaseReconciler, PlannedAction
from app.services.sync.utils.extractors import OrganizationRecord
from app.utils.timezone import utc_now


class ClubReconciler(BaseReconciler[OrganizationRecord]):
    """Maps Twizzit organizations onto local clubs."""

    entity = "club"

    def __init__(self, db, credential_id: Optional[str] = None):
        super().__init__(db, credential_id)
        self.clubs = ClubRepository(db)
        self._mappings = ClubMappingRepository(db)

    @property
    def mappings(self) -> ClubMappingRepository:
        return self._mappings

    def plan(self, record: OrganizationRecord, create_missing: bool = True, **context) -> PlannedAction:
        name = (record.name or "").strip()
        if not name:
            return PlannedAction("invalid", record.organization_id, "", reason="organization has no name")

        mapping = self.mappings.find_by_external_id(record.organization_id)
        if mapping is not None:
            club = self.clubs.find_by_id(mapping.local_club_id)
            if club is not None:
                return PlannedAction(
                    "update", record.organization_id, name,
                    local_id=club.id, mapping=mapping, match=club
                )

        club = self.clubs.find_by_name(name)
        if club is not None and self.mappings.find_by_local_id(club.id) is None:
            return PlannedAction(
                "link", record.organization_id, name, local_id=club.id, mapping=mapping, match=club
            )

        if not create_missing:
            return PlannedAction(
                "skip", record.organization_id, name, reason="no local club and creation disabled"
            )
        return PlannedAction("create", record.organization_id, name, mapping=mapping)

    def _write(self, plan: PlannedAction, record: OrganizationRecord, **context):
        club = plan.match
        if club is None:
            club = self.clubs.create(name=plan.name)
            self.clubs.flush()
        elif plan.action == "update" and club.name != plan.name:
            club.name = plan.name
            club.updated_at = utc_now()

        mapping = plan.mapping
        if mapping is None:
            mapping = self.mappings.link(
                plan.external_id, plan.name, club.id, credential_id=self.credential_id
            )
        else:
            self.mappings.mark_success(mapping, plan.name, local_club_id=club.id)
        self.mappings.flush()
        return club, mapping
