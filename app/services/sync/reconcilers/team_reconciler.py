"""Group → team reconciliation.

Duplicate detection: a local team in the same club whose normalized name
equals the group name, is not already mapped, and does not belong to a
different season.
"""
from typing import Optional

from app.models import Team
from app.repositories.twizzit import TeamMappingRepository, TeamRepository
from app.services.sync.reconcilers.base import BaseReconciler, PlannedAction
from app.services.sync.utils.extractors import GroupRecord
from app.services.sync.utils.name_normalizer import are_names_equal
from app.utils.timezone import utc_now


class TeamReconciler(BaseReconciler[GroupRecord]):
    """Maps Twizzit groups onto local teams of one club."""

    entity = "team"

    def __init__(self, db, credential_id: Optional[str] = None):
        super().__init__(db, credential_id)
        self.teams = TeamRepository(db)
        self._mappings = TeamMappingRepository(db)

    @property
    def mappings(self) -> TeamMappingRepository:
        return self._mappings

    def plan(
        self,
        record: GroupRecord,
        create_missing: bool = True,
        club_id: Optional[str] = None,
        **context
    ) -> PlannedAction:
        """
        Decide the action for one group.

        Args:
            record: The remote group
            create_missing: Create a team when nothing matches
            club_id: Local club the group belongs to (required to link/create)
            club_pending: (context) the club does not exist yet but would be created
        """
        name = (record.name or "").strip()
        if record.group_id is None:
            return PlannedAction("invalid", None, name, reason="group has no id")
        if not name:
            return PlannedAction("invalid", record.group_id, "", reason="group has no name")

        mapping = self.mappings.find_by_external_id(record.group_id)
        if mapping is not None and mapping.team is not None:
            return PlannedAction(
                "update", record.group_id, name,
                local_id=mapping.team.id, mapping=mapping, match=mapping.team
            )

        if club_id is None:
            # club will be created in the same run; only previews plan against it
            if context.get("club_pending") and create_missing:
                return PlannedAction("create", record.group_id, name, mapping=mapping)
            return PlannedAction("skip", record.group_id, name, reason="no local club for organization")

        team = self._find_duplicate(club_id, name, record.season_id)
        if team is not None:
            return PlannedAction(
                "link", record.group_id, name, local_id=team.id, mapping=mapping, match=team
            )

        if not create_missing:
            return PlannedAction(
                "skip", record.group_id, name, reason="no matching local team and creation disabled"
            )
        return PlannedAction("create", record.group_id, name, mapping=mapping)

    def _find_duplicate(self, club_id: str, name: str, season_id: Optional[str]) -> Optional[Team]:
        for team in self.teams.find_in_club(club_id):
            if not are_names_equal(team.name, name):
                continue
            if season_id and team.season_id and team.season_id != season_id:
                continue
            if self.mappings.find_by_local_id(team.id) is not None:
                continue
            return team
        return None

    def _write(
        self,
        plan: PlannedAction,
        record: GroupRecord,
        club_id: Optional[str] = None,
        club_mapping_id: Optional[str] = None,
        **context
    ):
        team = plan.match
        if team is None:
            team = self.teams.create(
                club_id=club_id,
                name=plan.name,
                age_group=record.age_group,
                gender=record.gender,
                season_id=record.season_id,
                season_label=record.season_label,
                is_active=True,
            )
            self.teams.flush()
        else:
            team.name = plan.name
            if record.age_group:
                team.age_group = record.age_group
            if record.gender:
                team.gender = record.gender
            if record.season_id:
                team.season_id = record.season_id
            if record.season_label:
                team.season_label = record.season_label
            team.is_active = True
            team.updated_at = utc_now()

        extra = {"twizzit_season_id": record.season_id}
        if club_mapping_id is not None:
            extra["club_mapping_id"] = club_mapping_id

        mapping = plan.mapping
        if mapping is None:
            mapping = self.mappings.link(
                plan.external_id, plan.name, team.id, credential_id=self.credential_id, **extra
            )
        else:
            self.mappings.mark_success(mapping, plan.name, local_team_id=team.id, **extra)
        self.mappings.flush()
        return team, mapping
