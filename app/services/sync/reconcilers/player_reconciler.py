"""Contact → player reconciliation.

Duplicate detection (only when the contact is not yet mapped):
1. Exact email (case-insensitive)
2. Exact first + last name with the same birth date

A local player already mapped to another contact is never linked twice.
"""
from typing import Optional

from app.models import Player
from app.repositories.twizzit import PlayerMappingRepository, PlayerRepository
from app.services.sync.reconcilers.base import BaseReconciler, PlannedAction
from app.services.sync.utils.extractors import ContactRecord
from app.utils.timezone import utc_now


class PlayerReconciler(BaseReconciler[ContactRecord]):
    """Maps Twizzit contacts onto local players."""

    entity = "player"

    def __init__(self, db, credential_id: Optional[str] = None):
        super().__init__(db, credential_id)
        self.players = PlayerRepository(db)
        self._mappings = PlayerMappingRepository(db)

    @property
    def mappings(self) -> PlayerMappingRepository:
        return self._mappings

    def plan(self, record: ContactRecord, create_missing: bool = True, **context) -> PlannedAction:
        name = record.display_name
        if record.contact_id is None:
            return PlannedAction("invalid", None, name, reason="contact has no id")
        if not (record.first_name and record.last_name):
            return PlannedAction(
                "invalid", record.contact_id, name, reason="contact has no first and last name"
            )

        mapping = self.mappings.find_by_external_id(record.contact_id)
        if mapping is not None and mapping.player is not None:
            return PlannedAction(
                "update", record.contact_id, name,
                local_id=mapping.player.id, mapping=mapping, match=mapping.player
            )

        player = self._find_duplicate(record)
        if player is not None:
            return PlannedAction(
                "link", record.contact_id, name, local_id=player.id, mapping=mapping, match=player
            )

        if not create_missing:
            return PlannedAction(
                "skip", record.contact_id, name, reason="no matching local player and creation disabled"
            )
        return PlannedAction("create", record.contact_id, name, mapping=mapping)

    def _find_duplicate(self, record: ContactRecord) -> Optional[Player]:
        candidates = []
        if record.email:
            candidates.append(self.players.find_by_email(record.email))
        if record.birth_date:
            candidates.append(
                self.players.find_by_name_and_birth_date(
                    record.first_name, record.last_name, record.birth_date
                )
            )
        for player in candidates:
            if player is not None and self.mappings.find_by_local_id(player.id) is None:
                return player
        return None

    def _write(
        self,
        plan: PlannedAction,
        record: ContactRecord,
        team_id: Optional[str] = None,
        club_id: Optional[str] = None,
        team_mapping_id: Optional[str] = None,
        **context
    ):
        now = utc_now()
        player = plan.match
        if player is None:
            player = self.players.create(
                first_name=record.first_name,
                last_name=record.last_name,
                email=record.email,
                birth_date=record.birth_date,
                gender=record.gender,
                jersey_number=record.jersey_number,
                team_id=team_id,
                club_id=club_id,
                is_active=True,
            )
        else:
            player.first_name = record.first_name
            player.last_name = record.last_name
            if record.email:
                player.email = record.email
            if record.birth_date:
                player.birth_date = record.birth_date
            if record.gender != "unknown" or not player.gender:
                player.gender = record.gender
            if record.jersey_number is not None:
                player.jersey_number = record.jersey_number
            if team_id is not None:
                player.team_id = team_id
            if club_id is not None:
                player.club_id = club_id
            player.updated_at = now

        player.is_twizzit_registered = True
        player.twizzit_verified_at = now
        self.players.flush()

        extra = {}
        if team_mapping_id is not None:
            extra["team_mapping_id"] = team_mapping_id

        mapping = plan.mapping
        if mapping is None:
            mapping = self.mappings.link(
                plan.external_id, plan.name, player.id, credential_id=self.credential_id, **extra
            )
        else:
            self.mappings.mark_success(mapping, plan.name, local_player_id=player.id, **extra)
        self.mappings.flush()
        return player, mapping
