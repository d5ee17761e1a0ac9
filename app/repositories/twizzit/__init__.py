"""Repositories for Twizzit credentials, sync state, mappings and local roster rows."""
from app.repositories.twizzit.credential_repository import CredentialRepository
from app.repositories.twizzit.sync_repository import SyncConfigRepository, SyncHistoryRepository
from app.repositories.twizzit.mapping_repository import (
    ExternalMappingRepository,
    ClubMappingRepository,
    TeamMappingRepository,
    PlayerMappingRepository,
)
from app.repositories.twizzit.roster_repository import (
    ClubRepository,
    TeamRepository,
    PlayerRepository,
)

__all__ = [
    "CredentialRepository",
    "SyncConfigRepository",
    "SyncHistoryRepository",
    "ExternalMappingRepository",
    "ClubMappingRepository",
    "TeamMappingRepository",
    "PlayerMappingRepository",
    "ClubRepository",
    "TeamRepository",
    "PlayerRepository",
]
