"""
Repository layer for data access.

Usage:
    from app.repositories import CredentialRepository
    from app.core.database import SessionLocal

    db = SessionLocal()
    repo = CredentialRepository(db)
    credential = repo.find_active("0b5e...")
    db.close()
"""

from app.repositories.base import BaseRepository
from app.repositories.twizzit import (
    CredentialRepository,
    SyncConfigRepository,
    SyncHistoryRepository,
    ClubMappingRepository,
    TeamMappingRepository,
    PlayerMappingRepository,
    ClubRepository,
    TeamRepository,
    PlayerRepository,
)

__all__ = [
    "BaseRepository",
    "CredentialRepository",
    "SyncConfigRepository",
    "SyncHistoryRepository",
    "ClubMappingRepository",
    "TeamMappingRepository",
    "PlayerMappingRepository",
    "ClubRepository",
    "TeamRepository",
    "PlayerRepository",
]
