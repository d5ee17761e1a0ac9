"""
Models for the roster sync engine.

Usage:
    from app.models import Player, TwizzitPlayerMapping

    mapped = db.query(TwizzitPlayerMapping).filter(
        TwizzitPlayerMapping.twizzit_player_id == "12345"
    ).first()
"""
from app.models.models import (
    Base,
    Club,
    Team,
    Player,
    TwizzitCredential,
    TwizzitSyncConfig,
    TwizzitSyncHistory,
    TwizzitClubMapping,
    TwizzitTeamMapping,
    TwizzitPlayerMapping,
    CADENCES,
    SYNC_STATUSES,
)

__all__ = [
    "Base",
    "Club",
    "Team",
    "Player",
    "TwizzitCredential",
    "TwizzitSyncConfig",
    "TwizzitSyncHistory",
    "TwizzitClubMapping",
    "TwizzitTeamMapping",
    "TwizzitPlayerMapping",
    "CADENCES",
    "SYNC_STATUSES",
]
