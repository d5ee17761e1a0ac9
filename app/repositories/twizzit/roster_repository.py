"""
Repositories for the local roster tables (clubs, teams, players).

Besides plain lookups these hold the secondary-identity queries the
reconcilers use to link an unmapped remote entity to an existing local row
instead of creating a duplicate.
"""
from datetime import date
from typing import Optional, List

from sqlalchemy import func

from app.models import Club, Team, Player
from app.repositories.base import BaseRepository


class ClubRepository(BaseRepository[Club]):
    """Repository for clubs."""

    def __init__(self, db):
        super().__init__(Club, db)

    def find_by_name(self, name: str) -> Optional[Club]:
        """Case-insensitive exact name match."""
        return self.where_first(func.lower(Club.name) == name.strip().lower())


class TeamRepository(BaseRepository[Team]):
    """Repository for teams."""

    def __init__(self, db):
        super().__init__(Team, db)

    def find_in_club(self, club_id: str) -> List[Team]:
        return self.where(Team.club_id == club_id)


class PlayerRepository(BaseRepository[Player]):
    """Repository for players."""

    def __init__(self, db):
        super().__init__(Player, db)

    def find_by_email(self, email: str) -> Optional[Player]:
        """Exact (case-insensitive) email match."""
        return self.where_first(func.lower(Player.email) == email.strip().lower())

    def find_by_name_and_birth_date(
        self,
        first_name: str,
        last_name: str,
        birth_date: date
    ) -> Optional[Player]:
        """Exact first + last name (case-insensitive) with the same birth date."""
        return self.where_first(
            func.lower(Player.first_name) == first_name.strip().lower(),
            func.lower(Player.last_name) == last_name.strip().lower(),
            Player.birth_date == birth_date,
        )
