"""
Database models for the Twizzit roster sync engine.

Two groups of tables:
- Local roster tables (clubs, teams, players) that the rest of the
  application reads and writes.
- Twizzit integration tables: stored credentials, per-credential sync
  configuration, append-only sync history and the external-id mappings
  that make repeated syncs idempotent.
"""
import uuid

from sqlalchemy import (
    Column, String, Integer, DateTime, Date, ForeignKey, Boolean, Text, Index,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship, declarative_base

from app.utils.timezone import utc_now

Base = declarative_base()

SYNC_STATUSES = ("in_progress", "success", "partial_success", "failed")
CADENCES = ("manual", "hourly", "daily", "weekly")


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# LOCAL ROSTER
# =============================================================================

class Club(Base):
    """A club; Twizzit organizations map onto clubs."""
    __tablename__ = "clubs"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    teams = relationship("Team", back_populates="club")


class Team(Base):
    """Team within a club (e.g. U17, U15). Twizzit groups map onto teams."""
    __tablename__ = "teams"

    id = Column(String(36), primary_key=True, default=new_id)
    club_id = Column(String(36), ForeignKey("clubs.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    age_group = Column(String(20), nullable=True)
    gender = Column(String(10), nullable=True)  # male, female, mixed
    season_id = Column(String(100), nullable=True)
    season_label = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    club = relationship("Club", back_populates="teams")
    players = relationship("Player", back_populates="team")

    __table_args__ = (
        CheckConstraint(
            "gender IN ('male', 'female', 'mixed') OR gender IS NULL",
            name="ck_teams_gender"
        ),
        Index('ix_teams_club_name', 'club_id', 'name'),
    )


class Player(Base):
    """Player record; Twizzit contacts map onto players."""
    __tablename__ = "players"

    id = Column(String(36), primary_key=True, default=new_id)
    club_id = Column(String(36), ForeignKey("clubs.id", ondelete="SET NULL"), nullable=True, index=True)
    team_id = Column(String(36), ForeignKey("teams.id", ondelete="SET NULL"), nullable=True, index=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    birth_date = Column(Date, nullable=True)
    gender = Column(String(10), nullable=True)  # male, female, other, unknown
    jersey_number = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    # Federation registration is required to play official matches
    is_twizzit_registered = Column(Boolean, nullable=False, default=False)
    twizzit_verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    team = relationship("Team", back_populates="players")

    __table_args__ = (
        Index('ix_players_name', 'last_name', 'first_name'),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# =============================================================================
# TWIZZIT INTEGRATION
# =============================================================================

class TwizzitCredential(Base):
    """Encrypted Twizzit API credentials. Owned by the credential vault.

    Duplicate organization names are allowed: the same federation account
    may be stored more than once with different endpoints.
    """
    __tablename__ = "twizzit_credentials"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_name = Column(String(255), nullable=False, index=True)
    api_username = Column(String(255), nullable=False)
    encrypted_password = Column(Text, nullable=False)  # hex ciphertext
    encryption_iv = Column(String(64), nullable=False)  # hex IV, unique per encryption
    api_endpoint = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    sync_config = relationship(
        "TwizzitSyncConfig", back_populates="credential", uselist=False,
        cascade="all, delete-orphan"
    )
    history = relationship("TwizzitSyncHistory", cascade="all, delete-orphan")


class TwizzitSyncConfig(Base):
    """Automatic sync settings for one credential.

    ``sync_in_progress`` is the orchestrator's mutual-exclusion latch.
    """
    __tablename__ = "twizzit_sync_config"

    id = Column(String(36), primary_key=True, default=new_id)
    credential_id = Column(
        String(36), ForeignKey("twizzit_credentials.id", ondelete="CASCADE"),
        nullable=False, unique=True
    )
    auto_sync_enabled = Column(Boolean, nullable=False, default=False)
    frequency = Column(String(16), nullable=False, default="manual")
    sync_teams = Column(Boolean, nullable=False, default=True)
    sync_players = Column(Boolean, nullable=False, default=True)
    sync_in_progress = Column(Boolean, nullable=False, default=False)
    last_sync_at = Column(DateTime, nullable=True)
    next_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    credential = relationship("TwizzitCredential", back_populates="sync_config")

    __table_args__ = (
        CheckConstraint(
            "frequency IN ('manual', 'hourly', 'daily', 'weekly')",
            name="ck_twizzit_sync_config_frequency"
        ),
        Index('ix_twizzit_sync_config_due', 'auto_sync_enabled', 'sync_in_progress', 'frequency'),
    )


class TwizzitSyncHistory(Base):
    """One row per sync run. Status reaches a terminal value exactly once."""
    __tablename__ = "twizzit_sync_history"

    id = Column(String(36), primary_key=True, default=new_id)
    credential_id = Column(
        String(36), ForeignKey("twizzit_credentials.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    sync_type = Column(String(32), nullable=False)  # teams, players
    sync_direction = Column(String(16), nullable=False, default="import")
    status = Column(String(20), nullable=False, default="in_progress", index=True)
    items_processed = Column(Integer, nullable=False, default=0)
    items_succeeded = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'success', 'partial_success', 'failed')",
            name="ck_twizzit_sync_history_status"
        ),
        Index('ix_twizzit_sync_history_started', 'credential_id', 'started_at'),
    )


class TwizzitClubMapping(Base):
    """Twizzit organization ↔ local club."""
    __tablename__ = "twizzit_club_mappings"

    id = Column(String(36), primary_key=True, default=new_id)
    credential_id = Column(String(36), ForeignKey("twizzit_credentials.id", ondelete="SET NULL"), nullable=True)
    local_club_id = Column(String(36), ForeignKey("clubs.id", ondelete="CASCADE"), nullable=False, index=True)
    twizzit_organization_id = Column(String(100), nullable=False)
    twizzit_organization_name = Column(String(255), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    sync_status = Column(String(16), nullable=False, default="success")  # success, error
    sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('twizzit_organization_id', name='uq_twizzit_club_mappings_external'),
    )


class TwizzitTeamMapping(Base):
    """Twizzit group ↔ local team."""
    __tablename__ = "twizzit_team_mappings"

    id = Column(String(36), primary_key=True, default=new_id)
    credential_id = Column(String(36), ForeignKey("twizzit_credentials.id", ondelete="SET NULL"), nullable=True)
    club_mapping_id = Column(String(36), ForeignKey("twizzit_club_mappings.id", ondelete="SET NULL"), nullable=True)
    local_team_id = Column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    twizzit_team_id = Column(String(100), nullable=False)
    twizzit_team_name = Column(String(255), nullable=True)
    twizzit_season_id = Column(String(100), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    sync_status = Column(String(16), nullable=False, default="success")
    sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    team = relationship("Team")

    __table_args__ = (
        UniqueConstraint('twizzit_team_id', name='uq_twizzit_team_mappings_external'),
        Index('ix_twizzit_team_mappings_credential', 'credential_id'),
    )


class TwizzitPlayerMapping(Base):
    """Twizzit contact ↔ local player."""
    __tablename__ = "twizzit_player_mappings"

    id = Column(String(36), primary_key=True, default=new_id)
    credential_id = Column(String(36), ForeignKey("twizzit_credentials.id", ondelete="SET NULL"), nullable=True)
    team_mapping_id = Column(String(36), ForeignKey("twizzit_team_mappings.id", ondelete="SET NULL"), nullable=True)
    local_player_id = Column(String(36), ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    twizzit_player_id = Column(String(100), nullable=False)
    twizzit_player_name = Column(String(255), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    sync_status = Column(String(16), nullable=False, default="success")
    sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    player = relationship("Player")

    __table_args__ = (
        UniqueConstraint('twizzit_player_id', name='uq_twizzit_player_mappings_external'),
        Index('ix_twizzit_player_mappings_team', 'team_mapping_id'),
    )
