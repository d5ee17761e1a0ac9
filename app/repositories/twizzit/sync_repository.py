"""
Repositories for sync configuration (including the run lock) and history.

The run lock is a single conditional UPDATE: the row flips from
``sync_in_progress = false`` to ``true`` only if nobody else holds it, and
the affected row count tells the caller whether it won.
"""
from typing import Optional, List

from app.models import TwizzitCredential, TwizzitSyncConfig, TwizzitSyncHistory
from app.repositories.base import BaseRepository
from app.utils.timezone import utc_now, next_sync_after


class SyncConfigRepository(BaseRepository[TwizzitSyncConfig]):
    """Repository for per-credential sync configuration."""

    def __init__(self, db):
        super().__init__(TwizzitSyncConfig, db)

    def find_by_credential(self, credential_id: str) -> Optional[TwizzitSyncConfig]:
        return self.where_first(TwizzitSyncConfig.credential_id == credential_id)

    def get_or_create(self, credential_id: str) -> TwizzitSyncConfig:
        """Return the config for a credential, creating a disabled manual one if needed."""
        config = self.find_by_credential(credential_id)
        if config is None:
            config = self.create(
                credential_id=credential_id,
                auto_sync_enabled=False,
                frequency="manual",
                sync_in_progress=False,
            )
            self.db.commit()
        return config

    # ========================================================================
    # Run lock
    # ========================================================================

    def try_acquire_lock(self, credential_id: str) -> bool:
        """
        Atomically set ``sync_in_progress`` if it is currently clear.

        Returns:
            True if this caller now holds the lock
        """
        updated = (
            self.query()
            .filter(
                TwizzitSyncConfig.credential_id == credential_id,
                TwizzitSyncConfig.sync_in_progress.is_(False)
            )
            .update(
                {
                    TwizzitSyncConfig.sync_in_progress: True,
                    TwizzitSyncConfig.updated_at: utc_now(),
                },
                synchronize_session=False
            )
        )
        self.db.commit()
        return updated == 1

    def release_lock(self, credential_id: str, completed: bool = True) -> None:
        """Clear the lock and stamp the run time. Commits."""
        now = utc_now()
        config = self.find_by_credential(credential_id)
        if config is None:
            return
        self.db.refresh(config)
        config.sync_in_progress = False
        config.updated_at = now
        if completed:
            config.last_sync_at = now
            config.next_sync_at = (
                next_sync_after(config.frequency, now) if config.auto_sync_enabled else None
            )
        self.db.commit()

    # ========================================================================
    # Scheduling
    # ========================================================================

    def find_due(self, frequency: str) -> List[TwizzitSyncConfig]:
        """Enabled, unlocked configurations for a cadence, ordered by organization."""
        return (
            self.query()
            .join(TwizzitCredential, TwizzitCredential.id == TwizzitSyncConfig.credential_id)
            .filter(
                TwizzitSyncConfig.auto_sync_enabled.is_(True),
                TwizzitSyncConfig.sync_in_progress.is_(False),
                TwizzitSyncConfig.frequency == frequency,
                TwizzitCredential.is_active.is_(True),
            )
            .order_by(TwizzitCredential.organization_name)
            .all()
        )


class SyncHistoryRepository(BaseRepository[TwizzitSyncHistory]):
    """Repository for append-only sync history."""

    def __init__(self, db):
        super().__init__(TwizzitSyncHistory, db)

    def start(self, credential_id: str, sync_type: str) -> TwizzitSyncHistory:
        """Insert an in_progress record. Commits."""
        record = self.create(
            credential_id=credential_id,
            sync_type=sync_type,
            sync_direction="import",
            status="in_progress",
            started_at=utc_now(),
        )
        self.db.commit()
        return record

    def finish(
        self,
        history_id: str,
        status: str,
        processed: int,
        succeeded: int,
        failed: int,
        error_message: Optional[str] = None
    ) -> bool:
        """Move a record to its terminal status. Commits.

        A record that already left ``in_progress`` is never touched again.
        """
        updated = (
            self.query()
            .filter(
                TwizzitSyncHistory.id == history_id,
                TwizzitSyncHistory.status == "in_progress"
            )
            .update(
                {
                    TwizzitSyncHistory.status: status,
                    TwizzitSyncHistory.items_processed: processed,
                    TwizzitSyncHistory.items_succeeded: succeeded,
                    TwizzitSyncHistory.items_failed: failed,
                    TwizzitSyncHistory.error_message: error_message,
                    TwizzitSyncHistory.completed_at: utc_now(),
                },
                synchronize_session=False
            )
        )
        self.db.commit()
        return updated == 1

    def list_for_credential(
        self,
        credential_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[TwizzitSyncHistory]:
        """Newest first."""
        return (
            self.query()
            .filter(TwizzitSyncHistory.credential_id == credential_id)
            .order_by(TwizzitSyncHistory.started_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
