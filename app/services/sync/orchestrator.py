"""Sync orchestrator: per-configuration run lock and history bookkeeping.

Every sync run goes through ``SyncOrchestrator.sync_lock``:

    async with orchestrator.sync_lock(credential_id, "teams") as run:
        ...reconcile, calling run.record(plan) per entity...

State per configuration: Idle -> Locked(running) -> Idle.

- Entering: the config row is created if missing, the lock is taken with a
  conditional UPDATE (``ConflictError`` if already held), an ``in_progress``
  history row is written and the log correlation id is set.
- Leaving: history is finalized exactly once (``success``,
  ``partial_success`` when items failed, ``failed`` when the body raised),
  then the lock is released. Both happen on every exit path.
"""
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError
from app.core.logging import clear_correlation_id, set_correlation_id
from app.repositories.twizzit import SyncConfigRepository, SyncHistoryRepository
from app.services.sync.reconcilers import PlannedAction

logger = logging.getLogger(__name__)

SYNC_TYPES = ("teams", "players")


@dataclass
class SyncRun:
    """Counters and per-item errors for one run."""

    sync_id: str
    credential_id: str
    sync_type: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    linked: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    status: str = "in_progress"
    started: float = field(default_factory=time.monotonic)

    def record(self, plan: PlannedAction) -> None:
        """Count the outcome of one reconciled entity."""
        self.processed += 1
        if plan.failed:
            self.failed += 1
            self.errors.append({
                "id": plan.external_id,
                "name": plan.name,
                "error": plan.error or plan.reason,
            })
        elif plan.succeeded:
            self.succeeded += 1
            if plan.action == "create":
                self.created += 1
            elif plan.action == "update":
                self.updated += 1
            elif plan.action == "link":
                self.linked += 1
        else:
            self.skipped += 1

    def record_failure(self, external_id: Optional[str], name: str, error: str) -> None:
        """Count an entity that failed before it reached a reconciler."""
        self.processed += 1
        self.failed += 1
        self.errors.append({"id": external_id, "name": name, "error": error})

    @property
    def completed_status(self) -> str:
        return "partial_success" if self.failed > 0 else "success"

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def to_result(self) -> Dict[str, Any]:
        return {
            "success": self.status in ("success", "partial_success"),
            "sync_id": self.sync_id,
            "status": self.status,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "created": self.created,
            "updated": self.updated,
            "linked": self.linked,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
        }


class SyncOrchestrator:
    """
    Guards sync runs with the per-configuration lock.

    This is the only code path that flips ``sync_in_progress``.
    """

    def __init__(self, db: Session):
        """
        Args:
            db: SQLAlchemy database session
        """
        self.db = db
        self.configs = SyncConfigRepository(db)
        self.history = SyncHistoryRepository(db)

    @asynccontextmanager
    async def sync_lock(self, credential_id: str, sync_type: str) -> AsyncIterator[SyncRun]:
        """
        Hold the run lock for ``credential_id`` for the duration of the block.

        Raises:
            ConflictError: A run for this configuration is already in progress
        """
        self.configs.get_or_create(credential_id)
        if not self.configs.try_acquire_lock(credential_id):
            logger.info(
                "Sync already in progress", extra={"credential_id": credential_id, "sync_type": sync_type}
            )
            raise ConflictError(
                "A sync is already in progress for this configuration",
                credential_id=credential_id,
                sync_type=sync_type,
            )

        run: Optional[SyncRun] = None
        correlation_token = None
        try:
            record = self.history.start(credential_id, sync_type)
            run = SyncRun(sync_id=record.id, credential_id=credential_id, sync_type=sync_type)
            correlation_token = set_correlation_id(f"sync-{record.id}")
            logger.info(
                "Sync started", extra={"credential_id": credential_id, "sync_type": sync_type}
            )
            try:
                yield run
            except BaseException as e:
                self._finalize(run, error=e)
                raise
            self._finalize(run)
        finally:
            self._release(credential_id, completed=run is not None and run.status != "failed")
            if correlation_token is not None:
                clear_correlation_id(correlation_token)

    async def run(
        self,
        credential_id: str,
        sync_type: str,
        work: Callable[[SyncRun], Awaitable[Any]]
    ) -> Dict[str, Any]:
        """Execute ``work(run)`` under the lock and return the run result."""
        async with self.sync_lock(credential_id, sync_type) as run:
            await work(run)
        return run.to_result()

    def _finalize(self, run: SyncRun, error: Optional[BaseException] = None) -> None:
        """Move history to its terminal status. Failures here are logged, not raised."""
        if error is not None:
            run.status = "failed"
            error_message = str(error) or error.__class__.__name__
        else:
            run.status = run.completed_status
            error_message = json.dumps(run.errors, default=str) if run.errors else None

        try:
            self.db.rollback()
            self.history.finish(
                run.sync_id,
                run.status,
                processed=run.processed,
                succeeded=run.succeeded,
                failed=run.failed,
                error_message=error_message,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Failed to finalize sync history",
                extra={"sync_id": run.sync_id, "status": run.status, "error": str(e)}
            )

        log = logger.error if run.status == "failed" else logger.info
        log(
            "Sync finished",
            extra={
                "credential_id": run.credential_id,
                "sync_type": run.sync_type,
                "status": run.status,
                "processed": run.processed,
                "succeeded": run.succeeded,
                "failed": run.failed,
                "duration_ms": run.duration_ms,
                "error": error_message if run.status == "failed" else None,
            }
        )

    def _release(self, credential_id: str, completed: bool) -> None:
        try:
            self.db.rollback()
            self.configs.release_lock(credential_id, completed=completed)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Failed to release sync lock",
                extra={"credential_id": credential_id, "error": str(e)}
            )
