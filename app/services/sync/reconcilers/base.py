"""Shared reconciliation flow: plan an action, then apply it as one unit of work.

Pipeline per remote entity:
1. Lookup by external id in the mapping table → update
2. Secondary identity match on local rows → link
3. No match → create (or skip when creation is disabled)

``plan`` is read-only, so previews and real syncs share the same decisions.
``apply`` writes the local row and its mapping, commits, and on failure rolls
both back before recording the error on the mapping in a separate commit.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.repositories.twizzit import ExternalMappingRepository

logger = logging.getLogger(__name__)

R = TypeVar("R")

ACTIONS = ("create", "update", "link", "skip", "invalid")
WRITE_ACTIONS = ("create", "update", "link")


@dataclass
class PlannedAction:
    """What reconciliation will do (or did) with one remote entity."""

    action: str
    external_id: Optional[str]
    name: str
    reason: Optional[str] = None
    local_id: Optional[str] = None
    mapping_id: Optional[str] = None
    error: Optional[str] = None
    mapping: Any = field(default=None, repr=False)
    match: Any = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.action in WRITE_ACTIONS and self.error is None

    @property
    def failed(self) -> bool:
        return self.action == "invalid" or self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "action": self.action,
            "external_id": self.external_id,
            "name": self.name,
            "local_id": self.local_id,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
        return data


class BaseReconciler(Generic[R]):
    """
    Reconciles one kind of remote record onto local rows.

    Subclasses implement ``plan`` and ``_write``.
    """

    entity = "item"

    def __init__(self, db: Session, credential_id: Optional[str] = None):
        self.db = db
        self.credential_id = credential_id

    @property
    def mappings(self) -> ExternalMappingRepository:
        raise NotImplementedError

    def plan(self, record: R, create_missing: bool = True, **context) -> PlannedAction:
        raise NotImplementedError

    def _write(self, plan: PlannedAction, record: R, **context):
        """Write the local row and its mapping (no commit). Returns (local, mapping)."""
        raise NotImplementedError

    def apply(self, record: R, create_missing: bool = True, **context) -> PlannedAction:
        """
        Plan and execute reconciliation for one record.

        Never raises for per-entity failures; the returned plan carries
        ``error`` instead.
        """
        plan = self.plan(record, create_missing=create_missing, **context)
        if plan.action not in WRITE_ACTIONS:
            return plan

        try:
            local, mapping = self._write(plan, record, **context)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            plan.error = str(e) or e.__class__.__name__
            logger.warning(
                f"Failed to reconcile {self.entity}",
                extra={"external_id": plan.external_id, "entity_name": plan.name, "error": plan.error}
            )
            self._record_mapping_error(plan.external_id, plan.error)
            return plan

        plan.local_id = local.id
        plan.mapping_id = mapping.id
        return plan

    def _record_mapping_error(self, external_id: Optional[str], error: str) -> None:
        if external_id is None:
            return
        try:
            if self.mappings.mark_error(external_id, error):
                self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Could not record {self.entity} mapping error",
                extra={"external_id": external_id, "error": str(e)}
            )
