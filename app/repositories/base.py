"""
Base repository class for data access layer.

Repositories keep query logic in one place so services deal in domain
operations (find the mapping for an external id, acquire a sync lock)
instead of ad-hoc queries.

Example:
    class ClubMappingRepository(BaseRepository[TwizzitClubMapping]):
        def find_by_external_id(self, external_id: str) -> Optional[TwizzitClubMapping]:
            return self.where_first(
                TwizzitClubMapping.twizzit_organization_id == external_id
            )
"""
from abc import ABC
from typing import TypeVar, Generic, Type, Optional, List
from sqlalchemy.orm import Query, Session

T = TypeVar("T")


class BaseRepository(Generic[T], ABC):
    """
    Base repository class providing common data access methods.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        self.model_type = model_type
        self.db = db

    # ========================================================================
    # CRUD Operations
    # ========================================================================

    def find_by_id(self, id: str) -> Optional[T]:
        """Find a single record by ID."""
        return self.db.get(self.model_type, id)

    def create(self, **kwargs) -> T:
        """Create a new record (added to the session, not committed)."""
        instance = self.model_type(**kwargs)
        self.db.add(instance)
        return instance

    def delete(self, id: str) -> bool:
        """Delete a record by ID. Returns False if not found."""
        instance = self.find_by_id(id)
        if instance:
            self.db.delete(instance)
            return True
        return False

    # ========================================================================
    # Query Builders
    # ========================================================================

    def query(self) -> Query:
        """Get a new query object for this model."""
        return self.db.query(self.model_type)

    def where(self, *criterion) -> List[T]:
        """Filter records using SQLAlchemy expressions."""
        return self.query().filter(*criterion).all()

    def where_first(self, *criterion) -> Optional[T]:
        """Filter records and return the first match."""
        return self.query().filter(*criterion).first()

    # ========================================================================
    # Save Operations
    # ========================================================================

    def save(self) -> None:
        """Commit pending changes to the database."""
        self.db.commit()

    def flush(self) -> None:
        """Flush pending changes without committing."""
        self.db.flush()
