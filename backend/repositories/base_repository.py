"""
Base repository providing common CRUD operations.
"""

from typing import Generic, TypeVar, List, Optional, Type
from sqlalchemy.orm import Session

T = TypeVar('T')


class BaseRepository(Generic[T]):
    """
    Generic base repository providing common CRUD operations.

    Repositories only flush; committing is the caller's unit of work so
    several changes can land in one transaction.
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model

    def create(self, obj: T) -> T:
        """
        Add a new record and flush so defaults (ids, timestamps) are populated.

        Args:
            obj: Model instance to create

        Returns:
            Created model instance
        """
        self.db.add(obj)
        self.db.flush()
        return obj

    def get_by_id(self, id: str) -> Optional[T]:
        return self.db.query(self.model).filter(self.model.id == id).first()

    def get_all(self, limit: Optional[int] = None, offset: int = 0) -> List[T]:
        """
        Retrieve all records, oldest first.

        Args:
            limit: Maximum number of records to return
            offset: Number of records to skip
        """
        query = self.db.query(self.model).order_by(self.model.created_at)
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def delete(self, obj: T) -> None:
        self.db.delete(obj)
        self.db.flush()

    def exists(self, id: str) -> bool:
        return self.db.query(self.model.id).filter(self.model.id == id).first() is not None

