"""
Repository interface and its SQLAlchemy implementation.

The engine never writes entity fields directly: every mutation is a patch
applied through update(), optionally conditioned on the current column values
so racing writers cannot both succeed.
"""
from abc import ABC, abstractmethod
from typing import Any, Generic, List, Mapping, Optional, Type, TypeVar

from sqlalchemy import update as sql_update
from sqlalchemy.orm import Session

T = TypeVar("T")


class StaleWriteError(Exception):
    """A conditional update matched no row: someone else changed the entity first."""

    def __init__(self, entity_name: str, entity_id: str, expected: Mapping[str, Any]):
        self.entity_name = entity_name
        self.entity_id = entity_id
        self.expected = dict(expected)
        super().__init__(f"Stale write on {entity_name} {entity_id}: expected {self.expected}")


class Repository(Generic[T], ABC):
    """Storage contract the engine depends on.

    Implementations must provide read-modify-conditional-write semantics: an
    update with `expected` values succeeds only if the stored row still holds
    them.
    """

    @abstractmethod
    def get(self, entity_id: str) -> Optional[T]:
        """Retrieve an entity by its ID, or None."""

    @abstractmethod
    def create(self, entity: T) -> T:
        """Stage a new entity."""

    @abstractmethod
    def update(self, entity_id: str, patch: Mapping[str, Any],
               expected: Optional[Mapping[str, Any]] = None) -> T:
        """Apply a patch.

        Raises:
            StaleWriteError: when `expected` no longer matches the stored row.
        """

    @abstractmethod
    def query(self, **filters: Any) -> List[T]:
        """Entities whose columns equal every filter value."""


class SqlRepository(Repository[T]):
    """SQLAlchemy repository. Commits are left to the caller."""

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model

    def get(self, entity_id: str) -> Optional[T]:
        return self.db.get(self.model, entity_id)

    def create(self, entity: T) -> T:
        self.db.add(entity)
        self.db.flush()
        return entity

    def update(self, entity_id: str, patch: Mapping[str, Any],
               expected: Optional[Mapping[str, Any]] = None) -> T:
        conditions = [self.model.id == entity_id]
        for column, value in (expected or {}).items():
            conditions.append(getattr(self.model, column) == value)

        result = self.db.execute(
            sql_update(self.model)
            .where(*conditions)
            .values(**dict(patch))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleWriteError(self.model.__name__, entity_id, expected or {})

        entity = self.db.get(self.model, entity_id)
        self.db.refresh(entity)
        return entity

    def query(self, **filters: Any) -> List[T]:
        return self.db.query(self.model).filter_by(**filters).all()
