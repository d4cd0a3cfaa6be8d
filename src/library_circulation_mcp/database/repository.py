"""
Repository pattern implementation for the Library Circulation MCP Server.

Repositories keep SQLAlchemy queries out of the circulation service and the
MCP handlers:

1. **Separation**: Tools and resources deal in Pydantic models, not rows
2. **Testability**: Each repository can be exercised against a scratch database
3. **Consistency**: Errors surface as the ``RepositoryException`` family

Repositories never commit. The caller owns the transaction, which is what lets
a loan insert and a counter update land atomically.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .schema import Base

logger = logging.getLogger(__name__)

# Type variables for generic repository
ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)
T = TypeVar("T")


class RepositoryException(Exception):
    """Base exception for repository and circulation operations."""


class NotFoundError(RepositoryException):
    """Raised when a referenced book, user or loan does not exist."""


class ConflictError(RepositoryException):
    """Raised when the current state forbids the operation.

    No copies available, a duplicate open loan, or a loan that is already
    returned.
    """


class InvalidRequestError(RepositoryException):
    """Raised when the caller supplies malformed ids, dates or periods."""


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier such as ``loan_3f9a1c2b7d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def safe_query(session: Session, query_func: Callable[[Session], T], error_msg: str) -> T:
    """
    Execute a query, turning driver errors into ``RepositoryException``.

    Args:
        session: The database session
        query_func: Function that performs the query
        error_msg: Message prefix for the raised exception
    """
    try:
        return query_func(session)
    except SQLAlchemyError as e:
        logger.exception("Query failed")
        raise RepositoryException(f"{error_msg}: Database query failed") from e


class BaseRepository(ABC, Generic[ModelType, CreateSchemaType, ResponseSchemaType]):
    """
    Abstract base repository providing common read operations.

    Subclasses name their SQLAlchemy model and Pydantic response schema; the
    base class converts rows with ``model_validate(from_attributes=True)``.
    """

    def __init__(self, session: Session):
        """Initialize repository with database session."""
        self.session = session

    @property
    @abstractmethod
    def model_class(self) -> type[ModelType]:
        """Return the SQLAlchemy model class."""

    @property
    @abstractmethod
    def response_schema(self) -> type[ResponseSchemaType]:
        """Return the Pydantic response schema."""

    @abstractmethod
    def create(self, data: CreateSchemaType) -> ResponseSchemaType:
        """Insert a new entity (flushed, not committed)."""

    def _to_response_model(self, db_obj: ModelType) -> ResponseSchemaType:
        """Convert database model to Pydantic response model."""
        return self.response_schema.model_validate(db_obj, from_attributes=True)

    def get_row(self, id: str) -> ModelType | None:
        """Get the raw database row by ID."""
        return safe_query(
            self.session,
            lambda s: s.get(self.model_class, id),
            f"Failed to get {self.model_class.__name__} by ID",
        )

    def get_by_id(self, id: str) -> ResponseSchemaType | None:
        """
        Get entity by ID.

        Returns:
            Pydantic model or None if not found
        """
        db_obj = self.get_row(id)
        if db_obj is None:
            return None
        return self._to_response_model(db_obj)

    def exists(self, id: str) -> bool:
        """Check if entity exists by ID."""
        query = select(func.count()).select_from(self.model_class).where(self.model_class.id == id)
        count = safe_query(
            self.session, lambda s: s.execute(query).scalar(), "Failed to check existence"
        )
        return bool(count)

    def count(self) -> int:
        """Count all entities."""
        query = select(func.count()).select_from(self.model_class)
        return (
            safe_query(self.session, lambda s: s.execute(query).scalar(), "Failed to count")
            or 0
        )
